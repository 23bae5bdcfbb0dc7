"""Wrap a host media player so every data source it opens goes through the cache."""

from __future__ import annotations

import logging
import os
from typing import Any, Optional

from mediacache.config import DEFAULT_CONFIG
from mediacache.proxy import CachingProxy

LOG = logging.getLogger(__name__)


class CachedMediaPlayer:
    """
    Decorates a host player exposing ``set_data_source(url)``.

    The host never sees the origin URL, only ``http://127.0.0.1:<port>/<url>``.
    Anything not defined here is delegated to the wrapped player.
    """

    def __init__(
        self,
        player: Any,
        proxy: Optional[CachingProxy] = None,
        buffer_size: int = DEFAULT_CONFIG["proxy_buffer_size"],
        connect_timeout_ms: int = DEFAULT_CONFIG["proxy_connect_timeout_ms"],
        read_timeout_ms: int = DEFAULT_CONFIG["proxy_read_timeout_ms"],
    ):
        self._player = player
        self._owns_proxy = proxy is None
        self.proxy = proxy or CachingProxy(
            buffer_size=buffer_size,
            connect_timeout_ms=connect_timeout_ms,
            read_timeout_ms=read_timeout_ms,
        )
        self.proxy.start()

    @property
    def player(self) -> Any:
        return self._player

    def set_cache_dir(self, path: str) -> None:
        os.makedirs(path, exist_ok=True)
        self.proxy.set_cache_dir(path)

    def set_data_source(self, path: str) -> None:
        if not self.proxy.cache_dir:
            LOG.warning("set_data_source called before set_cache_dir; requests will fail")
        self._player.set_data_source(self.proxy.proxify(path))

    def release(self) -> None:
        try:
            release = getattr(self._player, "release", None)
            if callable(release):
                release()
        finally:
            if self._owns_proxy:
                self.proxy.stop()

    def __getattr__(self, name: str) -> Any:
        # Only reached for attributes this wrapper does not define.
        if name == "_player":
            raise AttributeError(name)
        return getattr(self._player, name)
