from __future__ import annotations

import dataclasses
import logging
import os
import threading
from typing import Callable, Optional
from urllib.parse import quote

from mediacache.config import ProxyOptions
from mediacache.content_cache import ContentCache
from mediacache.dispatcher import Dispatcher, RequestHandler, RequestOutcome
from mediacache.errors import BindFailure
from mediacache.inflight import InflightRegistry
from mediacache.origin import OriginFetcher

LOG = logging.getLogger(__name__)

_CACHING_PROXY_SINGLETON: Optional["CachingProxy"] = None


class CachingProxy:
    """
    Embedded caching proxy: a Dispatcher running on a background thread.

    The host hands its player ``proxify(url)`` instead of ``url``; every fetch
    of that local URL is answered from ``cache_dir`` when possible.
    """

    def __init__(self, options: Optional[ProxyOptions] = None,
                 on_complete: Optional[Callable[[RequestOutcome], None]] = None, **overrides):
        if options is None:
            options = ProxyOptions(**overrides)
        elif overrides:
            options = dataclasses.replace(options, **overrides)
        self.options = options
        self.on_complete = on_complete
        self.cache = ContentCache()
        self.fetcher = OriginFetcher(
            connect_timeout_ms=options.connect_timeout_ms,
            read_timeout_ms=options.read_timeout_ms,
            forward_host_header=options.forward_host_header,
        )
        self.inflight = InflightRegistry()
        self.handler = RequestHandler(self.cache, self.fetcher, self.options, self.inflight)

        self._lock = threading.RLock()
        self._host = "127.0.0.1"
        self._dispatcher: Optional[Dispatcher] = None
        self._thread: Optional[threading.Thread] = None
        # Once a port is chosen, try to reuse it on restarts so existing URLs keep working.
        self._preferred_port: Optional[int] = None
        self._last_port: Optional[int] = None

        if options.cache_dir:
            self.set_cache_dir(options.cache_dir)
        # Bind now: a proxy that cannot listen is unusable, and callers need the port.
        self._bind()

    def _bind(self) -> Dispatcher:
        with self._lock:
            if self._dispatcher is not None and not self._dispatcher.stopped:
                return self._dispatcher
            dispatcher = None
            if self._preferred_port is not None:
                try:
                    dispatcher = Dispatcher(self.handler, self.options, host=self._host,
                                            port=self._preferred_port, on_complete=self.on_complete)
                except BindFailure:
                    LOG.info("Port %s unavailable, picking a new one", self._preferred_port)
            if dispatcher is None:
                dispatcher = Dispatcher(self.handler, self.options, host=self._host,
                                        on_complete=self.on_complete)
            self._dispatcher = dispatcher
            self._last_port = dispatcher.port
            if self._preferred_port is None:
                self._preferred_port = dispatcher.port
            return dispatcher

    def set_cache_dir(self, path: str) -> None:
        previous = self.cache.cache_dir
        self.cache.set_cache_dir(path)
        self.options.cache_dir = path
        if previous and os.path.realpath(previous) == os.path.realpath(path):
            return
        # Temp files of fetches still running here belong to live sinks.
        self.cache.purge_partials(keep=self.inflight)

    @property
    def cache_dir(self) -> Optional[str]:
        return self.cache.cache_dir

    @property
    def port(self) -> int:
        with self._lock:
            if self._dispatcher is not None and not self._dispatcher.stopped:
                return self._dispatcher.port
            if self._last_port is not None:
                # Stopped: report the last port instead of binding a listener nobody serves.
                return self._last_port
        return self._bind().port

    @property
    def base_url(self) -> str:
        return f"http://{self._host}:{self.port}"

    def is_running(self) -> bool:
        with self._lock:
            return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        with self._lock:
            if self.is_running():
                return
            dispatcher = self._bind()

            def run() -> None:
                try:
                    dispatcher.run()
                except Exception as e:
                    LOG.exception("CachingProxy loop died: %s", e)

            self._thread = threading.Thread(target=run, name="CachingProxy", daemon=True)
            self._thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        with self._lock:
            dispatcher, thread = self._dispatcher, self._thread
            self._dispatcher = None
            self._thread = None
        if dispatcher is None:
            return
        dispatcher.stop()
        if thread is not None:
            thread.join(timeout)
            if thread.is_alive():
                LOG.warning("CachingProxy loop did not stop within %.1fs", timeout)
        else:
            dispatcher.close()

    def proxify(self, url: str) -> str:
        """Return the local URL the host player should open instead of ``url``."""
        if not url:
            return url
        self.start()
        # Spaces and control characters would break the request line.
        return f"{self.base_url}/{quote(url, safe=':/?#[]@!$&()*+,;=%~-._')}"


def get_caching_proxy(
    cache_dir: Optional[str] = None,
    buffer_size: Optional[int] = None,
    connect_timeout_ms: Optional[int] = None,
    read_timeout_ms: Optional[int] = None,
    debug_logs: Optional[bool] = None,
) -> CachingProxy:
    global _CACHING_PROXY_SINGLETON
    overrides = {}
    if buffer_size:
        overrides["buffer_size"] = buffer_size
    if connect_timeout_ms:
        overrides["connect_timeout_ms"] = connect_timeout_ms
    if read_timeout_ms:
        overrides["read_timeout_ms"] = read_timeout_ms
    if debug_logs is not None:
        overrides["debug_logs"] = debug_logs

    if _CACHING_PROXY_SINGLETON is None:
        _CACHING_PROXY_SINGLETON = CachingProxy(cache_dir=cache_dir or "", **overrides)
        return _CACHING_PROXY_SINGLETON

    # Allow tuning without replacing the server
    proxy = _CACHING_PROXY_SINGLETON
    if cache_dir:
        proxy.set_cache_dir(cache_dir)
    if overrides:
        # Rebuild so the values are clamped, then copy onto the shared options object.
        tuned = dataclasses.replace(proxy.options, **overrides)
        for f in dataclasses.fields(tuned):
            setattr(proxy.options, f.name, getattr(tuned, f.name))
        proxy.fetcher.connect_timeout_ms = proxy.options.connect_timeout_ms
        proxy.fetcher.read_timeout_ms = proxy.options.read_timeout_ms
    return proxy
