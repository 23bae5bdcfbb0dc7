from __future__ import annotations

import logging
import os
import re
import time
import uuid
from typing import BinaryIO, Container, Optional

from mediacache.errors import CacheDirNotSet

LOG = logging.getLogger(__name__)

_KEY_RE = re.compile(r"^[0-9a-f]{64}$")
_TMP_PREFIX = ".tmp_"


def _check_key(key: str) -> str:
    if not isinstance(key, str) or not _KEY_RE.match(key):
        raise ValueError(f"Invalid cache key: {key!r}")
    return key


class CacheSink:
    """
    Write side of a cache entry.

    Bytes go to a hidden temp file in the cache directory; ``commit()`` renames
    it onto the final name so the entry only ever becomes visible complete.
    """

    def __init__(self, final_path: str, tmp_path: str):
        self.final_path = final_path
        self.tmp_path = tmp_path
        self.bytes_written = 0
        self._f: Optional[BinaryIO] = open(tmp_path, "wb")
        self._done = False

    def write(self, data: bytes) -> int:
        if self._f is None:
            raise ValueError("write to a closed cache sink")
        self._f.write(data)
        self.bytes_written += len(data)
        return len(data)

    def _close_file(self) -> None:
        if self._f is not None:
            try:
                self._f.close()
            finally:
                self._f = None

    def commit(self) -> None:
        if self._done:
            return
        self._close_file()
        os.replace(self.tmp_path, self.final_path)
        self._done = True

    def discard(self) -> None:
        if self._done:
            return
        self._done = True
        try:
            self._close_file()
        finally:
            try:
                os.remove(self.tmp_path)
            except FileNotFoundError:
                pass
            except OSError as e:
                LOG.warning("Could not remove partial cache file %s: %s", self.tmp_path, e)

    def __enter__(self) -> "CacheSink":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        # Anything not explicitly committed is thrown away.
        self.discard()


class ContentCache:
    """Flat on-disk store: one file per hex cache key, no index, no expiry."""

    def __init__(self, cache_dir: Optional[str] = None):
        self.cache_dir: Optional[str] = None
        if cache_dir:
            self.set_cache_dir(cache_dir)

    def set_cache_dir(self, path: str) -> None:
        os.makedirs(path, exist_ok=True)
        self.cache_dir = path

    def _path(self, key: str) -> str:
        if not self.cache_dir:
            raise CacheDirNotSet("set_cache_dir() must be called before serving requests")
        return os.path.join(self.cache_dir, _check_key(key))

    def exists(self, key: str) -> bool:
        return os.path.isfile(self._path(key))

    def open_for_read(self, key: str) -> BinaryIO:
        return open(self._path(key), "rb")

    def open_for_write(self, key: str) -> CacheSink:
        final_path = self._path(key)
        tmp_name = f"{_TMP_PREFIX}{key}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"
        return CacheSink(final_path, os.path.join(self.cache_dir, tmp_name))

    def remove(self, key: str) -> bool:
        try:
            os.remove(self._path(key))
            return True
        except FileNotFoundError:
            return False

    def purge_partials(self, keep: Container[str] = ()) -> int:
        """
        Delete temp files left behind by an interrupted process.

        Temp files whose key is in ``keep`` (fetches still running) are left alone.
        """
        if not self.cache_dir:
            return 0
        removed = 0
        try:
            names = os.listdir(self.cache_dir)
        except OSError as e:
            LOG.warning("Could not list cache dir %s: %s", self.cache_dir, e)
            return 0
        for name in names:
            if not name.startswith(_TMP_PREFIX):
                continue
            if name[len(_TMP_PREFIX):len(_TMP_PREFIX) + 64] in keep:
                continue
            try:
                os.remove(os.path.join(self.cache_dir, name))
                removed += 1
            except OSError:
                continue
        if removed:
            LOG.info("Removed %d partial cache file(s) from %s", removed, self.cache_dir)
        return removed
