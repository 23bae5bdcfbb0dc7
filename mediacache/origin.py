from __future__ import annotations

import io
import logging
from typing import Dict, List, Optional, Tuple

import requests
import urllib3

from mediacache.errors import MalformedRequestTarget, OriginConnectError, OriginTimeoutError

LOG = logging.getLogger(__name__)

# Never copied into the synthetic preamble: the proxy always answers with a
# plain, connection-closing, de-chunked body.
_HOP_BY_HOP = ("transfer-encoding", "connection", "keep-alive", "proxy-authenticate",
               "proxy-authorization", "te", "trailers", "upgrade")

CACHEABLE_STATUSES = (200, 206)


class OriginBody(io.RawIOBase):
    """Raw (undecoded) body bytes of an origin response as a readable stream."""

    def __init__(self, response: requests.Response):
        super().__init__()
        self._response = response

    def readable(self) -> bool:
        return True

    def read(self, size: int = -1) -> bytes:
        amt = None if size is None or size < 0 else size
        try:
            data = self._response.raw.read(amt, decode_content=False)
        except urllib3.exceptions.ReadTimeoutError as e:
            raise OriginTimeoutError(f"Origin read timed out: {e}") from e
        except (urllib3.exceptions.HTTPError, OSError) as e:
            raise OriginConnectError(f"Origin read failed: {e}") from e
        return data or b""

    def readinto(self, b) -> int:
        data = self.read(len(b))
        n = len(data)
        b[:n] = data
        return n

    def close(self) -> None:
        if self.closed:
            return
        try:
            self._response.close()
        finally:
            super().close()


class OriginResponse:
    def __init__(self, response: requests.Response):
        self.response = response
        self.status: int = response.status_code
        self.reason: str = response.reason or ""
        self.headers: List[Tuple[str, str]] = list(response.headers.items())
        self.body = OriginBody(response)

    @property
    def cacheable(self) -> bool:
        return self.status in CACHEABLE_STATUSES

    def preamble(self) -> bytes:
        version = getattr(self.response.raw, "version", 11)
        proto = "HTTP/1.0" if version == 10 else "HTTP/1.1"
        lines = [f"{proto} {self.status} {self.reason}".rstrip()]
        for k, v in self.headers:
            if k.lower() in _HOP_BY_HOP:
                continue
            lines.append(f"{k}: {v}")
        lines.append("Connection: close")
        return ("\r\n".join(lines) + "\r\n\r\n").encode("latin-1", "replace")

    def open_stream(self) -> io.RawIOBase:
        """Preamble followed by the body, as one readable stream."""
        return _ChainedStream(io.BytesIO(self.preamble()), self.body)

    def close(self) -> None:
        self.body.close()


class _ChainedStream(io.RawIOBase):
    def __init__(self, *parts):
        super().__init__()
        self._parts = list(parts)
        self._idx = 0

    def readable(self) -> bool:
        return True

    def readinto(self, b) -> int:
        while self._idx < len(self._parts):
            data = self._parts[self._idx].read(len(b))
            if data:
                n = len(data)
                b[:n] = data
                return n
            self._idx += 1
        return 0

    def close(self) -> None:
        if self.closed:
            return
        try:
            for part in self._parts:
                try:
                    part.close()
                except OSError as e:
                    LOG.warning("Could not close origin stream: %s", e)
        finally:
            super().close()


class OriginFetcher:
    def __init__(self, connect_timeout_ms: int = 3000, read_timeout_ms: int = 3000,
                 forward_host_header: bool = True, session: Optional[requests.Session] = None):
        self.connect_timeout_ms = int(connect_timeout_ms)
        self.read_timeout_ms = int(read_timeout_ms)
        self.forward_host_header = bool(forward_host_header)
        self.session = session or self._make_session()

    @staticmethod
    def _make_session() -> requests.Session:
        s = requests.Session()
        # Forward the client's headers as-is instead of requests' defaults.
        s.headers.clear()
        # One attempt per request; no retries.
        adapter = requests.adapters.HTTPAdapter(pool_connections=8, pool_maxsize=8, max_retries=0)
        s.mount("http://", adapter)
        s.mount("https://", adapter)
        return s

    @property
    def timeout(self) -> Tuple[float, float]:
        return (self.connect_timeout_ms / 1000.0, self.read_timeout_ms / 1000.0)

    def _outbound_headers(self, headers: Optional[Dict[str, str]]) -> Dict[str, str]:
        out = dict(headers or {})
        if not self.forward_host_header:
            out = {k: v for k, v in out.items() if k.lower() != "host"}
        return out

    def fetch(self, url: Optional[str], headers: Optional[Dict[str, str]] = None) -> OriginResponse:
        if not url:
            raise MalformedRequestTarget("No origin URL in request")
        try:
            r = self.session.get(
                url,
                headers=self._outbound_headers(headers),
                stream=True,
                timeout=self.timeout,
                allow_redirects=False,
            )
        except (requests.exceptions.ConnectTimeout, requests.exceptions.ReadTimeout) as e:
            raise OriginTimeoutError(f"Origin timed out: {url}: {e}") from e
        except (requests.exceptions.MissingSchema, requests.exceptions.InvalidSchema,
                requests.exceptions.InvalidURL) as e:
            raise MalformedRequestTarget(f"Bad origin URL {url!r}: {e}") from e
        except requests.exceptions.RequestException as e:
            raise OriginConnectError(f"Origin fetch failed: {url}: {e}") from e
        LOG.debug("Origin %s -> %s", url, r.status_code)
        return OriginResponse(r)
