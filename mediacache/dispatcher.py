"""
Loopback HTTP endpoint that serves media requests from an on-disk cache.

A request line carries the whole origin URL as its path
(``GET /http://host/a.mp3 HTTP/1.1``). Each connection gets exactly one
response and is then closed:

- cache hit: the stored entry (synthetic status/header block + body) is
  replayed byte for byte; the network is never touched.
- cache miss: the origin is fetched once and the response is streamed to the
  client while the very same bytes are written to a temp file, which is
  renamed into place only after the body completed.

Concurrent misses for one key coalesce on an in-flight registry: one request
fetches, the others wait for the entry to be published and replay it. A
waiter gives up on a fetch that writes nothing for ``coalesce_wait_ms`` and
answers its own client with a separate, uncached fetch.
"""

from __future__ import annotations

import enum
import logging
import selectors
import socket
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from mediacache.config import ProxyOptions
from mediacache.content_cache import ContentCache
from mediacache.errors import (
    BindFailure,
    OriginError,
    ProxyError,
    RelayWriteError,
)
from mediacache.inflight import InflightRegistry, PendingFetch
from mediacache.origin import OriginFetcher
from mediacache.relay import relay
from mediacache.request import ParsedRequest, parse_request

LOG = logging.getLogger(__name__)

_HEADER_END = b"\r\n\r\n"


class RequestState(enum.Enum):
    ACCEPTED = "accepted"
    PARSED = "parsed"
    CACHE_HIT = "cache_hit"
    CACHE_MISS_FETCHING = "cache_miss_fetching"
    RELAYING = "relaying"
    CLOSED = "closed"


@dataclass
class RequestOutcome:
    peer: str
    cache_key: str = ""
    target_url: Optional[str] = None
    states: List[RequestState] = field(default_factory=lambda: [RequestState.ACCEPTED])
    hit: Optional[bool] = None
    coalesced: bool = False
    bytes_sent: int = 0
    error: Optional[BaseException] = None

    def advance(self, state: RequestState) -> None:
        self.states.append(state)

    @property
    def state(self) -> RequestState:
        return self.states[-1]

    @property
    def ok(self) -> bool:
        return self.error is None and RequestState.RELAYING in self.states


class RequestHandler:
    """Runs parse -> cache lookup -> relay for one accepted connection."""

    def __init__(self, cache: ContentCache, fetcher: OriginFetcher, options: ProxyOptions,
                 inflight: Optional[InflightRegistry] = None):
        self.cache = cache
        self.fetcher = fetcher
        self.options = options
        self.inflight = inflight or InflightRegistry()

    def _debug(self, fmt: str, *args) -> None:
        if self.options.debug_logs:
            LOG.debug(fmt, *args)

    def read_request(self, conn: socket.socket) -> str:
        conn.settimeout(self.options.read_timeout_ms / 1000.0)
        data = bytearray()
        while _HEADER_END not in data and len(data) < self.options.max_request_bytes:
            chunk = conn.recv(4096)
            if not chunk:
                break
            data += chunk
        # latin-1 maps every byte, so decoding cannot fail.
        return bytes(data).decode("latin-1")

    def handle(self, conn: socket.socket, peer: str = "",
               stop: Optional[threading.Event] = None) -> RequestOutcome:
        outcome = RequestOutcome(peer=peer)
        try:
            raw = self.read_request(conn)
            if not raw.strip():
                self._debug("Connection from %s closed without a request", peer)
                return outcome
            request = parse_request(raw)
            outcome.cache_key = request.cache_key
            outcome.target_url = request.target_url
            outcome.advance(RequestState.PARSED)
            self._debug("%s %s key=%s", request.method, request.target_url, request.cache_key)

            # Relay writes block until the player drains them.
            conn.settimeout(None)
            self._serve(conn, request, outcome, stop)
        except (ProxyError, OSError) as e:
            outcome.error = e
            LOG.warning("Request from %s for %s failed: %s", peer, outcome.target_url, e)
        finally:
            try:
                conn.close()
            except OSError:
                pass
            outcome.advance(RequestState.CLOSED)
        return outcome

    def _serve(self, conn: socket.socket, request: ParsedRequest, outcome: RequestOutcome,
               stop: Optional[threading.Event] = None) -> None:
        key = request.cache_key
        if self.cache.exists(key):
            self._replay(conn, key, outcome)
            return

        pending, leader = self.inflight.begin(key)
        if not leader:
            outcome.coalesced = True
            self._debug("Waiting on in-flight fetch for key=%s", key)
            if not self._await(pending, stop):
                # The shared fetch stalled, most likely on a client that stopped reading.
                LOG.info("In-flight fetch for key=%s made no progress for %d ms, fetching separately",
                         key, self.options.coalesce_wait_ms)
                self._fetch(conn, request, outcome, cache=False)
                return
            if pending.ok:
                if self.cache.exists(key):
                    self._replay(conn, key, outcome)
                else:
                    # Leader got an uncacheable response; answer this one on its own.
                    self._fetch(conn, request, outcome, cache=False)
                return
            if isinstance(pending.error, RelayWriteError):
                # Only the leader's client went away; try once for this client.
                self._serve(conn, request, outcome, stop)
                return
            raise OriginError(f"Shared fetch for {key} failed: {pending.error}") from pending.error

        try:
            # A fetch may have published the entry between the miss and begin().
            if self.cache.exists(key):
                pending.resolve()
                self._replay(conn, key, outcome)
                return
            self._fetch(conn, request, outcome, cache=True, pending=pending)
            pending.resolve()
        except BaseException as e:
            pending.fail(e)
            raise
        finally:
            self.inflight.finish(key)

    def _await(self, pending: PendingFetch, stop: Optional[threading.Event]) -> bool:
        """
        Wait for another request's fetch to settle.

        Returns False once it has gone ``coalesce_wait_ms`` without writing a
        byte; raises ProxyError if the proxy is stopping.
        """
        window = self.options.coalesce_wait_ms / 1000.0
        seen = pending.progress
        deadline = time.monotonic() + window
        while not pending.wait(self.options.poll_interval):
            if stop is not None and stop.is_set():
                raise ProxyError(f"Proxy stopped while waiting on the fetch for {pending.key}")
            now = time.monotonic()
            if pending.progress != seen:
                seen = pending.progress
                deadline = now + window
            elif now >= deadline:
                return False
        return True

    def _replay(self, conn: socket.socket, key: str, outcome: RequestOutcome) -> None:
        outcome.hit = True
        outcome.advance(RequestState.CACHE_HIT)
        source = self.cache.open_for_read(key)
        outcome.advance(RequestState.RELAYING)
        outcome.bytes_sent = relay(conn, source, None, self.options.buffer_size)
        self._debug("Served %d cached bytes for key=%s", outcome.bytes_sent, key)

    def _fetch(self, conn: socket.socket, request: ParsedRequest, outcome: RequestOutcome,
               cache: bool, pending: Optional[PendingFetch] = None) -> None:
        outcome.hit = False
        outcome.advance(RequestState.CACHE_MISS_FETCHING)
        resp = self.fetcher.fetch(request.target_url, request.headers)
        stream = resp.open_stream()
        if not (cache and resp.cacheable):
            outcome.advance(RequestState.RELAYING)
            outcome.bytes_sent = relay(conn, stream, None, self.options.buffer_size)
            self._debug("Relayed %d uncached bytes (status %s)", outcome.bytes_sent, resp.status)
            return
        try:
            sink = self.cache.open_for_write(request.cache_key)
        except OSError:
            stream.close()
            raise
        if pending is not None:
            pending.attach(sink)
        with sink:
            outcome.advance(RequestState.RELAYING)
            outcome.bytes_sent = relay(conn, stream, sink, self.options.buffer_size)
            sink.commit()
        self._debug("Cached %d bytes under key=%s", outcome.bytes_sent, request.cache_key)


class Dispatcher:
    """
    Owns the loopback listener and the readiness selector.

    ``run()`` blocks until ``stop()``. With ``options.concurrent`` each
    readable connection is handed to its own daemon thread; otherwise the
    whole request is served inside the loop iteration.
    """

    def __init__(self, handler: RequestHandler, options: Optional[ProxyOptions] = None,
                 host: str = "127.0.0.1", port: int = 0,
                 on_complete: Optional[Callable[[RequestOutcome], None]] = None):
        self.handler = handler
        self.options = options or handler.options
        self.host = host
        self.on_complete = on_complete
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._conns: Dict[socket.socket, str] = {}
        self._closed = False

        self._selector = selectors.DefaultSelector()
        listener = None
        try:
            listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            listener.bind((host, int(port)))
            listener.listen(128)
            listener.setblocking(False)
            self._selector.register(listener, selectors.EVENT_READ, data=None)
        except OSError as e:
            LOG.error("Proxy initialization failed on %s:%s: %s", host, port, e)
            if listener is not None:
                listener.close()
            self._selector.close()
            raise BindFailure(f"Could not bind {host}:{port}: {e}") from e
        self._listener = listener
        self.port: int = listener.getsockname()[1]

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def open_connections(self) -> int:
        with self._lock:
            return len(self._conns)

    def run(self) -> None:
        try:
            while not self._stop.is_set():
                try:
                    events = self._selector.select(timeout=self.options.poll_interval)
                except OSError as e:
                    if self._stop.is_set():
                        break
                    LOG.error("Proxy select failed: %s", e)
                    continue
                for key, _mask in events:
                    if key.data is None:
                        self._accept()
                    else:
                        self._dispatch(key.fileobj, key.data)
        finally:
            self.close()

    def stop(self) -> None:
        self._stop.set()

    def _accept(self) -> None:
        try:
            conn, addr = self._listener.accept()
        except (BlockingIOError, InterruptedError):
            return
        except OSError as e:
            LOG.warning("Accept failed: %s", e)
            return
        peer = f"{addr[0]}:{addr[1]}"
        conn.setblocking(False)
        with self._lock:
            self._conns[conn] = peer
        self._selector.register(conn, selectors.EVENT_READ, data=peer)

    def _dispatch(self, conn: socket.socket, peer: str) -> None:
        try:
            self._selector.unregister(conn)
        except (KeyError, ValueError):
            pass
        if self.options.concurrent:
            t = threading.Thread(target=self._serve, args=(conn, peer),
                                 name="CachingProxyConn", daemon=True)
            t.start()
        else:
            self._serve(conn, peer)

    def _serve(self, conn: socket.socket, peer: str) -> None:
        outcome = None
        try:
            outcome = self.handler.handle(conn, peer, stop=self._stop)
        except Exception:
            LOG.exception("Unexpected error serving %s", peer)
            try:
                conn.close()
            except OSError:
                pass
        finally:
            with self._lock:
                self._conns.pop(conn, None)
        if outcome is not None and self.on_complete is not None:
            try:
                self.on_complete(outcome)
            except Exception as e:
                LOG.warning("Request observer failed: %s", e)

    def close(self) -> None:
        """Release the listener, the selector and every open connection."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            conns = list(self._conns)
            self._conns.clear()
        self._stop.set()
        for conn in conns:
            try:
                # Wakes a handler thread blocked in recv or sendall on this socket.
                conn.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            try:
                conn.close()
            except OSError:
                pass
        try:
            self._selector.close()
        except OSError as e:
            LOG.warning("Proxy selector cleanup failed: %s", e)
        try:
            self._listener.close()
        except OSError as e:
            LOG.warning("Proxy cleanup failed: %s", e)
