import io
import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest
import requests
import urllib3

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from mediacache.errors import MalformedRequestTarget, OriginConnectError, OriginTimeoutError
from mediacache.origin import OriginFetcher


def _fake_response(status=200, reason="OK", headers=None, body=b"abc", version=11):
    resp = MagicMock()
    resp.status_code = status
    resp.reason = reason
    resp.headers = headers if headers is not None else {"Content-Type": "audio/mpeg", "Content-Length": str(len(body))}
    bio = io.BytesIO(body)
    resp.raw.version = version
    resp.raw.read.side_effect = lambda amt=None, decode_content=True: bio.read(amt)
    return resp


def _fetcher(resp=None, **kwargs):
    session = MagicMock()
    session.get.return_value = resp if resp is not None else _fake_response()
    return OriginFetcher(session=session, **kwargs), session


def _drain(stream, size=2):
    out = b""
    while True:
        chunk = stream.read(size)
        if not chunk:
            return out
        out += chunk


def test_forwards_every_header_including_host():
    fetcher, session = _fetcher()
    headers = {"Host": "127.0.0.1:4000", "Range": "bytes=0-", "User-Agent": "player"}
    fetcher.fetch("http://example.org/a.mp3", headers)

    args, kwargs = session.get.call_args
    assert args[0] == "http://example.org/a.mp3"
    assert kwargs["headers"] == headers
    assert kwargs["stream"] is True
    assert kwargs["allow_redirects"] is False


def test_host_header_can_be_withheld():
    fetcher, session = _fetcher(forward_host_header=False)
    fetcher.fetch("http://example.org/a.mp3", {"host": "127.0.0.1:4000", "Range": "bytes=0-"})
    assert session.get.call_args.kwargs["headers"] == {"Range": "bytes=0-"}


def test_default_timeouts_are_three_seconds():
    fetcher, session = _fetcher()
    fetcher.fetch("http://example.org/a.mp3", {})
    assert session.get.call_args.kwargs["timeout"] == (3.0, 3.0)


def test_custom_timeouts():
    fetcher, session = _fetcher(connect_timeout_ms=1500, read_timeout_ms=250)
    fetcher.fetch("http://example.org/a.mp3", {})
    assert session.get.call_args.kwargs["timeout"] == (1.5, 0.25)


def test_session_has_no_default_headers():
    fetcher = OriginFetcher()
    assert len(fetcher.session.headers) == 0


def test_missing_url_is_malformed():
    fetcher, session = _fetcher()
    with pytest.raises(MalformedRequestTarget):
        fetcher.fetch(None, {})
    session.get.assert_not_called()


@pytest.mark.parametrize(
    "exc, expected",
    [
        (requests.exceptions.ConnectTimeout("slow"), OriginTimeoutError),
        (requests.exceptions.ReadTimeout("slow"), OriginTimeoutError),
        (requests.exceptions.ConnectionError("refused"), OriginConnectError),
        (requests.exceptions.InvalidURL("bad"), MalformedRequestTarget),
        (requests.exceptions.MissingSchema("bad"), MalformedRequestTarget),
    ],
)
def test_errors_are_mapped(exc, expected):
    fetcher, session = _fetcher()
    session.get.side_effect = exc
    with pytest.raises(expected):
        fetcher.fetch("http://example.org/a.mp3", {})
    assert session.get.call_count == 1


def test_preamble_drops_hop_by_hop_headers():
    resp = _fake_response(headers={
        "Content-Type": "audio/mpeg",
        "Transfer-Encoding": "chunked",
        "Connection": "keep-alive",
        "Accept-Ranges": "bytes",
    })
    fetcher, _ = _fetcher(resp)
    origin = fetcher.fetch("http://example.org/a.mp3", {})
    assert origin.preamble() == (
        b"HTTP/1.1 200 OK\r\n"
        b"Content-Type: audio/mpeg\r\n"
        b"Accept-Ranges: bytes\r\n"
        b"Connection: close\r\n"
        b"\r\n"
    )


def test_preamble_reflects_status_and_version():
    resp = _fake_response(status=206, reason="Partial Content", headers={}, version=10)
    fetcher, _ = _fetcher(resp)
    origin = fetcher.fetch("http://example.org/a.mp3", {})
    assert origin.preamble().startswith(b"HTTP/1.0 206 Partial Content\r\n")
    assert origin.cacheable


def test_error_statuses_are_not_cacheable():
    fetcher, _ = _fetcher(_fake_response(status=404, reason="Not Found", body=b""))
    assert not fetcher.fetch("http://example.org/a.mp3", {}).cacheable


def test_stream_is_preamble_then_raw_body():
    resp = _fake_response(headers={"Content-Length": "5"}, body=b"hello")
    fetcher, _ = _fetcher(resp)
    origin = fetcher.fetch("http://example.org/a.mp3", {})
    data = _drain(origin.open_stream(), size=7)
    assert data == b"HTTP/1.1 200 OK\r\nContent-Length: 5\r\nConnection: close\r\n\r\nhello"
    for call in resp.raw.read.call_args_list:
        assert call.kwargs["decode_content"] is False


def test_closing_stream_closes_response():
    resp = _fake_response()
    fetcher, _ = _fetcher(resp)
    stream = fetcher.fetch("http://example.org/a.mp3", {}).open_stream()
    stream.close()
    resp.close.assert_called_once()


def test_body_read_timeout_is_mapped():
    resp = _fake_response()
    resp.raw.read.side_effect = urllib3.exceptions.ReadTimeoutError(None, "http://example.org/a.mp3", "timed out")
    fetcher, _ = _fetcher(resp)
    origin = fetcher.fetch("http://example.org/a.mp3", {})
    with pytest.raises(OriginTimeoutError):
        origin.body.read(10)


def test_body_connection_loss_is_mapped():
    resp = _fake_response()
    resp.raw.read.side_effect = urllib3.exceptions.ProtocolError("reset")
    fetcher, _ = _fetcher(resp)
    origin = fetcher.fetch("http://example.org/a.mp3", {})
    with pytest.raises(OriginConnectError):
        origin.body.read(10)
