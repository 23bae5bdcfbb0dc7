from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional, Tuple
from urllib.parse import urlparse

LOG = logging.getLogger(__name__)

_KEY_EXCLUDED_HEADER = "host"


def _sha256_hex(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8", "ignore")).hexdigest()


@dataclass
class ParsedRequest:
    method: str
    request_line: str
    target_url: Optional[str]
    headers: Dict[str, str] = field(default_factory=dict)
    cache_key: str = ""


def derive_cache_key(request_line: str, header_items: Iterable[Tuple[str, str]]) -> str:
    """
    Fingerprint a request: the request line followed by every header value
    except Host's, in the order received. Header names do not contribute.
    """
    parts = [request_line]
    for name, value in header_items:
        if name.strip().lower() == _KEY_EXCLUDED_HEADER:
            continue
        parts.append(value)
    return _sha256_hex("".join(parts))


def _parse_target(target: str) -> Optional[str]:
    # The local URL embeds the whole origin URL as its path: "/http://host/x".
    if target.startswith("/"):
        target = target[1:]
    try:
        parsed = urlparse(target)
    except ValueError:
        return None
    if parsed.scheme.lower() not in ("http", "https") or not parsed.netloc:
        return None
    return target


def parse_request(raw: str) -> ParsedRequest:
    lines = raw.split("\r\n")

    # Skip leading blank lines (tolerated before the request line).
    idx = 0
    while idx < len(lines) and not lines[idx].strip():
        idx += 1
    request_line = lines[idx].strip() if idx < len(lines) else ""

    tokens = request_line.split(" ")
    method = tokens[0].upper() if tokens and tokens[0] else ""
    target_url = _parse_target(tokens[1]) if len(tokens) > 1 else None
    if target_url is None:
        LOG.warning("Request target is not an absolute URL: %r", request_line)

    headers: Dict[str, str] = {}
    items = []
    for line in lines[idx + 1:]:
        if not line.strip():
            break
        name, sep, value = line.partition(":")
        if not sep:
            continue
        name = name.strip()
        value = value.strip()
        headers[name] = value
        items.append((name, value))

    return ParsedRequest(
        method=method,
        request_line=request_line,
        target_url=target_url,
        headers=headers,
        cache_key=derive_cache_key(request_line, items),
    )
