from __future__ import annotations

import logging
import socket
from typing import BinaryIO, Optional

from mediacache.errors import RelayWriteError

LOG = logging.getLogger(__name__)

DEFAULT_BUFFER_SIZE = 64 * 1024


def relay(sock: socket.socket, source: BinaryIO, sink: Optional[object] = None,
          buffer_size: int = DEFAULT_BUFFER_SIZE) -> int:
    """
    Copy ``source`` to ``sock`` chunk by chunk, teeing each chunk into ``sink``
    (when given) before it is sent. Returns the number of bytes relayed.

    The source is always closed. A failed socket write raises RelayWriteError
    and nothing further is written to either destination. Errors reading the
    source propagate unchanged.
    """
    total = 0
    buf_size = max(1, int(buffer_size))
    try:
        while True:
            chunk = source.read(buf_size)
            if not chunk:
                break
            if sink is not None:
                sink.write(chunk)
            try:
                sock.sendall(chunk)
            except OSError as e:
                raise RelayWriteError(f"Client write failed after {total} bytes: {e}") from e
            total += len(chunk)
    finally:
        try:
            source.close()
        except OSError as e:
            LOG.warning("Could not close the relay source: %s", e)
    return total
