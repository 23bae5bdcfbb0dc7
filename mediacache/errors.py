"""Exception hierarchy for the caching proxy.

Everything derives from :class:`ProxyError`. Only :class:`BindFailure` is
fatal: it is raised while constructing the dispatcher and leaves the proxy
unusable. The rest are per-request failures that close a single connection
and are recorded on its ``RequestOutcome``.

Subclass hierarchy::

    ProxyError
    +-- BindFailure
    +-- CacheDirNotSet
    +-- MalformedRequestTarget
    +-- OriginError
    |   +-- OriginConnectError
    |   +-- OriginTimeoutError
    +-- RelayWriteError
"""


class ProxyError(Exception):
    """Base exception for all proxy errors."""


class BindFailure(ProxyError):
    """The loopback listening socket could not be created."""


class CacheDirNotSet(ProxyError):
    """A request arrived before ``set_cache_dir()`` was called."""


class MalformedRequestTarget(ProxyError):
    """The request line did not carry a usable absolute URL."""


class OriginError(ProxyError):
    """Fetching from the origin failed."""


class OriginConnectError(OriginError):
    pass


class OriginTimeoutError(OriginError):
    pass


class RelayWriteError(ProxyError):
    """Writing to the client socket failed mid-copy."""
