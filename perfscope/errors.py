"""Error taxonomy for recording sessions."""

from typing import Optional


class PerfscopeError(Exception):
    """Base class for all perfscope errors."""
    pass


class InvalidStateError(PerfscopeError):
    """Operation not allowed in the current session state."""
    pass


class ProtocolError(PerfscopeError):
    """A DevTools Protocol command was rejected or could not complete."""

    def __init__(self, message: str, method: Optional[str] = None,
                 code: Optional[int] = None):
        super().__init__(message)
        self.method = method
        self.code = code


class ResourceLimitError(PerfscopeError):
    """A configured resource limit (e.g. heap snapshot count) was exceeded."""
    pass


class NonFatalCollectionError(PerfscopeError):
    """Ancillary collection failure; degrades a report, never escapes a collector."""
    pass
