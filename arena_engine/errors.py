"""
Error taxonomy for the engine.

Read paths recover from these via fallback chains; write paths surface them.
"""


class ArenaError(Exception):
    """Base class for engine errors."""

    pass


class ValidationError(ArenaError):
    """Raised for bad input, before any network call is made."""

    pass


class UpstreamUnavailable(ArenaError):
    """Raised when a quote source or backend call fails."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        source: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.source = source


class BackendAuthError(UpstreamUnavailable):
    """Raised when the backend rejects our credentials."""

    pass


class NotFoundError(ArenaError):
    """Raised for an unknown order or position id."""

    pass


class StateConflict(ArenaError):
    """Raised for a transition out of a terminal order status."""

    pass
