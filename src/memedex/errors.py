"""
Error kinds shared across memedex components.

Each component raises its own subclass of one of these kinds; the API
layer maps the kind to an HTTP status and a structured error body.
"""


class MemedexError(Exception):
    """Base class for memedex errors."""

    code = "internal_error"
    status_code = 500
    retryable = False


class NotFoundError(MemedexError):
    """Requested entity does not exist."""

    code = "not_found"
    status_code = 404


class ConflictError(MemedexError):
    """Operation conflicts with one already in flight."""

    code = "conflict"
    status_code = 409


class UpstreamUnavailableError(MemedexError):
    """Description or embedding service unreachable or failing."""

    code = "upstream_unavailable"
    status_code = 503
    retryable = True


class ValidationError(MemedexError):
    """Malformed update or query."""

    code = "validation_error"
    status_code = 400


class ImageIOError(MemedexError):
    """Image file missing or unreadable."""

    code = "io_error"
    status_code = 422
