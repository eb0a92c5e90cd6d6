"""Error taxonomy shared by all components."""


class PlatewiseError(Exception):
    """Base class for errors that map to a client-facing status."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class InvalidRequestError(PlatewiseError):
    """Malformed input, rejected before any persistent side effect."""

    status_code = 400
    code = "INVALID_REQUEST"


class NotFoundError(PlatewiseError):
    """Unknown id."""

    status_code = 404
    code = "NOT_FOUND"


class ConflictError(PlatewiseError):
    """Illegal state transition."""

    status_code = 409
    code = "CONFLICT"


class TransientError(PlatewiseError):
    """A downstream dependency failed; retry at the next natural trigger."""

    status_code = 503
    code = "TRANSIENT_ERROR"
