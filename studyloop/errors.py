"""Error taxonomy shared by the scheduling engine and the API layer.

Every error carries a stable ``code`` and the HTTP status the API layer
should answer with. Only ``StoreUnavailable`` is safe to retry.
"""


class SrsError(Exception):
    """Base class for all engine errors."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class ValidationError(SrsError):
    """Malformed input (bad rating, missing id). Never retried."""

    code = "INVALID_INPUT"
    status_code = 400


class NotFoundError(SrsError):
    """Card missing or owned by someone else. Never retried."""

    code = "NOT_FOUND"
    status_code = 404


class Unauthenticated(SrsError):
    code = "UNAUTHORIZED"
    status_code = 401


class StoreUnavailable(SrsError):
    """Transient storage failure (timeout, lost connection)."""

    code = "STORE_UNAVAILABLE"
    status_code = 503


class StaleCardError(StoreUnavailable):
    """The card changed between read and write (concurrent submission)."""

    code = "CARD_CONFLICT"


class InternalError(SrsError):
    """An invariant was violated, e.g. negative stability."""

    code = "INTERNAL_ERROR"
    status_code = 500
