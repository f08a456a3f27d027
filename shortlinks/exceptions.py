"""Error taxonomy for the short-link service.

Every failure a caller can act on is raised as a subclass of
``ShortLinkError``. The HTTP layer maps each class to a status code; the
service layer never builds HTTP responses itself.

Hierarchy
=========
::
    ShortLinkError
    ├─ NotFoundError            404
    ├─ ConflictError            409
    ├─ LinkValidationError      400
    ├─ ForbiddenError           403
    ├─ AccessDeniedError        404 (Gone) / 400 (other reasons)
    └─ ShortCodeExhaustedError  500
"""

from shortlinks.enums import DenialReason

__all__ = [
    "ShortLinkError",
    "NotFoundError",
    "ConflictError",
    "LinkValidationError",
    "ForbiddenError",
    "AccessDeniedError",
    "ShortCodeExhaustedError",
]


class ShortLinkError(Exception):
    status_code = 500
    error = "InternalError"

    def __init__(self, message: str, *, short_code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.short_code = short_code


class NotFoundError(ShortLinkError):
    status_code = 404
    error = "NotFound"


class ConflictError(ShortLinkError):
    status_code = 409
    error = "Conflict"


class LinkValidationError(ShortLinkError):
    status_code = 400
    error = "ValidationError"


class ForbiddenError(ShortLinkError):
    status_code = 403
    error = "Forbidden"


class AccessDeniedError(ShortLinkError):
    """Raised when the access policy refuses a redirect."""

    def __init__(self, reason: DenialReason, *, short_code: str | None = None) -> None:
        super().__init__(reason.message, short_code=short_code)
        self.reason = reason
        self.status_code = reason.status_code
        self.error = reason.value


class ShortCodeExhaustedError(ShortLinkError):
    """Raised when no free code was found within the attempt budget.

    The alphabet or length is too small for the current number of links;
    this needs an operator, not a retry.
    """

    error = "ShortCodeExhausted"
