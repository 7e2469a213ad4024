"""Domain exceptions rendered by the handlers registered in app.main.

Each exception carries a stable ``code`` tag so clients can branch on the
failure kind without parsing the message. Only ``TooEarlyException`` and
``UpstreamException`` are safe to retry automatically.
"""


class AppException(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"
    retryable = False

    def __init__(self, detail: str = "Internal server error"):
        super().__init__(detail)
        self.detail = detail


class ValidationException(AppException):
    status_code = 400
    code = "VALIDATION_ERROR"


class InvalidTransitionException(ValidationException):
    code = "INVALID_TRANSITION"

    def __init__(self, current: str, requested: str, detail: str | None = None):
        super().__init__(detail or f"Invalid status transition: {current} -> {requested}")
        self.current = current
        self.requested = requested


class UnauthorizedException(AppException):
    status_code = 401
    code = "UNAUTHORIZED"


class ForbiddenException(AppException):
    status_code = 403
    code = "FORBIDDEN"


class NotFoundException(AppException):
    status_code = 404
    code = "NOT_FOUND"


class ConflictException(AppException):
    status_code = 409
    code = "CONFLICT"


class TooEarlyException(AppException):
    status_code = 425
    code = "TOO_EARLY"
    retryable = True


class UpstreamException(AppException):
    status_code = 502
    code = "UPSTREAM_ERROR"
    retryable = True
