from typing import Optional


class ServiceError(Exception):
    code = "SERVICE_ERROR"
    status_code = 500
    default_message = "Something went wrong"

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class Unauthorized(ServiceError):
    code = "UNAUTHORIZED"
    status_code = 401
    default_message = "Unauthorized"


class NotFound(ServiceError):
    code = "NOT_FOUND"
    status_code = 404
    default_message = "Not found"


class ValidationFailed(ServiceError):
    code = "VALIDATION_FAILED"
    status_code = 422
    default_message = "Validation failed"


class UnknownInterval(ValidationFailed):
    code = "UNKNOWN_INTERVAL"

    def __init__(self, interval: object) -> None:
        self.interval = interval
        super().__init__(f"Unknown recurring interval: {interval!r}")


class RateLimited(ServiceError):
    code = "RATE_LIMITED"
    status_code = 429
    default_message = "Too many requests. Please try again later."


class RequestBlocked(ServiceError):
    code = "REQUEST_BLOCKED"
    status_code = 403
    default_message = "Request blocked"


class ExternalServiceFailure(ServiceError):
    code = "EXTERNAL_SERVICE_FAILURE"
    status_code = 502
    default_message = "External service failure"
