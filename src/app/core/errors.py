"""
Error taxonomy for profile generation and period resolution.

ValidationError and NotFoundError describe bad or absent input.
UpstreamError and its subclasses wrap the external calculation service.
"""

from __future__ import annotations


class ProfileError(Exception):
    """Base exception for profile generation errors"""

    status_code = 500
    code = "PROFILE_ERROR"


class ValidationError(ProfileError):
    """Raised when input (usually birth data) is incomplete or malformed"""

    status_code = 400
    code = "VALIDATION_ERROR"


class NotFoundError(ProfileError):
    """Raised when a client, artifact or requested period does not exist"""

    status_code = 404
    code = "NOT_FOUND"


class ConcurrencyConflictError(ProfileError):
    """Raised when a generation lock is already held"""

    status_code = 409
    code = "CONCURRENCY_CONFLICT"


class UpstreamError(ProfileError):
    """Raised when the external calculation service returns an error"""

    code = "UPSTREAM_ERROR"

    def __init__(self, message: str, status_code: int = 500, path: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.path = path


class UpstreamUnavailableError(UpstreamError):
    """Raised when the calculation service cannot be reached"""

    code = "UPSTREAM_UNAVAILABLE"

    def __init__(self, message: str = "Calculation service is unavailable", path: str | None = None):
        super().__init__(message, status_code=503, path=path)


class UpstreamFormatError(UpstreamError):
    """Raised when an upstream payload does not match any known shape"""

    code = "UPSTREAM_FORMAT"

    def __init__(self, message: str, path: str | None = None):
        super().__init__(message, status_code=502, path=path)


def is_endpoint_failure(exc: BaseException) -> bool:
    """True for failures that should trip the endpoint circuit breaker.

    Not-found and server-side failures qualify; client-side validation
    problems do not, since retrying them elsewhere would fail the same way.
    """
    if isinstance(exc, UpstreamUnavailableError):
        return True
    if isinstance(exc, UpstreamError):
        return exc.status_code == 404 or exc.status_code >= 500
    return False
