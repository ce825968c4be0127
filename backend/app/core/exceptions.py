"""
Unified base exception classes for all services.

Each service extends ServiceError with its own base (e.g. ReservationServiceError)
so that API handlers can catch the service family and map it to an HTTP response.
"""
from typing import Any, Optional


class ServiceError(Exception):
    """Base exception for all service-layer errors."""

    def __init__(self, message: str, status_code: int = 400):
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class CodedServiceError(ServiceError):
    """
    Service error with a stable machine-readable code.

    ``error_code`` and ``error_params`` are what the storefront receives;
    ``message`` is for logs only.
    """

    error_code = "internal_error"
    retryable = False

    def __init__(
        self,
        message: str,
        status_code: int = 400,
        error_code: Optional[str] = None,
        error_params: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message, status_code)
        if error_code is not None:
            self.error_code = error_code
        self.error_params = error_params or None

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error_code": self.error_code}
        if self.error_params:
            body["error_params"] = self.error_params
        if self.retryable:
            body["retryable"] = True
        return body
