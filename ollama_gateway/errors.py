"""Typed application errors raised by the gateway services."""
from __future__ import annotations

from typing import Any, Dict, Optional


class GatewayError(Exception):
    """Base class for errors surfaced to API clients."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, correlation_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.correlation_id = correlation_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "code": self.code,
            "status_code": self.status_code,
            "correlation_id": self.correlation_id,
        }


class ValidationError(GatewayError):
    """Raised when required input fields are missing or malformed."""

    status_code = 400
    code = "VALIDATION_ERROR"


class AuthenticationError(GatewayError):
    """Raised when the caller did not present a valid API key."""

    status_code = 401
    code = "AUTHENTICATION_ERROR"


class FileError(GatewayError):
    """Raised when an uploaded payload cannot be processed."""

    status_code = 400
    code = "FILE_ERROR"


class RateLimitError(GatewayError):
    """Raised when a client exceeds the configured request rate."""

    status_code = 429
    code = "RATE_LIMIT_EXCEEDED"


class ServiceUnavailableError(GatewayError):
    """Raised when a collaborator required for the request is not configured."""

    status_code = 503
    code = "SERVICE_UNAVAILABLE_ERROR"


class BackendTimeoutError(GatewayError):
    """Raised once every retry attempt against the backend has timed out."""

    status_code = 504
    code = "TIMEOUT_ERROR"

    def __init__(
        self,
        message: str,
        correlation_id: Optional[str] = None,
        *,
        timeout_ms: float,
    ) -> None:
        super().__init__(message, correlation_id)
        self.timeout_ms = timeout_ms


class ExternalServiceError(GatewayError):
    """Raised when the backend fails or returns an error response."""

    status_code = 502
    code = "EXTERNAL_SERVICE_ERROR"

    def __init__(
        self,
        message: str,
        correlation_id: Optional[str] = None,
        *,
        service: str,
        cause: Optional[BaseException] = None,
    ) -> None:
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message, correlation_id)
        self.service = service


__all__ = [
    "AuthenticationError",
    "BackendTimeoutError",
    "ExternalServiceError",
    "FileError",
    "GatewayError",
    "RateLimitError",
    "ServiceUnavailableError",
    "ValidationError",
]
