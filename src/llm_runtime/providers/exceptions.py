"""Adapter error taxonomy.

Every failure that crosses the adapter boundary is an ``AdapterError``.
Each error carries ``retryable`` explicitly so the retry executor and the
circuit breaker read the same flag instead of re-deriving it from the kind.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCode(Enum):
    """Kinds of adapter failures."""

    AUTHENTICATION_ERROR = "authentication_error"
    INVALID_REQUEST = "invalid_request"
    RATE_LIMIT_ERROR = "rate_limit_error"
    TIMEOUT = "timeout"
    NETWORK_ERROR = "network_error"
    API_ERROR = "api_error"
    INVALID_RESPONSE = "invalid_response"
    UNKNOWN_ERROR = "unknown_error"
    CONFIGURATION_ERROR = "configuration_error"
    NOT_FOUND = "not_found"
    CIRCUIT_OPEN = "circuit_open"


class AdapterError(Exception):
    """Base exception for all adapter errors."""

    default_code = ErrorCode.UNKNOWN_ERROR
    default_retryable = False

    def __init__(
        self,
        message: str,
        code: ErrorCode | None = None,
        status: int | None = None,
        provider: str | None = None,
        retryable: bool | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.status = status
        self.provider = provider
        self.retryable = self.default_retryable if retryable is None else retryable
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "code": self.code.value,
            "status": self.status,
            "provider": self.provider,
            "retryable": self.retryable,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}({self.message!r}, code={self.code.value}, "
            f"status={self.status}, provider={self.provider}, "
            f"retryable={self.retryable})"
        )


class AuthenticationError(AdapterError):
    """Raised when credentials are rejected."""

    default_code = ErrorCode.AUTHENTICATION_ERROR


class InvalidRequestError(AdapterError):
    """Raised for malformed client input."""

    default_code = ErrorCode.INVALID_REQUEST


class RateLimitError(AdapterError):
    """Raised when a rate limit is exceeded, locally or upstream."""

    default_code = ErrorCode.RATE_LIMIT_ERROR
    default_retryable = True

    def __init__(
        self,
        message: str,
        retry_after: float | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class AdapterTimeoutError(AdapterError):
    """Raised when a request or a rate-limit queue wait times out."""

    default_code = ErrorCode.TIMEOUT
    default_retryable = True


class NetworkError(AdapterError):
    """Raised when the upstream cannot be reached."""

    default_code = ErrorCode.NETWORK_ERROR
    default_retryable = True


class APIError(AdapterError):
    """Raised for upstream 5xx-class failures."""

    default_code = ErrorCode.API_ERROR
    default_retryable = True


class InvalidResponseError(AdapterError):
    """Raised when a successful response cannot be parsed."""

    default_code = ErrorCode.INVALID_RESPONSE


class UnknownAdapterError(AdapterError):
    """Catch-all for failures that fit no other kind."""

    default_code = ErrorCode.UNKNOWN_ERROR


class ConfigurationError(AdapterError):
    """Raised when adapter configuration is missing or invalid."""

    default_code = ErrorCode.CONFIGURATION_ERROR


class ProviderNotFoundError(AdapterError):
    """Raised when a requested provider id is not known."""

    default_code = ErrorCode.NOT_FOUND


class CircuitBreakerError(AdapterError):
    """Raised when a circuit breaker is open."""

    default_code = ErrorCode.CIRCUIT_OPEN

    def __init__(
        self, message: str, wait_time: float | None = None, **kwargs: Any
    ):
        super().__init__(message, **kwargs)
        self.wait_time = wait_time


ERROR_CLASSES: dict[ErrorCode, type[AdapterError]] = {
    ErrorCode.AUTHENTICATION_ERROR: AuthenticationError,
    ErrorCode.INVALID_REQUEST: InvalidRequestError,
    ErrorCode.RATE_LIMIT_ERROR: RateLimitError,
    ErrorCode.TIMEOUT: AdapterTimeoutError,
    ErrorCode.NETWORK_ERROR: NetworkError,
    ErrorCode.API_ERROR: APIError,
    ErrorCode.INVALID_RESPONSE: InvalidResponseError,
    ErrorCode.UNKNOWN_ERROR: UnknownAdapterError,
    ErrorCode.CONFIGURATION_ERROR: ConfigurationError,
    ErrorCode.NOT_FOUND: ProviderNotFoundError,
    ErrorCode.CIRCUIT_OPEN: CircuitBreakerError,
}


def create_error(
    message: str,
    code: ErrorCode,
    status: int | None = None,
    provider: str | None = None,
    retryable: bool | None = None,
    details: dict[str, Any] | None = None,
) -> AdapterError:
    """Build the AdapterError subclass that matches ``code``."""
    error_class = ERROR_CLASSES.get(code, AdapterError)
    return error_class(
        message,
        code=code,
        status=status,
        provider=provider,
        retryable=retryable,
        details=details,
    )
