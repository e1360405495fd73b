"""HTTP error classification shared by the HTTP adapters."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import aiohttp

from .exceptions import (
    AdapterError,
    AdapterTimeoutError,
    APIError,
    AuthenticationError,
    InvalidRequestError,
    NetworkError,
    RateLimitError,
    UnknownAdapterError,
)
from .retry import get_retry_after_delay

logger = logging.getLogger(__name__)


class HTTPErrorClassifier:
    """Maps HTTP responses and transport exceptions onto AdapterError kinds."""

    def __init__(self, provider: str):
        self.provider = provider

    async def classify_response_error(
        self, response: aiohttp.ClientResponse
    ) -> AdapterError:
        """Classify an error based on an HTTP response.

        Args:
            response: The non-2xx response

        Returns:
            AdapterError subclass for the status code
        """
        status = response.status
        error_data = await self._safe_json(response)
        message = self._extract_message(error_data) or f"HTTP {status}"
        return self.classify_status(status, message, response.headers, error_data)

    def classify_status(
        self,
        status: int,
        message: str,
        headers: Any = None,
        body: dict[str, Any] | None = None,
    ) -> AdapterError:
        """Classify an error from its status code and message."""
        prefix = f"{self.provider} API error ({status}): {message}"
        details = {"response": body} if body else {}

        if status in (401, 403):
            return AuthenticationError(
                f"Authentication failed for {self.provider}: {message}",
                status=status,
                provider=self.provider,
                details=details,
            )
        if status == 429:
            retry_after = get_retry_after_delay(headers or {})
            return RateLimitError(
                f"Rate limit exceeded for {self.provider}: {message}",
                retry_after=retry_after,
                status=status,
                provider=self.provider,
                details=details,
            )
        if status == 408:
            return AdapterTimeoutError(
                prefix, status=status, provider=self.provider, details=details
            )
        if status >= 500:
            return APIError(
                prefix, status=status, provider=self.provider, details=details
            )
        return InvalidRequestError(
            prefix, status=status, provider=self.provider, details=details
        )

    def classify_error(self, error: BaseException) -> AdapterError:
        """Classify a transport-level exception.

        Args:
            error: The original exception

        Returns:
            AdapterError for the failure
        """
        if isinstance(error, AdapterError):
            return error

        if isinstance(error, asyncio.TimeoutError):
            return AdapterTimeoutError(
                f"Request to {self.provider} timed out",
                provider=self.provider,
            )

        if isinstance(error, aiohttp.ClientResponseError):
            return self.classify_status(error.status, error.message, error.headers)

        if isinstance(error, (aiohttp.ClientConnectionError, aiohttp.ClientPayloadError)):
            return NetworkError(
                f"Network error connecting to {self.provider}: {error}",
                provider=self.provider,
            )

        if isinstance(error, (aiohttp.ClientError, ConnectionError)):
            return NetworkError(
                f"Network error: {error}",
                provider=self.provider,
            )

        return UnknownAdapterError(
            f"Unexpected error in {self.provider}: {error}",
            provider=self.provider,
            details={"error_type": type(error).__name__},
        )

    @staticmethod
    def _extract_message(error_data: dict[str, Any]) -> str:
        error = error_data.get("error")
        if isinstance(error, dict):
            return str(error.get("message", ""))
        if isinstance(error, str):
            return error
        return str(error_data.get("message", ""))

    async def _safe_json(self, response: aiohttp.ClientResponse) -> dict[str, Any]:
        """Safely parse JSON from response.

        Returns:
            Parsed JSON or an error dict wrapping the body text
        """
        try:
            data = await response.json(content_type=None)
            if isinstance(data, dict):
                return data
            return {"error": {"message": str(data)}}
        except (aiohttp.ContentTypeError, ValueError):
            try:
                text = await response.text()
            except aiohttp.ClientError as e:
                logger.debug(f"Failed to read error body from {self.provider}: {e}")
                text = ""
            return {"error": {"message": text or f"HTTP {response.status}"}}
