"""
Domain exceptions for the Relay service layer.

The service layer raises these; the API layer (main.py) maps them to HTTP
status codes and error bodies. Nothing in here knows about FastAPI.
"""

from typing import Optional

from models import ProviderTag


class RelayError(Exception):
    """Base exception for all Relay domain errors."""

    error_type = "internal_error"
    status_code = 500

    def __init__(self, message: str, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.request_id = request_id


class QueryValidationError(RelayError):
    """
    Request failed input validation (empty query, too long, bad format).

    Maps to: 400 Bad Request. Never retried, never cached.
    """

    error_type = "validation_error"
    status_code = 400


class RateLimitExceededError(RelayError):
    """
    Client ran out of rate-limit tokens.

    Maps to: 429 Too Many Requests. Raised before any routing work.
    """

    error_type = "rate_limit"
    status_code = 429

    def __init__(self, message: str = "Rate limit exceeded. Please try again later.", request_id: Optional[str] = None):
        super().__init__(message, request_id)


class InternalServiceError(RelayError):
    """Unexpected failure inside the pipeline. Maps to: 500."""

    error_type = "internal_error"
    status_code = 500


class ProviderError(RelayError):
    """
    An upstream provider call failed.

    `provider` is the tag's string form, or "all" when no provider could be
    selected at all. `retryable` decides both the client-boundary retry and
    the pipeline's cross-provider fallback.
    """

    # Statuses that pass through to the HTTP caller unchanged; anything else is a 500.
    PASS_THROUGH_STATUSES = (401, 408, 429, 503)

    def __init__(self, provider: str, status_code: int, message: str, retryable: bool):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code
        self.retryable = retryable
        self.response_time_ms = 0

    @property
    def error_type(self) -> str:
        return type(self).__name__

    @property
    def tag(self) -> Optional[ProviderTag]:
        return ProviderTag.parse(self.provider)

    @property
    def http_status(self) -> int:
        if self.status_code in self.PASS_THROUGH_STATUSES:
            return self.status_code
        return 500

    def __repr__(self) -> str:
        return (
            f"ProviderError(provider={self.provider!r}, status_code={self.status_code}, "
            f"message={self.message!r}, retryable={self.retryable})"
        )

    @classmethod
    def unavailable(cls, provider: str) -> "ProviderError":
        return cls(provider, 503, "Service unavailable", True)

    @classmethod
    def timeout(cls, provider: str) -> "ProviderError":
        return cls(provider, 408, "Request timeout", True)

    @classmethod
    def rate_limited(cls, provider: str) -> "ProviderError":
        return cls(provider, 429, "Rate limit exceeded", True)

    @classmethod
    def api_key_missing(cls, provider: str) -> "ProviderError":
        return cls(provider, 401, "API key not configured", False)

    @classmethod
    def invalid_response(cls, provider: str, cause: Exception) -> "ProviderError":
        return cls(provider, 500, f"Invalid response: {cause}", False)

    @classmethod
    def empty_response(cls, provider: str) -> "ProviderError":
        return cls(provider, 500, "Empty response", False)

    @classmethod
    def from_upstream(cls, provider: str, status_code: int, message: str) -> "ProviderError":
        """Pass an upstream 4xx/5xx through. 5xx is retryable, 4xx is not."""
        return cls(provider, status_code, message, status_code >= 500)
