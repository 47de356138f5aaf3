"""Closed exception taxonomy for provider gateway failures.

Every transport or provider failure is classified into one of these typed
exceptions before it reaches the gateway, so callers can branch on
:attr:`ProviderError.category` without inspecting raw httpx or provider
payloads.
"""

from enum import StrEnum


class ErrorCategory(StrEnum):
    """Failure categories.  ``CONFIGURATION`` is reserved for registry and
    config problems detected before any network call."""

    VALIDATION = "VALIDATION"
    AUTHENTICATION = "AUTHENTICATION"
    RATE_LIMIT = "RATE_LIMIT"
    NETWORK = "NETWORK"
    SERVER = "SERVER"
    UNKNOWN = "UNKNOWN"
    CONFIGURATION = "CONFIGURATION"


class ProviderError(Exception):
    """Base exception for all provider gateway errors.

    Attributes:
        message: Sanitised, user-facing description.  Never contains the API
            key or the raw endpoint.
        category: Taxonomy bucket used for retry decisions.
        provider: Provider id (e.g. ``"openai"``).  ``None`` when unknown.
        detail: Technical detail for logs only (status line, provider error
            text) with secrets redacted.
        status_code: HTTP status of the failed response, if there was one.
        original_error: The upstream exception that caused this error, if any.
    """

    category: ErrorCategory = ErrorCategory.UNKNOWN
    code: str = "UNKNOWN_ERROR"

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        detail: str | None = None,
        status_code: int | None = None,
        original_error: BaseException | None = None,
    ) -> None:
        self.message = message
        self.provider = provider
        self.detail = detail
        self.status_code = status_code
        self.original_error = original_error
        super().__init__(message)


class ValidationError(ProviderError):
    """Request rejected as malformed (HTTP 4xx other than 401/403/429)."""

    category = ErrorCategory.VALIDATION
    code = "INVALID_REQUEST"


class NoContentError(ValidationError):
    """The response parsed as JSON but carried no content container.

    Distinct from a genuinely empty generation, which is a successful result
    with ``text == ""``.
    """

    code = "NO_CONTENT"


class AuthError(ProviderError):
    """Raised for authentication or authorisation failures (HTTP 401 / 403)."""

    category = ErrorCategory.AUTHENTICATION
    code = "INVALID_API_KEY"


class RateLimitError(ProviderError):
    """Raised when the provider returns HTTP 429 (rate limit exceeded).

    Attributes:
        retry_after: Seconds to wait before retrying, when the provider
            supplies a ``Retry-After`` header.  ``None`` if unavailable.
    """

    category = ErrorCategory.RATE_LIMIT
    code = "RATE_LIMIT_EXCEEDED"

    def __init__(
        self,
        message: str,
        retry_after: float | None = None,
        provider: str | None = None,
        detail: str | None = None,
        status_code: int | None = None,
        original_error: BaseException | None = None,
    ) -> None:
        super().__init__(
            message,
            provider=provider,
            detail=detail,
            status_code=status_code,
            original_error=original_error,
        )
        self.retry_after = retry_after


class NetworkError(ProviderError):
    """No response was received: connection failure, abort, or timeout."""

    category = ErrorCategory.NETWORK
    code = "NETWORK_ERROR"


class ServerError(ProviderError):
    """Raised when the provider answers with HTTP 5xx."""

    category = ErrorCategory.SERVER
    code = "SERVER_ERROR"


class UnknownProviderError(ProviderError):
    """Failure that fits no other category."""


class ConfigurationError(ProviderError):
    """Unregistered provider id or a config that fails its schema."""

    category = ErrorCategory.CONFIGURATION
    code = "INVALID_CONFIG"


class StreamConsumedError(RuntimeError):
    """Raised when a :class:`~promptgateway.providers.streaming.DeltaStream`
    is iterated a second time."""
