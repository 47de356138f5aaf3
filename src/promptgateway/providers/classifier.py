"""Map raw transport and provider failures onto the closed error taxonomy.

Classification order:

==========================================  ==================
Failure                                     Category
==========================================  ==================
already a ``ProviderError``                 unchanged
no response (connect error, abort, timeout) ``NETWORK``
HTTP 401 / 403                              ``AUTHENTICATION``
HTTP 429                                    ``RATE_LIMIT``
HTTP 5xx                                    ``SERVER``
any other HTTP 4xx                          ``VALIDATION``
error frame inside a 200 stream             by its embedded type
anything else                               ``UNKNOWN``
==========================================  ==================

User-facing messages come from fixed templates that mention only the
provider's display name.  The technical detail is kept separately, with
secrets redacted, for logs.
"""

import re
from collections.abc import Iterable
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime

import httpx

from promptgateway.providers.errors import (
    AuthError,
    ErrorCategory,
    NetworkError,
    ProviderError,
    RateLimitError,
    ServerError,
    UnknownProviderError,
    ValidationError,
)
from promptgateway.providers.models import FrameError

MESSAGE_TEMPLATES: dict[ErrorCategory, str] = {
    ErrorCategory.VALIDATION: "{name} rejected the request. Please check the prompt and settings.",
    ErrorCategory.AUTHENTICATION: "Authentication failed for {name}. Please check your API key.",
    ErrorCategory.RATE_LIMIT: (
        "Rate limit exceeded for {name}. Please wait before making more requests."
    ),
    ErrorCategory.NETWORK: "Network error connecting to {name}. Please check your connection.",
    ErrorCategory.SERVER: "{name} server error. Please try again later.",
    ErrorCategory.UNKNOWN: "Unexpected error from {name}.",
    ErrorCategory.CONFIGURATION: "{name} is not configured correctly.",
}

_SENSITIVE_QUERY = re.compile(r"([?&](?:key|api_key|token|auth|password|secret)=)[^&\s\"']*", re.I)
_BEARER = re.compile(r"(Bearer\s+)[A-Za-z0-9._\-]+")


def redact(text: str, secrets: Iterable[str] = ()) -> str:
    """Strip API keys and credential query parameters from *text*."""
    for secret in secrets:
        if secret:
            text = text.replace(secret, "[REDACTED]")
    text = _SENSITIVE_QUERY.sub(r"\1[REDACTED]", text)
    return _BEARER.sub(r"\1[REDACTED]", text)


def parse_retry_after(value: str | None) -> float | None:
    """Parse a ``Retry-After`` header given in seconds or as an HTTP date."""
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    return max(0.0, (when - datetime.now(UTC)).total_seconds())


def category_for_status(status_code: int) -> ErrorCategory:
    if status_code in (401, 403):
        return ErrorCategory.AUTHENTICATION
    if status_code == 429:
        return ErrorCategory.RATE_LIMIT
    if 500 <= status_code <= 599:
        return ErrorCategory.SERVER
    if 400 <= status_code <= 499:
        return ErrorCategory.VALIDATION
    return ErrorCategory.UNKNOWN


_FRAME_KEYWORDS: tuple[tuple[ErrorCategory, tuple[str, ...]], ...] = (
    (ErrorCategory.RATE_LIMIT, ("rate_limit", "resource_exhausted", "quota")),
    (ErrorCategory.AUTHENTICATION, ("auth", "api_key", "permission", "unauthenticated")),
    (ErrorCategory.VALIDATION, ("invalid", "not_found", "bad_request", "too_large")),
)


def category_for_frame(error_type: str | None) -> ErrorCategory:
    """Map the type (or status code) of an in-stream error to a category.

    A stream that already answered 200 and then fails is an upstream fault
    unless the provider says otherwise, so untyped and unrecognised errors
    are ``SERVER``.
    """
    if not error_type:
        return ErrorCategory.SERVER
    if error_type.isdigit():
        category = category_for_status(int(error_type))
        return ErrorCategory.SERVER if category is ErrorCategory.UNKNOWN else category
    kind = error_type.lower()
    for category, keywords in _FRAME_KEYWORDS:
        if any(word in kind for word in keywords):
            return category
    return ErrorCategory.SERVER


_ERROR_TYPES: dict[ErrorCategory, type[ProviderError]] = {
    ErrorCategory.VALIDATION: ValidationError,
    ErrorCategory.AUTHENTICATION: AuthError,
    ErrorCategory.NETWORK: NetworkError,
    ErrorCategory.SERVER: ServerError,
    ErrorCategory.UNKNOWN: UnknownProviderError,
}


class ErrorClassifier:
    """Classifies failures for one provider.

    Args:
        provider: Provider id recorded on every produced error.
        display_name: Human-readable provider name used in user messages.
        secrets: Values to redact from technical detail (API keys).
    """

    def __init__(
        self,
        provider: str,
        display_name: str | None = None,
        secrets: Iterable[str] = (),
    ) -> None:
        self.provider = provider
        self.display_name = display_name or provider
        self._secrets = tuple(s for s in secrets if s)

    def message_for(self, category: ErrorCategory) -> str:
        return MESSAGE_TEMPLATES[category].format(name=self.display_name)

    def classify(self, error: BaseException) -> ProviderError:
        """Classify an exception raised while talking to the provider."""
        if isinstance(error, ProviderError):
            return error
        if isinstance(error, httpx.HTTPStatusError):
            return self.classify_response(error.response, original_error=error)
        if isinstance(error, httpx.TransportError):
            # Covers connect/read failures and every httpx timeout.
            kind = "timeout" if isinstance(error, httpx.TimeoutException) else "transport"
            return NetworkError(
                self.message_for(ErrorCategory.NETWORK),
                provider=self.provider,
                detail=redact(f"{kind} error: {type(error).__name__}: {error}", self._secrets),
                original_error=error,
            )
        return UnknownProviderError(
            self.message_for(ErrorCategory.UNKNOWN),
            provider=self.provider,
            detail=redact(f"{type(error).__name__}: {error}", self._secrets),
            original_error=error,
        )

    def classify_response(
        self,
        response: httpx.Response,
        original_error: BaseException | None = None,
    ) -> ProviderError:
        """Classify a non-2xx response.  The body must already be read."""
        category = category_for_status(response.status_code)
        detail = redact(
            f"HTTP {response.status_code}: {_provider_message(response)}", self._secrets
        )
        message = self.message_for(category)
        if category is ErrorCategory.RATE_LIMIT:
            return RateLimitError(
                message,
                retry_after=parse_retry_after(response.headers.get("retry-after")),
                provider=self.provider,
                detail=detail,
                status_code=response.status_code,
                original_error=original_error,
            )
        return _ERROR_TYPES[category](
            message,
            provider=self.provider,
            detail=detail,
            status_code=response.status_code,
            original_error=original_error,
        )

    def classify_frame(self, error: FrameError) -> ProviderError:
        """Classify an error object the provider sent inside a stream."""
        category = category_for_frame(error.type)
        kind = f" ({error.type})" if error.type else ""
        detail = redact(f"stream error{kind}: {error.message}", self._secrets)
        message = self.message_for(category)
        if category is ErrorCategory.RATE_LIMIT:
            return RateLimitError(message, provider=self.provider, detail=detail)
        return _ERROR_TYPES[category](message, provider=self.provider, detail=detail)


def _provider_message(response: httpx.Response) -> str:
    """Best-effort extraction of the provider's own error text."""
    try:
        body = response.json()
    except (ValueError, httpx.ResponseNotRead):
        try:
            return response.text[:200] or response.reason_phrase
        except httpx.ResponseNotRead:
            return response.reason_phrase
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
        if isinstance(error, str):
            return error
        if isinstance(body.get("message"), str):
            return body["message"]
    return response.reason_phrase
