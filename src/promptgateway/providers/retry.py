"""Retry classification and exponential backoff on top of tenacity.

Only transient categories (``NETWORK``, ``RATE_LIMIT``, ``SERVER``) are
retried.  On exhaustion tenacity re-raises the last classified error itself,
never a generic "retry failed" wrapper.
"""

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt
from tenacity.wait import wait_base

from promptgateway.providers.errors import ErrorCategory, ProviderError, RateLimitError
from promptgateway.providers.models import RetryAttempt

_log = structlog.get_logger(__name__)

RETRYABLE_CATEGORIES: frozenset[ErrorCategory] = frozenset(
    {ErrorCategory.NETWORK, ErrorCategory.RATE_LIMIT, ErrorCategory.SERVER}
)


def is_retryable(error: BaseException) -> bool:
    """Tenacity predicate: retry classified errors in a transient category."""
    return isinstance(error, ProviderError) and error.category in RETRYABLE_CATEGORIES


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff schedule for one logical call.

    Args:
        max_attempts: Total attempts, the first one included.
        base_delay: Delay in seconds before the first retry.
        max_delay: Upper bound on any single delay.
        jitter: Relative jitter; ``0.2`` spreads each delay over ±20%.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    jitter: float = 0.2
    rng: random.Random = field(default_factory=random.Random, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {self.max_attempts}")
        if not 0 <= self.jitter < 1:
            raise ValueError(f"jitter must be in [0, 1), got {self.jitter}")

    def classify_retryable(self, category: ErrorCategory) -> bool:
        return category in RETRYABLE_CATEGORIES

    def base_delay_for(self, retry_index: int) -> float:
        """Jitter-free delay before retry number *retry_index* (zero-based)."""
        return min(self.base_delay * 2**retry_index, self.max_delay)

    def next_delay(self, retry_index: int) -> float:
        delay = self.base_delay_for(retry_index)
        if self.jitter:
            delay *= self.rng.uniform(1 - self.jitter, 1 + self.jitter)
        return delay

    def delay_for_error(self, retry_index: int, error: BaseException | None) -> float:
        """Backoff delay, stretched to honour a provider ``Retry-After``."""
        delay = self.next_delay(retry_index)
        if isinstance(error, RateLimitError) and error.retry_after:
            delay = max(delay, min(error.retry_after, self.max_delay))
        return delay

    def retrying(
        self,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_retry: Callable[[RetryAttempt], None] | None = None,
    ) -> AsyncRetrying:
        """Build a tenacity controller that follows this policy."""
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            retry=retry_if_exception(is_retryable),
            wait=_PolicyWait(self),
            sleep=sleep,
            before_sleep=_before_sleep(on_retry),
            reraise=True,
        )


class _PolicyWait(wait_base):
    def __init__(self, policy: RetryPolicy) -> None:
        self._policy = policy

    def __call__(self, retry_state: RetryCallState) -> float:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        return self._policy.delay_for_error(retry_state.attempt_number - 1, error)


def _before_sleep(
    on_retry: Callable[[RetryAttempt], None] | None,
) -> Callable[[RetryCallState], None]:
    def hook(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        next_action = retry_state.next_action
        wait_seconds = next_action.sleep if next_action is not None else 0.0
        category = exc.category if isinstance(exc, ProviderError) else ErrorCategory.UNKNOWN
        _log.warning(
            "provider_request_retry",
            attempt=retry_state.attempt_number,
            wait_seconds=round(wait_seconds, 2),
            error_category=str(category),
            provider=getattr(exc, "provider", None),
        )
        if on_retry is not None:
            on_retry(
                RetryAttempt(
                    attempt_number=retry_state.attempt_number,
                    delay=wait_seconds,
                    last_error_category=category,
                )
            )

    return hook
