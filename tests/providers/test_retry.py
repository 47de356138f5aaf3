"""Unit tests for RetryPolicy (retry.py)."""

import random

import pytest

from promptgateway.providers.errors import (
    AuthError,
    ErrorCategory,
    NetworkError,
    RateLimitError,
    ServerError,
    ValidationError,
)
from promptgateway.providers.models import RetryAttempt
from promptgateway.providers.retry import RetryPolicy, is_retryable


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


class TestClassification:
    @pytest.mark.parametrize(
        ("category", "expected"),
        [
            (ErrorCategory.NETWORK, True),
            (ErrorCategory.RATE_LIMIT, True),
            (ErrorCategory.SERVER, True),
            (ErrorCategory.AUTHENTICATION, False),
            (ErrorCategory.VALIDATION, False),
            (ErrorCategory.UNKNOWN, False),
            (ErrorCategory.CONFIGURATION, False),
        ],
    )
    def test_only_transient_categories_retry(
        self, category: ErrorCategory, expected: bool
    ) -> None:
        assert RetryPolicy().classify_retryable(category) is expected

    def test_unclassified_exceptions_are_not_retried(self) -> None:
        assert is_retryable(RuntimeError("boom")) is False
        assert is_retryable(ServerError("down")) is True


# ---------------------------------------------------------------------------
# Delays
# ---------------------------------------------------------------------------


class TestDelays:
    def test_exponential_schedule_is_capped(self) -> None:
        policy = RetryPolicy(base_delay=1.0, max_delay=10.0, jitter=0.0)
        assert [policy.next_delay(n) for n in range(6)] == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0]

    def test_jitter_stays_within_bounds(self) -> None:
        policy = RetryPolicy(jitter=0.2, rng=random.Random(1234))
        for n in range(8):
            base = policy.base_delay_for(n)
            for _ in range(50):
                delay = policy.next_delay(n)
                assert base * 0.8 <= delay <= base * 1.2
                assert delay <= policy.max_delay * 1.2

    def test_retry_after_is_honoured_up_to_cap(self) -> None:
        policy = RetryPolicy(jitter=0.0)
        assert policy.delay_for_error(0, RateLimitError("slow", retry_after=5.0)) == 5.0
        assert policy.delay_for_error(0, RateLimitError("slow", retry_after=90.0)) == 10.0

    def test_short_retry_after_never_shortens_backoff(self) -> None:
        policy = RetryPolicy(jitter=0.0)
        assert policy.delay_for_error(2, RateLimitError("slow", retry_after=0.5)) == 4.0

    @pytest.mark.parametrize("kwargs", [{"max_attempts": 0}, {"jitter": 1.5}, {"jitter": -0.1}])
    def test_rejects_invalid_policy(self, kwargs: dict) -> None:
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)


# ---------------------------------------------------------------------------
# tenacity controller
# ---------------------------------------------------------------------------


class TestRetrying:
    async def _run(self, policy: RetryPolicy, errors: list[Exception], **kwargs) -> int:
        calls = 0
        async for attempt in policy.retrying(**kwargs):
            with attempt:
                calls += 1
                if errors:
                    raise errors.pop(0)
        return calls

    async def test_bounded_attempts_reraise_last_error(self) -> None:
        sleep = RecordingSleep()
        policy = RetryPolicy(max_attempts=3, jitter=0.0)
        last = ServerError("third")
        with pytest.raises(ServerError) as exc_info:
            await self._run(policy, [ServerError("a"), ServerError("b"), last], sleep=sleep)
        assert exc_info.value is last
        assert sleep.delays == [1.0, 2.0]

    async def test_non_retryable_error_propagates_at_once(self) -> None:
        sleep = RecordingSleep()
        with pytest.raises(AuthError):
            await self._run(RetryPolicy(), [AuthError("nope")], sleep=sleep)
        assert sleep.delays == []

    async def test_validation_error_is_not_retried(self) -> None:
        sleep = RecordingSleep()
        with pytest.raises(ValidationError):
            await self._run(RetryPolicy(), [ValidationError("bad")], sleep=sleep)
        assert sleep.delays == []

    async def test_recovers_after_transient_failure(self) -> None:
        sleep = RecordingSleep()
        calls = await self._run(RetryPolicy(jitter=0.0), [NetworkError("blip")], sleep=sleep)
        assert calls == 2
        assert sleep.delays == [1.0]

    async def test_on_retry_receives_attempt_record(self) -> None:
        seen: list[RetryAttempt] = []
        await self._run(
            RetryPolicy(jitter=0.0),
            [RateLimitError("slow"), ServerError("down")],
            sleep=RecordingSleep(),
            on_retry=seen.append,
        )
        assert seen == [
            RetryAttempt(1, 1.0, ErrorCategory.RATE_LIMIT),
            RetryAttempt(2, 2.0, ErrorCategory.SERVER),
        ]
