"""Per-provider sliding-window admission control.

Each ``(provider, api key)`` pair owns one :class:`RateLimitWindow` holding
the timestamps of recently admitted requests and the tokens they reserved.
:meth:`SlidingWindowRateLimiter.acquire` suspends the calling task until both
the request bound and the token bound leave room, then records the request.

Admission decisions for one key are serialised with an :class:`asyncio.Lock`
so two concurrent callers can never both see the last free slot.  The wait
itself happens outside the lock; if the task is cancelled while waiting no
slot is consumed.

After each real HTTP response, :meth:`observe_headers` lets the provider's
own quota headers correct the local view.
"""

import asyncio
import hashlib
import math
import re
import time
from collections import deque
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime

import structlog

_log = structlog.get_logger(__name__)

# Entries are (timestamp, tokens).  Synthetic entries added to match server
# quota carry zero tokens.
_Entry = list[float]


def provider_key(provider_id: str, api_key: str | None) -> str:
    """Key windows by provider and a digest of the API key, never the key."""
    digest = hashlib.sha256((api_key or "").encode()).hexdigest()[:16]
    return f"{provider_id}:{digest}"


def estimate_tokens(text: str) -> int:
    """Rough token estimate from character count (about four characters per
    token).  An approximation, not a tokenizer."""
    return math.ceil(len(text) / 4)


@dataclass
class RateLimitWindow:
    provider_key: str
    window_seconds: float
    max_requests: int
    max_tokens: int
    request_timestamps: deque[float] = field(default_factory=deque)
    token_usage: deque[_Entry] = field(default_factory=deque)
    reset_at: float | None = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    def prune(self, now: float) -> None:
        horizon = now - self.window_seconds
        while self.request_timestamps and self.request_timestamps[0] <= horizon:
            self.request_timestamps.popleft()
        while self.token_usage and self.token_usage[0][0] <= horizon:
            self.token_usage.popleft()
        if self.reset_at is not None and self.reset_at <= now:
            self.reset_at = None

    @property
    def tokens_in_window(self) -> int:
        return int(sum(entry[1] for entry in self.token_usage))

    def wait_time(self, now: float, tokens: int) -> float:
        """Seconds until a request of *tokens* could be admitted; ``0`` if now."""
        waits = [0.0]
        if self.reset_at is not None:
            waits.append(self.reset_at - now)
        if len(self.request_timestamps) >= self.max_requests:
            # The entry that has to expire for a slot to open up.
            index = len(self.request_timestamps) - self.max_requests
            waits.append(self.request_timestamps[index] + self.window_seconds - now)
        if self.token_usage and self.tokens_in_window + tokens > self.max_tokens:
            # Expire entries oldest-first until the new reservation fits.
            excess = self.tokens_in_window + tokens - self.max_tokens
            released = 0.0
            for stamp, used in self.token_usage:
                released += used
                if released >= excess:
                    waits.append(stamp + self.window_seconds - now)
                    break
            else:
                waits.append(self.token_usage[-1][0] + self.window_seconds - now)
        return max(waits)


@dataclass(frozen=True)
class Reservation:
    """Handle returned by :meth:`SlidingWindowRateLimiter.acquire`."""

    provider_key: str
    timestamp: float
    tokens: int
    entry: _Entry = field(repr=False, compare=False)


class SlidingWindowRateLimiter:
    """Sliding-window limiter shared by every call in the process.

    Args:
        window_seconds: Width of the rolling window.
        max_requests: Default request bound per window.
        max_tokens: Default token bound per window.
        overrides: Per-provider ``(max_requests, max_tokens)`` defaults, keyed
            by provider id.
        clock: Monotonic time source in seconds.
        sleep: Coroutine used to suspend while waiting for capacity.
    """

    def __init__(
        self,
        window_seconds: float = 60.0,
        max_requests: int = 60,
        max_tokens: int = 10_000,
        overrides: Mapping[str, tuple[int, int]] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._window_seconds = window_seconds
        self._max_requests = max_requests
        self._max_tokens = max_tokens
        self._overrides = dict(overrides or {})
        self._clock = clock
        self._sleep = sleep
        self._windows: dict[str, RateLimitWindow] = {}

    def window(self, key: str) -> RateLimitWindow:
        """Return the window for *key*, creating it on first use."""
        window = self._windows.get(key)
        if window is None:
            provider_id = key.split(":", 1)[0]
            max_requests, max_tokens = self._overrides.get(
                provider_id, (self._max_requests, self._max_tokens)
            )
            window = RateLimitWindow(
                provider_key=key,
                window_seconds=self._window_seconds,
                max_requests=max_requests,
                max_tokens=max_tokens,
            )
            self._windows[key] = window
        return window

    async def acquire(self, key: str, estimated_tokens: int = 0) -> Reservation:
        """Wait until a request fits in the window for *key*, then record it.

        A single request estimating more tokens than the window allows is
        admitted once the token window is otherwise empty.
        """
        window = self.window(key)
        tokens = max(0, estimated_tokens)
        waited = 0.0
        while True:
            async with window.lock:
                now = self._clock()
                window.prune(now)
                delay = window.wait_time(now, tokens)
                if delay <= 0:
                    entry = [now, float(tokens)]
                    window.request_timestamps.append(now)
                    window.token_usage.append(entry)
                    if waited:
                        _log.info(
                            "rate_limit_admitted", provider_key=key, waited_seconds=round(waited, 3)
                        )
                    return Reservation(provider_key=key, timestamp=now, tokens=tokens, entry=entry)

            _log.info(
                "rate_limit_wait",
                provider_key=key,
                wait_seconds=round(delay, 3),
                requests_in_window=len(window.request_timestamps),
                tokens_in_window=window.tokens_in_window,
            )
            await self._sleep(delay)
            waited += delay

    def settle(self, reservation: Reservation, actual_tokens: int) -> None:
        """Replace a reservation's estimated tokens with the reported usage."""
        if actual_tokens > 0:
            reservation.entry[1] = float(actual_tokens)

    def observe_headers(self, key: str, headers: Mapping[str, str]) -> None:
        """Correct the local window for *key* from provider quota headers."""
        lowered = {k.lower(): v for k, v in headers.items()}
        window = self.window(key)
        now = self._clock()
        window.prune(now)

        limit_requests = _int_header(lowered, _LIMIT_REQUEST_HEADERS)
        limit_tokens = _int_header(lowered, _LIMIT_TOKEN_HEADERS)
        remaining_requests = _int_header(lowered, _REMAINING_REQUEST_HEADERS)
        remaining_tokens = _int_header(lowered, _REMAINING_TOKEN_HEADERS)
        reset = _first(lowered, _RESET_HEADERS)

        if limit_requests is not None and limit_requests > 0:
            window.max_requests = limit_requests
        if limit_tokens is not None and limit_tokens > 0:
            window.max_tokens = limit_tokens

        # Synthetic entries expire when the server says the quota resets, or
        # after a full window when it does not say.
        pad_at = now
        exhausted = remaining_requests == 0 or remaining_tokens == 0
        if exhausted and reset is not None:
            delay = parse_reset(reset, time.time())
            if delay is not None and delay > 0:
                window.reset_at = now + delay
                pad_at = min(now, window.reset_at - window.window_seconds)

        if remaining_requests is not None:
            local_remaining = window.max_requests - len(window.request_timestamps)
            for _ in range(max(0, local_remaining - max(0, remaining_requests))):
                window.request_timestamps.append(pad_at)

        if remaining_tokens is not None:
            local_remaining = window.max_tokens - window.tokens_in_window
            missing = local_remaining - max(0, remaining_tokens)
            if missing > 0:
                window.token_usage.append([pad_at, float(missing)])

        if pad_at < now:
            window.request_timestamps = deque(sorted(window.request_timestamps))
            window.token_usage = deque(sorted(window.token_usage, key=lambda entry: entry[0]))

        _log.debug(
            "rate_limit_headers_observed",
            provider_key=key,
            max_requests=window.max_requests,
            max_tokens=window.max_tokens,
            requests_in_window=len(window.request_timestamps),
            reset_at=window.reset_at,
        )


_LIMIT_REQUEST_HEADERS = (
    "x-ratelimit-limit-requests",
    "anthropic-ratelimit-requests-limit",
    "x-ratelimit-limit",
    "x-rate-limit-limit",
    "ratelimit-limit",
)
_LIMIT_TOKEN_HEADERS = (
    "x-ratelimit-limit-tokens",
    "anthropic-ratelimit-tokens-limit",
)
_REMAINING_REQUEST_HEADERS = (
    "x-ratelimit-remaining-requests",
    "anthropic-ratelimit-requests-remaining",
    "x-ratelimit-remaining",
    "x-rate-limit-remaining",
    "ratelimit-remaining",
)
_REMAINING_TOKEN_HEADERS = (
    "x-ratelimit-remaining-tokens",
    "anthropic-ratelimit-tokens-remaining",
)
_RESET_HEADERS = (
    "x-ratelimit-reset-requests",
    "anthropic-ratelimit-requests-reset",
    "x-ratelimit-reset-tokens",
    "anthropic-ratelimit-tokens-reset",
    "x-ratelimit-reset",
    "x-rate-limit-reset",
    "ratelimit-reset",
)


def _first(headers: Mapping[str, str], names: tuple[str, ...]) -> str | None:
    for name in names:
        value = headers.get(name)
        if value:
            return value.strip()
    return None


def _int_header(headers: Mapping[str, str], names: tuple[str, ...]) -> int | None:
    value = _first(headers, names)
    if value is None:
        return None
    try:
        return int(float(value))
    except ValueError:
        return None


_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION = re.compile(r"^(?:\d+(?:\.\d+)?(?:ms|h|m|s))+$")
_UNIT_SECONDS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001}


def parse_reset(value: str, wall_now: float) -> float | None:
    """Return seconds from now until the quota described by *value* resets.

    Accepts Go-style durations (``"6m0s"``, ``"20ms"``), ISO-8601 datetimes,
    epoch seconds, epoch milliseconds, and plain relative seconds.
    ``None`` when the value cannot be parsed.
    """
    value = value.strip()
    if _DURATION.match(value):
        return sum(float(n) * _UNIT_SECONDS[unit] for n, unit in _DURATION_PART.findall(value))
    try:
        number = float(value)
    except ValueError:
        number = None
    if number is not None:
        if number > 1e12:
            return number / 1000 - wall_now
        if number > 1e9:
            return number - wall_now
        return number
    try:
        stamp = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if stamp.tzinfo is None:
        return None
    return stamp.timestamp() - wall_now
