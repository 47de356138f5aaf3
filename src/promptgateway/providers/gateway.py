"""Gateway orchestration with structured logging, tracing, and retry.

One logical call runs through the same steps on every attempt:

* acquire a slot from the shared sliding-window rate limiter
* build the provider request and send it with the config timeout
* feed the response's quota headers back to the limiter
* classify a non-2xx answer, or validate and extract the payload

Classified transient failures are retried by the
:class:`~promptgateway.providers.retry.RetryPolicy`; everything else
propagates after one attempt.  Streams retry only while connecting; once
bytes flow, a failure (or an error frame from the provider) is raised
through the iterator.
"""

import asyncio
import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from typing import Any, TypeVar

import httpx
import structlog
from opentelemetry import trace
from opentelemetry.trace import StatusCode
from prometheus_client import Counter
from pydantic import ValidationError as PydanticValidationError

from promptgateway.providers.adapters import HttpAdapter
from promptgateway.providers.errors import (
    ConfigurationError,
    ProviderError,
    UnknownProviderError,
    ValidationError,
)
from promptgateway.providers.models import (
    AuthResult,
    ConfigValidation,
    GenerationOptions,
    ModelInfo,
    NormalizedResult,
    ProviderConfig,
    ResolvedOptions,
    RetryAttempt,
    schema_errors,
)
from promptgateway.providers.ratelimit import (
    SlidingWindowRateLimiter,
    estimate_tokens,
    provider_key,
)
from promptgateway.providers.retry import RetryPolicy
from promptgateway.providers.streaming import DeltaStream, StreamDecoder
from promptgateway.providers.wire import extract_text, extract_usage, validate_response

_log = structlog.get_logger(__name__)
_tracer = trace.get_tracer(__name__)

_T = TypeVar("_T")

PROVIDER_REQUESTS = Counter(
    "gateway_provider_requests_total",
    "Logical provider calls by outcome",
    ["provider", "outcome"],
)
PROVIDER_RETRIES = Counter(
    "gateway_provider_retries_total",
    "Retried provider attempts by error category",
    ["provider", "category"],
)


class Gateway:
    """Runs provider calls for any number of resolved adapters.

    Example::

        async with Gateway() as gateway:
            handle = registry.resolve("openai", {"api_key": "sk-..."}, gateway=gateway)
            result = await handle.generate("Hello")
            async for delta in handle.stream("Hello"):
                print(delta, end="")

    Args:
        client: Shared HTTP client.  When omitted the gateway creates one and
            closes it in :meth:`aclose`.
        limiter: Sliding-window limiter shared by every call.
        policy: Retry and backoff schedule.
        sleep: Coroutine used for backoff delays.
        timeout: Default timeout of a client the gateway creates itself.
            Each request still carries its config timeout.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        limiter: SlidingWindowRateLimiter | None = None,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        timeout: float = 30.0,
    ) -> None:
        self._client = client
        self._timeout = timeout
        self._owns_client = client is None
        self.limiter = limiter or SlidingWindowRateLimiter()
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Any, client: httpx.AsyncClient | None = None) -> "Gateway":
        """Build a gateway from :class:`~promptgateway.config.Settings`."""
        return cls(
            client,
            limiter=SlidingWindowRateLimiter(
                window_seconds=settings.rate_limit_window_seconds,
                max_requests=settings.rate_limit_requests_per_window,
                max_tokens=settings.rate_limit_tokens_per_window,
                overrides=settings.rate_limit_overrides,
            ),
            policy=RetryPolicy(
                max_attempts=settings.retry_max_attempts,
                base_delay=settings.retry_base_delay,
                max_delay=settings.retry_max_delay,
                jitter=settings.retry_jitter,
            ),
            timeout=settings.request_timeout,
        )

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "Gateway":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def generate(
        self,
        adapter: HttpAdapter,
        prompt: str,
        options: GenerationOptions | None = None,
        *,
        cancel: asyncio.Event | None = None,
    ) -> NormalizedResult:
        """Generate a complete response.

        Raises:
            ValidationError: Bad prompt or options, or a 4xx answer.
            ConfigurationError: The adapter has no endpoint to call.
            AuthError: HTTP 401 / 403.
            RateLimitError: HTTP 429 after the retry budget is spent.
            NetworkError: No response or timeout after the retry budget.
            ServerError: HTTP 5xx after the retry budget is spent.
            asyncio.CancelledError: *cancel* was set before completion.
        """
        resolved = self._prepare(adapter, prompt, options)
        key = provider_key(adapter.provider_id, adapter.config.secret())
        start_time = time.monotonic()

        with _tracer.start_as_current_span("gateway.generate") as span:
            _set_span_attributes(span, adapter, resolved, stream=False)
            log = _log.bind(
                request_id=str(uuid.uuid4()),
                provider=adapter.provider_id,
                model=resolved.model,
                stream=False,
            )
            log.info("provider_request_start", max_tokens=resolved.max_tokens)

            try:
                async for attempt in self.policy.retrying(
                    sleep=self._sleep, on_retry=_count_retry(adapter.provider_id)
                ):
                    with attempt:
                        result = await self._cancellable(
                            self._attempt(adapter, key, prompt, resolved), cancel
                        )
            except ProviderError as exc:
                _record_failure(span, log, exc)
                raise
            except asyncio.CancelledError:
                PROVIDER_REQUESTS.labels(adapter.provider_id, "cancelled").inc()
                log.info("provider_request_cancelled")
                raise
            finally:
                duration_ms = round((time.monotonic() - start_time) * 1000, 2)
                log.info("provider_request_complete", duration_ms=duration_ms)

            span.set_attribute("gen_ai.usage.input_tokens", result.usage.prompt_tokens)
            span.set_attribute("gen_ai.usage.output_tokens", result.usage.completion_tokens)
            PROVIDER_REQUESTS.labels(adapter.provider_id, "success").inc()
            return result

    def stream(
        self,
        adapter: HttpAdapter,
        prompt: str,
        options: GenerationOptions | None = None,
        *,
        cancel: asyncio.Event | None = None,
    ) -> DeltaStream:
        """Return a lazy, single-use stream of text deltas.

        Nothing is sent until the stream is iterated.  Providers without
        streaming support yield their whole completion as one delta.  Setting
        *cancel* aborts the request and ends the sequence.
        """
        resolved = self._prepare(adapter, prompt, options)
        if not adapter.profile.supports_streaming:
            return DeltaStream(self._emulated_stream(adapter, prompt, options, cancel))
        return DeltaStream(self._stream(adapter, prompt, resolved, cancel))

    async def probe(self, adapter: HttpAdapter) -> AuthResult:
        """Check connectivity and credentials.  Never raises for provider
        failures; the outcome is folded into an :class:`AuthResult`."""
        validation = adapter.validate_config()
        if not validation.is_valid:
            return AuthResult(success=False, error="; ".join(validation.errors))

        log = _log.bind(provider=adapter.provider_id)
        try:
            response = await self.client.send(adapter.build_probe(self.client))
        except httpx.HTTPError as exc:
            error = adapter.classifier.classify(exc)
            log.warning(
                "provider_auth_failed", error_category=str(error.category), error=error.detail
            )
            return AuthResult(success=False, error=error.message)

        if adapter.probe_succeeded(response):
            log.info("provider_auth_succeeded", status_code=response.status_code)
            return AuthResult(success=True)

        error = adapter.classifier.classify_response(response)
        log.warning(
            "provider_auth_failed", error_category=str(error.category), error=error.detail
        )
        return AuthResult(success=False, error=error.message)

    async def list_models(self, adapter: HttpAdapter) -> list[ModelInfo]:
        """Return the models *adapter* can use.

        Profiles with ``discover_models`` ask the server what it has loaded and
        fall back to the static catalogue when no listing route answers.
        """
        if not adapter.profile.discover_models:
            return adapter.describe_models()

        log = _log.bind(provider=adapter.provider_id)
        for request in adapter.build_model_listings(self.client):
            try:
                response = await self.client.send(request)
            except httpx.HTTPError as exc:
                log.debug("model_listing_failed", url=str(request.url), error=type(exc).__name__)
                continue
            if not response.is_success:
                log.debug(
                    "model_listing_failed", url=str(request.url), status_code=response.status_code
                )
                continue
            try:
                models = adapter.parse_model_listing(response.json())
            except ValueError:
                log.debug("model_listing_failed", url=str(request.url), error="invalid_json")
                continue
            if models:
                log.info("models_discovered", url=str(request.url), count=len(models))
                return models

        log.info("model_discovery_unavailable")
        return adapter.describe_models()

    # ------------------------------------------------------------------
    # Attempts
    # ------------------------------------------------------------------

    def _prepare(
        self, adapter: HttpAdapter, prompt: str, options: GenerationOptions | None
    ) -> ResolvedOptions:
        if not isinstance(prompt, str) or not prompt.strip():
            raise ValidationError("prompt must be a non-empty string", provider=adapter.provider_id)
        if not adapter.base_url:
            raise ConfigurationError(
                f"{adapter.display_name} requires an endpoint URL",
                provider=adapter.provider_id,
            )
        return adapter.resolve_options(options)

    async def _attempt(
        self,
        adapter: HttpAdapter,
        key: str,
        prompt: str,
        options: ResolvedOptions,
    ) -> NormalizedResult:
        with _tracer.start_as_current_span("gateway.attempt"):
            reservation = await self.limiter.acquire(key, estimate_tokens(prompt))
            request = adapter.build_request(self.client, prompt, options, stream=False)
            try:
                response = await self.client.send(request)
            except httpx.HTTPError as exc:
                raise adapter.classifier.classify(exc) from exc

            self.limiter.observe_headers(key, response.headers)
            if not response.is_success:
                raise adapter.classifier.classify_response(response)

            try:
                body = response.json()
            except ValueError as exc:
                raise UnknownProviderError(
                    adapter.classifier.message_for(UnknownProviderError.category),
                    provider=adapter.provider_id,
                    detail="response body is not valid JSON",
                    status_code=response.status_code,
                    original_error=exc,
                ) from exc

            wire_format = adapter.profile.wire_format
            try:
                validate_response(body, wire_format)
            except ProviderError as exc:
                exc.provider = adapter.provider_id
                raise

            usage = extract_usage(body, wire_format)
            self.limiter.settle(reservation, usage.total_tokens)
            return NormalizedResult(
                text=extract_text(body, wire_format),
                usage=usage,
                raw=body,
                provider=adapter.provider_id,
                model=options.model,
            )

    async def _open_stream(
        self,
        adapter: HttpAdapter,
        key: str,
        prompt: str,
        options: ResolvedOptions,
    ) -> httpx.Response:
        await self.limiter.acquire(key, estimate_tokens(prompt))
        request = adapter.build_request(self.client, prompt, options, stream=True)
        try:
            response = await self.client.send(request, stream=True)
        except httpx.HTTPError as exc:
            raise adapter.classifier.classify(exc) from exc

        self.limiter.observe_headers(key, response.headers)
        if not response.is_success:
            try:
                await response.aread()
            except httpx.HTTPError:
                pass
            finally:
                await response.aclose()
            raise adapter.classifier.classify_response(response)
        return response

    async def _stream(
        self,
        adapter: HttpAdapter,
        prompt: str,
        options: ResolvedOptions,
        cancel: asyncio.Event | None,
    ) -> AsyncIterator[str]:
        key = provider_key(adapter.provider_id, adapter.config.secret())
        start_time = time.monotonic()
        deltas = 0

        with _tracer.start_as_current_span("gateway.stream") as span:
            _set_span_attributes(span, adapter, options, stream=True)
            log = _log.bind(
                request_id=str(uuid.uuid4()),
                provider=adapter.provider_id,
                model=options.model,
                stream=True,
            )
            log.info("provider_request_start", max_tokens=options.max_tokens)

            try:
                async for attempt in self.policy.retrying(
                    sleep=self._sleep, on_retry=_count_retry(adapter.provider_id)
                ):
                    with attempt:
                        response = await self._cancellable(
                            self._open_stream(adapter, key, prompt, options), cancel
                        )

                try:
                    decoder = StreamDecoder(adapter.profile.wire_format)
                    chunks = response.aiter_bytes()
                    while not decoder.done:
                        data = await self._cancellable(_next_or_none(chunks), cancel)
                        pieces = decoder.close() if data is None else decoder.feed(data)
                        for piece in pieces:
                            if piece.error is not None:
                                raise adapter.classifier.classify_frame(piece.error)
                            if piece.delta:
                                deltas += 1
                                yield piece.delta
                except httpx.HTTPError as exc:
                    raise adapter.classifier.classify(exc) from exc
                finally:
                    await response.aclose()

            except ProviderError as exc:
                _record_failure(span, log, exc)
                raise
            except asyncio.CancelledError:
                if cancel is None or not cancel.is_set():
                    raise
                PROVIDER_REQUESTS.labels(adapter.provider_id, "cancelled").inc()
                log.info("provider_stream_cancelled", deltas=deltas)
                return
            finally:
                duration_ms = round((time.monotonic() - start_time) * 1000, 2)
                log.info("provider_request_complete", duration_ms=duration_ms, deltas=deltas)

            PROVIDER_REQUESTS.labels(adapter.provider_id, "success").inc()

    async def _emulated_stream(
        self,
        adapter: HttpAdapter,
        prompt: str,
        options: GenerationOptions | None,
        cancel: asyncio.Event | None,
    ) -> AsyncIterator[str]:
        try:
            result = await self.generate(adapter, prompt, options, cancel=cancel)
        except asyncio.CancelledError:
            if cancel is None or not cancel.is_set():
                raise
            return
        if result.text:
            yield result.text

    async def _cancellable(self, awaitable: Awaitable[_T], cancel: asyncio.Event | None) -> _T:
        """Await *awaitable*, aborting it as soon as *cancel* is set."""
        if cancel is None:
            return await awaitable
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
        if task.cancelled():
            raise asyncio.CancelledError("cancelled by caller")
        return task.result()


class ProviderHandle:
    """A provider resolved against one config, bound to a gateway.

    Implements :class:`~promptgateway.providers.contract.ProviderContract`.
    """

    def __init__(self, descriptor: Any, adapter: HttpAdapter, gateway: Gateway) -> None:
        self.descriptor = descriptor
        self.adapter = adapter
        self.gateway = gateway

    @property
    def provider_id(self) -> str:
        return self.adapter.provider_id

    @property
    def config(self) -> ProviderConfig:
        return self.adapter.config

    async def authenticate(
        self, credentials: ProviderConfig | Mapping[str, Any] | None = None
    ) -> AuthResult:
        adapter = self.adapter
        if credentials is not None:
            try:
                adapter = adapter.with_config(_merge_config(adapter.config, credentials))
            except ConfigurationError as exc:
                return AuthResult(success=False, error=exc.message)
        return await self.gateway.probe(adapter)

    async def generate(
        self,
        prompt: str,
        options: GenerationOptions | None = None,
        *,
        cancel: asyncio.Event | None = None,
    ) -> NormalizedResult:
        return await self.gateway.generate(self.adapter, prompt, options, cancel=cancel)

    def stream(
        self,
        prompt: str,
        options: GenerationOptions | None = None,
        *,
        cancel: asyncio.Event | None = None,
    ) -> DeltaStream:
        return self.gateway.stream(self.adapter, prompt, options, cancel=cancel)

    def validate_config(
        self, config: ProviderConfig | Mapping[str, Any] | None = None
    ) -> ConfigValidation:
        if config is None or isinstance(config, ProviderConfig):
            return self.adapter.validate_config(config)
        try:
            parsed = ProviderConfig.model_validate(dict(config))
        except PydanticValidationError as exc:
            return ConfigValidation(is_valid=False, errors=schema_errors(exc))
        return self.adapter.validate_config(parsed)

    async def describe_models(self) -> list[ModelInfo]:
        return await self.gateway.list_models(self.adapter)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _next_or_none(iterator: AsyncIterator[bytes]) -> bytes | None:
    try:
        return await anext(iterator)
    except StopAsyncIteration:
        return None


def _merge_config(
    config: ProviderConfig, credentials: ProviderConfig | Mapping[str, Any]
) -> ProviderConfig:
    if isinstance(credentials, ProviderConfig):
        return credentials
    merged = config.model_dump(exclude_none=True)
    merged.update(credentials)
    return ProviderConfig.parse(merged)


def _count_retry(provider: str) -> Callable[[RetryAttempt], None]:
    def on_retry(attempt: RetryAttempt) -> None:
        PROVIDER_RETRIES.labels(provider, str(attempt.last_error_category)).inc()

    return on_retry


def _set_span_attributes(
    span: Any, adapter: HttpAdapter, options: ResolvedOptions, stream: bool
) -> None:
    span.set_attribute("gen_ai.system", adapter.provider_id)
    span.set_attribute("gen_ai.request.model", options.model)
    span.set_attribute("gen_ai.request.max_tokens", options.max_tokens)
    span.set_attribute("gen_ai.request.temperature", options.temperature)
    span.set_attribute("llm.stream", stream)


def _record_failure(span: Any, log: Any, exc: ProviderError) -> None:
    span.record_exception(exc)
    span.set_status(StatusCode.ERROR, exc.message)
    PROVIDER_REQUESTS.labels(exc.provider or "unknown", str(exc.category)).inc()
    log.error(
        "provider_request_error",
        error_type=type(exc).__name__,
        error_category=str(exc.category),
        error=exc.message,
        detail=exc.detail,
        status_code=exc.status_code,
    )
