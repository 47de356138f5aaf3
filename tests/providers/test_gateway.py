"""Unit tests for Gateway and ProviderHandle (gateway.py).

Mocking strategy
----------------
* Provider HTTP traffic goes through :class:`httpx.MockTransport`; each test
  supplies a handler that plays the provider's part and records requests.
* Backoff uses a recording ``sleep`` and a jitter-free :class:`RetryPolicy`
  so delays can be asserted exactly without waiting.

No real API calls are made in this test suite.
"""

import asyncio
import json
from collections.abc import AsyncIterator, Callable
from typing import Any

import httpx
import pytest

from promptgateway.providers import (
    AuthError,
    ConfigurationError,
    Gateway,
    GenerationOptions,
    NetworkError,
    NoContentError,
    RateLimitError,
    RetryPolicy,
    ServerError,
    SlidingWindowRateLimiter,
    StreamConsumedError,
    UnknownProviderError,
    ValidationError,
    build_default_registry,
)
from promptgateway.providers.ratelimit import provider_key

_KEY = "sk-test-0123456789"

_OPENAI_OK = {
    "choices": [{"message": {"role": "assistant", "content": "Hello there"}}],
    "usage": {"prompt_tokens": 3, "completion_tokens": 4, "total_tokens": 7},
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class FakeProvider:
    """Scripted provider: returns queued responses in order and records requests."""

    def __init__(self, *responses: httpx.Response | Exception | Callable) -> None:
        self._responses = list(responses)
        self.requests: list[httpx.Request] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        item = self._responses.pop(0) if len(self._responses) > 1 else self._responses[0]
        if isinstance(item, Exception):
            raise item
        if callable(item):
            return await item(request)
        if item.is_stream_consumed:
            # A repeated canned response must not share state between sends.
            return httpx.Response(item.status_code, headers=item.headers, content=item.content)
        return item

    @property
    def bodies(self) -> list[dict]:
        return [json.loads(r.content) for r in self.requests]


def _sse(*frames: str) -> bytes:
    return "".join(f"data: {frame}\n\n" for frame in frames).encode()


def _openai_delta(text: str) -> str:
    return json.dumps({"choices": [{"delta": {"content": text}}]})


async def _byte_chunks(*parts: bytes | Exception) -> AsyncIterator[bytes]:
    for part in parts:
        if isinstance(part, Exception):
            raise part
        yield part


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
async def make_handle(sleep: RecordingSleep):
    """Return ``factory(provider_id, fake, **config) -> (handle, gateway)``."""
    clients: list[httpx.AsyncClient] = []
    registry = build_default_registry()

    def factory(provider_id: str, fake: FakeProvider, **config):
        client = httpx.AsyncClient(transport=httpx.MockTransport(fake))
        clients.append(client)
        gateway = Gateway(
            client,
            limiter=SlidingWindowRateLimiter(),
            policy=RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=10.0, jitter=0.0),
            sleep=sleep,
        )
        config.setdefault("api_key", _KEY)
        return registry.resolve(provider_id, config, gateway=gateway), gateway

    yield factory
    for client in clients:
        await client.aclose()


# ---------------------------------------------------------------------------
# generate
# ---------------------------------------------------------------------------


class TestGenerate:
    async def test_returns_normalized_result(self, make_handle) -> None:
        fake = FakeProvider(httpx.Response(200, json=_OPENAI_OK))
        handle, _ = make_handle("openai", fake)

        result = await handle.generate("Hello", GenerationOptions(max_tokens=50))

        assert result.text == "Hello there"
        assert result.usage.total_tokens == 7
        assert result.provider == "openai"
        assert result.model == "gpt-3.5-turbo"
        assert result.raw == _OPENAI_OK
        assert fake.bodies[0]["max_tokens"] == 50
        assert fake.bodies[0]["messages"] == [{"role": "user", "content": "Hello"}]

    async def test_rate_limited_retries_then_fails(self, make_handle, sleep) -> None:
        fake = FakeProvider(httpx.Response(429, json={"error": {"message": "slow down"}}))
        handle, _ = make_handle("openai", fake)

        with pytest.raises(RateLimitError) as exc_info:
            await handle.generate("Hello")

        assert len(fake.requests) == 3
        assert sleep.delays == [1.0, 2.0]
        assert exc_info.value.status_code == 429

    async def test_retry_after_stretches_backoff(self, make_handle, sleep) -> None:
        fake = FakeProvider(
            httpx.Response(429, headers={"Retry-After": "4"}),
            httpx.Response(200, json=_OPENAI_OK),
        )
        handle, _ = make_handle("openai", fake)
        await handle.generate("Hello")
        assert sleep.delays == [4.0]

    async def test_recovers_after_server_error(self, make_handle, sleep) -> None:
        fake = FakeProvider(httpx.Response(503), httpx.Response(200, json=_OPENAI_OK))
        handle, _ = make_handle("openai", fake)
        result = await handle.generate("Hello")
        assert result.text == "Hello there"
        assert sleep.delays == [1.0]

    async def test_auth_failure_is_not_retried(self, make_handle, sleep) -> None:
        fake = FakeProvider(httpx.Response(401, json={"error": {"message": "bad key"}}))
        handle, _ = make_handle("openai", fake)

        with pytest.raises(AuthError) as exc_info:
            await handle.generate("Hello")

        assert len(fake.requests) == 1
        assert sleep.delays == []
        assert _KEY not in exc_info.value.message

    async def test_validation_failure_is_not_retried(self, make_handle) -> None:
        fake = FakeProvider(httpx.Response(400, json={"error": {"message": "bad"}}))
        handle, _ = make_handle("openai", fake)
        with pytest.raises(ValidationError):
            await handle.generate("Hello")
        assert len(fake.requests) == 1

    async def test_network_errors_exhaust_retries(self, make_handle, sleep) -> None:
        fake = FakeProvider(httpx.ConnectError("refused"))
        handle, _ = make_handle("openai", fake)
        with pytest.raises(NetworkError):
            await handle.generate("Hello")
        assert len(fake.requests) == 3
        assert sleep.delays == [1.0, 2.0]

    async def test_invalid_json_is_unknown_and_not_retried(self, make_handle) -> None:
        fake = FakeProvider(httpx.Response(200, content=b"<html>oops</html>"))
        handle, _ = make_handle("openai", fake)
        with pytest.raises(UnknownProviderError):
            await handle.generate("Hello")
        assert len(fake.requests) == 1

    async def test_missing_content_container(self, make_handle) -> None:
        fake = FakeProvider(httpx.Response(200, json={"id": "resp-1"}))
        handle, _ = make_handle("anthropic", fake, api_key="sk-ant-0123456789")
        with pytest.raises(NoContentError) as exc_info:
            await handle.generate("Hello")
        assert exc_info.value.provider == "anthropic"

    async def test_empty_generation_is_success(self, make_handle) -> None:
        body = {"content": [{"type": "text", "text": ""}], "usage": {}}
        fake = FakeProvider(httpx.Response(200, json=body))
        handle, _ = make_handle("anthropic", fake, api_key="sk-ant-0123456789")
        result = await handle.generate("Hello")
        assert result.text == ""

    @pytest.mark.parametrize("prompt", ["", "   ", None])
    async def test_empty_prompt_is_rejected_before_any_request(
        self, make_handle, prompt
    ) -> None:
        fake = FakeProvider(httpx.Response(200, json=_OPENAI_OK))
        handle, _ = make_handle("openai", fake)
        with pytest.raises(ValidationError):
            await handle.generate(prompt)
        assert fake.requests == []

    async def test_custom_without_endpoint(self, make_handle) -> None:
        fake = FakeProvider(httpx.Response(200, json={"text": "x"}))
        handle, _ = make_handle("custom", fake)
        with pytest.raises(ConfigurationError):
            await handle.generate("Hello")

    async def test_custom_endpoint_generic_shape(self, make_handle) -> None:
        fake = FakeProvider(httpx.Response(200, json={"response": "done"}))
        handle, _ = make_handle("custom", fake, endpoint="https://llm.example.com/gen")
        result = await handle.generate("Hello")
        assert result.text == "done"
        assert fake.bodies[0] == {
            "prompt": "Hello",
            "max_tokens": 1000,
            "temperature": 0.7,
            "stream": False,
        }

    async def test_usage_settles_rate_limit_reservation(self, make_handle) -> None:
        fake = FakeProvider(httpx.Response(200, json=_OPENAI_OK))
        handle, gateway = make_handle("openai", fake)
        await handle.generate("x" * 400)
        window = gateway.limiter.window(provider_key("openai", _KEY))
        assert window.tokens_in_window == 7

    async def test_quota_headers_feed_limiter(self, make_handle) -> None:
        fake = FakeProvider(
            httpx.Response(200, json=_OPENAI_OK, headers={"x-ratelimit-limit-requests": "25"})
        )
        handle, gateway = make_handle("openai", fake)
        await handle.generate("Hello")
        assert gateway.limiter.window(provider_key("openai", _KEY)).max_requests == 25

    async def test_each_attempt_acquires_a_rate_limit_slot(
        self, make_handle, mocker: Any
    ) -> None:
        fake = FakeProvider(
            httpx.Response(503), httpx.Response(502), httpx.Response(200, json=_OPENAI_OK)
        )
        handle, gateway = make_handle("openai", fake)
        spy = mocker.spy(gateway.limiter, "acquire")
        await handle.generate("Hello")
        assert spy.call_count == 3

    async def test_spans_are_recorded(self, make_handle, mocker: Any) -> None:
        tracer = mocker.patch("promptgateway.providers.gateway._tracer")
        handle, _ = make_handle("openai", FakeProvider(httpx.Response(200, json=_OPENAI_OK)))
        await handle.generate("Hello")
        names = [c.args[0] for c in tracer.start_as_current_span.call_args_list]
        assert names == ["gateway.generate", "gateway.attempt"]

    async def test_cancel_event_aborts_in_flight_request(self, make_handle) -> None:
        never = asyncio.Event()

        async def hang(request: httpx.Request) -> httpx.Response:
            await never.wait()
            return httpx.Response(200, json=_OPENAI_OK)

        handle, _ = make_handle("openai", FakeProvider(hang))
        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.01, cancel.set)

        with pytest.raises(asyncio.CancelledError):
            await handle.generate("Hello", cancel=cancel)

    async def test_concurrent_calls_share_limiter(self, make_handle) -> None:
        fake = FakeProvider(httpx.Response(200, json=_OPENAI_OK))
        handle, gateway = make_handle("openai", fake)
        results = await asyncio.gather(*(handle.generate("Hello") for _ in range(5)))
        assert [r.text for r in results] == ["Hello there"] * 5
        window = gateway.limiter.window(provider_key("openai", _KEY))
        assert len(window.request_timestamps) == 5


# ---------------------------------------------------------------------------
# stream
# ---------------------------------------------------------------------------


class TestStream:
    async def test_yields_deltas_until_done(self, make_handle) -> None:
        body = _sse(_openai_delta("Hi"), _openai_delta(" there"), "[DONE]", _openai_delta("x"))
        fake = FakeProvider(httpx.Response(200, content=body))
        handle, _ = make_handle("openai", fake)

        deltas = [d async for d in handle.stream("Hello")]

        assert deltas == ["Hi", " there"]
        assert fake.bodies[0]["stream"] is True

    async def test_frames_split_across_network_chunks(self, make_handle) -> None:
        body = _sse(_openai_delta("Hello"), "[DONE]")
        fake = FakeProvider(
            httpx.Response(200, content=_byte_chunks(body[:7], body[7:30], body[30:]))
        )
        handle, _ = make_handle("openai", fake)
        assert await handle.stream("Hello").collect() == "Hello"

    async def test_is_lazy_until_iterated(self, make_handle) -> None:
        fake = FakeProvider(httpx.Response(200, content=_sse("[DONE]")))
        handle, _ = make_handle("openai", fake)
        stream = handle.stream("Hello")
        assert fake.requests == []
        await stream.collect()
        assert len(fake.requests) == 1

    async def test_single_use(self, make_handle) -> None:
        fake = FakeProvider(httpx.Response(200, content=_sse(_openai_delta("a"), "[DONE]")))
        handle, _ = make_handle("openai", fake)
        stream = handle.stream("Hello")
        await stream.collect()
        with pytest.raises(StreamConsumedError):
            await stream.collect()

    async def test_connect_phase_is_retried(self, make_handle, sleep) -> None:
        fake = FakeProvider(
            httpx.Response(503),
            httpx.Response(200, content=_sse(_openai_delta("ok"), "[DONE]")),
        )
        handle, _ = make_handle("openai", fake)
        assert await handle.stream("Hello").collect() == "ok"
        assert len(fake.requests) == 2
        assert sleep.delays == [1.0]

    async def test_auth_failure_raises_from_iterator(self, make_handle) -> None:
        fake = FakeProvider(httpx.Response(401))
        handle, _ = make_handle("openai", fake)
        with pytest.raises(AuthError):
            await handle.stream("Hello").collect()
        assert len(fake.requests) == 1

    async def test_mid_stream_failure_is_raised_not_truncated(self, make_handle) -> None:
        fake = FakeProvider(
            httpx.Response(
                200,
                content=_byte_chunks(_sse(_openai_delta("partial")), httpx.ReadError("reset")),
            )
        )
        handle, _ = make_handle("openai", fake)
        received = []
        with pytest.raises(NetworkError):
            async for delta in handle.stream("Hello"):
                received.append(delta)
        assert received == ["partial"]
        assert len(fake.requests) == 1

    async def test_error_frame_is_raised_not_truncated(self, make_handle) -> None:
        body = _sse(
            _openai_delta("Hel"),
            json.dumps({"error": {"message": "upstream overloaded", "code": 502}}),
            _openai_delta("never"),
        )
        fake = FakeProvider(httpx.Response(200, content=body))
        handle, _ = make_handle("openrouter", fake)
        received = []
        with pytest.raises(ServerError) as exc_info:
            async for delta in handle.stream("Hello"):
                received.append(delta)
        assert received == ["Hel"]
        assert "upstream overloaded" in exc_info.value.detail
        assert exc_info.value.provider == "openrouter"
        assert len(fake.requests) == 1

    async def test_anthropic_error_event_is_raised(self, make_handle) -> None:
        body = (
            b'event: content_block_delta\ndata: {"type":"content_block_delta",'
            b'"delta":{"type":"text_delta","text":"Hel"}}\n\n'
            b'event: error\ndata: {"type":"error","error":'
            b'{"type":"overloaded_error","message":"Overloaded"}}\n\n'
        )
        fake = FakeProvider(httpx.Response(200, content=body))
        handle, _ = make_handle("anthropic", fake, api_key="sk-ant-0123456789")
        received = []
        with pytest.raises(ServerError):
            async for delta in handle.stream("Hello"):
                received.append(delta)
        assert received == ["Hel"]

    async def test_invalid_request_frame_is_validation_error(self, make_handle) -> None:
        frame = json.dumps({"error": {"message": "bad", "type": "invalid_request_error"}})
        fake = FakeProvider(httpx.Response(200, content=_sse(frame)))
        handle, _ = make_handle("openai", fake)
        with pytest.raises(ValidationError):
            await handle.stream("Hello").collect()

    async def test_anthropic_stream(self, make_handle) -> None:
        body = _sse(
            json.dumps({"type": "message_start", "message": {}}),
            json.dumps({"type": "content_block_delta", "delta": {"text": "Hi"}}),
            json.dumps({"type": "message_stop"}),
        )
        fake = FakeProvider(httpx.Response(200, content=body))
        handle, _ = make_handle("anthropic", fake, api_key="sk-ant-0123456789")
        assert await handle.stream("Hello").collect() == "Hi"

    async def test_gemini_stream_uses_sse_endpoint(self, make_handle) -> None:
        frame = json.dumps({"candidates": [{"content": {"parts": [{"text": "Yo"}]}}]})
        fake = FakeProvider(httpx.Response(200, content=_sse(frame)))
        handle, _ = make_handle("gemini", fake, api_key="AIza0123456789")
        assert await handle.stream("Hello").collect() == "Yo"
        assert fake.requests[0].url.params["alt"] == "sse"

    async def test_non_streaming_provider_emulates_single_delta(self, make_handle) -> None:
        fake = FakeProvider(httpx.Response(200, json={"text": "whole answer"}))
        handle, _ = make_handle("cohere", fake, api_key="co-0123456789")
        assert [d async for d in handle.stream("Hello")] == ["whole answer"]
        assert fake.bodies[0]["stream"] is False

    async def test_cancel_event_ends_stream(self, make_handle) -> None:
        gate = asyncio.Event()

        async def slow_body() -> AsyncIterator[bytes]:
            yield _sse(_openai_delta("first"))
            await gate.wait()
            yield _sse(_openai_delta("never"))

        async def respond(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=slow_body())

        handle, _ = make_handle("openai", FakeProvider(respond))
        cancel = asyncio.Event()
        received = []
        async for delta in handle.stream("Hello", cancel=cancel):
            received.append(delta)
            cancel.set()
        assert received == ["first"]

    async def test_stream_rejects_empty_prompt_eagerly(self, make_handle) -> None:
        handle, _ = make_handle("openai", FakeProvider(httpx.Response(200)))
        with pytest.raises(ValidationError):
            handle.stream("")


# ---------------------------------------------------------------------------
# authenticate / validate_config / describe_models
# ---------------------------------------------------------------------------


class TestHandle:
    async def test_authenticate_success(self, make_handle) -> None:
        fake = FakeProvider(httpx.Response(200, json={"data": []}))
        handle, _ = make_handle("openai", fake)
        result = await handle.authenticate()
        assert result.success is True
        assert fake.requests[0].method == "GET"
        assert fake.requests[0].url.path == "/v1/models"

    async def test_authenticate_failure_never_raises(self, make_handle) -> None:
        fake = FakeProvider(httpx.Response(401, json={"error": {"message": "bad"}}))
        handle, _ = make_handle("openai", fake)
        result = await handle.authenticate()
        assert result.success is False
        assert "Authentication failed" in result.error

    async def test_authenticate_network_failure(self, make_handle) -> None:
        handle, _ = make_handle("openai", FakeProvider(httpx.ConnectError("down")))
        result = await handle.authenticate()
        assert result.success is False
        assert "Network error" in result.error

    async def test_authenticate_invalid_config_skips_network(self, make_handle) -> None:
        fake = FakeProvider(httpx.Response(200))
        handle, _ = make_handle("openai", fake, api_key="short")
        result = await handle.authenticate()
        assert result.success is False
        assert fake.requests == []

    async def test_authenticate_with_override_credentials(self, make_handle) -> None:
        fake = FakeProvider(httpx.Response(200, json={"data": []}))
        handle, _ = make_handle("openai", fake)
        result = await handle.authenticate({"api_key": "sk-other-0123456789"})
        assert result.success is True
        assert fake.requests[0].headers["Authorization"] == "Bearer sk-other-0123456789"

    async def test_authenticate_with_bad_override_mapping(self, make_handle) -> None:
        handle, _ = make_handle("openai", FakeProvider(httpx.Response(200)))
        result = await handle.authenticate({"nope": 1})
        assert result.success is False

    async def test_validate_config_mapping_reports_schema_errors(self, make_handle) -> None:
        handle, _ = make_handle("openai", FakeProvider(httpx.Response(200)))
        result = handle.validate_config({"api_key": _KEY, "max_tokens": 0})
        assert result.is_valid is False
        assert any(e.startswith("max_tokens") for e in result.errors)

    async def test_describe_models(self, make_handle) -> None:
        fake = FakeProvider(httpx.Response(200))
        handle, _ = make_handle("anthropic", fake)
        models = await handle.describe_models()
        assert "claude-3-sonnet-20240229" in [m.id for m in models]
        assert fake.requests == []


class TestLocalModelDiscovery:
    async def test_lists_openai_compatible_models(self, make_handle) -> None:
        fake = FakeProvider(httpx.Response(200, json={"data": [{"id": "llama3"}, {"id": "phi3"}]}))
        handle, _ = make_handle("local", fake)
        models = await handle.describe_models()
        assert [m.id for m in models] == ["llama3", "phi3"]
        assert [r.url.path for r in fake.requests] == ["/v1/models"]

    async def test_falls_back_to_ollama_tags(self, make_handle) -> None:
        fake = FakeProvider(
            httpx.Response(404),
            httpx.Response(200, json={"models": [{"name": "mistral:7b"}]}),
        )
        handle, _ = make_handle("local", fake)
        models = await handle.describe_models()
        assert [m.id for m in models] == ["mistral:7b"]
        assert [r.url.path for r in fake.requests] == ["/v1/models", "/api/tags"]

    async def test_unreachable_server_uses_static_catalogue(self, make_handle) -> None:
        fake = FakeProvider(httpx.ConnectError("refused"))
        handle, _ = make_handle("local", fake)
        models = await handle.describe_models()
        assert [m.id for m in models] == ["local-model"]
        assert len(fake.requests) == 2

    async def test_empty_or_invalid_listing_uses_static_catalogue(self, make_handle) -> None:
        fake = FakeProvider(
            httpx.Response(200, json={"data": []}),
            httpx.Response(200, content=b"<html>"),
        )
        handle, _ = make_handle("local", fake)
        assert [m.id for m in await handle.describe_models()] == ["local-model"]


async def test_gateway_closes_only_its_own_client() -> None:
    external = httpx.AsyncClient()
    async with Gateway(external):
        pass
    assert not external.is_closed
    await external.aclose()

    gateway = Gateway()
    client = gateway.client
    await gateway.aclose()
    assert client.is_closed


def test_server_error_type_is_retryable_category() -> None:
    assert ServerError("x").category.value == "SERVER"
