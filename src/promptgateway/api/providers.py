"""HTTP surface over the provider registry and gateway.

Every endpoint resolves ``{provider_id}`` against the registry held in
``app.state`` and maps gateway errors to HTTP status codes.  Models,
authenticate and generate fall back along the registry's fallback chain and
default provider when the requested id cannot be resolved; the provider
actually used is reported in the response.  Validation always checks the
requested provider.  Response bodies only ever carry the sanitised user
message of an error, never its detail.
"""

import asyncio
import json
import time
import uuid
from collections.abc import AsyncGenerator
from dataclasses import asdict
from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from promptgateway.providers import (
    DeltaStream,
    ErrorCategory,
    Gateway,
    GenerationOptions,
    ProviderError,
    ProviderRegistry,
    RateLimitError,
)

router = APIRouter(prefix="/v1/providers", tags=["providers"])

_log = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# HTTP status codes for each error category
# ---------------------------------------------------------------------------
_CATEGORY_STATUS: dict[ErrorCategory, int] = {
    ErrorCategory.CONFIGURATION: 400,
    ErrorCategory.VALIDATION: 400,
    ErrorCategory.AUTHENTICATION: 401,
    ErrorCategory.RATE_LIMIT: 429,
    ErrorCategory.NETWORK: 504,
    ErrorCategory.SERVER: 502,
    ErrorCategory.UNKNOWN: 500,
}

# How often a streaming response checks whether its client went away.
DISCONNECT_POLL_SECONDS = 0.5


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class OptionsBody(BaseModel):
    max_tokens: int | None = None
    temperature: float | None = None
    model: str | None = None


class GenerateBody(BaseModel):
    """Body of ``POST /v1/providers/{provider_id}/generate``."""

    config: dict[str, Any] = Field(default_factory=dict)
    prompt: str
    options: OptionsBody | None = None
    stream: bool = False


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def get_registry(request: Request) -> ProviderRegistry:
    registry: ProviderRegistry | None = getattr(request.app.state, "registry", None)
    if registry is None:
        raise HTTPException(status_code=503, detail="Provider registry not initialised")
    return registry


def get_gateway(request: Request) -> Gateway:
    gateway: Gateway | None = getattr(request.app.state, "gateway", None)
    if gateway is None:
        raise HTTPException(status_code=503, detail="Gateway not initialised")
    return gateway


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.get("")
async def list_providers(registry: ProviderRegistry = Depends(get_registry)) -> JSONResponse:
    return JSONResponse(
        content={
            "providers": [
                {
                    "id": d.id,
                    "display_name": d.display_name,
                    "category": str(d.category),
                    "description": d.description,
                    "supports_streaming": d.supports_streaming,
                }
                for d in registry.descriptors()
            ]
        }
    )


@router.get("/{provider_id}/models")
async def list_models(
    provider_id: str,
    registry: ProviderRegistry = Depends(get_registry),
    gateway: Gateway = Depends(get_gateway),
) -> JSONResponse:
    try:
        handle = registry.resolve_with_fallback(provider_id, gateway=gateway)
        models = await handle.describe_models()
    except ProviderError as exc:
        raise _http_error(exc, registry, provider_id) from exc
    return JSONResponse(
        content={"provider": handle.provider_id, "models": [asdict(m) for m in models]}
    )


@router.post("/{provider_id}/validate")
async def validate_config(
    provider_id: str,
    config: dict[str, Any],
    registry: ProviderRegistry = Depends(get_registry),
    gateway: Gateway = Depends(get_gateway),
) -> JSONResponse:
    """Validate a config mapping.  Schema problems come back as errors in the
    result rather than as an HTTP error."""
    try:
        handle = registry.resolve(provider_id, gateway=gateway)
    except ProviderError as exc:
        raise _http_error(exc, registry, provider_id) from exc
    return JSONResponse(content=asdict(handle.validate_config(config)))


@router.post("/{provider_id}/authenticate")
async def authenticate(
    provider_id: str,
    config: dict[str, Any],
    registry: ProviderRegistry = Depends(get_registry),
    gateway: Gateway = Depends(get_gateway),
) -> JSONResponse:
    try:
        handle = registry.resolve_with_fallback(provider_id, gateway=gateway)
    except ProviderError as exc:
        raise _http_error(exc, registry, provider_id) from exc
    result = await handle.authenticate(config)
    return JSONResponse(content={**asdict(result), "provider": handle.provider_id})


@router.post("/{provider_id}/generate", response_model=None)
async def generate(
    provider_id: str,
    body: GenerateBody,
    request: Request,
    registry: ProviderRegistry = Depends(get_registry),
    gateway: Gateway = Depends(get_gateway),
) -> StreamingResponse | JSONResponse:
    """Generate text with *provider_id*.

    Returns a JSON result, or a ``text/event-stream`` of ``{"delta": ...}``
    frames ending with ``[DONE]`` when ``body.stream`` is true.
    """
    request_id = str(uuid.uuid4())
    headers = {"X-Request-ID": request_id, "X-Provider": provider_id}

    try:
        handle = registry.resolve_with_fallback(provider_id, body.config, gateway=gateway)
        headers["X-Provider"] = handle.provider_id
        log = _log.bind(
            request_id=request_id,
            provider=handle.provider_id,
            requested_provider=provider_id,
            stream=body.stream,
        )
        options = GenerationOptions(**body.options.model_dump()) if body.options else None
        if body.stream:
            cancel = asyncio.Event()
            deltas = handle.stream(body.prompt, options, cancel=cancel)
            return StreamingResponse(
                _stream_sse(deltas, log, time.monotonic(), request, cancel),
                media_type="text/event-stream",
                headers={**headers, "Cache-Control": "no-cache"},
            )
        result = await handle.generate(body.prompt, options)
    except ProviderError as exc:
        raise _http_error(exc, registry, provider_id, headers) from exc

    return JSONResponse(
        content={
            "text": result.text,
            "usage": asdict(result.usage),
            "provider": result.provider,
            "model": result.model,
        },
        headers=headers,
    )


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


async def _stream_sse(
    deltas: DeltaStream,
    log: Any,
    start_time: float,
    request: Request,
    cancel: asyncio.Event,
) -> AsyncGenerator[str, None]:
    """Yield SSE lines for each delta.

    A failure after the 200 header has gone out is surfaced as a final
    ``error`` frame so the client can tell a failed stream from a short one.
    A client that disconnects sets *cancel*, which aborts the upstream request.
    """
    count = 0
    watcher = asyncio.create_task(_watch_disconnect(request, cancel))
    try:
        async for delta in deltas:
            count += 1
            yield f"data: {json.dumps({'delta': delta})}\n\n"
        if cancel.is_set():
            log.info("generate_stream_client_disconnected", deltas=count)
            return
        yield "data: [DONE]\n\n"
    except ProviderError as exc:
        log.error(
            "generate_stream_error",
            error_type=type(exc).__name__,
            error_category=str(exc.category),
            error=exc.message,
        )
        payload = {"error": {"message": exc.message, "category": str(exc.category)}}
        yield f"data: {json.dumps(payload)}\n\n"
        yield "data: [DONE]\n\n"
    finally:
        watcher.cancel()
        duration_ms = round((time.monotonic() - start_time) * 1000, 2)
        log.info("generate_stream_complete", duration_ms=duration_ms, deltas=count)


async def _watch_disconnect(
    request: Request, cancel: asyncio.Event, interval: float = DISCONNECT_POLL_SECONDS
) -> None:
    while not cancel.is_set():
        if await request.is_disconnected():
            cancel.set()
            return
        await asyncio.sleep(interval)


def _http_error(
    exc: ProviderError,
    registry: ProviderRegistry,
    provider_id: str,
    headers: dict[str, str] | None = None,
) -> HTTPException:
    status_code = _CATEGORY_STATUS.get(exc.category, 500)
    if exc.category is ErrorCategory.CONFIGURATION and not registry.has(provider_id):
        status_code = 404
    error_headers = dict(headers or {})
    if isinstance(exc, RateLimitError) and exc.retry_after is not None:
        error_headers["Retry-After"] = str(int(exc.retry_after))
    return HTTPException(
        status_code=status_code,
        detail={"message": exc.message, "category": str(exc.category), "code": exc.code},
        headers=error_headers or None,
    )
