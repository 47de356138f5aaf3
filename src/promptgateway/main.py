import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from prometheus_client import make_asgi_app

from promptgateway.api.health import router as health_router
from promptgateway.api.providers import router as providers_router
from promptgateway.config import settings
from promptgateway.providers import Gateway, build_default_registry

# ---------------------------------------------------------------------------
# Structured logging
# ---------------------------------------------------------------------------
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(
        structlog.stdlib.NAME_TO_LEVEL.get(settings.log_level.lower(), 20)
    ),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=True,
)

log = structlog.get_logger()

# ---------------------------------------------------------------------------
# OpenTelemetry
# ---------------------------------------------------------------------------
tracer_provider = TracerProvider(
    resource=Resource.create({"service.name": settings.otel_service_name})
)
if settings.otel_enabled:
    otlp_exporter = OTLPSpanExporter(
        endpoint=f"{settings.otel_exporter_otlp_endpoint}/v1/traces",
    )
    tracer_provider.add_span_processor(BatchSpanProcessor(otlp_exporter))
trace.set_tracer_provider(tracer_provider)

# ---------------------------------------------------------------------------
# FastAPI application
# ---------------------------------------------------------------------------
app = FastAPI(
    title="Prompt Gateway",
    version=settings.app_version,
    description=(
        "Uniform text-generation gateway over OpenAI, OpenRouter, Anthropic, "
        "Cohere, Hugging Face, Gemini and custom endpoints."
    ),
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Prometheus metrics endpoint mounted as a sub-application
metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)

app.include_router(health_router)
app.include_router(providers_router)

# Instrument *after* routes are registered
FastAPIInstrumentor.instrument_app(app, tracer_provider=tracer_provider)


# ---------------------------------------------------------------------------
# Lifecycle events
# ---------------------------------------------------------------------------
@app.on_event("startup")
async def _startup() -> None:
    # Shared across requests so rate-limit windows and connection pools are
    # per process, not per request.
    registry = build_default_registry()
    if settings.default_provider:
        registry.set_default(settings.default_provider)
    registry.set_fallbacks(settings.fallback_providers)
    app.state.registry = registry
    app.state.gateway = Gateway.from_settings(settings)

    log.info(
        "prompt_gateway_ready",
        host=settings.host,
        port=settings.port,
        **registry.stats(),
        retry_max_attempts=settings.retry_max_attempts,
        otel_enabled=settings.otel_enabled,
    )


@app.on_event("shutdown")
async def _shutdown() -> None:
    log.info("prompt_gateway_shutting_down")
    await app.state.gateway.aclose()
    tracer_provider.shutdown()
