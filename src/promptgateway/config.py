from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = Field(default="prompt-gateway")
    app_version: str = Field(default="0.1.0")
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)

    # Observability
    otel_enabled: bool = Field(default=False)
    otel_exporter_otlp_endpoint: str = Field(default="http://jaeger:4318")
    otel_service_name: str = Field(default="prompt-gateway")
    log_level: str = Field(default="INFO")

    # Provider call behaviour (seconds)
    request_timeout: float = Field(default=30.0, gt=0)
    retry_max_attempts: int = Field(default=3, ge=1)
    retry_base_delay: float = Field(default=1.0, ge=0)
    retry_max_delay: float = Field(default=10.0, ge=0)
    retry_jitter: float = Field(default=0.2, ge=0, lt=1)

    # Sliding-window admission control, applied per (provider, api key)
    rate_limit_window_seconds: float = Field(default=60.0, gt=0)
    rate_limit_requests_per_window: int = Field(default=60, ge=1)
    rate_limit_tokens_per_window: int = Field(default=10_000, ge=1)
    rate_limit_overrides: dict[str, tuple[int, int]] = Field(
        default_factory=lambda: {
            "anthropic": (50, 8_000),
            "gemini": (60, 12_000),
        }
    )

    # Provider chosen when a caller names none, and the ordered chain tried
    # when a requested provider cannot be resolved
    default_provider: str | None = Field(default=None)
    fallback_providers: list[str] = Field(default_factory=list)

    # Sent to OpenRouter as attribution headers
    app_url: str = Field(default="https://github.com/prompt-gateway/prompt-gateway")


settings = Settings()
