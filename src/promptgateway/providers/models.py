"""Request, response and configuration types for the provider gateway.

Per-call value types are frozen dataclasses validated in ``__post_init__`` so
callers get a fast, explicit error rather than a cryptic downstream failure.
:class:`ProviderConfig` is a pydantic model because it is usually built from
an untrusted mapping (HTTP body, settings file) and must reject unknown or
mistyped fields against a declared schema.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, SecretStr
from pydantic import ValidationError as PydanticValidationError

from promptgateway.providers.errors import ConfigurationError, ErrorCategory, ValidationError

MAX_TOKENS_RANGE = (1, 8000)
TEMPERATURE_RANGE = (0.0, 2.0)


class ProviderConfig(BaseModel):
    """Caller-supplied settings for one provider call.

    Never persisted by the gateway.  Frozen, so it cannot change while a call
    is in flight.
    """

    model_config = ConfigDict(extra="forbid", frozen=True, str_strip_whitespace=True)

    endpoint: str | None = None
    api_key: SecretStr | None = None
    model: str | None = None
    organization: str | None = None
    max_tokens: int = Field(default=1000, ge=MAX_TOKENS_RANGE[0], le=MAX_TOKENS_RANGE[1])
    temperature: float = Field(default=0.7, ge=TEMPERATURE_RANGE[0], le=TEMPERATURE_RANGE[1])
    extra_headers: dict[str, str] = Field(default_factory=dict)
    timeout: float = Field(default=30.0, ge=1, le=300)

    @classmethod
    def parse(cls, data: "ProviderConfig | Mapping[str, Any]") -> "ProviderConfig":
        """Build a config from a mapping, raising :class:`ConfigurationError`
        with one line per schema violation."""
        if isinstance(data, ProviderConfig):
            return data
        try:
            return cls.model_validate(dict(data))
        except PydanticValidationError as exc:
            raise ConfigurationError(
                "Invalid provider configuration: " + "; ".join(schema_errors(exc)),
            ) from exc

    def secret(self) -> str:
        """Return the raw API key, or ``""`` when none is configured."""
        return self.api_key.get_secret_value() if self.api_key is not None else ""


def schema_errors(exc: PydanticValidationError) -> list[str]:
    """Flatten a pydantic error into ``"field: message"`` strings."""
    errors = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err["loc"]) or "config"
        if err["type"] == "extra_forbidden":
            errors.append(f"{location}: unknown field")
        else:
            errors.append(f"{location}: {err['msg']}")
    return errors


@dataclass(frozen=True)
class GenerationOptions:
    """Per-call overrides.  ``None`` means "use the config value".

    Raises:
        ValidationError: If any field is out of range.
    """

    max_tokens: int | None = None
    temperature: float | None = None
    model: str | None = None

    def __post_init__(self) -> None:
        if self.max_tokens is not None and not (
            MAX_TOKENS_RANGE[0] <= self.max_tokens <= MAX_TOKENS_RANGE[1]
        ):
            raise ValidationError(
                f"max_tokens must be between {MAX_TOKENS_RANGE[0]} and "
                f"{MAX_TOKENS_RANGE[1]}, got {self.max_tokens}"
            )
        if self.temperature is not None and not (
            TEMPERATURE_RANGE[0] <= self.temperature <= TEMPERATURE_RANGE[1]
        ):
            raise ValidationError(
                f"temperature must be in [0.0, 2.0], got {self.temperature}"
            )
        if self.model is not None and not self.model.strip():
            raise ValidationError("model must be a non-empty string")


@dataclass(frozen=True)
class ResolvedOptions:
    """Options after merging :class:`GenerationOptions` over a config."""

    model: str
    max_tokens: int
    temperature: float


@dataclass(frozen=True)
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass(frozen=True)
class NormalizedResult:
    """Uniform result of a non-streaming generation.

    Attributes:
        text: Generated text.  Always a string, possibly empty.
        usage: Token counters; zeros when the provider does not report them.
        raw: The decoded provider payload, for callers that need extra fields.
        provider: Provider id that produced the result.
        model: Model the request was sent with.
    """

    text: str
    usage: Usage = field(default_factory=Usage)
    raw: Any = None
    provider: str | None = None
    model: str | None = None


@dataclass(frozen=True)
class FrameError:
    """An error object a provider sent inside an otherwise successful stream."""

    message: str
    type: str | None = None


@dataclass(frozen=True)
class StreamChunk:
    """One decoded SSE frame.  ``delta`` is ``None`` for frames without text;
    ``error`` is set on the final chunk of a stream the provider aborted."""

    raw: bytes
    delta: str | None = None
    is_final: bool = False
    error: FrameError | None = None


@dataclass(frozen=True)
class RetryAttempt:
    attempt_number: int
    delay: float
    last_error_category: ErrorCategory


@dataclass(frozen=True)
class ModelInfo:
    id: str
    display_name: str
    context_window: int


@dataclass(frozen=True)
class AuthResult:
    success: bool
    error: str | None = None


@dataclass
class ConfigValidation:
    is_valid: bool = True
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def fail(self, message: str) -> None:
        self.is_valid = False
        self.errors.append(message)
