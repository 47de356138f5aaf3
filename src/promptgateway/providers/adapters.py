"""Provider adapters.

There is no adapter class hierarchy.  Every backend is described by a
:class:`ProviderProfile`, a frozen record that tags it with a
:class:`~promptgateway.providers.wire.WireFormat` and an :class:`AuthScheme`
and lists its endpoints and model catalogue.  One :class:`HttpAdapter`
interprets any profile: it builds authenticated :class:`httpx.Request`
objects, validates configs, and describes models.  Network I/O, retries and
rate limiting belong to :class:`~promptgateway.providers.gateway.Gateway`.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from urllib.parse import urlsplit

import httpx

from promptgateway.config import settings
from promptgateway.providers.classifier import ErrorClassifier
from promptgateway.providers.models import (
    ConfigValidation,
    GenerationOptions,
    ModelInfo,
    ProviderConfig,
    ResolvedOptions,
)
from promptgateway.providers.wire import WireFormat, build_request, dig

USER_AGENT = "prompt-gateway/0.1.0"
ANTHROPIC_VERSION = "2023-06-01"
API_KEY_LENGTH = (10, 200)
# Context window assumed for models a local server lists without one.
DISCOVERED_CONTEXT_WINDOW = 4_096
_LOCAL_HOSTS = frozenset({"localhost", "127.0.0.1", "::1", "0.0.0.0"})


class AuthScheme(StrEnum):
    BEARER = "bearer"
    X_API_KEY = "x_api_key"
    QUERY_KEY = "query_key"
    NONE = "none"


class ProviderCategory(StrEnum):
    CLOUD = "cloud"
    LOCAL = "local"
    CUSTOM = "custom"


@dataclass(frozen=True)
class ProviderProfile:
    """Static description of one backend.

    Paths are joined to the configured endpoint (or :attr:`base_url`) and
    may contain ``{model}``.  An absolute :attr:`probe_url` bypasses the
    endpoint.
    """

    id: str
    display_name: str
    wire_format: WireFormat
    auth_scheme: AuthScheme
    base_url: str | None
    completion_path: str
    default_model: str
    category: ProviderCategory = ProviderCategory.CLOUD
    description: str = ""
    stream_path: str | None = None
    stream_params: Mapping[str, str] = field(default_factory=dict)
    probe_path: str = "/models"
    probe_url: str | None = None
    lenient_probe: bool = False
    discover_models: bool = False
    supports_streaming: bool = True
    models: tuple[ModelInfo, ...] = ()
    warn_unknown_models: bool = False
    key_prefix: str | None = None
    expected_hosts: tuple[str, ...] = ()
    static_headers: Mapping[str, str] = field(default_factory=dict)


class HttpAdapter:
    """Binds a :class:`ProviderProfile` to one :class:`ProviderConfig`."""

    def __init__(self, profile: ProviderProfile, config: ProviderConfig) -> None:
        self.profile = profile
        self.config = config
        self.classifier = ErrorClassifier(
            profile.id,
            display_name=profile.display_name,
            secrets=[config.secret()],
        )

    @property
    def provider_id(self) -> str:
        return self.profile.id

    @property
    def display_name(self) -> str:
        return self.profile.display_name

    @property
    def base_url(self) -> str:
        return (self.config.endpoint or self.profile.base_url or "").rstrip("/")

    def with_config(self, config: ProviderConfig) -> "HttpAdapter":
        return HttpAdapter(self.profile, config)

    # ------------------------------------------------------------------
    # Request construction
    # ------------------------------------------------------------------

    def resolve_options(self, options: GenerationOptions | None = None) -> ResolvedOptions:
        options = options or GenerationOptions()
        return ResolvedOptions(
            model=options.model or self.config.model or self.profile.default_model,
            max_tokens=options.max_tokens or self.config.max_tokens,
            temperature=(
                options.temperature if options.temperature is not None else self.config.temperature
            ),
        )

    def headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": f"{USER_AGENT} ({self.profile.id})",
        }
        api_key = self.config.secret()
        scheme = self.profile.auth_scheme
        if scheme is AuthScheme.X_API_KEY:
            headers["x-api-key"] = api_key
        elif scheme is AuthScheme.BEARER or (scheme is AuthScheme.NONE and api_key):
            headers["Authorization"] = f"Bearer {api_key}"
        if self.config.organization and self.profile.wire_format is WireFormat.OPENAI_CHAT:
            headers["OpenAI-Organization"] = self.config.organization
        headers.update(self.profile.static_headers)
        headers.update(self.config.extra_headers)
        return headers

    def params(self) -> dict[str, str]:
        if self.profile.auth_scheme is AuthScheme.QUERY_KEY:
            return {"key": self.config.secret()}
        return {}

    def url(self, path: str, model: str) -> str:
        return self.base_url + path.format(model=model)

    def build_request(
        self,
        client: httpx.AsyncClient,
        prompt: str,
        options: ResolvedOptions,
        stream: bool = False,
    ) -> httpx.Request:
        """Build the completion request for *prompt*."""
        path = self.profile.completion_path
        params = self.params()
        if stream and self.profile.stream_path is not None:
            path = self.profile.stream_path
            params.update(self.profile.stream_params)
        body = build_request(self.profile.wire_format, prompt, options, stream=stream)
        return client.build_request(
            "POST",
            self.url(path, options.model),
            json=body,
            headers=self.headers(),
            params=params,
            timeout=self.config.timeout,
        )

    def build_probe(self, client: httpx.AsyncClient) -> httpx.Request:
        """Build the lightweight request used by ``authenticate``."""
        url = self.profile.probe_url or self.url(
            self.profile.probe_path, self.config.model or self.profile.default_model
        )
        headers = self.headers()
        headers.pop("Content-Type", None)
        return client.build_request(
            "GET", url, headers=headers, params=self.params(), timeout=self.config.timeout
        )

    def probe_succeeded(self, response: httpx.Response) -> bool:
        if response.is_success:
            return True
        # Custom and local servers rarely expose a listing route; any answer
        # that is not an auth or server failure proves connectivity.
        return self.profile.lenient_probe and response.status_code not in (401, 403) and (
            response.status_code < 500
        )

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def describe_models(self) -> list[ModelInfo]:
        return list(self.profile.models)

    def build_model_listings(self, client: httpx.AsyncClient) -> list[httpx.Request]:
        """Requests that list the models a self-hosted server has loaded.

        The OpenAI-compatible ``/models`` route (LM Studio, llama.cpp, Ollama)
        comes first, then Ollama's native ``/api/tags`` at the server root.
        """
        base = self.base_url
        root = base.removesuffix("/v1")
        urls = [f"{base}/models", f"{root}/api/tags"]
        headers = self.headers()
        headers.pop("Content-Type", None)
        return [
            client.build_request("GET", url, headers=headers, timeout=self.config.timeout)
            for url in dict.fromkeys(urls)
        ]

    def parse_model_listing(self, body: object) -> list[ModelInfo]:
        """Read ``{"data": [{"id"}]}`` or Ollama's ``{"models": [{"name"}]}``."""
        entries = dig(body, "data")
        key = "id"
        if not isinstance(entries, list):
            entries = dig(body, "models")
            key = "name"
        if not isinstance(entries, list):
            return []
        ids = [dig(entry, key) for entry in entries]
        return [
            ModelInfo(id=i, display_name=i, context_window=DISCOVERED_CONTEXT_WINDOW)
            for i in ids
            if isinstance(i, str) and i
        ]

    def validate_config(self, config: ProviderConfig | None = None) -> ConfigValidation:
        """Check *config* (default: the bound one) for this provider.

        Unknown models and unusual key formats produce warnings, never errors.
        """
        config = config or self.config
        result = ConfigValidation()
        profile = self.profile

        api_key = config.secret()
        if not api_key:
            if profile.auth_scheme is not AuthScheme.NONE:
                result.fail("API key is required")
        else:
            if any(ch.isspace() for ch in api_key):
                result.fail("API key should not contain spaces")
            if len(api_key) < API_KEY_LENGTH[0]:
                result.fail("API key is too short")
            if len(api_key) > API_KEY_LENGTH[1]:
                result.fail("API key is too long")
            if profile.key_prefix and not api_key.startswith(profile.key_prefix):
                result.warnings.append(
                    f"{profile.display_name} API keys typically start with "
                    f'"{profile.key_prefix}"'
                )

        endpoint = config.endpoint
        if endpoint:
            _validate_endpoint(endpoint, profile, result)
        elif not profile.base_url:
            result.fail("Endpoint URL is required")

        if config.model and profile.warn_unknown_models:
            known = [m.id for m in profile.models]
            if config.model not in known:
                shown = ", ".join(known[:3]) + ("..." if len(known) > 3 else "")
                result.warnings.append(
                    f"Unknown model for {profile.display_name}. Known models: {shown}"
                )
        return result


def _validate_endpoint(endpoint: str, profile: ProviderProfile, result: ConfigValidation) -> None:
    parts = urlsplit(endpoint)
    if parts.scheme not in ("http", "https") or not parts.hostname:
        result.fail("Endpoint must be an http(s) URL")
        return
    if parts.scheme == "http" and parts.hostname not in _LOCAL_HOSTS:
        result.warnings.append("HTTP endpoints are not secure. Consider using HTTPS.")
    if profile.expected_hosts and parts.hostname not in profile.expected_hosts:
        result.warnings.append(
            f"Unexpected domain for {profile.display_name}. "
            f"Expected: {', '.join(profile.expected_hosts)}"
        )


# ---------------------------------------------------------------------------
# Built-in profiles
# ---------------------------------------------------------------------------


def _models(*entries: tuple[str, str, int]) -> tuple[ModelInfo, ...]:
    return tuple(ModelInfo(id=i, display_name=n, context_window=c) for i, n, c in entries)


OPENAI = ProviderProfile(
    id="openai",
    display_name="OpenAI",
    description="OpenAI chat completion models",
    wire_format=WireFormat.OPENAI_CHAT,
    auth_scheme=AuthScheme.BEARER,
    base_url="https://api.openai.com/v1",
    completion_path="/chat/completions",
    default_model="gpt-3.5-turbo",
    models=_models(
        ("gpt-4o", "GPT-4o", 128_000),
        ("gpt-4o-mini", "GPT-4o mini", 128_000),
        ("gpt-4-turbo", "GPT-4 Turbo", 128_000),
        ("gpt-4", "GPT-4", 8_192),
        ("gpt-3.5-turbo", "GPT-3.5 Turbo", 16_385),
    ),
    warn_unknown_models=True,
    key_prefix="sk-",
    expected_hosts=("api.openai.com",),
)

OPENROUTER = ProviderProfile(
    id="openrouter",
    display_name="OpenRouter",
    description="Many hosted models behind one OpenAI-compatible API",
    wire_format=WireFormat.OPENAI_CHAT,
    auth_scheme=AuthScheme.BEARER,
    base_url="https://openrouter.ai/api/v1",
    completion_path="/chat/completions",
    default_model="openai/gpt-3.5-turbo",
    models=_models(
        ("openai/gpt-3.5-turbo", "GPT-3.5 Turbo (OpenRouter)", 16_385),
        ("openai/gpt-4", "GPT-4 (OpenRouter)", 8_192),
        ("anthropic/claude-3-sonnet", "Claude 3 Sonnet (OpenRouter)", 200_000),
        ("anthropic/claude-3-haiku", "Claude 3 Haiku (OpenRouter)", 200_000),
        ("meta-llama/llama-3-70b-instruct", "Llama 3 70B Instruct", 8_192),
    ),
    expected_hosts=("openrouter.ai",),
    static_headers={"HTTP-Referer": settings.app_url, "X-Title": "Prompt Gateway"},
)

ANTHROPIC = ProviderProfile(
    id="anthropic",
    display_name="Anthropic (Claude)",
    description="Anthropic Claude models",
    wire_format=WireFormat.ANTHROPIC_MESSAGES,
    auth_scheme=AuthScheme.X_API_KEY,
    base_url="https://api.anthropic.com/v1",
    completion_path="/messages",
    default_model="claude-3-sonnet-20240229",
    models=_models(
        ("claude-3-opus-20240229", "Claude 3 Opus", 200_000),
        ("claude-3-sonnet-20240229", "Claude 3 Sonnet", 200_000),
        ("claude-3-haiku-20240307", "Claude 3 Haiku", 200_000),
        ("claude-2.1", "Claude 2.1", 200_000),
    ),
    warn_unknown_models=True,
    key_prefix="sk-ant-",
    expected_hosts=("api.anthropic.com",),
    static_headers={"anthropic-version": ANTHROPIC_VERSION},
)

COHERE = ProviderProfile(
    id="cohere",
    display_name="Cohere",
    description="Cohere Command models",
    wire_format=WireFormat.COHERE_CHAT,
    auth_scheme=AuthScheme.BEARER,
    base_url="https://api.cohere.ai/v1",
    completion_path="/chat",
    default_model="command",
    supports_streaming=False,
    models=_models(
        ("command", "Command", 4_096),
        ("command-light", "Command Light", 4_096),
        ("command-nightly", "Command Nightly", 4_096),
    ),
    warn_unknown_models=True,
    expected_hosts=("api.cohere.ai",),
)

HUGGINGFACE = ProviderProfile(
    id="huggingface",
    display_name="Hugging Face",
    description="Hugging Face hosted inference API",
    wire_format=WireFormat.HUGGINGFACE_INFERENCE,
    auth_scheme=AuthScheme.BEARER,
    base_url="https://api-inference.huggingface.co/models",
    completion_path="/{model}",
    default_model="microsoft/DialoGPT-medium",
    probe_url="https://huggingface.co/api/whoami-v2",
    supports_streaming=False,
    models=_models(
        ("microsoft/DialoGPT-medium", "DialoGPT Medium", 1_024),
        ("gpt2", "GPT-2", 1_024),
        ("google/flan-t5-large", "FLAN-T5 Large", 512),
        ("mistralai/Mistral-7B-Instruct-v0.2", "Mistral 7B Instruct", 32_768),
    ),
    key_prefix="hf_",
    expected_hosts=("api-inference.huggingface.co",),
)

GEMINI = ProviderProfile(
    id="gemini",
    display_name="Google Gemini",
    description="Google Gemini models",
    wire_format=WireFormat.GEMINI_CONTENTS,
    auth_scheme=AuthScheme.QUERY_KEY,
    base_url="https://generativelanguage.googleapis.com/v1beta",
    completion_path="/models/{model}:generateContent",
    stream_path="/models/{model}:streamGenerateContent",
    stream_params={"alt": "sse"},
    default_model="gemini-pro",
    models=_models(
        ("gemini-pro", "Gemini Pro", 32_760),
        ("gemini-pro-vision", "Gemini Pro Vision", 16_384),
        ("gemini-1.5-pro", "Gemini 1.5 Pro", 1_048_576),
        ("gemini-1.5-flash", "Gemini 1.5 Flash", 1_048_576),
    ),
    warn_unknown_models=True,
    expected_hosts=("generativelanguage.googleapis.com",),
)

LOCAL = ProviderProfile(
    id="local",
    display_name="Local server",
    description="OpenAI-compatible server on this machine (Ollama, LM Studio)",
    category=ProviderCategory.LOCAL,
    wire_format=WireFormat.OPENAI_CHAT,
    auth_scheme=AuthScheme.NONE,
    base_url="http://localhost:11434/v1",
    completion_path="/chat/completions",
    default_model="local-model",
    lenient_probe=True,
    discover_models=True,
    models=_models(("local-model", "Local model", 4_096)),
)

CUSTOM = ProviderProfile(
    id="custom",
    display_name="Custom endpoint",
    description="User-supplied REST endpoint taking {prompt, max_tokens, temperature}",
    category=ProviderCategory.CUSTOM,
    wire_format=WireFormat.GENERIC,
    auth_scheme=AuthScheme.BEARER,
    base_url=None,
    completion_path="",
    probe_path="",
    lenient_probe=True,
    default_model="default",
)

BUILTIN_PROFILES: tuple[ProviderProfile, ...] = (
    OPENAI,
    OPENROUTER,
    ANTHROPIC,
    COHERE,
    HUGGINGFACE,
    GEMINI,
    LOCAL,
    CUSTOM,
)
