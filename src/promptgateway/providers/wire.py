"""Request building and response extraction for each provider wire format.

Every supported backend speaks one of a closed set of wire formats.  Each
format owns a :class:`WireCodec`: a table of plain functions that build the
request body, pull text and usage out of a response, and pull the incremental
text out of one streaming frame, or the error a provider reports inside a
stream.  The same extractors serve both the non-streaming and the streaming
path.

Extraction never raises: a missing field yields ``""`` (or zero usage).
Shape problems are reported separately by :func:`validate_response`, which
raises :class:`~promptgateway.providers.errors.NoContentError`, so a model
that genuinely returned nothing can be told apart from a payload of the wrong
shape.
"""

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from promptgateway.providers.errors import NoContentError, ValidationError
from promptgateway.providers.models import FrameError, ResolvedOptions, Usage


class WireFormat(StrEnum):
    OPENAI_CHAT = "openai_chat"
    ANTHROPIC_MESSAGES = "anthropic_messages"
    COHERE_CHAT = "cohere_chat"
    HUGGINGFACE_INFERENCE = "huggingface_inference"
    GEMINI_CONTENTS = "gemini_contents"
    GENERIC = "generic"


# Provider ids whose wire format is known without a registry lookup.
PROVIDER_FORMATS: dict[str, WireFormat] = {
    "openai": WireFormat.OPENAI_CHAT,
    "openrouter": WireFormat.OPENAI_CHAT,
    "local": WireFormat.OPENAI_CHAT,
    "anthropic": WireFormat.ANTHROPIC_MESSAGES,
    "cohere": WireFormat.COHERE_CHAT,
    "huggingface": WireFormat.HUGGINGFACE_INFERENCE,
    "gemini": WireFormat.GEMINI_CONTENTS,
}


# ---------------------------------------------------------------------------
# Nested lookup
# ---------------------------------------------------------------------------


def dig(data: Any, *path: str | int) -> Any:
    """Follow *path* through nested dicts and lists, returning ``None`` as
    soon as a step is missing or of the wrong type."""
    current = data
    for step in path:
        if isinstance(step, int):
            if not isinstance(current, list) or not -len(current) <= step < len(current):
                return None
            current = current[step]
        else:
            if not isinstance(current, Mapping):
                return None
            current = current.get(step)
        if current is None:
            return None
    return current


def _text(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _count(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return 0
    return max(0, int(value))


def _usage(prompt: Any, completion: Any, total: Any = None) -> Usage:
    prompt_tokens = _count(prompt)
    completion_tokens = _count(completion)
    total_tokens = _count(total) or prompt_tokens + completion_tokens
    return Usage(
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        total_tokens=total_tokens,
    )


def _error_object(frame: Any) -> FrameError | None:
    """Read a top-level ``error`` member, as OpenAI, OpenRouter, Gemini and
    Hugging Face send it."""
    error = dig(frame, "error")
    if isinstance(error, str) and error:
        return FrameError(message=error)
    if not isinstance(error, Mapping):
        return None
    kind = dig(error, "type") or dig(error, "status") or dig(error, "code")
    return FrameError(
        message=_text(dig(error, "message")) or "stream aborted by provider",
        type=None if kind is None else str(kind),
    )


# ---------------------------------------------------------------------------
# OpenAI-shaped chat completions (OpenAI, OpenRouter, local servers)
# ---------------------------------------------------------------------------


def _openai_body(prompt: str, options: ResolvedOptions, stream: bool) -> dict[str, Any]:
    return {
        "model": options.model,
        "messages": [{"role": "user", "content": prompt}],
        "max_tokens": options.max_tokens,
        "temperature": options.temperature,
        "stream": stream,
    }


def _openai_text(body: Any) -> str:
    return _text(dig(body, "choices", 0, "message", "content"))


def _openai_usage(body: Any) -> Usage:
    return _usage(
        dig(body, "usage", "prompt_tokens"),
        dig(body, "usage", "completion_tokens"),
        dig(body, "usage", "total_tokens"),
    )


def _openai_delta(frame: Any) -> str:
    return _text(dig(frame, "choices", 0, "delta", "content"))


def _openai_has_content(body: Any) -> bool:
    choices = dig(body, "choices")
    return isinstance(choices, list) and len(choices) > 0


# ---------------------------------------------------------------------------
# Anthropic messages
# ---------------------------------------------------------------------------


def _anthropic_body(prompt: str, options: ResolvedOptions, stream: bool) -> dict[str, Any]:
    return {
        "model": options.model,
        "max_tokens": options.max_tokens,
        "messages": [{"role": "user", "content": prompt}],
        "temperature": options.temperature,
        "stream": stream,
    }


def _anthropic_text(body: Any) -> str:
    return _text(dig(body, "content", 0, "text"))


def _anthropic_usage(body: Any) -> Usage:
    return _usage(dig(body, "usage", "input_tokens"), dig(body, "usage", "output_tokens"))


def _anthropic_delta(frame: Any) -> str:
    if dig(frame, "type") != "content_block_delta":
        return ""
    return _text(dig(frame, "delta", "text"))


def _anthropic_terminal(frame: Any) -> bool:
    return dig(frame, "type") == "message_stop"


def _anthropic_error(frame: Any) -> FrameError | None:
    if dig(frame, "type") != "error":
        return None
    return _error_object(frame) or FrameError(message="stream aborted by provider", type="error")


def _anthropic_has_content(body: Any) -> bool:
    content = dig(body, "content")
    return isinstance(content, list) and len(content) > 0


# ---------------------------------------------------------------------------
# Cohere chat
# ---------------------------------------------------------------------------


def _cohere_body(prompt: str, options: ResolvedOptions, stream: bool) -> dict[str, Any]:
    return {
        "model": options.model,
        "message": prompt,
        "max_tokens": options.max_tokens,
        "temperature": options.temperature,
        "stream": stream,
    }


def _cohere_text(body: Any) -> str:
    return _text(dig(body, "text"))


def _cohere_usage(body: Any) -> Usage:
    return _usage(
        dig(body, "meta", "billed_units", "input_tokens"),
        dig(body, "meta", "billed_units", "output_tokens"),
    )


def _cohere_delta(frame: Any) -> str:
    if dig(frame, "event_type") != "text-generation":
        return ""
    return _text(dig(frame, "text"))


def _cohere_has_content(body: Any) -> bool:
    return isinstance(dig(body, "text"), str)


# ---------------------------------------------------------------------------
# Hugging Face inference
# ---------------------------------------------------------------------------


def _huggingface_body(prompt: str, options: ResolvedOptions, stream: bool) -> dict[str, Any]:
    return {
        "inputs": prompt,
        "parameters": {
            "max_new_tokens": options.max_tokens,
            "temperature": options.temperature,
            "do_sample": options.temperature > 0,
            "return_full_text": False,
        },
    }


def _huggingface_text(body: Any) -> str:
    if isinstance(body, list):
        return _text(dig(body, 0, "generated_text"))
    return _text(dig(body, "generated_text"))


def _huggingface_has_content(body: Any) -> bool:
    if isinstance(body, list):
        return len(body) > 0
    return isinstance(dig(body, "generated_text"), str)


# ---------------------------------------------------------------------------
# Gemini generateContent
# ---------------------------------------------------------------------------


def _gemini_body(prompt: str, options: ResolvedOptions, stream: bool) -> dict[str, Any]:
    return {
        "contents": [{"role": "user", "parts": [{"text": prompt}]}],
        "generationConfig": {
            "maxOutputTokens": options.max_tokens,
            "temperature": options.temperature,
        },
    }


def _gemini_text(body: Any) -> str:
    return _text(dig(body, "candidates", 0, "content", "parts", 0, "text"))


def _gemini_usage(body: Any) -> Usage:
    return _usage(
        dig(body, "usageMetadata", "promptTokenCount"),
        dig(body, "usageMetadata", "candidatesTokenCount"),
        dig(body, "usageMetadata", "totalTokenCount"),
    )


def _gemini_has_content(body: Any) -> bool:
    candidates = dig(body, "candidates")
    return isinstance(candidates, list) and len(candidates) > 0


# ---------------------------------------------------------------------------
# Generic REST fallback for user-supplied endpoints
# ---------------------------------------------------------------------------


def _generic_body(prompt: str, options: ResolvedOptions, stream: bool) -> dict[str, Any]:
    return {
        "prompt": prompt,
        "max_tokens": options.max_tokens,
        "temperature": options.temperature,
        "stream": stream,
    }


def _generic_text(body: Any) -> str:
    for key in ("text", "response", "output"):
        value = dig(body, key)
        if isinstance(value, str) and value:
            return value
    return ""


def _generic_delta(frame: Any) -> str:
    return _generic_text(frame) or _openai_delta(frame)


def _generic_has_content(body: Any) -> bool:
    return isinstance(body, Mapping) and any(
        isinstance(body.get(key), str) for key in ("text", "response", "output")
    )


def _no_usage(body: Any) -> Usage:
    return Usage()


def _never_terminal(frame: Any) -> bool:
    return False


@dataclass(frozen=True)
class WireCodec:
    """Mapping functions for one wire format."""

    build_body: Callable[[str, ResolvedOptions, bool], dict[str, Any]]
    extract_text: Callable[[Any], str]
    extract_usage: Callable[[Any], Usage]
    extract_delta: Callable[[Any], str]
    has_content: Callable[[Any], bool]
    is_terminal: Callable[[Any], bool] = _never_terminal
    extract_error: Callable[[Any], FrameError | None] = _error_object


CODECS: dict[WireFormat, WireCodec] = {
    WireFormat.OPENAI_CHAT: WireCodec(
        build_body=_openai_body,
        extract_text=_openai_text,
        extract_usage=_openai_usage,
        extract_delta=_openai_delta,
        has_content=_openai_has_content,
    ),
    WireFormat.ANTHROPIC_MESSAGES: WireCodec(
        build_body=_anthropic_body,
        extract_text=_anthropic_text,
        extract_usage=_anthropic_usage,
        extract_delta=_anthropic_delta,
        has_content=_anthropic_has_content,
        is_terminal=_anthropic_terminal,
        extract_error=_anthropic_error,
    ),
    WireFormat.COHERE_CHAT: WireCodec(
        build_body=_cohere_body,
        extract_text=_cohere_text,
        extract_usage=_cohere_usage,
        extract_delta=_cohere_delta,
        has_content=_cohere_has_content,
    ),
    WireFormat.HUGGINGFACE_INFERENCE: WireCodec(
        build_body=_huggingface_body,
        extract_text=_huggingface_text,
        extract_usage=_no_usage,
        extract_delta=_huggingface_text,
        has_content=_huggingface_has_content,
    ),
    WireFormat.GEMINI_CONTENTS: WireCodec(
        build_body=_gemini_body,
        extract_text=_gemini_text,
        extract_usage=_gemini_usage,
        extract_delta=_gemini_text,
        has_content=_gemini_has_content,
    ),
    WireFormat.GENERIC: WireCodec(
        build_body=_generic_body,
        extract_text=_generic_text,
        extract_usage=_openai_usage,
        extract_delta=_generic_delta,
        has_content=_generic_has_content,
    ),
}


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def wire_format_for(provider: str | WireFormat) -> WireFormat:
    """Resolve a provider id (or a format) to its wire format.

    Unknown ids fall back to :attr:`WireFormat.GENERIC`.
    """
    if isinstance(provider, WireFormat):
        return provider
    return PROVIDER_FORMATS.get(provider.lower(), WireFormat.GENERIC)


def codec_for(provider: str | WireFormat) -> WireCodec:
    return CODECS[wire_format_for(provider)]


def build_request(
    provider: str | WireFormat,
    prompt: str,
    options: ResolvedOptions,
    stream: bool = False,
) -> dict[str, Any]:
    """Return a ready-to-send JSON body for *provider*."""
    return codec_for(provider).build_body(prompt, options, stream)


def extract_text(body: Any, provider: str | WireFormat) -> str:
    """Return the generated text in *body*, or ``""`` if it is absent."""
    try:
        return codec_for(provider).extract_text(body)
    except (TypeError, ValueError, KeyError, IndexError, AttributeError):
        return ""


def extract_usage(body: Any, provider: str | WireFormat) -> Usage:
    try:
        return codec_for(provider).extract_usage(body)
    except (TypeError, ValueError, KeyError, IndexError, AttributeError):
        return Usage()


def extract_delta(frame: Any, provider: str | WireFormat) -> str:
    """Return the incremental text carried by one streaming frame."""
    try:
        return codec_for(provider).extract_delta(frame)
    except (TypeError, ValueError, KeyError, IndexError, AttributeError):
        return ""


def is_terminal_frame(frame: Any, provider: str | WireFormat) -> bool:
    return codec_for(provider).is_terminal(frame)


def extract_error(frame: Any, provider: str | WireFormat) -> FrameError | None:
    """Return the error a streaming frame reports, or ``None`` for a normal frame."""
    try:
        return codec_for(provider).extract_error(frame)
    except (TypeError, ValueError, KeyError, IndexError, AttributeError):
        return None


def validate_response(body: Any, provider: str | WireFormat) -> None:
    """Raise if *body* is not a usable completion payload.

    Raises:
        ValidationError: The payload embeds a provider ``error`` object.
        NoContentError: The payload has no content container for this format.
    """
    provider_id = provider.value if isinstance(provider, WireFormat) else provider
    if body is None or body == {} or body == []:
        raise NoContentError("The provider returned an empty response.", provider=provider_id)

    if isinstance(body, Mapping):
        error = body.get("error")
        if error:
            message = dig(error, "message") if isinstance(error, Mapping) else error
            raise ValidationError(
                "The provider rejected the request.",
                provider=provider_id,
                detail=str(message),
            )
        errors = body.get("errors")
        if isinstance(errors, list) and errors:
            raise ValidationError(
                "The provider rejected the request.",
                provider=provider_id,
                detail=", ".join(str(dig(e, "message") or e) for e in errors),
            )

    if not codec_for(provider).has_content(body):
        raise NoContentError(
            "The provider response contained no content.",
            provider=provider_id,
            detail=f"no content container for {wire_format_for(provider).value}",
        )
