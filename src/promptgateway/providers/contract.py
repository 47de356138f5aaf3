"""The capability set every resolved provider exposes to callers."""

import asyncio
from collections.abc import AsyncIterable, Mapping
from typing import Any, Protocol, runtime_checkable

from promptgateway.providers.models import (
    AuthResult,
    ConfigValidation,
    GenerationOptions,
    ModelInfo,
    NormalizedResult,
    ProviderConfig,
)


@runtime_checkable
class ProviderContract(Protocol):
    """Uniform contract over every backend.

    ``authenticate`` never raises for provider-side failures: it returns an
    :class:`AuthResult` with ``success=False`` so callers can show a
    recoverable state.  ``stream`` returns a lazy, single-use async iterable
    of text deltas.
    """

    async def authenticate(
        self, credentials: ProviderConfig | Mapping[str, Any] | None = None
    ) -> AuthResult: ...

    async def generate(
        self,
        prompt: str,
        options: GenerationOptions | None = None,
        *,
        cancel: asyncio.Event | None = None,
    ) -> NormalizedResult: ...

    def stream(
        self,
        prompt: str,
        options: GenerationOptions | None = None,
        *,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterable[str]: ...

    def validate_config(
        self, config: ProviderConfig | Mapping[str, Any] | None = None
    ) -> ConfigValidation: ...

    async def describe_models(self) -> list[ModelInfo]: ...
