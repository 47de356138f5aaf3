"""Explicit registry of provider descriptors.

There is no module-level registry: callers build one (usually with
:func:`build_default_registry`) and pass it where it is needed, so tests and
embedders can register their own descriptors without touching global state.
"""

import asyncio
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

import structlog

from promptgateway.providers.adapters import (
    BUILTIN_PROFILES,
    HttpAdapter,
    ProviderCategory,
    ProviderProfile,
)
from promptgateway.providers.errors import ConfigurationError
from promptgateway.providers.gateway import Gateway, ProviderHandle
from promptgateway.providers.models import AuthResult, ProviderConfig

_log = structlog.get_logger(__name__)

AdapterFactory = Callable[[ProviderConfig], HttpAdapter]


@dataclass(frozen=True)
class ProviderDescriptor:
    id: str
    display_name: str
    category: ProviderCategory
    adapter_factory: AdapterFactory
    description: str = ""
    supports_streaming: bool = True

    @classmethod
    def from_profile(cls, profile: ProviderProfile) -> "ProviderDescriptor":
        def factory(config: ProviderConfig) -> HttpAdapter:
            return HttpAdapter(profile, config)

        return cls(
            id=profile.id,
            display_name=profile.display_name,
            category=profile.category,
            adapter_factory=factory,
            description=profile.description,
            supports_streaming=profile.supports_streaming,
        )


class ProviderRegistry:
    """Maps provider ids to descriptors and resolves them into handles."""

    def __init__(self) -> None:
        self._descriptors: dict[str, ProviderDescriptor] = {}
        self._default: str | None = None
        self._fallbacks: list[str] = []

    def register(self, descriptor: ProviderDescriptor) -> None:
        """Add *descriptor*.

        Raises:
            ConfigurationError: If the id is already registered.
        """
        if descriptor.id in self._descriptors:
            raise ConfigurationError(
                f"Provider {descriptor.id!r} is already registered", provider=descriptor.id
            )
        self._descriptors[descriptor.id] = descriptor
        _log.debug("provider_registered", provider=descriptor.id)

    def unregister(self, provider_id: str) -> bool:
        if self._default == provider_id:
            self._default = None
        self._fallbacks = [p for p in self._fallbacks if p != provider_id]
        return self._descriptors.pop(provider_id, None) is not None

    def has(self, provider_id: str) -> bool:
        return provider_id in self._descriptors

    def get(self, provider_id: str) -> ProviderDescriptor:
        try:
            return self._descriptors[provider_id]
        except KeyError:
            raise ConfigurationError(
                f"Unknown provider: {provider_id!r}", provider=provider_id
            ) from None

    def descriptors(self) -> list[ProviderDescriptor]:
        return list(self._descriptors.values())

    def resolve(
        self,
        provider_id: str,
        config: ProviderConfig | Mapping[str, Any] | None = None,
        *,
        gateway: Gateway,
    ) -> ProviderHandle:
        """Bind a registered provider to *config* and *gateway*.

        Raises:
            ConfigurationError: Unknown id, or a config that fails its schema.
        """
        descriptor = self.get(provider_id)
        try:
            parsed = ProviderConfig.parse(config or {})
        except ConfigurationError as exc:
            exc.provider = provider_id
            raise
        return ProviderHandle(descriptor, descriptor.adapter_factory(parsed), gateway)

    # ------------------------------------------------------------------
    # Default and fallback providers
    # ------------------------------------------------------------------

    @property
    def default(self) -> str | None:
        return self._default

    @property
    def fallbacks(self) -> list[str]:
        return list(self._fallbacks)

    def set_default(self, provider_id: str) -> None:
        """Make *provider_id* the provider used when a caller names none.

        Raises:
            ConfigurationError: If the id is not registered.
        """
        self.get(provider_id)
        self._default = provider_id
        _log.info("default_provider_set", provider=provider_id)

    def set_fallbacks(self, provider_ids: Iterable[str]) -> None:
        """Replace the ordered fallback chain.

        Raises:
            ConfigurationError: If any id is not registered; the chain is left unchanged.
        """
        ids = list(dict.fromkeys(provider_ids))
        for provider_id in ids:
            self.get(provider_id)
        self._fallbacks = ids
        _log.info("fallback_providers_set", providers=ids)

    def resolve_default(
        self,
        config: ProviderConfig | Mapping[str, Any] | None = None,
        *,
        gateway: Gateway,
    ) -> ProviderHandle:
        if self._default is None:
            raise ConfigurationError("No default provider is configured")
        return self.resolve(self._default, config, gateway=gateway)

    def resolve_with_fallback(
        self,
        provider_id: str,
        config: ProviderConfig | Mapping[str, Any] | None = None,
        *,
        gateway: Gateway,
    ) -> ProviderHandle:
        """Resolve *provider_id*, else the fallbacks in order, else the default.

        Only resolution failures (unknown id, invalid config) move down the
        chain. The same *config* is offered to every candidate.

        Raises:
            ConfigurationError: The primary's error when no candidate resolves.
        """
        try:
            return self.resolve(provider_id, config, gateway=gateway)
        except ConfigurationError as primary_error:
            candidates = [p for p in self._fallbacks if p != provider_id]
            if self._default is not None and self._default not in candidates:
                candidates.append(self._default)
            for candidate in candidates:
                if candidate == provider_id:
                    continue
                try:
                    handle = self.resolve(candidate, config, gateway=gateway)
                except ConfigurationError as exc:
                    _log.debug("fallback_unusable", provider=candidate, error=exc.message)
                    continue
                _log.warning(
                    "provider_fallback_used",
                    requested=provider_id,
                    provider=candidate,
                    error=primary_error.message,
                )
                return handle
            raise

    # ------------------------------------------------------------------
    # Bulk operations
    # ------------------------------------------------------------------

    async def authenticate_all(
        self,
        configs: Mapping[str, ProviderConfig | Mapping[str, Any]] | None = None,
        *,
        gateway: Gateway,
    ) -> dict[str, AuthResult]:
        """Check credentials for every provider in *configs* concurrently.

        With no *configs* every registered provider is tried with an empty
        config. Resolution failures are reported as unsuccessful results.
        """
        if configs is None:
            configs = {provider_id: {} for provider_id in self._descriptors}

        async def check(provider_id: str, config) -> AuthResult:
            try:
                handle = self.resolve(provider_id, config, gateway=gateway)
            except ConfigurationError as exc:
                return AuthResult(success=False, error=exc.message)
            return await handle.authenticate()

        ids = list(configs)
        results = await asyncio.gather(*(check(p, configs[p]) for p in ids))
        outcome = dict(zip(ids, results))
        _log.info(
            "providers_authenticated",
            succeeded=sorted(p for p, r in outcome.items() if r.success),
            failed=sorted(p for p, r in outcome.items() if not r.success),
        )
        return outcome

    def stats(self) -> dict[str, Any]:
        return {
            "total_providers": len(self._descriptors),
            "default_provider": self._default,
            "fallback_providers": list(self._fallbacks),
            "provider_ids": sorted(self._descriptors),
        }


def build_default_registry() -> ProviderRegistry:
    """Return a registry holding every built-in provider."""
    registry = ProviderRegistry()
    for profile in BUILTIN_PROFILES:
        registry.register(ProviderDescriptor.from_profile(profile))
    return registry
