"""Provider gateway.

Public surface area for the providers package.  Import from here rather than
from the individual submodules so internal structure can change freely.

Example::

    from promptgateway.providers import Gateway, GenerationOptions, build_default_registry

    registry = build_default_registry()
    async with Gateway() as gateway:
        handle = registry.resolve(
            "anthropic", {"api_key": "sk-ant-..."}, gateway=gateway
        )
        result = await handle.generate("Hello", GenerationOptions(max_tokens=200))
        print(result.text)
"""

from promptgateway.providers.adapters import (
    AuthScheme,
    HttpAdapter,
    ProviderCategory,
    ProviderProfile,
)
from promptgateway.providers.classifier import ErrorClassifier
from promptgateway.providers.contract import ProviderContract
from promptgateway.providers.errors import (
    AuthError,
    ConfigurationError,
    ErrorCategory,
    NetworkError,
    NoContentError,
    ProviderError,
    RateLimitError,
    ServerError,
    StreamConsumedError,
    UnknownProviderError,
    ValidationError,
)
from promptgateway.providers.gateway import Gateway, ProviderHandle
from promptgateway.providers.models import (
    AuthResult,
    ConfigValidation,
    FrameError,
    GenerationOptions,
    ModelInfo,
    NormalizedResult,
    ProviderConfig,
    RetryAttempt,
    StreamChunk,
    Usage,
)
from promptgateway.providers.ratelimit import SlidingWindowRateLimiter
from promptgateway.providers.registry import (
    ProviderDescriptor,
    ProviderRegistry,
    build_default_registry,
)
from promptgateway.providers.retry import RetryPolicy
from promptgateway.providers.streaming import DeltaStream, StreamDecoder
from promptgateway.providers.wire import WireFormat

__all__ = [
    # Models
    "ProviderConfig",
    "GenerationOptions",
    "NormalizedResult",
    "Usage",
    "StreamChunk",
    "FrameError",
    "RetryAttempt",
    "ModelInfo",
    "AuthResult",
    "ConfigValidation",
    # Gateway
    "ProviderContract",
    "ProviderDescriptor",
    "ProviderRegistry",
    "ProviderHandle",
    "ProviderProfile",
    "ProviderCategory",
    "AuthScheme",
    "HttpAdapter",
    "Gateway",
    "build_default_registry",
    "WireFormat",
    "SlidingWindowRateLimiter",
    "RetryPolicy",
    "StreamDecoder",
    "DeltaStream",
    "ErrorClassifier",
    # Errors
    "ErrorCategory",
    "ProviderError",
    "ValidationError",
    "NoContentError",
    "AuthError",
    "RateLimitError",
    "NetworkError",
    "ServerError",
    "UnknownProviderError",
    "ConfigurationError",
    "StreamConsumedError",
]
