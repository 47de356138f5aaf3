# scripts/smoke_providers.py
import asyncio
import os
from pathlib import Path

from dotenv import load_dotenv

# Resolve .env relative to the repo root so this script works from any cwd.
load_dotenv(Path(__file__).parent.parent / ".env", override=True)

from promptgateway.providers import (  # noqa: E402
    Gateway,
    GenerationOptions,
    ProviderError,
    build_default_registry,
)

PROVIDERS_TO_TEST = [
    {"id": "openai", "required_env": "OPENAI_API_KEY"},
    {"id": "anthropic", "required_env": "ANTHROPIC_API_KEY"},
    {"id": "gemini", "required_env": "GEMINI_API_KEY"},
    {"id": "openrouter", "required_env": "OPENROUTER_API_KEY"},
    {"id": "cohere", "required_env": "COHERE_API_KEY"},
    {"id": "huggingface", "required_env": "HUGGINGFACE_API_KEY"},
]


async def smoke_provider(gateway: Gateway, provider_info: dict) -> None:
    """Authenticate, then stream one short completion."""
    api_key = os.getenv(provider_info["required_env"])
    if not api_key:
        print(f"⏭️  Skipping {provider_info['id']} (no API key)")
        return

    registry = build_default_registry()
    handle = registry.resolve(provider_info["id"], {"api_key": api_key}, gateway=gateway)
    print(f"\n🧪 Testing {handle.descriptor.display_name}...")

    auth = await handle.authenticate()
    if not auth.success:
        print(f"   ❌ Authentication: {auth.error}")
        return

    try:
        print("   Response: ", end="")
        async for delta in handle.stream(
            "Say 'Hello from the prompt gateway!' in one sentence.",
            GenerationOptions(max_tokens=40),
        ):
            print(delta, end="", flush=True)
        print(f"\n   ✅ {handle.descriptor.display_name} working!")
    except ProviderError as e:
        print(f"\n   ❌ {e.category}: {e.message}")


async def main():
    print("=" * 60)
    print("Provider Smoke Test")
    print("=" * 60)

    async with Gateway() as gateway:
        for provider_info in PROVIDERS_TO_TEST:
            await smoke_provider(gateway, provider_info)

    print("\n" + "=" * 60)
    print("Testing complete!")
    print("=" * 60)


if __name__ == "__main__":
    asyncio.run(main())
