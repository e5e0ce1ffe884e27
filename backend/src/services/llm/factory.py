import asyncio
import logging
from typing import Dict, Type

from backend.src.core.config import ChatConfig
from backend.src.core.errors import ProviderConfigError
from backend.src.services.llm.base import ChatProvider
from backend.src.services.llm.providers import GoogleProvider, GroqProvider, OpenAIProvider
from backend.src.services.llm.retry import RetryPolicy

logger = logging.getLogger(__name__)

# Closed set. Adding a backend means adding a class here.
PROVIDER_REGISTRY: Dict[str, Type[ChatProvider]] = {
    OpenAIProvider.name: OpenAIProvider,
    GroqProvider.name: GroqProvider,
    GoogleProvider.name: GoogleProvider,
}


def retry_policy_from(config: ChatConfig) -> RetryPolicy:
    return RetryPolicy(
        retries=config.max_retries,
        base_delay=config.retry_base_delay,
        max_delay=config.retry_max_delay,
    )


def get_llm_provider(config: ChatConfig, *, sleep=asyncio.sleep) -> ChatProvider:
    """
    Provider factory.
    Fails at construction time (startup) on an unknown name or a missing key,
    never later on the first chat call.
    """
    name = (config.provider or "").lower()
    provider_cls = PROVIDER_REGISTRY.get(name)
    if provider_cls is None:
        raise ProviderConfigError(
            f"Unknown AI provider: {config.provider!r}",
            details={"known_providers": sorted(PROVIDER_REGISTRY)},
        )
    if not config.api_key:
        raise ProviderConfigError(f"{name} API key is missing in configuration")

    provider = provider_cls(
        config.api_key,
        config.model,
        base_url=config.base_url,
        temperature=config.temperature,
        max_tokens=config.max_tokens,
        request_timeout=config.request_timeout,
        retry_policy=retry_policy_from(config),
        turn_timeout=config.turn_timeout,
        sleep=sleep,
    )
    logger.info("Loading AI provider: %s -> %s", provider.name, provider.model)
    return provider
