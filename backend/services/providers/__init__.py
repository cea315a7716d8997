import logging
from typing import Dict, List, Optional, Type

import httpx

from ..config import GenerationSettings
from .base import ImageOnlyProvider, Provider, parse_design_text, strip_code_fences
from .deepai import DeepAIProvider
from .gemini import GeminiProvider
from .openai_images import OpenAIImageProvider
from .stability import StabilityProvider

logger = logging.getLogger(__name__)

PROVIDER_CLASSES: Dict[str, Type[Provider]] = {
    GeminiProvider.name: GeminiProvider,
    OpenAIImageProvider.name: OpenAIImageProvider,
    StabilityProvider.name: StabilityProvider,
    DeepAIProvider.name: DeepAIProvider,
}


def build_providers(settings: GenerationSettings, http_client: Optional[httpx.AsyncClient] = None) -> List[Provider]:
    """Instantiates one adapter per configured provider, preserving priority order."""
    providers: List[Provider] = []
    for provider_settings in settings.providers:
        cls = PROVIDER_CLASSES.get(provider_settings.name)
        if cls is None:
            logger.warning(f"No adapter for provider {provider_settings.name!r}; skipping")
            continue
        providers.append(
            cls(
                provider_settings,
                timeout_s=settings.request_timeout_s,
                max_attempts=settings.max_attempts,
                backoff_base_s=settings.backoff_base_s,
                http_client=http_client,
            )
        )
    return providers


__all__ = [
    "DeepAIProvider",
    "GeminiProvider",
    "ImageOnlyProvider",
    "OpenAIImageProvider",
    "PROVIDER_CLASSES",
    "Provider",
    "StabilityProvider",
    "build_providers",
    "parse_design_text",
    "strip_code_fences",
]
