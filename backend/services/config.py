import os
import logging
from dataclasses import dataclass, field
from typing import Optional, Tuple

logger = logging.getLogger(__name__)

# Priority order used when DESIGN_PROVIDERS is not set: the multimodal primary first,
# then the image-only fallbacks.
DEFAULT_PROVIDER_ORDER = ("gemini", "openai", "stability", "deepai")

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"
STABILITY_ENDPOINT = "https://api.stability.ai/v2beta/stable-image/generate/core"
DEEPAI_ENDPOINT = "https://api.deepai.org/api/text2img"


@dataclass(frozen=True)
class ProviderSettings:
    name: str
    model: str
    endpoint: str
    api_key: Optional[str] = None
    image_model: Optional[str] = None

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key)

    def __repr__(self) -> str:
        # Never print the key itself.
        return (
            f"ProviderSettings(name={self.name!r}, model={self.model!r}, endpoint={self.endpoint!r}, "
            f"image_model={self.image_model!r}, has_credentials={self.has_credentials})"
        )


@dataclass(frozen=True)
class GenerationSettings:
    """
    Process-wide configuration for the design core. Built once at startup
    (see from_env) and passed by reference to adapters and the orchestrator.
    """

    providers: Tuple[ProviderSettings, ...] = field(default_factory=tuple)
    request_timeout_s: float = 60.0
    max_attempts: int = 3
    backoff_base_s: float = 1.0
    cooldown_s: float = 60.0

    def provider(self, name: str) -> Optional[ProviderSettings]:
        for p in self.providers:
            if p.name == name:
                return p
        return None

    @property
    def provider_names(self) -> Tuple[str, ...]:
        return tuple(p.name for p in self.providers)

    @classmethod
    def from_env(cls) -> "GenerationSettings":
        order = _provider_order(os.getenv("DESIGN_PROVIDERS", ""))
        known = _known_providers()
        providers = tuple(known[name] for name in order)
        settings = cls(
            providers=providers,
            request_timeout_s=_float_env("GENERATION_TIMEOUT_S", 60.0),
            max_attempts=max(1, int(_float_env("GENERATION_MAX_ATTEMPTS", 3))),
            backoff_base_s=_float_env("GENERATION_BACKOFF_BASE_S", 1.0),
            cooldown_s=_float_env("GENERATION_COOLDOWN_S", 60.0),
        )
        missing = [p.name for p in providers if not p.has_credentials]
        if missing:
            logger.warning(f"No API key configured for providers: {', '.join(missing)}. Calls to them fail over to the next provider without a network request.")
        logger.info(f"Design providers in priority order: {', '.join(settings.provider_names) or '(none)'}")
        return settings


def _known_providers() -> dict:
    return {
        "gemini": ProviderSettings(
            name="gemini",
            model=os.getenv("GEMINI_TEXT_MODEL", "gemini-2.5-flash"),
            image_model=os.getenv("GEMINI_IMAGE_MODEL", "gemini-2.5-flash-image"),
            endpoint=os.getenv("GEMINI_BASE_URL", GEMINI_BASE_URL),
            api_key=os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY"),
        ),
        "openai": ProviderSettings(
            name="openai",
            model=os.getenv("OPENAI_IMAGE_MODEL", "gpt-image-1"),
            endpoint=os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1"),
            api_key=os.getenv("OPENAI_API_KEY"),
        ),
        "stability": ProviderSettings(
            name="stability",
            model=os.getenv("STABILITY_MODEL", "core"),
            endpoint=os.getenv("STABILITY_ENDPOINT", STABILITY_ENDPOINT),
            api_key=os.getenv("STABILITY_API_KEY"),
        ),
        "deepai": ProviderSettings(
            name="deepai",
            model="text2img",
            endpoint=os.getenv("DEEPAI_ENDPOINT", DEEPAI_ENDPOINT),
            api_key=os.getenv("DEEPAI_API_KEY"),
        ),
    }


def _provider_order(raw: str) -> Tuple[str, ...]:
    names = [n.strip().lower() for n in raw.split(",") if n.strip()] if raw else list(DEFAULT_PROVIDER_ORDER)
    order = []
    for name in names:
        if name not in DEFAULT_PROVIDER_ORDER:
            logger.warning(f"Unknown design provider {name!r} in DESIGN_PROVIDERS; skipping")
            continue
        if name not in order:
            order.append(name)
    return tuple(order)


def _float_env(key: str, default: float) -> float:
    raw = os.getenv(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Invalid value for {key}: {raw!r}. Using default {default}")
        return default
