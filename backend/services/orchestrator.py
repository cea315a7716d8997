import logging
from typing import Awaitable, Callable, List, Optional, Sequence, Set, Tuple

from .config import GenerationSettings
from .errors import AllProvidersFailed, ErrorKind, InvalidRequest, ProviderError
from .models import (
    DesignRequest,
    DesignResult,
    DesignSuggestion,
    ImageResult,
    ProviderFailure,
    ProviderResult,
    ProviderSuccess,
)
from .normalize import build_suggestion
from .prompts import Brief, build_brief, build_sketch_prompt
from .providers import Provider, build_providers

logger = logging.getLogger(__name__)

PHASE_DESIGN = "design"
PHASE_SKETCH = "sketch"

# A provider that refused us for these reasons during the design phase is not asked for a sketch.
SKIP_SKETCH_KINDS = {ErrorKind.RATE_LIMITED, ErrorKind.UNAUTHORIZED}

Trail = List[ProviderResult]


class DesignOrchestrator:
    """
    Runs one logical generation (or refinement) across the configured providers.

    Providers are tried strictly one at a time in priority order. The design
    phase stops at the first provider that returns usable style text; if that
    provider did not also return a picture, the sketch phase walks the list
    again for a best-effort illustration. Only exhaustion of the design phase
    fails the call (AllProvidersFailed).
    """

    def __init__(self, providers: Sequence[Provider], settings: Optional[GenerationSettings] = None):
        self.providers = list(providers)
        self.settings = settings or GenerationSettings()
        # Providers whose credentials were rejected stay out of rotation until
        # a new orchestrator is built from fresh settings.
        self._revoked: Set[str] = set()

    @classmethod
    def from_settings(cls, settings: GenerationSettings) -> "DesignOrchestrator":
        return cls(build_providers(settings), settings)

    @property
    def provider_names(self) -> List[str]:
        return [p.name for p in self.providers]

    @property
    def revoked_providers(self) -> Set[str]:
        return set(self._revoked)

    async def aclose(self) -> None:
        for provider in self.providers:
            await provider.aclose()

    async def generate(self, request: DesignRequest) -> DesignSuggestion:
        suggestion, _ = await self.generate_with_trace(request)
        return suggestion

    async def refine(self, request: DesignRequest, suggestion_id: str) -> DesignSuggestion:
        suggestion, _ = await self.refine_with_trace(request, suggestion_id)
        return suggestion

    async def generate_with_trace(self, request: DesignRequest) -> Tuple[DesignSuggestion, Trail]:
        if request.is_refinement:
            raise InvalidRequest("Use refine() for requests that carry a refinement instruction")
        return await self._run(request, suggestion_id=None)

    async def refine_with_trace(self, request: DesignRequest, suggestion_id: str) -> Tuple[DesignSuggestion, Trail]:
        if not request.is_refinement:
            raise InvalidRequest("A refinement instruction is required to refine a design")
        if not (suggestion_id or "").strip():
            raise InvalidRequest("A suggestion id is required to refine a design")
        return await self._run(request, suggestion_id=suggestion_id)

    async def _run(self, request: DesignRequest, suggestion_id: Optional[str]) -> Tuple[DesignSuggestion, Trail]:
        # Raises InvalidRequest before any provider is contacted.
        brief = build_brief(request)
        trail: Trail = []

        design = await self._design_phase(brief, trail)

        image, image_provider = None, None
        if design.image is None:
            image, image_provider = await self._sketch_phase(design, brief, trail)

        suggestion = build_suggestion(
            design,
            request,
            image=image,
            image_provider=image_provider,
            suggestion_id=suggestion_id,
        )
        logger.info(
            f"{'Refinement' if request.is_refinement else 'Generation'} complete: {suggestion.id} "
            f"(text: {suggestion.provider}, sketch: {suggestion.image_provider or 'none'}, attempts: {len(trail)})"
        )
        return suggestion, trail

    async def _attempt(self, provider: Provider, phase: str, call: Callable[[], Awaitable]) -> ProviderResult:
        if provider.name in self._revoked:
            logger.info(f"Skipping {provider.name} ({phase}): credentials were rejected earlier")
            return ProviderFailure(
                provider=provider.name,
                phase=phase,
                kind=ErrorKind.UNAUTHORIZED,
                message="Credentials were rejected earlier in this process",
            )

        logger.info(f"Trying {provider.name} for {phase}")
        try:
            value = await call()
        except ProviderError as e:
            if e.kind == ErrorKind.UNAUTHORIZED:
                self._revoked.add(provider.name)
            logger.warning(f"{provider.name} {phase} failed: {e.kind.value} - {e.message}")
            return ProviderFailure(
                provider=provider.name,
                phase=phase,
                kind=e.kind,
                message=e.message,
                retry_after_s=e.retry_after_s,
            )

        if phase == PHASE_DESIGN:
            return ProviderSuccess(provider=provider.name, phase=phase, design=value)
        return ProviderSuccess(provider=provider.name, phase=phase, image=value)

    async def _design_phase(self, brief: Brief, trail: Trail) -> DesignResult:
        for provider in self.providers:
            result = await self._attempt(provider, PHASE_DESIGN, lambda: provider.design(brief))
            trail.append(result)
            if isinstance(result, ProviderSuccess):
                return result.design

        failures = [r for r in trail if isinstance(r, ProviderFailure)]
        error = AllProvidersFailed(failures)
        logger.error(
            f"{error.message}; tried {', '.join(f.provider for f in failures) or 'no providers'}"
            f"{' (rate limited)' if error.rate_limited else ''}"
        )
        raise error

    async def _sketch_phase(
        self, design: DesignResult, brief: Brief, trail: Trail
    ) -> Tuple[Optional[ImageResult], Optional[str]]:
        refused = {
            r.provider for r in trail if isinstance(r, ProviderFailure) and r.kind in SKIP_SKETCH_KINDS
        }
        for provider in self.providers:
            if provider.name in refused:
                continue
            prompt = build_sketch_prompt(design.text, brief, with_images=provider.accepts_images)
            images = brief.images if provider.accepts_images else ()
            result = await self._attempt(provider, PHASE_SKETCH, lambda: provider.illustrate(prompt, images))
            trail.append(result)
            if isinstance(result, ProviderSuccess):
                return result.image, provider.name

        logger.warning(f"No provider produced a sketch for '{design.text.style_name}'")
        return None, None
