import logging
import uuid
from typing import Optional

from .models import DesignRequest, DesignResult, DesignSuggestion, ImageResult

logger = logging.getLogger(__name__)


def new_suggestion_id() -> str:
    return f"style-{uuid.uuid4().hex}"


def build_suggestion(
    design: DesignResult,
    request: DesignRequest,
    *,
    image: Optional[ImageResult] = None,
    image_provider: Optional[str] = None,
    suggestion_id: Optional[str] = None,
) -> DesignSuggestion:
    """
    Merges the design text and the (best-effort) sketch into the caller-facing suggestion.

    A missing image is not an error: the suggestion comes back with sketch_url None.
    Refinements keep the id they were given; initial generations mint a new one.
    """
    if request.is_refinement and not suggestion_id:
        raise ValueError("A refinement must carry the id of the suggestion it replaces")

    sketch = design.image
    if sketch is not None:
        image_provider = design.provider
    else:
        sketch = image
    if sketch is None:
        logger.warning(f"Design '{design.text.style_name}' has no sketch; returning text only")

    return DesignSuggestion(
        id=suggestion_id or new_suggestion_id(),
        style_name=design.text.style_name,
        description=design.text.description,
        occasions=design.text.occasions,
        sketch_url=sketch.sketch_url if sketch is not None else None,
        refinement_instruction=request.refinement.instruction.strip() if request.refinement else None,
        provider=design.provider,
        image_provider=image_provider,
    )
