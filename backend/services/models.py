import base64
from dataclasses import dataclass, replace
from typing import Any, Dict, Optional, Tuple, Union

from .errors import ErrorKind


@dataclass(frozen=True)
class ImageInput:
    """Raw image bytes plus the declared media type, as uploaded by the form."""

    data: bytes
    mime_type: str = "image/jpeg"

    def to_base64(self) -> str:
        return base64.b64encode(self.data).decode("utf-8")

    def to_data_uri(self) -> str:
        return f"data:{self.mime_type};base64,{self.to_base64()}"

    def __repr__(self) -> str:
        return f"ImageInput(mime_type={self.mime_type!r}, size={len(self.data)})"


@dataclass(frozen=True)
class CustomerDetails:
    body_size: str
    body_nature: str


@dataclass(frozen=True)
class StylePreferences:
    inspirations: Tuple[str, ...]
    garment_type: str = "Any"
    embellishment: Optional[str] = None

    def __post_init__(self):
        # Lists coming from form parsing are frozen so requests stay hashable/immutable.
        if not isinstance(self.inspirations, tuple):
            object.__setattr__(self, "inspirations", tuple(self.inspirations))


@dataclass(frozen=True)
class Refinement:
    prior_description: str
    instruction: str


@dataclass(frozen=True)
class DesignRequest:
    """Immutable input to one generation or refinement call."""

    fabric_image: Optional[ImageInput]
    customer_image: Optional[ImageInput]
    customer_details: CustomerDetails
    style_preferences: StylePreferences
    refinement: Optional[Refinement] = None

    @property
    def is_refinement(self) -> bool:
        return self.refinement is not None

    def with_refinement(self, prior_description: str, instruction: str) -> "DesignRequest":
        return replace(self, refinement=Refinement(prior_description=prior_description, instruction=instruction))


@dataclass(frozen=True)
class DesignText:
    style_name: str
    description: str
    occasions: str


@dataclass(frozen=True)
class ImageResult:
    """
    A generated illustration. Backends either return inline base64 bytes
    (Gemini, OpenAI, Stability) or a hosted URL (DeepAI).
    """

    mime_type: str = "image/png"
    data_b64: Optional[str] = None
    url: Optional[str] = None

    @property
    def sketch_url(self) -> Optional[str]:
        if self.data_b64:
            return f"data:{self.mime_type};base64,{self.data_b64}"
        return self.url

    def __repr__(self) -> str:
        size = len(self.data_b64) if self.data_b64 else 0
        return f"ImageResult(mime_type={self.mime_type!r}, b64_chars={size}, url={self.url!r})"


@dataclass(frozen=True)
class DesignResult:
    text: DesignText
    provider: str
    image: Optional[ImageResult] = None


@dataclass(frozen=True)
class ProviderSuccess:
    provider: str
    phase: str
    design: Optional[DesignResult] = None
    image: Optional[ImageResult] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"provider": self.provider, "phase": self.phase, "outcome": "success"}


@dataclass(frozen=True)
class ProviderFailure:
    provider: str
    phase: str
    kind: ErrorKind
    message: str
    retry_after_s: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "phase": self.phase,
            "outcome": self.kind.value,
            "message": self.message,
        }


ProviderResult = Union[ProviderSuccess, ProviderFailure]


@dataclass(frozen=True)
class DesignSuggestion:
    """The entity the caller renders. Refinements replace it whole under the same id."""

    id: str
    style_name: str
    description: str
    occasions: str
    sketch_url: Optional[str] = None
    refinement_instruction: Optional[str] = None
    provider: Optional[str] = None
    image_provider: Optional[str] = None

    @property
    def has_sketch(self) -> bool:
        return bool(self.sketch_url)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "styleName": self.style_name,
            "description": self.description,
            "occasions": self.occasions,
            "sketchUrl": self.sketch_url,
            "refinementInstruction": self.refinement_instruction,
            "provider": self.provider,
            "imageProvider": self.image_provider,
        }
