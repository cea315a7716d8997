import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from .errors import InvalidRequest
from .models import DesignRequest, DesignText, ImageInput

logger = logging.getLogger(__name__)

# Nigerian styles are always part of the fusion; the form lets the user pick the rest.
BASE_INSPIRATION = "Nigerian"

INSPIRATION_POOL: Dict[str, str] = {
    "Nigerian": "Ankara prints, Aso-Oke weaving, Adire patterns, Buba/Iro styles, Agbada embroidery.",
    "Middle Eastern": "Abaya silhouettes, Kaftan elegance, intricate embroidery.",
    "East Asian": "Chinese Qipao collars, Japanese Kimono sleeves, Korean Hanbok layering.",
    "European": "Victorian-era corsetry/ruffles, sleek English tailoring, French haute couture draping.",
    "South Asian": "Saree draping, Lehenga skirts, intricate Zari work.",
}

GARMENT_TYPES = [
    "Any",
    "Long Gown",
    "Short Gown",
    "Skirt",
    "Skirt and Top",
    "Trousers and Blouse",
]

EMBELLISHMENT_TYPES = [
    "Normal",
    "Beading",
    "Sequins",
    "Threadwork",
    "Lace Appliqué",
]

ANY_GARMENT = "Any"
NO_EMBELLISHMENT = "Normal"

ANY_GARMENT_INSTRUCTION = (
    "The output can be a **long gown, a short dress, a skirt and top set, or trousers and a blouse.**"
)

DEFAULT_OCCASIONS = "Cultural celebrations, formal events, evening parties"

# Response contract shared by every text backend (schema-constrained or free text).
DESIGN_RESPONSE_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "styleName": {
            "type": "STRING",
            "description": "A creative, descriptive name that reflects the style's fused nature (e.g., 'Ankara-Kimono Fusion Jumpsuit').",
        },
        "description": {
            "type": "STRING",
            "description": "A detailed description of the style, highlighting the fused cultural elements.",
        },
        "occasions": {
            "type": "STRING",
            "description": "A list of suitable occasions for wearing this outfit (e.g., 'Weddings, formal events, evening parties').",
        },
    },
    "required": ["styleName", "description", "occasions"],
}

JSON_OUTPUT_INSTRUCTION = (
    'Return ONLY a JSON object with the keys "styleName", "description" and "occasions". '
    "Do not include markdown formatting or explanations."
)


@dataclass(frozen=True)
class Brief:
    """
    Everything a provider adapter needs for one call, rendered up front so
    adapters never see the raw request.

    text: full generation brief for multimodal text backends.
    image_prompt: compact prompt for text-only image backends.
    images: (fabric, customer) attachments for backends that accept them.
    template: description used by image-only backends, which cannot write one.
    """

    text: str
    image_prompt: str
    images: Tuple[ImageInput, ...]
    template: DesignText
    is_refinement: bool = False


def form_options() -> Dict[str, List[str]]:
    return {
        "inspirations": [k for k in INSPIRATION_POOL if k != BASE_INSPIRATION],
        "garmentTypes": list(GARMENT_TYPES),
        "embellishments": list(EMBELLISHMENT_TYPES),
    }


def _clean(value: Optional[str]) -> str:
    return (value or "").strip()


def _ordered_inspirations(tags) -> List[str]:
    """De-duplicates tags in first-seen order, dropping blanks."""
    seen = []
    for tag in tags:
        tag = _clean(tag)
        if tag and tag not in seen:
            seen.append(tag)
    return seen


def validate_request(request: DesignRequest) -> None:
    """Raises InvalidRequest unless both images, both body fields and one inspiration are present."""
    missing = []
    if request.fabric_image is None or not request.fabric_image.data:
        missing.append("fabric image")
    if request.customer_image is None or not request.customer_image.data:
        missing.append("customer photo")
    if not _clean(request.customer_details.body_size):
        missing.append("body size")
    if not _clean(request.customer_details.body_nature):
        missing.append("body nature")
    if not _ordered_inspirations(request.style_preferences.inspirations):
        missing.append("at least one cultural inspiration")
    if request.refinement is not None:
        if not _clean(request.refinement.instruction):
            missing.append("refinement instruction")
        if not _clean(request.refinement.prior_description):
            missing.append("prior design description")

    if missing:
        raise InvalidRequest("Please fill out all fields: " + ", ".join(missing) + ".")


def _fusion_inspirations(request: DesignRequest) -> List[str]:
    selected = _ordered_inspirations(request.style_preferences.inspirations)
    return _ordered_inspirations([BASE_INSPIRATION] + selected)


def _partner_inspirations(request: DesignRequest) -> List[str]:
    return [t for t in _fusion_inspirations(request) if t != BASE_INSPIRATION]


def _fusion_clause(request: DesignRequest) -> str:
    partners = _partner_inspirations(request)
    if not partners:
        return f"{BASE_INSPIRATION} fashion"
    return f"{BASE_INSPIRATION} fashion and {' & '.join(partners)} fashion"


def _inspiration_table(tags: List[str]) -> str:
    lines = []
    for tag in tags:
        motifs = INSPIRATION_POOL.get(tag)
        if motifs:
            lines.append(f"*   **{tag}:** {motifs}")
        else:
            lines.append(f"*   **{tag}:** draw on the signature silhouettes and motifs of this style.")
    return "\n".join(lines)


def _garment_instruction(garment_type: str) -> str:
    garment_type = _clean(garment_type)
    if not garment_type or garment_type == ANY_GARMENT:
        return ANY_GARMENT_INSTRUCTION
    return f"The output **must be a {garment_type}.**"


def _embellishment_instruction(embellishment: Optional[str]) -> str:
    embellishment = _clean(embellishment)
    if not embellishment or embellishment == NO_EMBELLISHMENT:
        return ""
    return f"\nEmbellish the garment with **{embellishment}**, applied tastefully so the fabric stays the focus."


def build_design_brief(request: DesignRequest) -> str:
    prefs = request.style_preferences
    details = request.customer_details
    tags = _fusion_inspirations(request)

    return f"""You are 'Tailora', a world-renowned creative partner for fashion designers, specializing in **cultural fusion design**. Your talent lies in blending traditional styles from different parts of the world to create stunning, unique, and modern garments.

**Your Task:**
Invent a novel fashion style by fusing elements from the following cultural styles: **{_fusion_clause(request)}**.
{_garment_instruction(prefs.garment_type)}{_embellishment_instruction(prefs.embellishment)}

**Inspiration Pool (You must use elements from these selected styles):**
{_inspiration_table(tags)}

**Inputs:**
1.  **Fabric Image:** The provided Nigerian fabric. This must be the centerpiece of the design.
2.  **Customer Image:** Use their skin complexion to guide flattering color accents.
3.  **Customer Details:**
    *   Body Size: {_clean(details.body_size)}
    *   Body Nature/Type: {_clean(details.body_nature)}

**Instructions:**
1.  **Combine elements creatively** from the selected cultural pools.
2.  Give the style a creative, descriptive name that reflects its fused nature.
3.  Every style you generate must be a fresh combination within the given constraints.
4.  Based on your design, provide the style details. The matching sketch must show a model with a complexion similar to the customer's, clearly showing the fabric's design.

{JSON_OUTPUT_INSTRUCTION}"""


def build_refinement_brief(request: DesignRequest) -> str:
    prefs = request.style_preferences
    details = request.customer_details
    refinement = request.refinement
    tags = _fusion_inspirations(request)

    return f"""You are 'Tailora', a world-renowned creative partner for fashion designers, specializing in **cultural fusion design**.

**Your Task:**
Refine an existing design. Keep its identity (name theme, cultural fusion and fabric centerpiece) and apply the designer's instruction.
{_garment_instruction(prefs.garment_type)}{_embellishment_instruction(prefs.embellishment)}

**Existing Design:**
{_clean(refinement.prior_description)}

**Designer's Instruction:**
{_clean(refinement.instruction)}

**Inspiration Pool (stay within these styles):**
{_inspiration_table(tags)}

**Inputs:**
1.  **Fabric Image:** The provided Nigerian fabric. It must remain the centerpiece of the design.
2.  **Customer Image:** Use their skin complexion to guide flattering color accents.
3.  **Customer Details:**
    *   Body Size: {_clean(details.body_size)}
    *   Body Nature/Type: {_clean(details.body_nature)}

**Instructions:**
1.  Apply the instruction precisely; change nothing else unless the instruction requires it.
2.  Update the style name only if the instruction changes the garment's character.
3.  Describe the refined design in full, not just the change.

{JSON_OUTPUT_INSTRUCTION}"""


def build_image_prompt(request: DesignRequest) -> str:
    """Short text-only prompt for image backends that cannot see the uploaded photos."""
    prefs = request.style_preferences
    details = request.customer_details
    tags = _fusion_inspirations(request)
    garment = _clean(prefs.garment_type)
    garment = "fashion outfit" if not garment or garment == ANY_GARMENT else garment

    prompt = (
        f"Professional fashion design sketch of a {garment} that fuses {', '.join(tags)} cultural aesthetics. "
        f"Body type: {_clean(details.body_nature)}. Size: {_clean(details.body_size)}. "
        "Vibrant Nigerian fabric print as the centerpiece, refined gold accents, full-length model on a neutral studio background."
    )
    embellishment = _clean(prefs.embellishment)
    if embellishment and embellishment != NO_EMBELLISHMENT:
        prompt += f" Embellished with {embellishment}."
    if request.refinement is not None:
        prompt += f" Design change: {_clean(request.refinement.instruction)}."
    return prompt


REFINEMENT_NOTE = "Refinement applied:"


def build_template_design(request: DesignRequest) -> DesignText:
    prefs = request.style_preferences
    partners = _partner_inspirations(request) or [BASE_INSPIRATION]
    garment = _clean(prefs.garment_type)
    garment = "Design" if not garment or garment == ANY_GARMENT else garment

    if request.refinement is not None:
        # Only the latest instruction is noted.
        prior = _clean(request.refinement.prior_description).split(f"\n\n{REFINEMENT_NOTE}", 1)[0].strip()
        description = f"{prior}\n\n{REFINEMENT_NOTE} {_clean(request.refinement.instruction)}"
        return DesignText(
            style_name=f"Refined {BASE_INSPIRATION} Fusion {garment}",
            description=description,
            occasions=DEFAULT_OCCASIONS,
        )

    noun = "garment" if garment == "Design" else garment.lower()
    description = (
        f"A {noun} that fuses {BASE_INSPIRATION} fabric with {' & '.join(partners)} influences, "
        f"tailored for a {_body_summary(request)} figure."
    )
    return DesignText(
        style_name=f"{BASE_INSPIRATION}-{partners[0]} Fusion {garment}",
        description=description,
        occasions=DEFAULT_OCCASIONS,
    )


def _body_summary(request: DesignRequest) -> str:
    details = request.customer_details
    return f"{_clean(details.body_size)} {_clean(details.body_nature)}".strip()


SKETCH_DESCRIPTION_CHARS = 800


def build_sketch_prompt(design: DesignText, brief: Brief, with_images: bool) -> str:
    """
    Prompt for the illustration step, written from the generated design so the
    picture matches the text. Backends that cannot see the photos get the
    compact fabric/body summary instead of references to attachments.
    """
    description = design.description.strip()
    if not with_images and len(description) > SKETCH_DESCRIPTION_CHARS:
        description = description[:SKETCH_DESCRIPTION_CHARS].rsplit(" ", 1)[0] + "..."

    prompt = f"Create a professional fashion design sketch of '{design.style_name}': {description}"
    if with_images:
        prompt += (
            "\n\nThe first attached image is the fabric; it must be clearly visible as the garment's main material. "
            "Show the design on a full-length model with a complexion similar to the person in the second attached image, "
            "on a neutral studio background."
        )
    else:
        prompt += "\n\n" + brief.image_prompt
    return prompt


def build_brief(request: DesignRequest) -> Brief:
    """
    Validates the request and renders every prompt variant for it.
    Pure: the same request always yields an identical Brief.
    """
    validate_request(request)
    text = build_refinement_brief(request) if request.is_refinement else build_design_brief(request)
    brief = Brief(
        text=text,
        image_prompt=build_image_prompt(request),
        images=(request.fabric_image, request.customer_image),
        template=build_template_design(request),
        is_refinement=request.is_refinement,
    )
    logger.debug(f"Built {'refinement' if brief.is_refinement else 'design'} brief ({len(text)} chars)")
    return brief
