import io
import logging
from typing import Optional, Tuple

from PIL import Image, ImageOps, UnidentifiedImageError

from .errors import InvalidRequest
from .models import ImageInput

logger = logging.getLogger(__name__)

# Photos are sent inline to the providers; keep them small enough to stay fast.
DEFAULT_MAX_DIMENSION = 1024
DEFAULT_JPEG_QUALITY = 85
DEFAULT_MAX_BYTES = 1_500_000
MIN_DIMENSION = 512
MIN_JPEG_QUALITY = 65


def normalize_image_bytes(
    image_bytes: bytes,
    *,
    max_dimension: int = DEFAULT_MAX_DIMENSION,
    jpeg_quality: int = DEFAULT_JPEG_QUALITY,
) -> Tuple[bytes, str, Optional[int], Optional[int]]:
    """
    Decode an image, apply EXIF orientation, downscale so the longest side is at most
    max_dimension, and re-encode as JPEG (transparent areas flattened onto white).

    Returns: (normalized_bytes, mime_type, width, height)
    """
    if not image_bytes:
        raise ValueError("Empty image")

    with Image.open(io.BytesIO(image_bytes)) as im:
        im = ImageOps.exif_transpose(im)
        width, height = im.size

        longest = max(width, height)
        if longest > max_dimension:
            scale = max_dimension / float(longest)
            new_w = max(1, int(round(width * scale)))
            new_h = max(1, int(round(height * scale)))
            im = im.resize((new_w, new_h), Image.Resampling.LANCZOS)
            width, height = im.size

        has_alpha = im.mode in ("RGBA", "LA") or (im.mode == "P" and "transparency" in (im.info or {}))
        if has_alpha:
            rgba = im.convert("RGBA")
            rgb = Image.new("RGB", rgba.size, (255, 255, 255))
            rgb.paste(rgba, mask=rgba.split()[-1])
        else:
            rgb = im.convert("RGB")

        out = io.BytesIO()
        rgb.save(out, format="JPEG", quality=jpeg_quality, optimize=True)
        return out.getvalue(), "image/jpeg", width, height


def normalize_image_bytes_with_budget(
    image_bytes: bytes,
    *,
    max_bytes: int = DEFAULT_MAX_BYTES,
    max_dimension: int = DEFAULT_MAX_DIMENSION,
    min_dimension: int = MIN_DIMENSION,
    jpeg_quality: int = DEFAULT_JPEG_QUALITY,
    min_jpeg_quality: int = MIN_JPEG_QUALITY,
) -> Tuple[bytes, str, Optional[int], Optional[int]]:
    """
    Normalize an image and keep the output <= max_bytes by progressively
    downscaling and reducing quality (best-effort).
    """
    if max_bytes <= 0:
        raise ValueError("max_bytes must be > 0")

    dim = max_dimension
    q = jpeg_quality
    best = None

    for _ in range(8):
        best = normalize_image_bytes(image_bytes, max_dimension=dim, jpeg_quality=q)
        if len(best[0]) <= max_bytes:
            return best
        if dim == min_dimension and q == min_jpeg_quality:
            break

        dim = max(min_dimension, int(dim * 0.85))
        q = max(min_jpeg_quality, q - 6)

    logger.warning(f"Could not get image under {max_bytes} bytes; sending {len(best[0])} bytes")
    return best


def normalize_upload(image_bytes: bytes, label: str = "image") -> ImageInput:
    """Turns raw upload bytes into the ImageInput the design core expects."""
    try:
        data, mime_type, width, height = normalize_image_bytes_with_budget(image_bytes)
    except (UnidentifiedImageError, ValueError, OSError) as e:
        raise InvalidRequest(f"The {label} could not be read as an image: {e}")
    logger.info(f"Normalized {label}: {len(image_bytes)} -> {len(data)} bytes ({width}x{height})")
    return ImageInput(data=data, mime_type=mime_type)
