from fastapi import FastAPI, UploadFile, File, HTTPException, Form, Request
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from typing import List, Optional
import uvicorn
import os
import sys
import math
import logging
import time
import uuid
from pathlib import Path
from dotenv import load_dotenv

# Add current directory to path to find services module
sys.path.insert(0, str(Path(__file__).parent))

from services.config import GenerationSettings
from services.errors import AllProvidersFailed, CooldownActive, DesignError, InvalidRequest, SuggestionNotFound
from services.image_normalize import normalize_upload
from services.models import CustomerDetails, DesignRequest, ImageInput, StylePreferences
from services.orchestrator import DesignOrchestrator
from services.prompts import form_options
from services.studio import DesignSession, SessionRegistry

load_dotenv()

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    registry = getattr(app.state, "registry", None)
    if registry is not None:
        await registry.orchestrator.aclose()


app = FastAPI(title="Tailora Design API", lifespan=lifespan)
app.state.registry = None

# Configure CORS
# Format: comma-separated list, e.g., "https://app.example.com,https://www.example.com"
allowed_origins_str = os.getenv("ALLOWED_ORIGINS", "")
if allowed_origins_str:
    allowed_origins = [origin.strip() for origin in allowed_origins_str.split(",") if origin.strip()]
else:
    # Default: allow the local dev servers
    allowed_origins = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Requested-With", "X-Session-Id", "X-Request-Id"],
    expose_headers=["X-Request-Id", "X-Session-Id", "Retry-After"],
)

# File upload security limits
MAX_FILE_SIZE = int(os.getenv("MAX_FILE_SIZE", 10 * 1024 * 1024))  # 10MB default
ALLOWED_IMAGE_TYPES = {"image/jpeg", "image/jpg", "image/png", "image/webp"}
ALLOWED_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp"}
DESIGN_RATE_LIMIT = int(os.getenv("DESIGN_RATE_LIMIT", 10))  # requests per minute per IP

_rate_buckets: dict[str, tuple[int, float]] = {}


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or uuid.uuid4().hex
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-Id"] = request_id
    return response


def check_rate_limit(key: str, limit: int, window_seconds: int) -> bool:
    """
    Simple best-effort in-memory rate limiter (per-instance).
    Returns True if allowed, False if rate-limited.
    """
    now = time.time()
    # Drop expired windows so the table only holds recently active clients.
    for stale_key in [k for k, (_, exp) in _rate_buckets.items() if exp <= now]:
        del _rate_buckets[stale_key]
    count, expires_at = _rate_buckets.get(key, (0, 0.0))
    if expires_at <= now:
        _rate_buckets[key] = (1, now + window_seconds)
        return True
    if count >= limit:
        return False
    _rate_buckets[key] = (count + 1, expires_at)
    return True


def get_client_ip(request: Request) -> str:
    xff = request.headers.get("x-forwarded-for")
    if xff:
        return xff.split(",")[0].strip() or "unknown"
    if request.headers.get("x-real-ip"):
        return request.headers["x-real-ip"]
    return request.client.host if request.client else "unknown"


def validate_image_file(file: UploadFile) -> tuple[bool, str]:
    """Validate that uploaded file is a supported image"""
    if not file.content_type or file.content_type.lower() not in ALLOWED_IMAGE_TYPES:
        return False, f"Invalid file type. Allowed types: {', '.join(sorted(ALLOWED_IMAGE_TYPES))}"

    if file.filename:
        file_ext = Path(file.filename).suffix.lower()
        if file_ext and file_ext not in ALLOWED_EXTENSIONS:
            return False, f"Invalid file extension. Allowed: {', '.join(sorted(ALLOWED_EXTENSIONS))}"

    return True, ""


def get_registry() -> SessionRegistry:
    """Builds the provider stack from the environment on first use."""
    if app.state.registry is None:
        settings = GenerationSettings.from_env()
        app.state.registry = SessionRegistry(DesignOrchestrator.from_settings(settings))
    return app.state.registry


def get_session(request: Request) -> tuple[str, DesignSession]:
    session_id = request.headers.get("X-Session-Id") or f"ip:{get_client_ip(request)}"
    return session_id, get_registry().get(session_id)


async def read_image(file: Optional[UploadFile], label: str) -> Optional[ImageInput]:
    if file is None:
        return None
    is_valid, error_msg = validate_image_file(file)
    if not is_valid:
        raise HTTPException(status_code=422, detail=f"{label.capitalize()} validation failed: {error_msg}")

    image_bytes = await file.read()
    if len(image_bytes) > MAX_FILE_SIZE:
        raise HTTPException(
            status_code=413,
            detail=f"{label.capitalize()} too large. Maximum size: {MAX_FILE_SIZE / (1024*1024):.1f}MB"
        )
    if not image_bytes:
        return None
    return normalize_upload(image_bytes, label)


def parse_inspirations(values: Optional[List[str]]) -> List[str]:
    """Accepts repeated form fields and/or comma-separated values."""
    tags = []
    for value in values or []:
        tags.extend(t.strip() for t in value.split(",") if t.strip())
    return tags


async def build_design_request(
    fabric_image: Optional[UploadFile],
    customer_image: Optional[UploadFile],
    body_size: str,
    body_nature: str,
    inspirations: Optional[List[str]],
    garment_type: str,
    embellishment: Optional[str],
) -> DesignRequest:
    return DesignRequest(
        fabric_image=await read_image(fabric_image, "fabric image"),
        customer_image=await read_image(customer_image, "customer photo"),
        customer_details=CustomerDetails(body_size=body_size, body_nature=body_nature),
        style_preferences=StylePreferences(
            inspirations=parse_inspirations(inspirations),
            garment_type=garment_type or "Any",
            embellishment=embellishment or None,
        ),
    )


def to_http_exception(error: DesignError, session: DesignSession) -> HTTPException:
    if isinstance(error, CooldownActive):
        return HTTPException(
            status_code=429,
            detail=error.message,
            headers={"Retry-After": str(math.ceil(error.remaining_s))},
        )
    if isinstance(error, SuggestionNotFound):
        return HTTPException(status_code=404, detail=error.message)
    if isinstance(error, InvalidRequest):
        return HTTPException(status_code=422, detail=error.message)
    if isinstance(error, AllProvidersFailed):
        if error.rate_limited:
            wait_s = math.ceil(session.cooldown.remaining()) or math.ceil(session.cooldown.duration_s)
            return HTTPException(
                status_code=429,
                detail=f"All design services are busy right now. Please wait {wait_s} seconds and try again.",
                headers={"Retry-After": str(wait_s)},
            )
        return HTTPException(
            status_code=502,
            detail="We couldn't generate a design right now. Please try again.",
        )
    return HTTPException(status_code=500, detail=error.message)


def design_response(suggestion, trail, session_id: str) -> dict:
    return {
        "suggestion": suggestion.to_dict(),
        "attempts": [result.to_dict() for result in trail],
        "sessionId": session_id,
    }


@app.get("/")
async def root():
    return {"message": "Tailora Design API is running"}


@app.get("/api/options")
async def options():
    return form_options()


@app.get("/api/designs")
async def list_designs(request: Request):
    session_id, session = get_session(request)
    return {
        "sessionId": session_id,
        "suggestions": [s.to_dict() for s in session.suggestions],
        "refining": session.refining_ids(),
        "cooldownSeconds": math.ceil(session.cooldown.remaining()),
    }


@app.post("/api/designs")
async def create_design(
    request: Request,
    fabric_image: Optional[UploadFile] = File(None),
    customer_image: Optional[UploadFile] = File(None),
    body_size: str = Form(""),
    body_nature: str = Form(""),
    inspirations: Optional[List[str]] = Form(None),
    garment_type: str = Form("Any"),
    embellishment: Optional[str] = Form(None),
):
    """
    Generates one new design suggestion from the fabric, the customer photo and
    the style preferences. The suggestion is added to the caller's session.
    """
    ip = get_client_ip(request)
    if not check_rate_limit(f"designs:{ip}", limit=DESIGN_RATE_LIMIT, window_seconds=60):
        raise HTTPException(status_code=429, detail="Rate limit exceeded. Please try again shortly.")

    session_id, session = get_session(request)
    try:
        design_request = await build_design_request(
            fabric_image, customer_image, body_size, body_nature, inspirations, garment_type, embellishment
        )
        logger.info(f"Design request received (session {session_id})")
        suggestion, trail = await session.generate_with_trace(design_request)
        return design_response(suggestion, trail, session_id)
    except HTTPException:
        raise
    except DesignError as e:
        logger.warning(f"Design request failed: {type(e).__name__}: {e.message}")
        raise to_http_exception(e, session)
    except Exception as e:
        logger.error(f"Error in design endpoint: {type(e).__name__}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Unexpected error while generating the design.")


@app.post("/api/designs/{suggestion_id}/refine")
async def refine_design(
    request: Request,
    suggestion_id: str,
    instruction: str = Form(""),
    fabric_image: Optional[UploadFile] = File(None),
    customer_image: Optional[UploadFile] = File(None),
    body_size: str = Form(""),
    body_nature: str = Form(""),
    inspirations: Optional[List[str]] = Form(None),
    garment_type: str = Form("Any"),
    embellishment: Optional[str] = Form(None),
):
    """
    Refines an existing suggestion with a free-text instruction. The refined
    design replaces the original under the same id.
    """
    ip = get_client_ip(request)
    if not check_rate_limit(f"designs:{ip}", limit=DESIGN_RATE_LIMIT, window_seconds=60):
        raise HTTPException(status_code=429, detail="Rate limit exceeded. Please try again shortly.")

    session_id, session = get_session(request)
    try:
        design_request = await build_design_request(
            fabric_image, customer_image, body_size, body_nature, inspirations, garment_type, embellishment
        )
        logger.info(f"Refinement request received for {suggestion_id} (session {session_id})")
        suggestion, trail = await session.refine_with_trace(suggestion_id, instruction, design_request)
        return design_response(suggestion, trail, session_id)
    except HTTPException:
        raise
    except DesignError as e:
        logger.warning(f"Refinement of {suggestion_id} failed: {type(e).__name__}: {e.message}")
        raise to_http_exception(e, session)
    except Exception as e:
        logger.error(f"Error in refine endpoint: {type(e).__name__}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Unexpected error while refining the design.")


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", 8000)),
        reload=True,
        timeout_keep_alive=600,  # generation can take a while
    )
