"""
Pytest configuration and shared fixtures
"""
import io
import os
import sys
from pathlib import Path
from typing import List, Optional

import pytest
from fastapi.testclient import TestClient

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

# Set test environment variables before importing app
os.environ.setdefault("GEMINI_API_KEY", "test-key")
os.environ.setdefault("DESIGN_PROVIDERS", "gemini")

from main import app, _rate_buckets
from services.config import GenerationSettings, ProviderSettings
from services.errors import ErrorKind, ProviderError
from services.models import (
    CustomerDetails,
    DesignRequest,
    DesignResult,
    DesignText,
    ImageInput,
    ImageResult,
    StylePreferences,
)
from services.orchestrator import DesignOrchestrator
from services.providers import Provider
from services.studio import SessionRegistry


class FakeProvider(Provider):
    """
    Scripted adapter. Each call consumes the next outcome; the last one repeats.
    An ErrorKind outcome is raised as a ProviderError of that kind.
    """

    def __init__(self, name: str, *, design=None, illustrate=None, accepts_images: bool = False):
        super().__init__(ProviderSettings(name=name, model="fake", endpoint="memory://", api_key="fake-key"))
        self.name = name
        self.accepts_images = accepts_images
        self.design_outcomes = list(design or [])
        self.illustrate_outcomes = list(illustrate or [])
        self.design_calls: List = []
        self.illustrate_calls: List = []

    def _next(self, outcomes: list, op: str):
        if not outcomes:
            raise AssertionError(f"{self.name}.{op} was not expected to be called")
        outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
        if isinstance(outcome, ErrorKind):
            raise ProviderError(self.name, outcome, f"{outcome.value} from {self.name}")
        return outcome

    async def design(self, brief):
        self.design_calls.append(brief)
        outcome = self._next(self.design_outcomes, "design")
        if isinstance(outcome, DesignText):
            return DesignResult(text=outcome, provider=self.name)
        return outcome

    async def illustrate(self, prompt, images=()):
        self.illustrate_calls.append(prompt)
        return self._next(self.illustrate_outcomes, "illustrate")

    @property
    def calls(self) -> int:
        return len(self.design_calls) + len(self.illustrate_calls)


def make_image(width: int = 512, height: int = 512, fmt: str = "PNG", color=(200, 120, 40)) -> bytes:
    from PIL import Image as PILImage  # type: ignore

    img = PILImage.new("RGB", (width, height), color=color)
    buf = io.BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


GOWN = DesignText(
    style_name="Ankara-Victorian Fusion Gown",
    description="A floor-length Ankara gown with a Victorian corset bodice and ruffled sleeves.",
    occasions="Weddings",
)
SKETCH = ImageResult(mime_type="image/png", data_b64="iVBORw0KGgo=")


@pytest.fixture
def fake_provider():
    """Factory for scripted providers"""
    return FakeProvider


@pytest.fixture
def gown():
    return GOWN


@pytest.fixture
def sketch():
    return SKETCH


@pytest.fixture
def fast_settings():
    """Settings with no backoff waits and a 60s cooldown"""
    return GenerationSettings(providers=(), request_timeout_s=5.0, max_attempts=3, backoff_base_s=0.0, cooldown_s=60.0)


@pytest.fixture
def design_request():
    return DesignRequest(
        fabric_image=ImageInput(data=b"fabric-bytes", mime_type="image/jpeg"),
        customer_image=ImageInput(data=b"customer-bytes", mime_type="image/jpeg"),
        customer_details=CustomerDetails(body_size="Medium", body_nature="Hourglass"),
        style_preferences=StylePreferences(inspirations=["European"], garment_type="Gown (Long)"),
    )


@pytest.fixture
def sample_image_bytes():
    """Create sample image bytes for testing"""
    return make_image()


@pytest.fixture
def fake_registry(fake_provider, gown, sketch, fast_settings):
    """Installs a registry backed by one scripted provider into the app"""
    provider = fake_provider("gemini", design=[gown], illustrate=[sketch], accepts_images=True)
    registry = SessionRegistry(DesignOrchestrator([provider], fast_settings))
    app.state.registry = registry
    registry.provider = provider
    yield registry
    app.state.registry = None


@pytest.fixture
def client(fake_registry):
    """Create a test client for the FastAPI app"""
    _rate_buckets.clear()
    return TestClient(app)
