"""
Adapter tests: every backend is driven through httpx.MockTransport or a
monkeypatched transport, so nothing leaves the process.
"""
import asyncio
import json

import httpx
import pytest

from services.config import ProviderSettings
from services.errors import ErrorKind, ProviderError
from services.orchestrator import DesignOrchestrator
from services.prompts import build_brief
from services.providers import (
    DeepAIProvider,
    GeminiProvider,
    OpenAIImageProvider,
    StabilityProvider,
    parse_design_text,
    strip_code_fences,
)

GEMINI = ProviderSettings(
    name="gemini",
    model="gemini-2.5-flash",
    image_model="gemini-2.5-flash-image",
    endpoint="https://gemini.test/v1beta/models",
    api_key="gemini-key",
)
OPENAI = ProviderSettings(name="openai", model="gpt-image-1", endpoint="https://openai.test/v1", api_key="sk-test")
STABILITY = ProviderSettings(name="stability", model="core", endpoint="https://stability.test/generate/core", api_key="sta-key")
DEEPAI = ProviderSettings(name="deepai", model="text2img", endpoint="https://deepai.test/api/text2img", api_key="dai-key")

DESIGN_JSON = {"styleName": "Ankara-Victorian Fusion Gown", "description": "A corseted Ankara gown.", "occasions": "Weddings"}


def _mock_client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _recording(responses):
    """Handler that replays responses in order (last one repeats) and records requests."""
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        response = responses[min(len(requests), len(responses)) - 1]
        if isinstance(response, Exception):
            raise response
        return response

    return handler, requests


def _provider(cls, settings, handler, **kwargs):
    kwargs.setdefault("backoff_base_s", 0.0)
    return cls(settings, http_client=_mock_client(handler), **kwargs)


def _gemini_text(text: str, finish_reason: str = "STOP") -> httpx.Response:
    return httpx.Response(200, json={"candidates": [{"finishReason": finish_reason, "content": {"parts": [{"text": text}]}}]})


# --- parsing helpers ---------------------------------------------------------


def test_strip_code_fences():
    assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_code_fences('```\n{"a": 1}```') == '{"a": 1}'
    assert strip_code_fences('{"a": 1}') == '{"a": 1}'


def test_parse_design_text_tolerates_fences_and_prose():
    fenced = parse_design_text("gemini", "```json\n" + json.dumps(DESIGN_JSON) + "\n```")
    assert fenced.style_name == "Ankara-Victorian Fusion Gown"

    chatty = parse_design_text("gemini", "Here is your design:\n" + json.dumps(DESIGN_JSON) + "\nEnjoy!")
    assert chatty.occasions == "Weddings"

    aliased = parse_design_text("gemini", json.dumps({"name": "Kimono Wrap", "description": "d", "occasions": ["Weddings", "Galas"]}))
    assert aliased.style_name == "Kimono Wrap"
    assert aliased.occasions == "Weddings, Galas"


@pytest.mark.parametrize(
    "raw",
    ["", "```json\n```", "not json at all", '{"styleName": "Only a name"}', "[1, 2, 3]"],
)
def test_parse_design_text_rejects_unusable_output(raw):
    with pytest.raises(ProviderError) as exc:
        parse_design_text("gemini", raw)
    assert exc.value.kind == ErrorKind.MALFORMED_RESPONSE
    assert exc.value.provider == "gemini"


# --- Gemini ---------------------------------------------------------------------


@pytest.mark.asyncio
async def test_gemini_design_sends_images_and_schema(design_request):
    handler, requests = _recording([_gemini_text("```json\n" + json.dumps(DESIGN_JSON) + "\n```")])
    provider = _provider(GeminiProvider, GEMINI, handler)

    result = await provider.design(build_brief(design_request))

    assert result.text.style_name == "Ankara-Victorian Fusion Gown"
    assert result.provider == "gemini"
    assert result.image is None
    request = requests[0]
    assert str(request.url) == "https://gemini.test/v1beta/models/gemini-2.5-flash:generateContent"
    assert request.headers["x-goog-api-key"] == "gemini-key"
    payload = json.loads(request.content)
    parts = payload["contents"][0]["parts"]
    assert [list(p.keys())[0] for p in parts] == ["inline_data", "inline_data", "text"]
    assert payload["generationConfig"]["responseMimeType"] == "application/json"
    assert payload["generationConfig"]["responseSchema"]["required"] == ["styleName", "description", "occasions"]


@pytest.mark.asyncio
async def test_gemini_retries_server_errors_then_succeeds(design_request):
    handler, requests = _recording(
        [
            httpx.Response(503, text="overloaded"),
            httpx.ConnectError("connection reset"),
            _gemini_text(json.dumps(DESIGN_JSON)),
        ]
    )
    provider = _provider(GeminiProvider, GEMINI, handler, max_attempts=3)

    result = await provider.design(build_brief(design_request))

    assert result.text.description == "A corseted Ankara gown."
    assert len(requests) == 3


@pytest.mark.asyncio
async def test_gemini_gives_up_after_max_attempts(design_request):
    handler, requests = _recording([httpx.Response(500, text="internal")])
    provider = _provider(GeminiProvider, GEMINI, handler, max_attempts=2)

    with pytest.raises(ProviderError) as exc:
        await provider.design(build_brief(design_request))
    assert exc.value.kind == ErrorKind.TRANSIENT
    assert len(requests) == 2


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response, kind",
    [
        (httpx.Response(429, headers={"retry-after": "12"}, json={"error": {"status": "RESOURCE_EXHAUSTED"}}), ErrorKind.RATE_LIMITED),
        (httpx.Response(400, json={"error": {"message": "API key not valid. Please pass a valid API key."}}), ErrorKind.UNAUTHORIZED),
        (httpx.Response(403, json={"error": {"status": "PERMISSION_DENIED"}}), ErrorKind.UNAUTHORIZED),
        (httpx.Response(400, json={"error": {"message": "Invalid JSON payload"}}), ErrorKind.MALFORMED_RESPONSE),
        (_gemini_text("I would rather not answer in JSON."), ErrorKind.MALFORMED_RESPONSE),
        (httpx.Response(200, json={"promptFeedback": {"blockReason": "SAFETY"}}), ErrorKind.MALFORMED_RESPONSE),
    ],
)
async def test_gemini_classifies_failures_without_retrying(design_request, response, kind):
    handler, requests = _recording([response])
    provider = _provider(GeminiProvider, GEMINI, handler, max_attempts=3)

    with pytest.raises(ProviderError) as exc:
        await provider.design(build_brief(design_request))
    assert exc.value.kind == kind
    assert len(requests) == 1
    if kind == ErrorKind.RATE_LIMITED:
        assert exc.value.retry_after_s == 12.0


@pytest.mark.asyncio
async def test_missing_credentials_fail_without_network(design_request):
    handler, requests = _recording([_gemini_text(json.dumps(DESIGN_JSON))])
    provider = _provider(GeminiProvider, ProviderSettings(name="gemini", model="m", endpoint="https://gemini.test"), handler)

    with pytest.raises(ProviderError) as exc:
        await provider.design(build_brief(design_request))
    assert exc.value.kind == ErrorKind.UNAUTHORIZED
    assert "GEMINI_API_KEY" in exc.value.message
    assert requests == []


@pytest.mark.asyncio
async def test_gemini_illustrate_uses_image_model(design_request):
    image_response = httpx.Response(
        200,
        json={"candidates": [{"content": {"parts": [{"text": "Here you go"}, {"inline_data": {"mime_type": "image/jpeg", "data": "/9j/4AAQ"}}]}}]},
    )
    handler, requests = _recording([image_response])
    provider = _provider(GeminiProvider, GEMINI, handler)
    brief = build_brief(design_request)

    image = await provider.illustrate("Draw the gown", brief.images)

    assert image.sketch_url == "data:image/jpeg;base64,/9j/4AAQ"
    assert str(requests[0].url).endswith("/gemini-2.5-flash-image:generateContent")
    payload = json.loads(requests[0].content)
    assert payload["generationConfig"]["responseModalities"] == ["TEXT", "IMAGE"]
    assert payload["contents"][0]["parts"][-1] == {"text": "Draw the gown"}


@pytest.mark.asyncio
async def test_gemini_illustrate_safety_block_is_not_retried():
    handler, requests = _recording([_gemini_text("blocked", finish_reason="IMAGE_SAFETY")])
    provider = _provider(GeminiProvider, GEMINI, handler, max_attempts=3)

    with pytest.raises(ProviderError) as exc:
        await provider.illustrate("Draw the gown")
    assert exc.value.kind == ErrorKind.MALFORMED_RESPONSE
    assert len(requests) == 1


@pytest.mark.asyncio
async def test_gemini_illustrate_without_image_part_is_malformed():
    handler, _ = _recording([_gemini_text("I can only describe it.")])
    provider = _provider(GeminiProvider, GEMINI, handler, max_attempts=1)

    with pytest.raises(ProviderError) as exc:
        await provider.illustrate("Draw the gown")
    assert exc.value.kind == ErrorKind.MALFORMED_RESPONSE


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [
        {"candidates": [{"content": "blocked"}]},
        {"candidates": ["oops"]},
        {"candidates": {"0": {"content": {"parts": []}}}},
        {"promptFeedback": "x", "candidates": [{"content": {"parts": [{"text": "{}"}]}}]},
        {"candidates": [{"content": {"parts": [{"inline_data": "not-a-dict"}, {"text": 42}]}}]},
    ],
)
async def test_gemini_unexpected_shapes_fall_through_to_next_provider(design_request, fake_provider, gown, fast_settings, body):
    handler, requests = _recording([httpx.Response(200, json=body)])
    gemini = _provider(GeminiProvider, GEMINI, handler, max_attempts=1)
    fallback = fake_provider("openai", design=[gown], illustrate=[ErrorKind.TRANSIENT])
    orchestrator = DesignOrchestrator([gemini, fallback], fast_settings)

    suggestion, trail = await orchestrator.generate_with_trace(design_request)

    assert suggestion.provider == "openai"
    assert suggestion.sketch_url is None
    assert all(r.kind == ErrorKind.MALFORMED_RESPONSE for r in trail if r.provider == "gemini")
    assert trail[0].provider == "gemini"
    assert trail[0].kind == ErrorKind.MALFORMED_RESPONSE
    assert len(fallback.design_calls) == 1


@pytest.mark.asyncio
async def test_gemini_illustrate_with_odd_inline_data_is_malformed():
    body = {"candidates": [{"content": {"parts": [{"inlineData": {"data": 123}}, {"inline_data": ["x"]}]}}]}
    handler, _ = _recording([httpx.Response(200, json=body)])
    provider = _provider(GeminiProvider, GEMINI, handler, max_attempts=1)

    with pytest.raises(ProviderError) as exc:
        await provider.illustrate("Draw the gown")
    assert exc.value.kind == ErrorKind.MALFORMED_RESPONSE


@pytest.mark.asyncio
async def test_attempt_timeout_is_transient_and_retried(design_request):
    requests = []

    async def slow_handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        await asyncio.sleep(1.0)
        return _gemini_text(json.dumps(DESIGN_JSON))

    provider = _provider(GeminiProvider, GEMINI, slow_handler, max_attempts=2, timeout_s=0.05)

    with pytest.raises(ProviderError) as exc:
        await provider.design(build_brief(design_request))
    assert exc.value.kind == ErrorKind.TRANSIENT
    assert "timed out" in exc.value.message
    assert len(requests) == 2


# --- OpenAI ---------------------------------------------------------------------


@pytest.mark.asyncio
async def test_openai_design_pairs_template_text_with_generated_image(design_request):
    handler, requests = _recording([httpx.Response(200, json={"created": 1700000000, "data": [{"b64_json": "iVBORw0KGgo="}]})])
    provider = _provider(OpenAIImageProvider, OPENAI, handler)
    brief = build_brief(design_request)

    result = await provider.design(brief)

    assert result.provider == "openai"
    assert result.text == brief.template
    assert result.image.sketch_url == "data:image/png;base64,iVBORw0KGgo="
    request = requests[0]
    assert request.url.path == "/v1/images/generations"
    assert request.headers["authorization"] == "Bearer sk-test"
    body = json.loads(request.content)
    assert body["model"] == "gpt-image-1"
    assert body["prompt"] == brief.image_prompt
    await provider.aclose()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status, kind",
    [(429, ErrorKind.RATE_LIMITED), (401, ErrorKind.UNAUTHORIZED), (400, ErrorKind.MALFORMED_RESPONSE)],
)
async def test_openai_errors_are_classified(status, kind):
    handler, requests = _recording([httpx.Response(status, json={"error": {"message": "nope", "type": "error"}})])
    provider = _provider(OpenAIImageProvider, OPENAI, handler, max_attempts=3)

    with pytest.raises(ProviderError) as exc:
        await provider.illustrate("A gown")
    assert exc.value.kind == kind
    assert len(requests) == 1


@pytest.mark.asyncio
async def test_openai_server_errors_are_retried():
    handler, requests = _recording(
        [
            httpx.Response(502, json={"error": {"message": "bad gateway"}}),
            httpx.Response(200, json={"created": 1700000000, "data": [{"url": "https://cdn.openai.test/img.png"}]}),
        ]
    )
    provider = _provider(OpenAIImageProvider, OPENAI, handler, max_attempts=3)

    image = await provider.illustrate("A gown")

    assert image.sketch_url == "https://cdn.openai.test/img.png"
    assert len(requests) == 2


# --- Stability ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_stability_reads_v2_and_legacy_shapes():
    handler, requests = _recording(
        [
            httpx.Response(200, json={"image": "aW1hZ2Ux", "finish_reason": "SUCCESS"}),
            httpx.Response(200, json={"artifacts": [{"base64": "aW1hZ2Uy", "finishReason": "SUCCESS"}]}),
        ]
    )
    provider = _provider(StabilityProvider, STABILITY, handler)

    first = await provider.illustrate("A gown")
    second = await provider.illustrate("A gown")

    assert first.data_b64 == "aW1hZ2Ux"
    assert second.data_b64 == "aW1hZ2Uy"
    request = requests[0]
    assert request.headers["authorization"] == "Bearer sta-key"
    assert request.headers["content-type"].startswith("multipart/form-data")
    assert b'name="prompt"' in request.content


@pytest.mark.asyncio
async def test_stability_content_filter_is_malformed():
    handler, _ = _recording([httpx.Response(200, json={"image": "", "finish_reason": "CONTENT_FILTERED"})])
    provider = _provider(StabilityProvider, STABILITY, handler)

    with pytest.raises(ProviderError) as exc:
        await provider.illustrate("A gown")
    assert exc.value.kind == ErrorKind.MALFORMED_RESPONSE


@pytest.mark.asyncio
async def test_stability_out_of_credits_is_rate_limited():
    handler, _ = _recording([httpx.Response(402, json={"name": "payment_required", "errors": ["insufficient credits"]})])
    provider = _provider(StabilityProvider, STABILITY, handler)

    with pytest.raises(ProviderError) as exc:
        await provider.illustrate("A gown")
    assert exc.value.kind == ErrorKind.RATE_LIMITED


# --- DeepAI ---------------------------------------------------------------------


@pytest.mark.asyncio
async def test_deepai_returns_hosted_url():
    handler, requests = _recording([httpx.Response(200, json={"id": "abc", "output_url": "https://api.deepai.test/job/abc.jpg"})])
    provider = _provider(DeepAIProvider, DEEPAI, handler)

    image = await provider.illustrate("A gown")

    assert image.sketch_url == "https://api.deepai.test/job/abc.jpg"
    assert requests[0].headers["api-key"] == "dai-key"
    assert requests[0].content == b"text=A+gown"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body, kind",
    [
        ({"status": "Out of credits. Please add more."}, ErrorKind.RATE_LIMITED),
        ({"err": "Invalid API key"}, ErrorKind.UNAUTHORIZED),
        ({"status": "error"}, ErrorKind.MALFORMED_RESPONSE),
    ],
)
async def test_deepai_failures_in_ok_body_are_classified(body, kind):
    handler, _ = _recording([httpx.Response(200, json=body)])
    provider = _provider(DeepAIProvider, DEEPAI, handler)

    with pytest.raises(ProviderError) as exc:
        await provider.illustrate("A gown")
    assert exc.value.kind == kind


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "provider_cls, settings, body",
    [
        (StabilityProvider, STABILITY, {"artifacts": {"base64": "aW1n"}}),
        (StabilityProvider, STABILITY, {"image": {"b64": "aW1n"}}),
        (StabilityProvider, STABILITY, {"artifacts": "aW1n"}),
        (DeepAIProvider, DEEPAI, {"output_url": ["https://api.deepai.test/a.jpg"]}),
    ],
)
async def test_image_backends_reject_unexpected_shapes(provider_cls, settings, body):
    handler, _ = _recording([httpx.Response(200, json=body)])
    provider = _provider(provider_cls, settings, handler)

    with pytest.raises(ProviderError) as exc:
        await provider.illustrate("A gown")
    assert exc.value.kind == ErrorKind.MALFORMED_RESPONSE
