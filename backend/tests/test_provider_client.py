from __future__ import annotations

import base64
import json

import httpx
import pytest

from genmeter.services.provider_client import (
    HttpGenerationProvider,
    blocking_reason,
    extract_images,
    guess_mime_type,
    normalize_job_duration,
    orientation_for,
)
from genmeter.services.providers import JobOptions, ProviderError, SecurityBlockError

API = "https://provider.invalid"
INPUT = "https://img.invalid/in.png"
GENERATE_PATH = "/v1beta/models/image-model:generateContent"


def _image_payload(data: str = "aGVsbG8=") -> dict:
    return {"candidates": [{"content": {"parts": [{"inlineData": {"mimeType": "image/png", "data": data}}]}}]}


class _Recorder:
    """Routes requests to canned responses and remembers what was sent."""

    def __init__(self, routes):
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.host == "img.invalid":
            return httpx.Response(200, content=b"raw-image-bytes")
        responses = self.routes[request.url.path]
        canned = responses.pop(0) if len(responses) > 1 else responses[0]
        # Fresh response per call; the last canned one repeats.
        return httpx.Response(canned.status_code, headers=canned.headers, content=canned.content)

    def calls_to(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]


@pytest.fixture()
def sleeps():
    return []


@pytest.fixture()
def make_provider(sleeps):
    def _make(routes, *, max_retries=3, api_base=API):
        recorder = _Recorder(routes)

        async def _sleep(seconds: float) -> None:
            sleeps.append(seconds)

        client = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
        provider = HttpGenerationProvider(
            api_base=api_base,
            api_key="sk-testkey1234567890abcdefgh",
            model_id="image-model",
            job_model_id="video-model",
            max_retries=max_retries,
            client=client,
            sleep=_sleep,
        )
        return provider, recorder

    return _make


@pytest.mark.asyncio
async def test_generate_retries_transient_errors_then_streams_items(make_provider, sleeps):
    provider, recorder = make_provider(
        {GENERATE_PATH: [httpx.Response(503, json={"error": {"message": "busy"}}), httpx.Response(200, json=_image_payload())]}
    )
    seen: list[tuple[str, int, int]] = []

    async def on_item(url, index, total):
        seen.append((url, index, total))

    results = await provider.generate("a cat", [INPUT], 2, on_item)

    assert results == ["data:image/png;base64,aGVsbG8=", "data:image/png;base64,aGVsbG8="]
    assert [s[1:] for s in seen] == [(0, 2), (1, 2)]
    assert len(recorder.calls_to(GENERATE_PATH)) == 3
    assert len(sleeps) == 1 and 0.5 <= sleeps[0] <= 0.75

    sent = recorder.calls_to(GENERATE_PATH)[-1]
    assert sent.headers["Authorization"].startswith("Bearer ")
    body = json.loads(sent.content)
    parts = body["contents"][0]["parts"]
    assert parts[0] == {"text": "a cat"}
    assert parts[1]["inline_data"]["mime_type"] == "image/png"
    assert base64.b64decode(parts[1]["inline_data"]["data"]) == b"raw-image-bytes"


@pytest.mark.asyncio
async def test_client_errors_are_not_retried_and_are_redacted(make_provider, sleeps):
    secret = "api_key=sk-abcdefghijklmnopqrstuvwxyz123456"
    provider, recorder = make_provider(
        {GENERATE_PATH: [httpx.Response(400, json={"error": {"message": f"bad request {secret}"}})]}
    )

    with pytest.raises(ProviderError) as excinfo:
        await provider.generate("a cat", [INPUT], 1)

    assert excinfo.value.status_code == 400
    assert "sk-abcdefghijklmnop" not in str(excinfo.value)
    assert "[REDACTED" in str(excinfo.value)
    assert len(recorder.calls_to(GENERATE_PATH)) == 1
    assert sleeps == []


@pytest.mark.asyncio
async def test_retries_give_up_after_max_attempts(make_provider, sleeps):
    provider, recorder = make_provider({GENERATE_PATH: [httpx.Response(502, text="bad gateway")]}, max_retries=3)

    with pytest.raises(ProviderError):
        await provider.generate("a cat", [INPUT], 1)

    assert len(recorder.calls_to(GENERATE_PATH)) == 3
    assert len(sleeps) == 2


@pytest.mark.asyncio
async def test_content_policy_error_is_a_security_block(make_provider):
    provider, _ = make_provider(
        {GENERATE_PATH: [httpx.Response(400, json={"error": {"message": "PROHIBITED_CONTENT in request"}})]}
    )

    with pytest.raises(SecurityBlockError):
        await provider.generate("something", [INPUT], 1)


@pytest.mark.asyncio
async def test_safety_finish_reason_is_a_security_block(make_provider):
    provider, _ = make_provider({GENERATE_PATH: [httpx.Response(200, json={"candidates": [{"finishReason": "SAFETY"}]})]})

    with pytest.raises(SecurityBlockError) as excinfo:
        await provider.generate("something", [INPUT], 1)

    assert "SAFETY" in str(excinfo.value)


@pytest.mark.asyncio
async def test_empty_response_is_a_provider_error(make_provider):
    provider, _ = make_provider({GENERATE_PATH: [httpx.Response(200, json={"candidates": []})]})

    with pytest.raises(ProviderError) as excinfo:
        await provider.generate("something", [INPUT], 1)

    assert not isinstance(excinfo.value, SecurityBlockError)


@pytest.mark.asyncio
async def test_input_download_failure_is_reported(make_provider):
    provider, _ = make_provider({})

    def _fail(request):
        return httpx.Response(404)

    provider._client = httpx.AsyncClient(transport=httpx.MockTransport(_fail))

    with pytest.raises(ProviderError) as excinfo:
        await provider.generate("x", [INPUT], 1)

    assert "Failed to download the input image" in str(excinfo.value)


@pytest.mark.asyncio
async def test_submit_job_falls_back_to_watermarked_request(make_provider):
    provider, recorder = make_provider(
        {
            "/v1/video/create": [
                httpx.Response(400, json={"error": "watermark-free output unavailable"}),
                httpx.Response(200, json={"id": "video-123"}),
            ]
        },
        max_retries=1,
    )

    job_id = await provider.submit_job("waves", INPUT, JobOptions(duration=25, aspect_ratio="9:16"))

    assert job_id == "video-123"
    bodies = [json.loads(r.content) for r in recorder.calls_to("/v1/video/create")]
    assert [b["watermark"] for b in bodies] == [False, True]
    assert bodies[0]["model"] == "video-model"
    assert bodies[0]["orientation"] == "portrait"
    assert bodies[0]["duration"] == 25
    assert bodies[0]["images"][0].startswith("data:image/png;base64,")


@pytest.mark.asyncio
async def test_submit_job_without_id_fails(make_provider):
    provider, _ = make_provider({"/v1/video/create": [httpx.Response(200, json={})]})

    with pytest.raises(ProviderError):
        await provider.submit_job("waves", INPUT)


@pytest.mark.asyncio
async def test_query_job_parses_status(make_provider):
    provider, recorder = make_provider(
        {
            "/v1/video/query": [
                httpx.Response(200, json={"id": "v1", "status": "completed", "video_url": "https://cdn.invalid/v.mp4", "progress": 100}),
                httpx.Response(200, json={"id": "v1", "status": "queued", "progress": 12.5}),
                httpx.Response(200, json={"id": "v1", "status": "failed", "error": {"message": "moderation"}}),
            ]
        }
    )

    done = await provider.query_job("v1")
    queued = await provider.query_job("v1")
    failed = await provider.query_job("v1")

    assert done.succeeded and done.url == "https://cdn.invalid/v.mp4" and done.progress == 100
    assert queued.status == "processing" and queued.progress == 12 and not queued.is_terminal
    assert failed.status == "failed" and failed.error == "moderation"
    assert recorder.calls_to("/v1/video/query")[0].url.params["id"] == "v1"


@pytest.mark.asyncio
async def test_missing_api_base_is_a_provider_error(make_provider):
    provider, _ = make_provider({}, api_base="")

    with pytest.raises(ProviderError) as excinfo:
        await provider.query_job("v1")

    assert "PROVIDER_API_BASE" in str(excinfo.value)


def test_payload_helpers():
    assert guess_mime_type("https://x/y.WEBP?sig=1") == "image/webp"
    assert guess_mime_type("https://x/y") == "image/jpeg"
    assert normalize_job_duration(None) == 15
    assert normalize_job_duration(20) == 15
    assert normalize_job_duration(21) == 25
    assert orientation_for("16:9") == "landscape"
    assert orientation_for("1:1") == "portrait"
    assert extract_images({"candidates": [{"content": {"parts": [{"fileData": {"fileUri": "gs://a"}}]}}]}) == ["gs://a"]
    assert blocking_reason({"promptFeedback": {"blockReason": "OTHER"}}) == "Prompt blocked: OTHER"
    assert blocking_reason(_image_payload()) is None
