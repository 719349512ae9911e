import asyncio
import io
import json
from types import SimpleNamespace

import httpx
import pytest
from PIL import Image

from conftest import plan_dict
from story_arc.backends import build_backend
from story_arc.backends.gemini import GeminiBackend
from story_arc.backends.replicate import ReplicateBackend, to_png
from story_arc.errors import ImageGenerationError, PlanGenerationError
from story_arc.models import MediaPayload, VideoOperation
from story_arc.polling import wait_for_video


class FakeAPIError(Exception):
    def __init__(self, code, message):
        super().__init__(message)
        self.code = code


def _image_response(*parts):
    return SimpleNamespace(candidates=[SimpleNamespace(content=SimpleNamespace(parts=list(parts)))])


class FakeGeminiModels:
    def __init__(self, plan_errors=None, image_response=None):
        self.plan_errors = plan_errors or {}
        self.image_response = image_response
        self.content_calls = []
        self.video_calls = []

    async def generate_content(self, model, contents, config):
        self.content_calls.append((model, contents, config))
        if model in self.plan_errors:
            raise self.plan_errors[model]
        if self.image_response is not None:
            return self.image_response
        return SimpleNamespace(text=json.dumps(plan_dict()))

    async def generate_videos(self, model, prompt, image, config):
        self.video_calls.append((model, prompt, image, config))
        return SimpleNamespace(name="models/veo/operations/abc", done=False)


class FakeGeminiOperations:
    def __init__(self, uri="https://generativelanguage.googleapis.com/v1beta/files/abc:download?alt=media"):
        self.uri = uri
        self.gets = []

    async def get(self, operation):
        self.gets.append(operation)
        video = SimpleNamespace(video=SimpleNamespace(uri=self.uri))
        return SimpleNamespace(name=operation.name, done=True, error=None,
                               response=SimpleNamespace(generated_videos=[video]))


def _gemini(models=None, operations=None, **kwargs):
    client = SimpleNamespace(aio=SimpleNamespace(
        models=models or FakeGeminiModels(),
        operations=operations or FakeGeminiOperations(),
    ))
    kwargs.setdefault("api_key", "test-key")
    return GeminiBackend(client=client, **kwargs), client


def test_gemini_plan_falls_back_on_unavailable_models():
    models = FakeGeminiModels(plan_errors={
        "gemini-2.5-pro": FakeAPIError(403, "PERMISSION_DENIED"),
        "gemini-1.5-pro": FakeAPIError(404, "models/gemini-1.5-pro is not found"),
    })
    backend, _ = _gemini(models, plan_models=["gemini-2.5-pro", "gemini-1.5-pro", "gemini-pro"])
    plan = asyncio.run(backend.generate_plan("a dragon", None, "share", "English"))
    assert plan.story_analysis.hero == "Ziggy"
    assert [call[0] for call in models.content_calls] == ["gemini-2.5-pro", "gemini-1.5-pro", "gemini-pro"]


def test_gemini_plan_stops_on_other_errors():
    models = FakeGeminiModels(plan_errors={"gemini-2.5-pro": FakeAPIError(500, "internal")})
    backend, _ = _gemini(models, plan_models=["gemini-2.5-pro", "gemini-pro"])
    with pytest.raises(PlanGenerationError, match="internal"):
        asyncio.run(backend.generate_plan("a dragon", None, "share", "English"))
    assert len(models.content_calls) == 1


def test_gemini_plan_exhausted_chain():
    err = FakeAPIError(404, "not found")
    models = FakeGeminiModels(plan_errors={"a": err, "b": err})
    backend, _ = _gemini(models, plan_models=["a", "b"])
    with pytest.raises(PlanGenerationError, match="all available models"):
        asyncio.run(backend.generate_plan("a dragon", None, "share", "English"))


def test_gemini_plan_sends_reference_image():
    models = FakeGeminiModels()
    backend, _ = _gemini(models, plan_models=["gemini-pro"])
    ref = MediaPayload(data=b"drawing", mime_type="image/jpeg")
    asyncio.run(backend.generate_plan(None, ref, "share", "Hindi"))
    _model, contents, config = models.content_calls[0]
    parts = contents[0].parts
    assert parts[0].inline_data.data == b"drawing"
    assert "Hindi" in parts[1].text
    assert config.response_mime_type == "application/json"


def test_gemini_image_returns_first_inline_part():
    response = _image_response(
        SimpleNamespace(inline_data=None, text="here you go"),
        SimpleNamespace(inline_data=SimpleNamespace(data=b"png-bytes", mime_type="image/png")),
    )
    backend, _ = _gemini(FakeGeminiModels(image_response=response))
    image = asyncio.run(backend.generate_image("a dragon", MediaPayload(data=b"anchor")))
    assert image.data == b"png-bytes"


def test_gemini_image_without_payload_fails():
    response = _image_response(SimpleNamespace(inline_data=None, text="I cannot draw that"))
    backend, _ = _gemini(FakeGeminiModels(image_response=response))
    with pytest.raises(ImageGenerationError):
        asyncio.run(backend.generate_image("a dragon"))


def test_gemini_video_uri_is_returned_without_the_key():
    models, operations = FakeGeminiModels(), FakeGeminiOperations()
    backend, _ = _gemini(models, operations)

    async def go():
        op = await backend.start_video("wave", MediaPayload(data=b"kf"))
        return op, await wait_for_video(backend, op, interval_s=0, max_polls=3)

    op, uri = asyncio.run(go())
    assert op.name == "models/veo/operations/abc"
    assert uri == "https://generativelanguage.googleapis.com/v1beta/files/abc:download?alt=media"
    assert "test-key" not in uri
    _model, prompt, image, config = models.video_calls[0]
    assert image.image_bytes == b"kf"
    assert config.resolution == "720p"
    assert config.aspect_ratio == "16:9"
    assert len(operations.gets) == 1


def test_gemini_requires_a_key(monkeypatch):
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    with pytest.raises(RuntimeError, match="GEMINI_API_KEY"):
        GeminiBackend()


def test_unknown_backend_name():
    with pytest.raises(ValueError):
        build_backend("midjourney")


# --- Replicate ---

def _png(mode="RGB"):
    buf = io.BytesIO()
    Image.new(mode, (4, 4)).save(buf, format="PNG")
    return buf.getvalue()


def _jpeg():
    buf = io.BytesIO()
    Image.new("RGB", (4, 4), (200, 10, 10)).save(buf, format="JPEG")
    return buf.getvalue()


class ReplicateServer:
    def __init__(self, model_404=False, image_bytes=None, statuses=("processing", "succeeded")):
        self.model_404 = model_404
        self.image_bytes = image_bytes or _png()
        self.statuses = list(statuses)
        self.requests = []

    def __call__(self, request):
        path = request.url.path
        self.requests.append((request.method, path))
        if request.method == "POST" and path.startswith("/v1/models/"):
            if self.model_404:
                return httpx.Response(404, json={"detail": "not found"})
            return httpx.Response(201, json={"id": "pred-1", "status": "starting"})
        if request.method == "GET" and path.startswith("/v1/models/"):
            return httpx.Response(200, json={"latest_version": {"id": "v123"}})
        if request.method == "POST" and path == "/v1/predictions":
            assert json.loads(request.content)["version"] == "v123"
            return httpx.Response(201, json={"id": "pred-2", "status": "starting"})
        if path.startswith("/v1/predictions/"):
            status = self.statuses.pop(0) if self.statuses else "succeeded"
            output = ["https://replicate.delivery/out.png"] if status == "succeeded" else None
            return httpx.Response(200, json={"id": path.rsplit("/", 1)[1], "status": status, "output": output})
        if request.url.host == "replicate.delivery":
            return httpx.Response(200, content=self.image_bytes)
        return httpx.Response(404)


def _replicate(server, **kwargs):
    return ReplicateBackend(api_token="r8-test", transport=httpx.MockTransport(server), poll_interval_s=0, **kwargs)


def test_replicate_image_polls_and_returns_png():
    server = ReplicateServer(image_bytes=_jpeg())
    backend = _replicate(server)
    image = asyncio.run(backend.generate_image("a dragon", MediaPayload(data=b"anchor")))
    assert image.mime_type == "image/png"
    assert image.data.startswith(b"\x89PNG")
    assert server.requests[0] == ("POST", "/v1/models/black-forest-labs/flux-kontext-pro/predictions")
    assert ("GET", "/v1/predictions/pred-1") in server.requests


def test_replicate_image_failure():
    backend = _replicate(ReplicateServer(statuses=("failed",)))
    with pytest.raises(ImageGenerationError, match="failed"):
        asyncio.run(backend.generate_image("a dragon"))


def test_replicate_falls_back_to_latest_version():
    server = ReplicateServer(model_404=True, statuses=("succeeded",))
    backend = _replicate(server)

    async def go():
        op = await backend.start_video("wave", MediaPayload(data=b"kf"))
        return op, await backend.refresh_video(op)

    started, refreshed = asyncio.run(go())
    assert started.name == "pred-2"
    assert not started.done
    assert refreshed.done
    assert refreshed.video_uri == "https://replicate.delivery/out.png"
    assert ("GET", "/v1/models/wan-video/wan-2.2-i2v-fast") in server.requests


def test_replicate_failed_prediction_maps_to_operation_error():
    backend = _replicate(ReplicateServer(statuses=("failed",)))
    op = asyncio.run(backend.refresh_video(VideoOperation(name="pred-9")))
    assert op.done
    assert op.video_uri is None
    assert op.error.startswith("failed")


class FakeCompletions:
    def __init__(self, errors=None):
        self.errors = errors or {}
        self.models = []

    async def create(self, model, messages, temperature, response_format):
        self.models.append(model)
        if model in self.errors:
            raise self.errors[model]
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=json.dumps(plan_dict())))])


def test_replicate_plan_uses_openai_with_fallback():
    import openai

    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    missing = openai.NotFoundError("model not found", response=httpx.Response(404, request=request), body=None)
    completions = FakeCompletions(errors={"gpt-4o": missing})
    client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    backend = _replicate(ReplicateServer(), openai_client=client, plan_models=["gpt-4o", "gpt-4o-mini"])

    plan = asyncio.run(backend.generate_plan("a dragon", None, "share", "English"))
    assert plan.story_analysis.hero == "Ziggy"
    assert completions.models == ["gpt-4o", "gpt-4o-mini"]


def test_to_png_flattens_transparency():
    out = to_png(_png("RGBA"))
    assert out.startswith(b"\x89PNG")
    with Image.open(io.BytesIO(to_png(_jpeg()))) as img:
        assert img.format == "PNG"
        assert img.mode == "RGB"
