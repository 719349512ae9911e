import os, io, time, asyncio, logging
import httpx
from typing import List, Optional

from .base import GenerationBackend, parse_plan
from ..errors import ImageGenerationError, PlanGenerationError
from ..models import MediaPayload, ProductionPlan, VideoOperation
from ..prompts import SYSTEM_PROMPT, build_user_prompt
from ..settings import (
    OPENAI_PLAN_MODELS, REPLICATE_IMAGE_MODEL, REPLICATE_VIDEO_MODEL,
    REPLICATE_POLL_INTERVAL_MS, REPLICATE_POLL_TIMEOUT_S,
)

logger = logging.getLogger(__name__)

API_ROOT = "https://api.replicate.com/v1"
_TERMINAL = ("succeeded", "failed", "canceled")


def _parse_selector(selector: str):
    # Returns a tuple (mode, data)
    # mode == "version": data={"version": <hash>}
    # mode == "model": data={"owner": <owner>, "name": <name>}
    if "/" in selector:
        owner_name, _, _version_alias = selector.partition(":")
        if "/" in owner_name:
            owner, name = owner_name.split("/", 1)
            return "model", {"owner": owner, "name": name}
    return "version", {"version": selector}


def _first_output(output) -> Optional[str]:
    if isinstance(output, list) and output:
        return output[0]
    if isinstance(output, str) and output:
        return output
    return None


def to_png(data: bytes) -> bytes:
    """Flatten whatever Replicate returned (often WebP) to RGB PNG."""
    from PIL import Image

    with Image.open(io.BytesIO(data)) as pil_img:
        if pil_img.format == "PNG":
            return data
        if pil_img.mode in ("RGBA", "LA"):
            background = Image.new("RGB", pil_img.size, (255, 255, 255))
            if pil_img.mode == "LA":
                pil_img = pil_img.convert("RGBA")
            background.paste(pil_img, mask=pil_img.split()[-1])
            pil_img = background
        elif pil_img.mode != "RGB":
            pil_img = pil_img.convert("RGB")
        buf = io.BytesIO()
        pil_img.save(buf, format="PNG")
        return buf.getvalue()


class ReplicateBackend(GenerationBackend):
    """OpenAI for the plan, Replicate predictions for images and image-to-video."""

    name = "replicate"

    def __init__(
        self,
        openai_client=None,
        api_token: Optional[str] = None,
        plan_models: Optional[List[str]] = None,
        image_model: str = REPLICATE_IMAGE_MODEL,
        video_model: str = REPLICATE_VIDEO_MODEL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        poll_interval_s: float = REPLICATE_POLL_INTERVAL_MS / 1000.0,
        poll_timeout_s: float = REPLICATE_POLL_TIMEOUT_S,
    ):
        self.api_token = api_token if api_token is not None else os.getenv("REPLICATE_API_TOKEN", "")
        if not self.api_token:
            raise RuntimeError("REPLICATE_API_TOKEN is not set; please configure your .env")
        self._openai = openai_client
        self.plan_models = plan_models or list(OPENAI_PLAN_MODELS)
        self.image_model = image_model
        self.video_model = video_model
        self._transport = transport
        self.poll_interval_s = poll_interval_s
        self.poll_timeout_s = poll_timeout_s

    def _headers(self):
        return {"Authorization": f"Token {self.api_token}"}

    def _client(self, timeout: float = 30) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    def _openai_client(self):
        if self._openai is None:
            from openai import AsyncOpenAI
            api_key = os.getenv("OPENAI_API_KEY", "")
            if not api_key:
                raise PlanGenerationError("OPENAI_API_KEY is not set; please configure your .env")
            self._openai = AsyncOpenAI(api_key=api_key)
        return self._openai

    # --- plan ---

    async def generate_plan(self, description, reference_image, lesson, language) -> ProductionPlan:
        user_content = [{"type": "text", "text": build_user_prompt(description, lesson, language, reference_image is not None)}]
        if reference_image is not None:
            user_content.append({"type": "image_url", "image_url": {"url": reference_image.to_data_uri()}})
        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": user_content},
        ]
        client = self._openai_client()
        from openai import NotFoundError, PermissionDeniedError

        last_error = None
        for model in self.plan_models:
            logger.info(f"Calling OpenAI model {model} to generate production plan")
            try:
                resp = await client.chat.completions.create(
                    model=model,
                    messages=messages,
                    temperature=0.7,
                    response_format={"type": "json_object"},
                )
            except (NotFoundError, PermissionDeniedError) as e:
                logger.warning(f"Model {model} unavailable: {e}")
                last_error = e
                continue
            except Exception as e:
                logger.error(f"OpenAI API call failed: {e}")
                raise PlanGenerationError(f"Plan generation failed on {model}: {e}") from e
            return parse_plan(resp.choices[0].message.content)

        raise PlanGenerationError(
            f"Failed to generate production plan with all available models. Last error: {last_error}"
        )

    # --- predictions ---

    async def _create_prediction(self, client: httpx.AsyncClient, selector: str, model_input: dict) -> dict:
        json_body = {"input": model_input}
        mode, data = _parse_selector(selector)
        if mode == "version":
            json_body["version"] = data["version"]
            url = f"{API_ROOT}/predictions"
        else:
            url = f"{API_ROOT}/models/{data['owner']}/{data['name']}/predictions"

        headers = {**self._headers(), "Content-Type": "application/json"}
        r = await client.post(url, headers=headers, json=json_body)
        if r.status_code == 404 and mode == "model":
            # Model endpoint unavailable for this alias: resolve latest version instead
            logger.info(f"Falling back to latest version resolution for {selector}")
            model_resp = await client.get(f"{API_ROOT}/models/{data['owner']}/{data['name']}", headers=self._headers())
            model_resp.raise_for_status()
            version_id = (model_resp.json().get("latest_version") or {}).get("id")
            if not version_id:
                raise RuntimeError(f"Could not resolve latest version for {selector}")
            logger.info(f"Resolved latest version: {version_id}")
            r = await client.post(f"{API_ROOT}/predictions", headers=headers, json={**json_body, "version": version_id})
        if r.status_code >= 400:
            logger.error(f"Replicate create failed {r.status_code}: {r.text}")
            raise RuntimeError(f"Replicate create failed {r.status_code}: {r.text}")
        pred = r.json()
        logger.info(f"Replicate prediction created with ID: {pred['id']}")
        return pred

    async def _get_prediction(self, client: httpx.AsyncClient, pred_id: str) -> dict:
        s = await client.get(f"{API_ROOT}/predictions/{pred_id}", headers=self._headers())
        if s.status_code >= 400:
            logger.error(f"Replicate status failed {s.status_code}: {s.text}")
            raise RuntimeError(f"Replicate status failed {s.status_code}: {s.text}")
        return s.json()

    # --- image ---

    async def generate_image(self, prompt: str, reference_image: Optional[MediaPayload] = None) -> MediaPayload:
        model_input = {"prompt": prompt, "output_format": "png"}
        if reference_image is not None:
            model_input["input_image"] = reference_image.to_data_uri()

        async with self._client() as client:
            pred = await self._create_prediction(client, self.image_model, model_input)
            start = time.time()
            while pred.get("status") not in _TERMINAL:
                if time.time() - start > self.poll_timeout_s:
                    logger.error("Replicate polling timeout")
                    raise ImageGenerationError("Replicate polling timeout")
                await asyncio.sleep(self.poll_interval_s)
                pred = await self._get_prediction(client, pred["id"])
                logger.info(f"Replicate prediction {pred['id']} status: {pred.get('status')}")

            if pred["status"] != "succeeded":
                raise ImageGenerationError(f"Replicate failed: {pred['status']}. error={pred.get('error')}")
            url = _first_output(pred.get("output"))
            if not url:
                raise ImageGenerationError("Image generation failed to return an image.")

            img = await client.get(url)
            img.raise_for_status()
        try:
            data = to_png(img.content)
        except Exception as e:
            logger.warning(f"Image conversion failed: {e}, keeping original bytes")
            return MediaPayload(data=img.content, mime_type=img.headers.get("content-type", "image/png"))
        return MediaPayload(data=data, mime_type="image/png")

    # --- video ---

    async def start_video(self, prompt: str, source_image: MediaPayload) -> VideoOperation:
        async with self._client() as client:
            pred = await self._create_prediction(
                client, self.video_model, {"prompt": prompt, "image": source_image.to_data_uri()}
            )
        return self._to_operation(pred)

    async def refresh_video(self, operation: VideoOperation) -> VideoOperation:
        async with self._client() as client:
            pred = await self._get_prediction(client, operation.name)
        return self._to_operation(pred)

    def _to_operation(self, pred: dict) -> VideoOperation:
        status = pred.get("status")
        done = status in _TERMINAL
        error = None
        if done and status != "succeeded":
            error = f"{status}: {pred.get('error')}"
        return VideoOperation(
            name=pred["id"],
            done=done,
            video_uri=_first_output(pred.get("output")) if status == "succeeded" else None,
            error=error,
        )
