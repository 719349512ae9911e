import os
import logging
from typing import List, Optional

from google import genai
from google.genai import types

from .base import GenerationBackend, parse_plan
from ..errors import ImageGenerationError, PlanGenerationError, VideoGenerationError
from ..models import MediaPayload, ProductionPlan, VideoOperation
from ..prompts import SYSTEM_PROMPT, PLAN_RESPONSE_SCHEMA, build_user_prompt
from ..settings import GEMINI_PLAN_MODELS, GEMINI_IMAGE_MODEL, GEMINI_VIDEO_MODEL

logger = logging.getLogger(__name__)


def _is_model_unavailable(err: Exception) -> bool:
    # Permission / missing model means "try the next model"; anything else is fatal.
    code = getattr(err, "code", None) or getattr(err, "status", None)
    msg = str(err)
    return code in (403, 404) or "PERMISSION_DENIED" in msg or "not found" in msg.lower()


class GeminiBackend(GenerationBackend):
    name = "gemini"

    def __init__(
        self,
        client=None,
        api_key: Optional[str] = None,
        plan_models: Optional[List[str]] = None,
        image_model: str = GEMINI_IMAGE_MODEL,
        video_model: str = GEMINI_VIDEO_MODEL,
    ):
        self.api_key = api_key if api_key is not None else os.getenv("GEMINI_API_KEY", "")
        if client is None:
            if not self.api_key:
                raise RuntimeError("GEMINI_API_KEY is not set; please configure your .env")
            logger.info(f"Initializing Gemini client (key length {len(self.api_key)})")
            client = genai.Client(api_key=self.api_key)
        self.client = client
        self.plan_models = plan_models or list(GEMINI_PLAN_MODELS)
        self.image_model = image_model
        self.video_model = video_model

    async def generate_plan(self, description, reference_image, lesson, language) -> ProductionPlan:
        parts = []
        if reference_image is not None:
            parts.append(types.Part.from_bytes(data=reference_image.data, mime_type=reference_image.mime_type))
        parts.append(types.Part.from_text(
            text=build_user_prompt(description, lesson, language, reference_image is not None)
        ))
        contents = [types.Content(role="user", parts=parts)]

        last_error = None
        for model in self.plan_models:
            logger.info(f"Attempting to use model: {model}")
            config = types.GenerateContentConfig(
                system_instruction=SYSTEM_PROMPT,
                response_mime_type="application/json",
                response_schema=PLAN_RESPONSE_SCHEMA,
                thinking_config=types.ThinkingConfig(thinking_budget=32768) if model == "gemini-2.5-pro" else None,
            )
            try:
                response = await self.client.aio.models.generate_content(
                    model=model, contents=contents, config=config,
                )
            except Exception as e:
                logger.warning(f"Model {model} failed: {e}")
                last_error = e
                if _is_model_unavailable(e):
                    continue
                raise PlanGenerationError(f"Plan generation failed on {model}: {e}") from e
            logger.info(f"Successfully used model: {model}")
            return parse_plan(response.text)

        raise PlanGenerationError(
            f"Failed to generate production plan with all available models. Last error: {last_error}. "
            f"Please check that your API key has access to at least one of: {', '.join(self.plan_models)}."
        )

    async def generate_image(self, prompt: str, reference_image: Optional[MediaPayload] = None) -> MediaPayload:
        parts = []
        if reference_image is not None:
            parts.append(types.Part.from_bytes(data=reference_image.data, mime_type=reference_image.mime_type))
        parts.append(types.Part.from_text(text=prompt))

        response = await self.client.aio.models.generate_content(
            model=self.image_model,
            contents=[types.Content(role="user", parts=parts)],
            config=types.GenerateContentConfig(response_modalities=["IMAGE"]),
        )
        candidates = response.candidates or []
        if not candidates or not candidates[0].content or not candidates[0].content.parts:
            raise ImageGenerationError("Image generation failed to return a valid response.")
        for part in candidates[0].content.parts:
            inline = getattr(part, "inline_data", None)
            if inline is not None and inline.data:
                return MediaPayload(data=inline.data, mime_type=inline.mime_type or "image/png")
        raise ImageGenerationError("Image generation failed to return an image.")

    async def start_video(self, prompt: str, source_image: MediaPayload) -> VideoOperation:
        op = await self.client.aio.models.generate_videos(
            model=self.video_model,
            prompt=prompt,
            image=types.Image(image_bytes=source_image.data, mime_type=source_image.mime_type),
            config=types.GenerateVideosConfig(
                number_of_videos=1,
                resolution="720p",
                aspect_ratio="16:9",
            ),
        )
        logger.info(f"Veo operation started: {getattr(op, 'name', None)}")
        return self._to_operation(op)

    async def refresh_video(self, operation: VideoOperation) -> VideoOperation:
        if operation.raw is None:
            raise VideoGenerationError(f"Operation {operation.name} has no SDK handle to refresh")
        op = await self.client.aio.operations.get(operation.raw)
        return self._to_operation(op)

    def _to_operation(self, op) -> VideoOperation:
        done = bool(getattr(op, "done", False))
        uri = None
        error = None
        if done:
            result = getattr(op, "response", None) or getattr(op, "result", None)
            videos = getattr(result, "generated_videos", None) or []
            if videos and videos[0].video and videos[0].video.uri:
                uri = videos[0].video.uri
            if getattr(op, "error", None):
                error = str(op.error)
        return VideoOperation(name=getattr(op, "name", None) or "veo-operation", done=done,
                              video_uri=uri, error=error, raw=op)
