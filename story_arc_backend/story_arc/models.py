import base64
import binascii
import re
from enum import Enum
from pydantic import BaseModel, ConfigDict, Field
from typing import Any, List, Optional

_DATA_URI_RE = re.compile(r"^data:(?P<mime>[^;,]+)?(?:;base64)?,(?P<data>.*)$", re.DOTALL)


class Language(str, Enum):
    ENGLISH = "English"
    HINDI = "Hindi"


class MediaPayload(BaseModel):
    """Raw media bytes plus mime type. Used as the image handle."""
    data: bytes
    mime_type: str = "image/png"

    @classmethod
    def from_base64(cls, b64: str, mime_type: str) -> "MediaPayload":
        try:
            raw = base64.b64decode(b64, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"invalid base64 payload: {e}") from e
        return cls(data=raw, mime_type=mime_type)

    @classmethod
    def from_data_uri(cls, uri: str) -> "MediaPayload":
        m = _DATA_URI_RE.match(uri)
        if not m:
            raise ValueError("not a data URI")
        return cls.from_base64(m.group("data"), m.group("mime") or "image/png")

    def to_base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")

    def to_data_uri(self) -> str:
        return f"data:{self.mime_type};base64,{self.to_base64()}"


class StoryRequest(BaseModel):
    description: Optional[str] = None
    image_base64: Optional[str] = None
    image_mime_type: Optional[str] = None
    lesson: str = ""
    language: str = Language.ENGLISH.value

    def reference_image(self) -> Optional[MediaPayload]:
        if not self.image_base64:
            return None
        return MediaPayload.from_base64(self.image_base64, self.image_mime_type or "image/png")


# --- Production plan, as emitted by the backend (wire names via aliases) ---

class _PlanPart(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)


class CharacterModel(_PlanPart):
    source: str
    action: str


class StoryAnalysis(_PlanPart):
    hero: str
    villain: str
    core_lesson: str = Field(alias="coreLesson")
    character_arc: str = Field(alias="characterArc")
    character_persona: str = Field(alias="characterPersona")
    parent_prompt_echo: str = Field(alias="parentPrompt")


class Scene(_PlanPart):
    scene_number: int = Field(alias="scene")
    title: str
    dialog: str = ""


class EpisodeScript(_PlanPart):
    action: str = ""
    scenes: List[Scene]


class Keyframe(_PlanPart):
    keyframe_number: int = Field(alias="keyframe")
    scene_number: int = Field(alias="scene")
    prompt: str


class StaticKeyframes(_PlanPart):
    action: str = ""
    keyframes: List[Keyframe]


class Clip(_PlanPart):
    clip_number: int = Field(alias="clip")
    input_ref: str = Field(alias="input")
    prompt: str


class VideoGeneration(_PlanPart):
    action: str = ""
    clips: List[Clip]


class PostProcessing(_PlanPart):
    action: str = ""


class ProductionPlan(_PlanPart):
    character_model: CharacterModel = Field(alias="characterModel")
    story_analysis: StoryAnalysis = Field(alias="storyAnalysis")
    episode_script: EpisodeScript = Field(alias="episodeScript")
    static_keyframes: StaticKeyframes = Field(alias="staticKeyframes")
    video_generation: VideoGeneration = Field(alias="videoGeneration")
    post_processing: PostProcessing = Field(alias="postProcessing")

    @property
    def scenes(self) -> List[Scene]:
        return self.episode_script.scenes

    @property
    def keyframes(self) -> List[Keyframe]:
        return self.static_keyframes.keyframes

    @property
    def clips(self) -> List[Clip]:
        return self.video_generation.clips


# --- Runtime state ---

class PipelineState(str, Enum):
    IDLE = "idle"
    PLAN_REQUESTED = "plan_requested"
    PLAN_READY = "plan_ready"
    CHARACTER_MODEL_GENERATING = "character_model_generating"
    CHARACTER_MODEL_READY = "character_model_ready"
    KEYFRAME_GENERATING = "keyframe_generating"
    KEYFRAMES_READY = "keyframes_ready"
    CLIP_GENERATING = "clip_generating"
    CLIPS_READY = "clips_ready"
    COMPLETE = "complete"
    FAILED = "failed"


class PipelineFailure(BaseModel):
    stage: str
    index: Optional[int] = None
    reason: str


class VideoOperation(BaseModel):
    """Handle on a not-yet-complete backend video job."""
    name: str
    done: bool = False
    video_uri: Optional[str] = None
    error: Optional[str] = None
    raw: Any = Field(default=None, exclude=True, repr=False)


class CombinedVideo(BaseModel):
    success: bool = True
    video_url: str
    path: Optional[str] = None


class GenerationSession(BaseModel):
    character_model_image: Optional[MediaPayload] = None
    keyframe_images: List[Optional[MediaPayload]] = Field(default_factory=list)
    clip_videos: List[Optional[str]] = Field(default_factory=list)
    final_video: Optional[str] = None

    @classmethod
    def for_plan(cls, plan: ProductionPlan) -> "GenerationSession":
        return cls(
            keyframe_images=[None] * len(plan.keyframes),
            clip_videos=[None] * len(plan.clips),
        )

    def clips_complete(self) -> bool:
        # An empty plan has nothing to wait for; the combiner rejects it
        return all(self.clip_videos)
