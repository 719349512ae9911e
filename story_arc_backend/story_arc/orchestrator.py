import uuid, logging
from typing import Awaitable, Callable, Optional, Sequence, TypedDict
from langgraph.graph import StateGraph, END

from .asset_store import AssetStore, CHARACTER_MODEL, KEYFRAME, VIDEO, COMBINED_VIDEO
from .backends.base import GenerationBackend
from .errors import (
    GenerationError, ImageGenerationError, InvalidInputError, NotReadyError,
    PipelineCancelledError, PlanGenerationError, StoryArcError, VideoGenerationError,
)
from .media import combine_videos
from .models import (
    CombinedVideo, GenerationSession, MediaPayload, PipelineFailure, PipelineState,
    ProductionPlan, StoryRequest,
)
from .polling import CancellationToken, wait_for_video
from .progress import ProgressReporter
from .prompts import build_character_prompt, build_keyframe_prompt, build_clip_prompt
from .resolve import resolve_keyframe_for_clip, resolve_dialog_for_clip
from .settings import VIDEO_POLL_INTERVAL_S, VIDEO_POLL_TIMEOUT_S, PROGRESS_RESET_DELAY_S

logger = logging.getLogger(__name__)

Combiner = Callable[[Sequence[Optional[str]]], Awaitable[CombinedVideo]]


class GraphState(TypedDict):
    job_id: str
    stage: str


def validate_request(req: StoryRequest) -> Optional[MediaPayload]:
    """Fail fast on missing input. Returns the decoded reference image, if any."""
    has_description = bool(req.description and req.description.strip())
    if not has_description and not req.image_base64:
        raise InvalidInputError("Please describe your character or upload an image.")
    if not req.lesson or not req.lesson.strip():
        raise InvalidInputError("Please fill in the parent's lesson.")
    try:
        return req.reference_image()
    except ValueError as e:
        raise InvalidInputError(f"Reference image could not be decoded: {e}") from e


class StoryPipeline:
    """Drives one production plan through character model, keyframes and clips.

    One instance per user request. Slots in ``session`` fill in plan order and
    stay visible after a failure; ``combine()`` is a separate, explicit step.
    """

    def __init__(
        self,
        backend: GenerationBackend,
        progress: Optional[ProgressReporter] = None,
        asset_store: Optional[AssetStore] = None,
        combiner: Optional[Combiner] = None,
        poll_interval_s: float = VIDEO_POLL_INTERVAL_S,
        poll_timeout_s: Optional[float] = VIDEO_POLL_TIMEOUT_S,
        max_polls: Optional[int] = None,
        job_id: Optional[str] = None,
    ):
        self.backend = backend
        self.progress = progress or ProgressReporter(reset_delay_s=PROGRESS_RESET_DELAY_S)
        self.asset_store = asset_store
        self.combiner = combiner or combine_videos
        self.poll_interval_s = poll_interval_s
        self.poll_timeout_s = poll_timeout_s
        self.max_polls = max_polls
        self.job_id = job_id or str(uuid.uuid4())
        self.cancel_token = CancellationToken()

        self.state = PipelineState.IDLE
        self.current_index: Optional[int] = None
        self.plan: Optional[ProductionPlan] = None
        self.session = GenerationSession()
        self.failure: Optional[PipelineFailure] = None
        self._request: Optional[StoryRequest] = None
        self._reference_image: Optional[MediaPayload] = None
        self._graph = build_graph(self)

    # --- public operations ---

    async def run(self, req: StoryRequest) -> GenerationSession:
        if self.state != PipelineState.IDLE:
            raise RuntimeError(f"Pipeline {self.job_id} already ran (state={self.state.value})")
        self._reference_image = validate_request(req)
        self._request = req

        logger.info(f"Starting pipeline for job {self.job_id} with backend {getattr(self.backend, 'name', '?')}")
        try:
            await self._graph.ainvoke({"job_id": self.job_id, "stage": self.state.value})
        except StoryArcError as e:
            self._fail(e)
            raise
        except Exception as e:
            self._fail(e)
            logger.exception(f"Pipeline failed unexpectedly for job {self.job_id}")
            raise

        self._transition(PipelineState.COMPLETE)
        self.progress.finish("Your story is complete!")
        logger.info(f"Pipeline completed for job {self.job_id}")
        return self.session

    async def combine(self) -> CombinedVideo:
        if self.state not in (PipelineState.CLIPS_READY, PipelineState.COMPLETE) or not self.session.clips_complete():
            raise NotReadyError("Please wait for all videos to be generated first.")

        self.progress.update("Combining videos into final story...")
        try:
            result = await self.combiner(list(self.session.clip_videos))
        except Exception as e:
            logger.error(f"Error combining videos for job {self.job_id}: {e}")
            self.progress.finish()
            raise
        self.session.final_video = result.video_url
        self._transition(PipelineState.COMPLETE)
        await self._persist(COMBINED_VIDEO, 0, result.video_url)
        self.progress.finish("Videos combined successfully!")
        return result

    def cancel(self):
        logger.info(f"Cancellation requested for job {self.job_id}")
        self.cancel_token.cancel()

    # --- graph nodes ---

    async def node_plan(self, state: GraphState) -> dict:
        self._check_cancelled("plan")
        self._transition(PipelineState.PLAN_REQUESTED)
        self.progress.update("Generating production plan...")
        req = self._request
        try:
            plan = await self.backend.generate_plan(req.description, self._reference_image, req.lesson, req.language)
        except PlanGenerationError:
            raise
        except Exception as e:
            logger.error(f"Failed to generate production plan for job {self.job_id}: {e}")
            raise PlanGenerationError(str(e)) from e

        if len(plan.keyframes) != len(plan.scenes):
            logger.warning(
                f"Plan for job {self.job_id} has {len(plan.scenes)} scenes but {len(plan.keyframes)} keyframes"
            )
        self.plan = plan
        self.session = GenerationSession.for_plan(plan)
        if self.asset_store is not None:
            await self.asset_store.put_plan(self.job_id, plan.model_dump(by_alias=True))
        self._transition(PipelineState.PLAN_READY)
        logger.info(
            f"Plan ready for job {self.job_id}: {len(plan.scenes)} scenes, "
            f"{len(plan.keyframes)} keyframes, {len(plan.clips)} clips"
        )
        return {"stage": self.state.value}

    async def node_character_model(self, state: GraphState) -> dict:
        self._check_cancelled("character model")
        self._transition(PipelineState.CHARACTER_MODEL_GENERATING)
        self.progress.update("Generating character model...")
        cm = self.plan.character_model
        prompt = build_character_prompt(cm.action, cm.source)
        image = await self._generate_image(prompt, self._reference_image, "character_model", None)
        self.session.character_model_image = image
        await self._persist(CHARACTER_MODEL, 0, image.to_data_uri())
        self._transition(PipelineState.CHARACTER_MODEL_READY)
        return {"stage": self.state.value}

    async def node_keyframes(self, state: GraphState) -> dict:
        anchor = self.session.character_model_image
        keyframes = self.plan.keyframes
        for i, kf in enumerate(keyframes, start=1):
            self._check_cancelled(f"keyframe {i}")
            self._transition(PipelineState.KEYFRAME_GENERATING, i)
            self.progress.step("Generating keyframe", i, len(keyframes))
            # Always the character model, never an earlier keyframe
            image = await self._generate_image(build_keyframe_prompt(kf.prompt), anchor, "keyframe", i)
            self.session.keyframe_images[i - 1] = image
            await self._persist(KEYFRAME, i - 1, image.to_data_uri())
            logger.info(f"Keyframe {i}/{len(keyframes)} ready for job {self.job_id}")
        self._transition(PipelineState.KEYFRAMES_READY)
        return {"stage": self.state.value}

    async def node_clips(self, state: GraphState) -> dict:
        plan = self.plan
        clips = plan.clips
        for j, clip in enumerate(clips, start=1):
            self._check_cancelled(f"clip {j}")
            self._transition(PipelineState.CLIP_GENERATING, j)
            self.progress.step("Animating clip", j, len(clips))
            try:
                keyframe = resolve_keyframe_for_clip(clip, self.session.keyframe_images)
            except GenerationError as e:
                e.index = j
                logger.error(f"Clip {j} for job {self.job_id}: {e}")
                raise
            dialog = resolve_dialog_for_clip(clip, plan.scenes)
            prompt = build_clip_prompt(clip.prompt, plan.story_analysis.hero, dialog)

            uri = await self._generate_video(prompt, keyframe, j)
            self.session.clip_videos[j - 1] = uri
            await self._persist(VIDEO, j - 1, uri)
            logger.info(f"Clip {j}/{len(clips)} ready for job {self.job_id}")
        self._transition(PipelineState.CLIPS_READY)
        return {"stage": self.state.value}

    # --- helpers ---

    async def _generate_image(self, prompt: str, reference: Optional[MediaPayload], stage: str, index: Optional[int]) -> MediaPayload:
        label = stage if index is None else f"{stage} {index}"
        try:
            return await self.backend.generate_image(prompt, reference)
        except ImageGenerationError as e:
            e.stage, e.index = stage, index
            logger.error(f"Image generation failed for {label} (job {self.job_id}): {e}")
            raise
        except Exception as e:
            logger.error(f"Image generation failed for {label} (job {self.job_id}): {e}")
            raise ImageGenerationError(f"Image generation failed for {label}: {e}", stage=stage, index=index) from e

    async def _generate_video(self, prompt: str, source: MediaPayload, index: int) -> str:
        try:
            op = await self.backend.start_video(prompt, source)
            return await wait_for_video(
                self.backend,
                op,
                interval_s=self.poll_interval_s,
                timeout_s=self.poll_timeout_s,
                max_polls=self.max_polls,
                cancel_token=self.cancel_token,
                label=f"clip {index}",
            )
        except PipelineCancelledError:
            raise
        except VideoGenerationError as e:
            e.stage, e.index = "clip", index
            logger.error(f"Video generation failed for clip {index} (job {self.job_id}): {e}")
            raise
        except Exception as e:
            logger.error(f"Video generation failed for clip {index} (job {self.job_id}): {e}")
            raise VideoGenerationError(f"Video generation failed for clip {index}: {e}", stage="clip", index=index) from e

    async def _persist(self, asset_type: str, index: int, value: str):
        if self.asset_store is None:
            return
        await self.asset_store.put(self.job_id, asset_type, index, value)

    def _check_cancelled(self, where: str):
        self.cancel_token.raise_if_cancelled(where)

    def _transition(self, state: PipelineState, index: Optional[int] = None):
        self.state = state
        self.current_index = index
        logger.debug(f"Job {self.job_id} -> {state.value}{f' ({index})' if index else ''}")

    def _fail(self, err: BaseException):
        stage = getattr(err, "stage", None) or _stage_for_state(self.state)
        index = getattr(err, "index", None)
        self.failure = PipelineFailure(stage=stage, index=index, reason=str(err))
        self.state = PipelineState.FAILED
        logger.error(f"Pipeline failed for job {self.job_id} at {stage}{f' #{index}' if index else ''}: {err}")
        # Last progress string stays until the reset delay passes
        self.progress.finish()


def _stage_for_state(state: PipelineState) -> str:
    if state in (PipelineState.IDLE, PipelineState.PLAN_REQUESTED):
        return "plan"
    if state in (PipelineState.PLAN_READY, PipelineState.CHARACTER_MODEL_GENERATING):
        return "character_model"
    if state in (PipelineState.CHARACTER_MODEL_READY, PipelineState.KEYFRAME_GENERATING):
        return "keyframe"
    return "clip"


def build_graph(pipeline: StoryPipeline):
    g = StateGraph(GraphState)
    g.add_node("plan", pipeline.node_plan)
    g.add_node("character_model", pipeline.node_character_model)
    g.add_node("keyframes", pipeline.node_keyframes)
    g.add_node("clips", pipeline.node_clips)
    g.set_entry_point("plan")
    g.add_edge("plan", "character_model")
    g.add_edge("character_model", "keyframes")
    g.add_edge("keyframes", "clips")
    g.add_edge("clips", END)
    return g.compile()
