import os
import time
import asyncio
import logging
from typing import Callable, Dict, List, Optional
from fastapi import FastAPI, HTTPException
from fastapi.responses import FileResponse
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

# Ensure .env is loaded before importing modules that initialize API clients
from .settings import ALLOWED_ORIGINS, JOB_TTL_S, MAX_JOBS, STORY_BACKEND, VIDEOS_DIR, has_backend_keys
from .asset_store import build_asset_store
from .backends import build_backend
from .errors import (
    ConcatenationError, InvalidInputError, NoVideosError, NotReadyError, StoryArcError, UnsupportedVideoRefError,
)
from .media import combine_videos
from .models import PipelineState, StoryRequest
from .orchestrator import StoryPipeline, validate_request

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(title="Story Arc Backend")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS or ["*"],
    allow_credentials=True,
    allow_methods=["POST", "GET", "OPTIONS"],
    allow_headers=["*"],
)

# Swappable in tests
app.state.backend_factory = build_backend
app.state.asset_store = build_asset_store()
app.state.combiner = combine_videos


class JobRegistry:
    """Pipelines by job id. Each job owns an independent StoryPipeline.

    A finished job stays pollable and combinable for ``ttl_s`` seconds and is
    then dropped along with its images. Beyond ``max_jobs`` the oldest
    finished jobs go first. Running jobs are never evicted.
    """

    def __init__(self, ttl_s: float = JOB_TTL_S, max_jobs: int = MAX_JOBS, clock: Callable[[], float] = time.monotonic):
        self.ttl_s = ttl_s
        self.max_jobs = max_jobs
        self._clock = clock
        self._jobs: Dict[str, StoryPipeline] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._finished: Dict[str, float] = {}

    def add(self, pipeline: StoryPipeline, task: Optional[asyncio.Task] = None):
        self._jobs[pipeline.job_id] = pipeline
        if task is not None:
            self._tasks[pipeline.job_id] = task
            task.add_done_callback(lambda _t, job_id=pipeline.job_id: self.mark_finished(job_id))
        self.evict()

    def mark_finished(self, job_id: str):
        self._tasks.pop(job_id, None)
        if job_id in self._jobs:
            self._finished[job_id] = self._clock()

    def get(self, job_id: str) -> Optional[StoryPipeline]:
        self.evict()
        return self._jobs.get(job_id)

    def remove(self, job_id: str):
        self._jobs.pop(job_id, None)
        self._tasks.pop(job_id, None)
        self._finished.pop(job_id, None)

    def evict(self) -> int:
        now = self._clock()
        expired = [job_id for job_id, t in self._finished.items() if now - t >= self.ttl_s]
        overflow = len(self._jobs) - len(expired) - self.max_jobs
        if overflow > 0:
            oldest = sorted((t, job_id) for job_id, t in self._finished.items() if job_id not in expired)
            expired.extend(job_id for _t, job_id in oldest[:overflow])
        for job_id in expired:
            self.remove(job_id)
        if expired:
            logger.info(f"Evicted {len(expired)} finished job(s); {len(self._jobs)} remain")
        return len(expired)

    def __len__(self):
        return len(self._jobs)


jobs = JobRegistry()


class CombineRequest(BaseModel):
    video_urls: List[Optional[str]] = Field(default_factory=list, alias="videoUrls")


def _job_status(pipeline: StoryPipeline) -> str:
    if pipeline.state == PipelineState.IDLE:
        return "queued"
    if pipeline.state == PipelineState.FAILED:
        return "failed"
    if pipeline.state == PipelineState.COMPLETE:
        return "succeeded"
    return "running"


def job_snapshot(pipeline: StoryPipeline) -> dict:
    session = pipeline.session
    return {
        "job_id": pipeline.job_id,
        "status": _job_status(pipeline),
        "state": pipeline.state.value,
        "current_index": pipeline.current_index,
        "progress": pipeline.progress.current,
        "error": pipeline.failure.reason if pipeline.failure else None,
        "failure": pipeline.failure.model_dump() if pipeline.failure else None,
        "plan": pipeline.plan.model_dump(by_alias=True) if pipeline.plan else None,
        "character_model_image": session.character_model_image.to_data_uri() if session.character_model_image else None,
        "keyframe_images": [k.to_data_uri() if k else None for k in session.keyframe_images],
        "clip_videos": list(session.clip_videos),
        "final_video": session.final_video,
    }


async def _background_run(pipeline: StoryPipeline, req: StoryRequest):
    try:
        await pipeline.run(req)
        logger.info(f"Background run completed successfully for job {pipeline.job_id}")
    except StoryArcError as e:
        # Recorded on pipeline.failure; surfaced through the job status endpoint
        logger.error(f"Background run failed for job {pipeline.job_id}: {e}")
    except Exception:
        logger.exception(f"Background run crashed for job {pipeline.job_id}")


@app.get("/health")
def health():
    keys_ok = has_backend_keys(STORY_BACKEND)
    logger.info(f"Health check: API keys present = {keys_ok}")
    return {"ok": True, "backend": STORY_BACKEND, "has_keys": keys_ok}


@app.post("/v1/stories:start")
async def start_story(req: StoryRequest):
    try:
        validate_request(req)
    except InvalidInputError as e:
        raise HTTPException(400, str(e))

    try:
        backend = app.state.backend_factory()
    except (RuntimeError, ValueError) as e:
        logger.error(f"Cannot construct backend: {e}")
        raise HTTPException(500, f"Server configuration error: {e}")

    pipeline = StoryPipeline(backend, asset_store=app.state.asset_store, combiner=app.state.combiner)
    task = asyncio.create_task(_background_run(pipeline, req))
    jobs.add(pipeline, task)
    logger.info(f"Started job {pipeline.job_id}")
    return {"job_id": pipeline.job_id, "status": "queued"}


@app.get("/v1/jobs/{job_id}")
async def job_status(job_id: str):
    pipeline = jobs.get(job_id)
    if not pipeline:
        raise HTTPException(404, "job not found")
    return job_snapshot(pipeline)


@app.post("/v1/jobs/{job_id}:combine")
async def combine_job(job_id: str):
    pipeline = jobs.get(job_id)
    if not pipeline:
        raise HTTPException(404, "job not found")
    try:
        result = await pipeline.combine()
    except NotReadyError as e:
        raise HTTPException(409, str(e))
    except NoVideosError as e:
        raise HTTPException(400, str(e))
    except ConcatenationError as e:
        raise HTTPException(500, str(e))
    return {"success": result.success, "videoUrl": result.video_url}


@app.post("/v1/jobs/{job_id}:cancel")
async def cancel_job(job_id: str):
    pipeline = jobs.get(job_id)
    if not pipeline:
        raise HTTPException(404, "job not found")
    pipeline.cancel()
    return {"job_id": job_id, "cancelled": True}


@app.post("/v1/videos:combine")
async def combine_standalone(body: CombineRequest):
    try:
        result = await app.state.combiner(body.video_urls)
    except (NoVideosError, UnsupportedVideoRefError) as e:
        raise HTTPException(400, str(e))
    except ConcatenationError as e:
        raise HTTPException(500, str(e))
    return {"success": result.success, "videoUrl": result.video_url, "message": "Videos combined successfully"}


@app.get("/videos/{name}")
def get_video(name: str):
    path = os.path.join(VIDEOS_DIR, os.path.basename(name))
    if not os.path.isfile(path):
        raise HTTPException(404, "video not found")
    return FileResponse(path, media_type="video/mp4", filename=os.path.basename(path))
