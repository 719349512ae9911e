import asyncio
import logging
import time
from typing import Optional

from .errors import PipelineCancelledError, VideoGenerationError
from .models import VideoOperation

logger = logging.getLogger(__name__)


class CancellationToken:
    """Checked between stages, between slots and on every poll."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, where: str = ""):
        if self._event.is_set():
            raise PipelineCancelledError(f"Pipeline cancelled{f' during {where}' if where else ''}")


async def _asleep(sec: float):
    await asyncio.sleep(sec)


async def wait_for_video(
    backend,
    operation: VideoOperation,
    interval_s: float,
    timeout_s: Optional[float] = None,
    max_polls: Optional[int] = None,
    cancel_token: Optional[CancellationToken] = None,
    label: str = "video",
) -> str:
    """Poll ``operation`` until the backend reports it done and return the video URI.

    Bounded by ``timeout_s`` (wall clock) and/or ``max_polls``; whichever
    trips first raises VideoGenerationError.
    """
    start = time.monotonic()
    polls = 0
    while not operation.done:
        if cancel_token:
            cancel_token.raise_if_cancelled(label)
        if max_polls is not None and polls >= max_polls:
            logger.error(f"{label}: gave up after {polls} polls of {operation.name}")
            raise VideoGenerationError(f"Video generation for {label} did not finish after {polls} polls")
        if timeout_s is not None and time.monotonic() - start > timeout_s:
            logger.error(f"{label}: polling timeout after {timeout_s}s for {operation.name}")
            raise VideoGenerationError(f"Video generation for {label} timed out after {timeout_s}s")
        await _asleep(interval_s)
        polls += 1
        if polls % 10 == 0:
            logger.info(f"{label}: still waiting ({time.monotonic() - start:.0f}s elapsed)")
        operation = await backend.refresh_video(operation)

    if operation.error:
        logger.error(f"{label}: operation {operation.name} failed: {operation.error}")
        raise VideoGenerationError(f"Video generation for {label} failed: {operation.error}")
    if not operation.video_uri:
        raise VideoGenerationError(f"Video generation for {label} failed or did not return a valid link.")
    logger.info(f"{label}: ready after {polls} poll(s)")
    return operation.video_uri
