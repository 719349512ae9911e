"""Error taxonomy for the story asset pipeline."""
from typing import Optional


class StoryArcError(Exception):
    """Base class for every error raised by the pipeline."""


class InvalidInputError(StoryArcError):
    """Required user input is missing. Raised before any backend call."""


class PlanGenerationError(StoryArcError):
    """The backend could not produce a usable production plan."""


class GenerationError(StoryArcError):
    """A single image or video call failed for a given stage and slot."""

    def __init__(self, message: str, stage: Optional[str] = None, index: Optional[int] = None):
        super().__init__(message)
        self.stage = stage
        self.index = index


class ImageGenerationError(GenerationError):
    pass


class VideoGenerationError(GenerationError):
    pass


class ReferenceResolutionError(GenerationError):
    """A clip points at a keyframe that was never generated."""


class NoVideosError(StoryArcError):
    pass


class ConcatenationError(StoryArcError):
    pass


class UnsupportedVideoRefError(ConcatenationError):
    """A video reference is neither a URL, a data URI nor a file under a served directory."""


class NotReadyError(StoryArcError):
    """combine() was called before every clip slot was filled."""


class PipelineCancelledError(StoryArcError):
    pass
