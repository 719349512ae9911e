import json
import logging
from typing import Optional, Union
from pydantic import ValidationError

from ..errors import PlanGenerationError
from ..models import MediaPayload, ProductionPlan, VideoOperation

logger = logging.getLogger(__name__)


class GenerationBackend:
    """The three operations the pipeline needs from a generative model service.

    ``start_video`` returns a pending operation; the orchestrator drives
    ``refresh_video`` until it reports done.
    """

    name = "base"

    async def generate_plan(
        self,
        description: Optional[str],
        reference_image: Optional[MediaPayload],
        lesson: str,
        language: str,
    ) -> ProductionPlan:
        raise NotImplementedError

    async def generate_image(self, prompt: str, reference_image: Optional[MediaPayload] = None) -> MediaPayload:
        raise NotImplementedError

    async def start_video(self, prompt: str, source_image: MediaPayload) -> VideoOperation:
        raise NotImplementedError

    async def refresh_video(self, operation: VideoOperation) -> VideoOperation:
        raise NotImplementedError


def parse_plan(raw: Union[str, bytes, dict, None]) -> ProductionPlan:
    """Validate a backend's structured output into a ProductionPlan."""
    if raw is None or (isinstance(raw, (str, bytes)) and not raw.strip()):
        raise PlanGenerationError("The AI returned an empty response. Please try again.")
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse JSON response: {raw[:500]!r}")
            raise PlanGenerationError("The AI returned an invalid story structure. Please try again.") from e
    try:
        return ProductionPlan.model_validate(raw)
    except ValidationError as e:
        logger.error(f"Plan failed schema validation: {e}")
        raise PlanGenerationError(f"The AI returned an invalid story structure: {e.error_count()} schema error(s)") from e
