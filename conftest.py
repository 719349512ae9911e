import os
import sys
from typing import List, Optional

import pytest

# Add the backend to the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "story_arc_backend"))

from story_arc.backends.base import GenerationBackend
from story_arc.errors import ImageGenerationError
from story_arc.models import MediaPayload, ProductionPlan, VideoOperation


def plan_dict(n_scenes: int = 4, n_keyframes: Optional[int] = None, clips: Optional[List[dict]] = None) -> dict:
    n_keyframes = n_scenes if n_keyframes is None else n_keyframes
    if clips is None:
        clips = [
            {"clip": i, "input": f"Static Keyframe #{i}", "prompt": f"Clip {i} motion"}
            for i in range(1, n_keyframes + 1)
        ]
    return {
        "characterModel": {"source": "a purple dragon with green wings", "action": "Create the master avatar"},
        "storyAnalysis": {
            "hero": "Ziggy",
            "parentPrompt": "share your toys",
            "coreLesson": "Sharing makes play more fun",
            "villain": "The Grabby Cloud",
            "characterArc": "Ziggy learns to share",
            "characterPersona": "A cheerful, curious little dragon",
        },
        "episodeScript": {
            "action": "Write four scenes",
            "scenes": [
                {"scene": i, "title": f"Scene {i}", "dialog": f"Line {i} from Ziggy"}
                for i in range(1, n_scenes + 1)
            ],
        },
        "staticKeyframes": {
            "action": "One keyframe per scene",
            "keyframes": [
                {"keyframe": i, "scene": i, "prompt": f"Ziggy in scene {i}"}
                for i in range(1, n_keyframes + 1)
            ],
        },
        "videoGeneration": {"action": "Animate each keyframe", "clips": clips},
        "postProcessing": {"action": "Add soft music"},
    }


def make_plan(**kwargs) -> ProductionPlan:
    return ProductionPlan.model_validate(plan_dict(**kwargs))


class FakeBackend(GenerationBackend):
    """Records every call. Video operations finish after ``polls_needed`` refreshes."""

    name = "fake"

    def __init__(self, plan=None, fail_image_call: Optional[int] = None, polls_needed: int = 1,
                 never_done: bool = False, plan_error: Optional[Exception] = None, on_image=None):
        self.plan = plan if plan is not None else make_plan()
        self.fail_image_call = fail_image_call
        self.polls_needed = polls_needed
        self.never_done = never_done
        self.plan_error = plan_error
        self.on_image = on_image
        self.plan_calls = []
        self.image_calls = []
        self.video_calls = []
        self.refresh_calls = []
        self._polls = {}

    @property
    def calls(self):
        return self.plan_calls + self.image_calls + self.video_calls

    async def generate_plan(self, description, reference_image, lesson, language):
        self.plan_calls.append((description, reference_image, lesson, language))
        if self.plan_error:
            raise self.plan_error
        return self.plan

    async def generate_image(self, prompt, reference_image=None):
        n = len(self.image_calls) + 1
        self.image_calls.append((prompt, reference_image))
        if self.on_image:
            self.on_image(n)
        if self.fail_image_call == n:
            raise ImageGenerationError("backend returned no image payload")
        return MediaPayload(data=f"image-{n}".encode(), mime_type="image/png")

    async def start_video(self, prompt, source_image):
        n = len(self.video_calls) + 1
        self.video_calls.append((prompt, source_image))
        name = f"op-{n}"
        self._polls[name] = 0
        done = self.polls_needed == 0 and not self.never_done
        return VideoOperation(name=name, done=done, video_uri=f"https://videos.example/clip-{n}.mp4" if done else None)

    async def refresh_video(self, operation):
        self.refresh_calls.append(operation.name)
        self._polls[operation.name] += 1
        if self.never_done or self._polls[operation.name] < self.polls_needed:
            return VideoOperation(name=operation.name, done=False)
        n = operation.name.split("-")[1]
        return VideoOperation(name=operation.name, done=True, video_uri=f"https://videos.example/clip-{n}.mp4")


@pytest.fixture
def plan():
    return make_plan()


@pytest.fixture
def backend():
    return FakeBackend()
