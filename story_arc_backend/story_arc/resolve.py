"""Cross-references between the differently numbered plan arrays.

Clips find their scene by clip number and their keyframe by parsing the
"Static Keyframe #K" reference. The two lookups are independent.
"""
import re
from typing import List, Optional, Sequence, TypeVar

from .errors import ReferenceResolutionError
from .models import Clip, Scene

T = TypeVar("T")

_LEADING_INT = re.compile(r"\s*([+-]?\d+)")


def parse_keyframe_ref(input_ref: str) -> int:
    """Return the 1-based keyframe number named by ``input_ref``.

    Anything without a parseable integer after ``#`` means keyframe 1.
    """
    _, sep, tail = (input_ref or "").partition("#")
    if not sep:
        return 1
    m = _LEADING_INT.match(tail)
    return int(m.group(1)) if m else 1


def resolve_keyframe_for_clip(clip: Clip, keyframe_images: Sequence[Optional[T]]) -> T:
    index = parse_keyframe_ref(clip.input_ref) - 1
    if index < 0 or index >= len(keyframe_images) or keyframe_images[index] is None:
        raise ReferenceResolutionError(
            f"Clip {clip.clip_number} references {clip.input_ref!r} but only "
            f"{sum(1 for k in keyframe_images if k is not None)} keyframe(s) exist",
            stage="clip",
            index=clip.clip_number,
        )
    return keyframe_images[index]


def resolve_scene_for_clip(clip: Clip, scenes: List[Scene]) -> Optional[Scene]:
    index = clip.clip_number - 1
    if 0 <= index < len(scenes):
        return scenes[index]
    return None


def resolve_dialog_for_clip(clip: Clip, scenes: List[Scene]) -> str:
    scene = resolve_scene_for_clip(clip, scenes)
    return scene.dialog if scene and scene.dialog else ""
