from .base import GenerationBackend, parse_plan


def build_backend(name: str = None) -> GenerationBackend:
    """Construct the configured backend. Credentials are read at construction."""
    from ..settings import STORY_BACKEND
    name = (name or STORY_BACKEND).lower()
    if name == "gemini":
        from .gemini import GeminiBackend
        return GeminiBackend()
    if name == "replicate":
        from .replicate import ReplicateBackend
        return ReplicateBackend()
    raise ValueError(f"Unknown story backend: {name!r}")


__all__ = ["GenerationBackend", "parse_plan", "build_backend"]
