import os
from dotenv import load_dotenv
import logging

logger = logging.getLogger(__name__)

# Load .env file if it exists (for local development)
env_path = os.path.join(os.path.dirname(__file__), "..", ".env")
if os.path.exists(env_path):
    load_dotenv(env_path)
    logger.info("Loaded .env file for local development")
else:
    logger.info("No .env file found, using environment variables")

def _csv(name: str, default: str):
    raw = os.getenv(name, "").strip() or default
    return [item.strip() for item in raw.split(",") if item.strip()]

# Which generation backend drives the pipeline: "gemini" or "replicate"
STORY_BACKEND = os.getenv("STORY_BACKEND", "gemini").strip().lower()

GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", "")
GEMINI_PLAN_MODELS = _csv("GEMINI_PLAN_MODELS", "gemini-2.5-pro,gemini-1.5-pro,gemini-pro")
GEMINI_IMAGE_MODEL = os.getenv("GEMINI_IMAGE_MODEL", "gemini-2.5-flash-image")
GEMINI_VIDEO_MODEL = os.getenv("GEMINI_VIDEO_MODEL", "veo-3.1-fast-generate-preview")

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_PLAN_MODELS = _csv("OPENAI_PLAN_MODELS", "gpt-4o,gpt-4o-mini")
REPLICATE_API_TOKEN = os.getenv("REPLICATE_API_TOKEN", "")
REPLICATE_IMAGE_MODEL = os.getenv("REPLICATE_IMAGE_MODEL", "black-forest-labs/flux-kontext-pro")
REPLICATE_VIDEO_MODEL = os.getenv("REPLICATE_VIDEO_MODEL", "wan-video/wan-2.2-i2v-fast")

REPLICATE_POLL_INTERVAL_MS = int(os.getenv("REPLICATE_POLL_INTERVAL_MS", "1500"))
REPLICATE_POLL_TIMEOUT_S = int(os.getenv("REPLICATE_POLL_TIMEOUT_S", "120"))

# Long-running video operations are polled by the orchestrator
VIDEO_POLL_INTERVAL_S = float(os.getenv("VIDEO_POLL_INTERVAL_S", "10"))
VIDEO_POLL_TIMEOUT_S = float(os.getenv("VIDEO_POLL_TIMEOUT_S", "900"))

# How long the last status string stays visible after the run ends
PROGRESS_RESET_DELAY_S = float(os.getenv("PROGRESS_RESET_DELAY_S", "5"))

# Finished jobs stay pollable this long; the registry also caps how many it holds
JOB_TTL_S = float(os.getenv("JOB_TTL_S", "3600"))
MAX_JOBS = int(os.getenv("MAX_JOBS", "200"))

VIDEOS_DIR = os.getenv("VIDEOS_DIR", os.path.join(os.getcwd(), "public", "videos"))
TEMP_DIR = os.getenv("TEMP_DIR", os.path.join(os.getcwd(), "temp"))
BACKEND_URL = os.getenv("BACKEND_URL", "").strip() or f"http://localhost:{os.getenv('PORT', '8000')}"

KV_REST_API_URL = os.getenv("KV_REST_API_URL", "")
KV_REST_API_TOKEN = os.getenv("KV_REST_API_TOKEN", "")

_allowed_origins_env = os.getenv("ALLOWED_ORIGINS", "").strip()
if _allowed_origins_env:
    ALLOWED_ORIGINS = [o.strip() for o in _allowed_origins_env.split(",") if o.strip()]
else:
    ALLOWED_ORIGINS = ["*"]

_REQUIRED_KEYS = {
    "gemini": ["GEMINI_API_KEY"],
    "replicate": ["OPENAI_API_KEY", "REPLICATE_API_TOKEN"],
}

def has_backend_keys(backend: str = None) -> bool:
    backend = (backend or STORY_BACKEND).lower()
    required = _REQUIRED_KEYS.get(backend)
    if required is None:
        logger.warning(f"Unknown backend {backend!r}")
        return False
    missing = [name for name in required if not os.getenv(name, "")]
    if missing:
        logger.warning(f"Missing API keys for {backend}: {', '.join(missing)}")
    return not missing
