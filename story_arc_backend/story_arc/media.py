import os, shutil, subprocess, shlex, uuid, asyncio, logging
import httpx
from typing import Dict, Iterable, List, Optional, Sequence
from urllib.parse import urlparse
from .errors import ConcatenationError, NoVideosError, UnsupportedVideoRefError
from .models import CombinedVideo, MediaPayload
from .settings import VIDEOS_DIR, TEMP_DIR, BACKEND_URL, GEMINI_API_KEY

logger = logging.getLogger(__name__)

# Download links on these hosts need the API key; it goes in a header, never the URL
_GEMINI_HOSTS = ("generativelanguage.googleapis.com",)

def write_bytes(path: str, data: bytes):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as f:
        f.write(data)

def valid_video_refs(video_refs: Sequence[Optional[str]]) -> List[str]:
    return [ref for ref in video_refs if ref and ref.strip()]

def _auth_headers(url: str) -> Dict[str, str]:
    host = urlparse(url).hostname or ""
    if GEMINI_API_KEY and host in _GEMINI_HOSTS:
        return {"x-goog-api-key": GEMINI_API_KEY}
    return {}

def _is_within(path: str, roots: Iterable[str]) -> bool:
    real = os.path.realpath(path)
    for root in roots:
        root = os.path.realpath(root)
        if os.path.commonpath([real, root]) == root:
            return True
    return False

def check_video_ref(ref: str, local_roots: Iterable[str]):
    """Only URLs, data URIs and files under ``local_roots`` may be combined."""
    if ref.startswith(("data:", "http://", "https://")):
        return
    if os.path.isfile(ref) and _is_within(ref, local_roots):
        return
    logger.warning(f"Rejected video reference: {ref[:80]}")
    raise UnsupportedVideoRefError(f"Unsupported video reference: {ref[:80]}")

async def _materialize(ref: str, dest: str, client: httpx.AsyncClient):
    if ref.startswith("data:"):
        write_bytes(dest, MediaPayload.from_data_uri(ref).data)
    elif ref.startswith(("http://", "https://")):
        # Stream to disk; clips can be tens of MB
        async with client.stream("GET", ref, headers=_auth_headers(ref), follow_redirects=True) as resp:
            resp.raise_for_status()
            with open(dest, "wb") as f:
                async for chunk in resp.aiter_bytes():
                    if chunk:
                        f.write(chunk)
    elif os.path.isfile(ref):
        shutil.copyfile(ref, dest)
    else:
        raise ValueError(f"unsupported video reference: {ref[:80]}")

def _concat_list_line(path: str) -> str:
    escaped = path.replace("'", "'\\''")
    return f"file '{escaped}'\n"

def ffmpeg_concat(video_files: List[str], out_path: str, list_path: str):
    with open(list_path, "w") as f:
        for p in video_files:
            f.write(_concat_list_line(p))
    # Stream copy, no re-encode; moov atom up front for progressive playback
    cmd = (
        f"ffmpeg -y -f concat -safe 0 -i {shlex.quote(list_path)} "
        f"-c copy -movflags +faststart {shlex.quote(out_path)}"
    )
    _run(cmd)

def _run(cmd: str):
    logger.info(f"Running FFmpeg command: {cmd}")
    proc = subprocess.run(cmd, shell=True, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
    if proc.returncode != 0:
        error_msg = proc.stderr.decode("utf-8", errors="ignore")
        logger.error(f"FFmpeg command failed with return code {proc.returncode}: {error_msg}")
        raise ConcatenationError(f"FFmpeg failed: {error_msg}")
    logger.info("FFmpeg command completed successfully")

async def combine_videos(
    video_refs: Sequence[Optional[str]],
    output_dir: str = VIDEOS_DIR,
    work_root: str = TEMP_DIR,
    public_base_url: str = BACKEND_URL,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> CombinedVideo:
    """Join the given clips, in order, into one video.

    A single valid reference is returned unchanged. Local paths are accepted
    only under ``output_dir`` or ``work_root``. Temporary downloads live in a
    per-call directory under ``work_root`` that is removed on every exit.
    """
    refs = valid_video_refs(video_refs)
    if not refs:
        raise NoVideosError("No valid video URLs provided")
    for ref in refs:
        check_video_ref(ref, (output_dir, work_root))
    if len(refs) == 1:
        logger.info("Only one video, returning it unchanged")
        return CombinedVideo(success=True, video_url=refs[0])

    combination_id = str(uuid.uuid4())
    tmp_dir = os.path.join(work_root, combination_id)
    os.makedirs(tmp_dir, exist_ok=True)
    os.makedirs(output_dir, exist_ok=True)
    out_name = f"combined_{combination_id}.mp4"
    out_path = os.path.join(output_dir, out_name)

    try:
        logger.info(f"Downloading {len(refs)} videos into {tmp_dir}")
        paths = []
        async with httpx.AsyncClient(timeout=120, transport=transport) as client:
            for i, ref in enumerate(refs):
                logger.info(f"Downloading video {i + 1}/{len(refs)}...")
                dest = os.path.join(tmp_dir, f"video_{i}.mp4")
                try:
                    await _materialize(ref, dest, client)
                except Exception as e:
                    logger.error(f"Error downloading video {i + 1}: {e}")
                    raise ConcatenationError(f"Failed to download video {i + 1}: {e}") from e
                paths.append(dest)

        logger.info("Combining videos with FFmpeg...")
        list_path = os.path.join(tmp_dir, "concat.txt")
        await asyncio.to_thread(ffmpeg_concat, paths, out_path, list_path)
        if not os.path.exists(out_path):
            raise ConcatenationError("FFmpeg reported success but produced no output file")
    except ConcatenationError:
        if os.path.exists(out_path):
            os.remove(out_path)
        raise
    except Exception as e:
        if os.path.exists(out_path):
            os.remove(out_path)
        raise ConcatenationError(str(e)) from e
    finally:
        shutil.rmtree(tmp_dir, ignore_errors=True)

    logger.info(f"Video combination completed: {out_path}")
    return CombinedVideo(
        success=True,
        video_url=f"{public_base_url.rstrip('/')}/videos/{out_name}",
        path=out_path,
    )
