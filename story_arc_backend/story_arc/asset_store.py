"""
Persistence of generated assets keyed by (plan id, asset type, slot index).
Writes for the same key overwrite each other, so retries are harmless.
"""
import json
import httpx
import logging
from typing import Dict, List, Optional, Tuple
from .settings import KV_REST_API_URL, KV_REST_API_TOKEN

logger = logging.getLogger(__name__)

CHARACTER_MODEL = "character_model"
KEYFRAME = "keyframe"
VIDEO = "video"
COMBINED_VIDEO = "combined_video"


def asset_key(plan_id: str, asset_type: str, index: int = 0) -> str:
    return f"asset:{plan_id}:{asset_type}:{index}"


class AssetStore:
    async def put(self, plan_id: str, asset_type: str, index: int, value: str) -> bool:
        raise NotImplementedError

    async def get(self, plan_id: str, asset_type: str, index: int = 0) -> Optional[str]:
        raise NotImplementedError

    async def put_plan(self, plan_id: str, plan: dict) -> bool:
        raise NotImplementedError


class InMemoryAssetStore(AssetStore):
    def __init__(self):
        self._items: Dict[str, str] = {}
        self.writes: List[Tuple[str, str, int]] = []

    async def put(self, plan_id: str, asset_type: str, index: int, value: str) -> bool:
        self._items[asset_key(plan_id, asset_type, index)] = value
        self.writes.append((plan_id, asset_type, index))
        return True

    async def get(self, plan_id: str, asset_type: str, index: int = 0) -> Optional[str]:
        return self._items.get(asset_key(plan_id, asset_type, index))

    async def put_plan(self, plan_id: str, plan: dict) -> bool:
        self._items[f"plan:{plan_id}"] = json.dumps(plan)
        return True

    def __len__(self):
        return len(self._items)


class KVAssetStore(AssetStore):
    """Vercel-style KV REST API."""

    def __init__(self, url: str = KV_REST_API_URL, token: str = KV_REST_API_TOKEN,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.kv_rest_api_url = (url or "").rstrip("/")
        self.kv_rest_api_token = token
        self._transport = transport
        self.enabled = bool(self.kv_rest_api_url and self.kv_rest_api_token)
        if not self.enabled:
            logger.warning("KV storage not configured - assets will not be persisted")

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.kv_rest_api_token}",
            "Content-Type": "application/json"
        }

    async def _command(self, cmd: str, args: list) -> Optional[dict]:
        async with httpx.AsyncClient(timeout=10, transport=self._transport) as client:
            response = await client.post(
                f"{self.kv_rest_api_url}/{cmd}",
                headers=self._headers(),
                json=args,
            )
            response.raise_for_status()
            return response.json()

    async def _set(self, key: str, value: str) -> bool:
        if not self.enabled:
            return False
        try:
            await self._command("set", [key, value])
            logger.info(f"Stored {key} in KV")
            return True
        except Exception as e:
            logger.error(f"Failed to store {key} in KV: {e}")
            return False

    async def put(self, plan_id: str, asset_type: str, index: int, value: str) -> bool:
        return await self._set(asset_key(plan_id, asset_type, index), value)

    async def put_plan(self, plan_id: str, plan: dict) -> bool:
        return await self._set(f"plan:{plan_id}", json.dumps(plan))

    async def get(self, plan_id: str, asset_type: str, index: int = 0) -> Optional[str]:
        if not self.enabled:
            return None
        key = asset_key(plan_id, asset_type, index)
        try:
            data = await self._command("get", [key])
        except Exception as e:
            logger.error(f"Failed to retrieve {key} from KV: {e}")
            return None
        return (data or {}).get("result")


def build_asset_store() -> AssetStore:
    if KV_REST_API_URL and KV_REST_API_TOKEN:
        return KVAssetStore()
    return InMemoryAssetStore()
