# storage.py
# ------------------------------------------------------------------------------------
#  Where rendered scene images and job videos live:
#    * local  -> files under LOCAL_DIR, served by GET /files/local/{key}
#    * r2     -> Cloudflare R2 objects (see r2_client.py)
#  load() turns any URL the app handed out (or a data URI) back into bytes.
# ------------------------------------------------------------------------------------

import base64
import os
import uuid
from datetime import datetime, timezone
from typing import Optional

import httpx

from logging_config import get_logger
from settings import Settings

logger = get_logger("storage")


def _today_folder() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


def scene_render_key(scene_id: str) -> str:
    # unique per render so a regenerated image never reuses a cached URL
    return f"renders/{_today_folder()}/scene_{scene_id}_{uuid.uuid4().hex[:8]}.png"


def job_render_key(job_id: str) -> str:
    return f"renders/{_today_folder()}/video_{job_id[:6]}_{job_id}.mp4"


def decode_data_uri(url: str) -> bytes:
    header, _, payload = url.partition(",")
    if ";base64" not in header:
        raise ValueError("only base64 data URIs are supported")
    return base64.b64decode(payload)


async def _http_get(url: str) -> bytes:
    timeout = httpx.Timeout(30.0, connect=10.0)
    async with httpx.AsyncClient(follow_redirects=True, timeout=timeout) as client:
        r = await client.get(url)
        r.raise_for_status()
        return r.content


class LocalStorage:
    def __init__(self, local_dir: str, public_base_url: str):
        self.local_dir = local_dir
        self.url_prefix = f"{public_base_url.rstrip('/')}/files/local/"
        os.makedirs(local_dir, exist_ok=True)

    def path_for(self, key: str) -> Optional[str]:
        """Absolute path for a key, or None if the key escapes the storage dir."""
        root = os.path.abspath(self.local_dir)
        path = os.path.abspath(os.path.join(root, key))
        if not path.startswith(root + os.sep):
            return None
        return path

    def save(self, data: bytes, key: str, content_type: str) -> str:
        path = self.path_for(key)
        if path is None:
            raise ValueError(f"invalid storage key: {key}")
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "wb") as f:
            f.write(data)
        logger.debug(f"Saved {len(data)} bytes ({content_type}) to {path}")
        return f"{self.url_prefix}{key}"

    async def load(self, url: str) -> bytes:
        if url.startswith("data:"):
            return decode_data_uri(url)
        if url.startswith(self.url_prefix):
            path = self.path_for(url[len(self.url_prefix):])
            if path is None or not os.path.isfile(path):
                raise FileNotFoundError(url)
            with open(path, "rb") as f:
                return f.read()
        return await _http_get(url)


class R2Storage:
    def save(self, data: bytes, key: str, content_type: str) -> str:
        from r2_client import upload_bytes_and_get_url
        return upload_bytes_and_get_url(data, key=key, content_type=content_type)

    async def load(self, url: str) -> bytes:
        from r2_client import key_from_public_url, get_object_bytes
        if url.startswith("data:"):
            return decode_data_uri(url)
        key = key_from_public_url(url)
        if key is not None:
            return get_object_bytes(key)
        return await _http_get(url)


def make_storage(cfg: Settings):
    if cfg.storage == "r2":
        return R2Storage()
    return LocalStorage(cfg.local_dir, cfg.public_base_url)
