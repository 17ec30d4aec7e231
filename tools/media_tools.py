from __future__ import annotations

import logging
import os
import re
import time
import uuid
from dataclasses import dataclass

import httpx

from models.schemas import MediaAttachment, SessionState
from settings import SETTINGS

logger = logging.getLogger(__name__)

USER_AGENT = "Property-Inspection-Bot/1.0"


class MediaDownloadError(RuntimeError):
    pass


@dataclass
class StoredMedia:
    key: str
    url: str
    media_type: str
    size_bytes: int


def slugify(value: str | None, fallback: str, limit: int | None = None) -> str:
    cleaned = re.sub(r"[^a-z0-9\s-]", "", str(value or "").lower())
    slug = re.sub(r"\s+", "-", cleaned.strip())
    if limit:
        slug = slug[:limit]
    return slug or fallback


def build_media_key(state: SessionState, media_type: str, space_directory: str | None = None) -> str:
    space_directory = space_directory or SETTINGS.media_space_directory
    customer = slugify(state.customer_name, "unknown", limit=50)
    postal = state.postal_code or "unknown"
    room = slugify(state.current_sub_location_name or state.current_location, "general")
    bucket = "videos" if media_type == "video" else "photos"
    ext = "mp4" if media_type == "video" else "jpeg"
    filename = f"{uuid.uuid4()}-{int(time.time() * 1000)}.{ext}"
    return f"{space_directory}/data/{customer}-{postal}/{room}/{bucket}/{filename}"


class MediaTools:
    """Fetches inbound WhatsApp media and stores it under ``media_root``."""

    def __init__(
        self,
        root: str | None = None,
        public_base_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.root = root or SETTINGS.media_root
        self.public_base_url = (public_base_url or SETTINGS.media_public_base_url).rstrip("/")
        self._transport = transport

    def _source(self, media: MediaAttachment) -> tuple[str, dict]:
        headers = {"User-Agent": USER_AGENT, "Accept": "image/*,video/*,*/*"}
        if media.url:
            return media.url, headers
        if media.download_path:
            path = media.download_path
            url = path if path.startswith("http") else f"{SETTINGS.wassenger_api_base.rstrip('/')}{path}"
            return url, {**headers, "Token": SETTINGS.wassenger_api_key}
        raise MediaDownloadError("Media upload failed - could not find media URL.")

    async def download(self, media: MediaAttachment) -> bytes:
        url, headers = self._source(media)
        try:
            async with httpx.AsyncClient(timeout=SETTINGS.llm_timeout_seconds, transport=self._transport, follow_redirects=True) as client:
                resp = await client.get(url, headers=headers)
                resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise MediaDownloadError(f"Failed to download media: {exc}") from exc
        logger.info("media_downloaded", extra={"url": url, "bytes": len(resp.content)})
        return resp.content

    def store(self, key: str, content: bytes) -> str:
        path = os.path.join(self.root, *key.split("/"))
        os.makedirs(os.path.dirname(path), exist_ok=True)
        tmp = f"{path}.tmp"
        try:
            with open(tmp, "wb") as fh:
                fh.write(content)
            os.replace(tmp, path)
        except OSError as exc:
            raise MediaDownloadError(f"Failed to store media: {exc!r}") from exc
        return f"{self.public_base_url}/{key}"

    async def save_inbound(self, media: MediaAttachment, state: SessionState) -> StoredMedia:
        content = await self.download(media)
        if not content:
            raise MediaDownloadError("Downloaded media is empty.")
        key = build_media_key(state, media.media_type)
        url = self.store(key, content)
        return StoredMedia(key=key, url=url, media_type=media.media_type, size_bytes=len(content))
