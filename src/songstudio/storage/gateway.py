"""
Storage Gateway
Upload/download of audio assets to the owned object-storage bucket
"""

import hashlib
import re
import time
from datetime import datetime
from typing import Optional, Union

import httpx
from pydantic import BaseModel

from ..core.config import get_settings
from ..core.logging import storage_logger
from ..core.result import Result, ErrorKind

settings = get_settings()

_NON_ASCII = re.compile(r"[^\x00-\x7F]")
_WHITESPACE = re.compile(r"\s+")
_UNSAFE = re.compile(r"[^A-Za-z0-9_-]")

CONTENT_TYPE_EXTENSIONS = {
    "audio/wav": "wav",
    "audio/x-wav": "wav",
    "audio/wave": "wav",
    "audio/mpeg": "mp3",
    "audio/mp3": "mp3",
    "audio/webm": "webm",
    "audio/ogg": "ogg",
    "audio/flac": "flac",
}


class StorageCategory:
    """Top-level folders in the bucket, one per producing stage"""
    RECORDINGS = "recordings"
    SEPARATED = "separated"
    SEGMENTS = "segments"
    AI_GENERATED = "ai_generated"
    ROEX = "roex"
    ENHANCED = "enhanced"
    KITS_CLEANED = "kits-cleaned"
    MERGED = "merged"
    FINAL = "final"
    UPLOADS = "uploads"


class PromotedAsset(BaseModel):
    """URL to persist after re-hosting a provider result"""
    url: str
    durable: bool
    source_url: str


def sanitize_project_name(name: Optional[str], default: str = None) -> str:
    """ASCII-only, underscore-separated, `[A-Za-z0-9_-]` project slug"""
    fallback = default or settings.DEFAULT_PROJECT_NAME
    if not name:
        return fallback

    cleaned = _NON_ASCII.sub("", name)
    cleaned = _WHITESPACE.sub("_", cleaned.strip())
    cleaned = _UNSAFE.sub("", cleaned)
    return cleaned or fallback


def build_storage_path(
    category: str,
    user_id: Optional[str],
    project_name: Optional[str],
    label: str,
    ext: str = "wav",
    artifact_key: Optional[str] = None,
    timestamp_ms: Optional[int] = None
) -> str:
    """
    Build `<category>/<user>/<project>_<label>_<timestamp>_<suffix>.<ext>`.

    With an artifact key the timestamp and suffix are derived from the key,
    so retrying the same logical upload targets the same object.
    """
    owner = str(user_id) if user_id else "anonymous"
    slug = sanitize_project_name(project_name)
    safe_label = sanitize_project_name(label, default="audio")

    if artifact_key:
        digest = hashlib.sha1(artifact_key.encode("utf-8")).hexdigest()
        suffix = digest[:6]
        stamp = timestamp_ms if timestamp_ms is not None else int(digest[6:17], 16) % 10 ** 13
    else:
        stamp = timestamp_ms if timestamp_ms is not None else int(time.time() * 1000)
        suffix = hashlib.sha1(f"{stamp}:{time.perf_counter_ns()}".encode("utf-8")).hexdigest()[:6]

    return f"{category}/{owner}/{slug}_{safe_label}_{stamp}_{suffix}.{ext.lstrip('.')}"


def timestamp_ms(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


class StorageGateway:
    """Supabase Storage REST client for the recordings bucket"""

    def __init__(
        self,
        base_url: str = None,
        service_key: str = None,
        bucket: str = None,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.base_url = (base_url or settings.SUPABASE_URL).rstrip("/")
        self.service_key = service_key if service_key is not None else settings.SUPABASE_SERVICE_KEY
        self.bucket = bucket or settings.STORAGE_BUCKET
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(settings.HTTP_TIMEOUT_SECONDS))
            self._owns_client = True
        return self._client

    @property
    def public_prefix(self) -> str:
        return f"{self.base_url}/storage/v1/object/public/{self.bucket}/"

    def get_public_url(self, path: str) -> str:
        return f"{self.public_prefix}{path.lstrip('/')}"

    def is_owned_url(self, url: Optional[str]) -> bool:
        """True if the URL already points into the owned bucket"""
        return bool(url) and url.startswith(self.public_prefix)

    async def upload(
        self,
        data: Union[bytes, bytearray],
        content_type: str,
        path: str,
        upsert: bool = True
    ) -> Result[str]:
        """Upload bytes and return the public URL"""

        if not data:
            return Result.err("Refusing to upload an empty file", ErrorKind.INPUT)

        url = f"{self.base_url}/storage/v1/object/{self.bucket}/{path.lstrip('/')}"
        headers = {
            "Authorization": f"Bearer {self.service_key}",
            "apikey": self.service_key,
            "Content-Type": content_type,
            "x-upsert": "true" if upsert else "false",
        }

        try:
            response = await self.client.post(url, content=bytes(data), headers=headers)
        except httpx.RequestError as e:
            return Result.err(f"Upload failed for {path}: {e}", ErrorKind.TRANSIENT)

        if response.status_code >= 400:
            return Result.err(
                f"Upload failed for {path}: {response.status_code} {response.text[:200]}",
                ErrorKind.STORAGE
            )

        storage_logger.log_upload(path, len(data), content_type)
        return Result.ok(self.get_public_url(path))

    async def download(self, url: str) -> Result[bytes]:
        """Fetch an asset by URL"""
        if not url:
            return Result.err("Missing URL", ErrorKind.INPUT)

        try:
            response = await self.client.get(url, follow_redirects=True)
        except httpx.RequestError as e:
            return Result.err(f"Download failed for {url}: {e}", ErrorKind.TRANSIENT)

        if response.status_code != 200:
            return Result.err(f"Download failed for {url}: {response.status_code}", ErrorKind.TRANSIENT)

        storage_logger.log_download(url, len(response.content))
        return Result.ok(response.content)

    async def promote(
        self,
        provider_url: str,
        category: str,
        user_id: Optional[str],
        project_name: Optional[str],
        label: str,
        artifact_key: str,
        ext: str = None,
        timestamp: Optional[int] = None
    ) -> PromotedAsset:
        """
        Re-host a transient provider URL in owned storage.

        Falls back to the provider URL (durable=False) when download or
        upload fails; the fallback is logged because that URL may expire.
        """
        if self.is_owned_url(provider_url):
            return PromotedAsset(url=provider_url, durable=True, source_url=provider_url)

        downloaded = await self.download(provider_url)
        if not downloaded.success:
            storage_logger.log_promotion_fallback(provider_url, downloaded.error)
            return PromotedAsset(url=provider_url, durable=False, source_url=provider_url)

        extension = ext or self._guess_extension(provider_url)
        path = build_storage_path(
            category, user_id, project_name, label, extension,
            artifact_key=artifact_key, timestamp_ms=timestamp
        )
        content_type = "audio/mpeg" if extension == "mp3" else "audio/wav"

        uploaded = await self.upload(downloaded.data, content_type, path)
        if not uploaded.success:
            storage_logger.log_promotion_fallback(provider_url, uploaded.error)
            return PromotedAsset(url=provider_url, durable=False, source_url=provider_url)

        return PromotedAsset(url=uploaded.data, durable=True, source_url=provider_url)

    @staticmethod
    def _guess_extension(url: str) -> str:
        tail = url.split("?", 1)[0].rsplit("/", 1)[-1]
        if "." in tail:
            ext = tail.rsplit(".", 1)[-1].lower()
            if ext in ("wav", "mp3", "flac", "ogg", "webm"):
                return ext
        return "wav"

    async def cleanup(self) -> None:
        """Clean up resources"""
        if self._client and self._owns_client:
            await self._client.aclose()
            self._client = None
