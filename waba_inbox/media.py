"""
Media relay: moves provider-hosted media into our own bucket.

Provider media URLs are short-lived and need the tenant's access token, so
every inbound attachment is fetched once and re-hosted under a durable key.
The dashboard then reads it through a time-limited signed URL.

Two phases:
1. GET {graph}/{version}/{media_id} -> short-lived download URL
2. stream the bytes from that URL, upload them, sign a read URL

relay() never raises; every failure comes back as a RelayResult with a
human-readable reason, and the caller persists the message regardless.
"""

import asyncio
import logging
import mimetypes
import re
import tempfile
import threading
from dataclasses import dataclass
from datetime import timedelta
from functools import lru_cache
from typing import BinaryIO, Optional, Protocol

import httpx
from google.cloud import storage as gcs

from waba_inbox.config import settings

logger = logging.getLogger(__name__)

MEDIA_ID_PATTERN = re.compile(r"^\d+$")
KEY_PREFIX = "whatsapp-media"
DEFAULT_CONTENT_TYPE = "application/octet-stream"

# Spool to disk above this size while downloading
_SPOOL_MAX_MEMORY = 8 * 1024 * 1024

# WhatsApp media types the mimetypes registry maps poorly or not at all
_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "audio/ogg": ".ogg",
    "audio/mpeg": ".mp3",
    "audio/amr": ".amr",
    "audio/aac": ".aac",
    "audio/mp4": ".m4a",
    "video/mp4": ".mp4",
    "video/3gpp": ".3gp",
    "application/pdf": ".pdf",
    "text/plain": ".txt",
}


def extension_for(mime_type: Optional[str]) -> str:
    """File extension for a MIME type, ignoring parameters like codecs=opus."""
    if not mime_type:
        return ".bin"
    base = mime_type.split(";", 1)[0].strip().lower()
    return _EXTENSIONS.get(base) or mimetypes.guess_extension(base) or ".bin"


def object_key(owner_key: str, media_id: str, mime_type: Optional[str]) -> str:
    safe_owner = re.sub(r"[^0-9A-Za-z_.-]", "_", owner_key) or "unknown"
    return f"{KEY_PREFIX}/{safe_owner}/{media_id}{extension_for(mime_type)}"


class RelayError(Exception):
    """A relay step failed; the message is the reason stored on the row."""


@dataclass(frozen=True)
class RelayResult:
    """Outcome of one relay attempt. ok iff url is set."""
    url: Optional[str] = None
    error: Optional[str] = None
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return self.url is not None

    @classmethod
    def failure(cls, reason: str, skipped: bool = False) -> "RelayResult":
        return cls(url=None, error=reason, skipped=skipped)


class MediaStore(Protocol):
    """Write-once object storage with signed read URLs."""

    def upload(self, key: str, fileobj: BinaryIO, content_type: str) -> None:
        ...

    def signed_url(self, key: str, expires_in: int) -> str:
        ...


class GcsMediaStore:
    """
    MediaStore backed by a Google Cloud Storage bucket.

    The client is built on first use, inside a relay, so missing credentials
    surface as a per-message storage error rather than at request setup.
    """

    def __init__(self, bucket_name: str, client: Optional[gcs.Client] = None) -> None:
        self._bucket_name = bucket_name
        self._client = client
        self._bucket: Optional[gcs.Bucket] = None
        self._lock = threading.Lock()

    def _get_bucket(self) -> gcs.Bucket:
        with self._lock:
            if self._bucket is None:
                if self._client is None:
                    self._client = gcs.Client()
                self._bucket = self._client.bucket(self._bucket_name)
            return self._bucket

    def upload(self, key: str, fileobj: BinaryIO, content_type: str) -> None:
        blob = self._get_bucket().blob(key)
        blob.upload_from_file(fileobj, content_type=content_type, rewind=True)

    def signed_url(self, key: str, expires_in: int) -> str:
        blob = self._get_bucket().blob(key)
        return blob.generate_signed_url(
            version="v4",
            expiration=timedelta(seconds=expires_in),
            method="GET",
        )


class MediaRelay:
    def __init__(
        self,
        http_client: httpx.AsyncClient,
        store: Optional[MediaStore],
        base_url: str = "https://graph.facebook.com",
        signed_url_ttl: int = 7 * 24 * 3600,
        max_bytes: int = 100 * 1024 * 1024,
    ) -> None:
        self._http = http_client
        self._store = store
        self._base_url = base_url.rstrip("/")
        self._signed_url_ttl = signed_url_ttl
        self._max_bytes = max_bytes

    async def relay(
        self,
        media_id: str,
        access_token: Optional[str],
        api_version: str,
        mime_type: Optional[str],
        owner_key: str,
    ) -> RelayResult:
        """
        Fetch a provider media asset and re-host it.

        Args:
            media_id: Provider media handle (numeric string)
            access_token: Tenant's provider credential
            api_version: Tenant's Graph API version, e.g. v23.0
            mime_type: MIME type reported in the message payload
            owner_key: Folder component of the object key (sender phone)

        Returns:
            RelayResult with the signed URL, or the failure reason
        """
        if self._store is None:
            return RelayResult.failure("Media storage not configured", skipped=True)

        if not media_id or not MEDIA_ID_PATTERN.match(media_id):
            logger.warning(f"Rejected media id before download: {media_id!r}")
            return RelayResult.failure(f"Invalid media ID format: {media_id}")

        if not access_token:
            return RelayResult.failure("Missing provider access token")

        headers = {"Authorization": f"Bearer {access_token}"}

        try:
            download_url = await self._resolve_download_url(media_id, api_version, headers)
        except RelayError as e:
            logger.error(f"Media info lookup failed for {media_id}: {e}")
            return RelayResult.failure(str(e))

        key = object_key(owner_key, media_id, mime_type)
        try:
            url = await self._transfer(download_url, headers, key, mime_type or DEFAULT_CONTENT_TYPE)
        except RelayError as e:
            logger.error(f"Media transfer failed for {media_id}: {e}")
            return RelayResult.failure(str(e))
        except Exception as e:
            logger.exception(f"Media storage error for {media_id}")
            return RelayResult.failure(f"Storage error: {e}")

        logger.info(f"Media relayed: id={media_id}, key={key}")
        return RelayResult(url=url)

    async def _resolve_download_url(self, media_id: str, api_version: str, headers: dict) -> str:
        info_url = f"{self._base_url}/{api_version}/{media_id}"
        try:
            response = await self._http.get(info_url, headers=headers)
        except httpx.TimeoutException:
            raise RelayError("Timed out fetching media info")
        except httpx.HTTPError as e:
            raise RelayError(f"Failed to fetch media info: {e}")

        if response.status_code != 200:
            raise RelayError(f"Failed to get media info: HTTP {response.status_code}")

        try:
            url = response.json().get("url")
        except ValueError:
            url = None
        if not url:
            raise RelayError("No media URL in media info response")
        return url

    async def _transfer(self, download_url: str, headers: dict, key: str, content_type: str) -> str:
        with tempfile.SpooledTemporaryFile(max_size=_SPOOL_MAX_MEMORY) as spool:
            size = 0
            try:
                async with self._http.stream("GET", download_url, headers=headers) as response:
                    if response.status_code != 200:
                        raise RelayError(f"Failed to download media: HTTP {response.status_code}")
                    async for chunk in response.aiter_bytes():
                        size += len(chunk)
                        if size > self._max_bytes:
                            raise RelayError(f"Media exceeds {self._max_bytes} bytes")
                        spool.write(chunk)
            except httpx.TimeoutException:
                raise RelayError("Timed out downloading media")
            except httpx.HTTPError as e:
                raise RelayError(f"Failed to download media: {e}")

            if size == 0:
                raise RelayError("Downloaded media is empty")

            spool.seek(0)
            await asyncio.to_thread(self._store.upload, key, spool, content_type)

        return await asyncio.to_thread(self._store.signed_url, key, self._signed_url_ttl)


# =============================================================================
# Shared clients
# =============================================================================

_http_client: Optional[httpx.AsyncClient] = None


def get_http_client() -> httpx.AsyncClient:
    """Shared AsyncClient with bounded timeouts for provider calls."""
    global _http_client
    if _http_client is None:
        _http_client = httpx.AsyncClient(
            timeout=httpx.Timeout(settings.HTTP_TIMEOUT_SECONDS, connect=10.0),
            follow_redirects=True,
        )
    return _http_client


async def close_http_client() -> None:
    global _http_client
    if _http_client is not None:
        await _http_client.aclose()
        _http_client = None


@lru_cache()
def get_media_store() -> Optional[MediaStore]:
    if not settings.MEDIA_BUCKET:
        logger.warning("MEDIA_BUCKET not set, media relay disabled")
        return None
    return GcsMediaStore(settings.MEDIA_BUCKET)


def get_media_relay() -> MediaRelay:
    """FastAPI dependency: relay wired to the shared HTTP client and bucket."""
    return MediaRelay(
        http_client=get_http_client(),
        store=get_media_store(),
        base_url=settings.GRAPH_API_BASE_URL,
        signed_url_ttl=settings.MEDIA_SIGNED_URL_TTL_SECONDS,
        max_bytes=settings.MEDIA_MAX_BYTES,
    )
