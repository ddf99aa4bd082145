"""Object storage access: signed URLs, streaming PUT and direct upload.

WHY: Videos are too large to pass through the stage functions, so stages
hand out time-boxed signed URLs instead: a write URL for intake, a read
URL for the transcription worker. The worker also uploads its extracted
MP3 straight into the audio bucket.

HOW: supabase-py's storage API (create_client(...).storage.from_(bucket))
mints signed URLs and uploads files. Its calls are synchronous and run in
a thread via asyncio.to_thread. Streaming transfers to a signed upload URL
use an httpx PUT with an async byte iterator as the body.

RULES:
- Any storage failure becomes UpstreamError("storage", status, message)
- Signed read URLs default to SIGNED_URL_TTL_S (30 minutes)
- The response key spelling differs across supabase releases
  (signedUrl / signedURL / signed_url); all are accepted
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from pathlib import Path
from typing import Any, AsyncIterable, Optional, Union

import httpx
from supabase import Client, create_client

from mtglog.config import SIGNED_URL_TTL_S, VIDEO_PREFIX
from mtglog.errors import UpstreamError

logger = logging.getLogger(__name__)

_UNSAFE_NAME_CHARS = re.compile(r"[^a-zA-Z0-9._-]")
_SIGNED_URL_KEYS = ("signedUrl", "signedURL", "signed_url")
_TRANSFER_TIMEOUT = httpx.Timeout(900.0, connect=30.0)


def sanitize_file_name(name: str) -> str:
    """Replace every character outside [a-zA-Z0-9._-] with '_'."""
    return _UNSAFE_NAME_CHARS.sub("_", name)


def video_storage_path(file_name: str, now_ms: Optional[int] = None) -> str:
    """Build 'videos/<epoch_ms>_<sanitized name>' for a new upload."""
    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"{VIDEO_PREFIX}/{stamp}_{sanitize_file_name(file_name)}"


def _signed_url(result: Any) -> str:
    if isinstance(result, dict):
        for key in _SIGNED_URL_KEYS:
            if result.get(key):
                return result[key]
    raise UpstreamError("storage", 502, "Signed URL missing from storage response")


def _storage_error(exc: Exception) -> UpstreamError:
    status = getattr(exc, "status", None) or getattr(exc, "status_code", None)
    if status is None and exc.args and isinstance(exc.args[0], dict):
        status = exc.args[0].get("statusCode")
    try:
        status = int(status) if status is not None else None
    except (TypeError, ValueError):
        status = None
    return UpstreamError("storage", status, str(exc))


class StorageClient:
    """Async facade over Supabase Storage.

    RULES:
    - Construct with from_settings() in apps; tests inject a fake client
    - put_stream() uses its own httpx client unless one is passed in
    """

    def __init__(
        self,
        supabase: Client,
        http: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._supabase = supabase
        self._http = http

    @classmethod
    def from_settings(cls, url: str, key: str) -> StorageClient:
        return cls(create_client(url, key))

    async def aclose(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    def _bucket(self, bucket: str) -> Any:
        return self._supabase.storage.from_(bucket)

    async def _call(self, fn: Any, *args: Any, **kwargs: Any) -> Any:
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except UpstreamError:
            raise
        except Exception as exc:  # supabase raises several unrelated types
            raise _storage_error(exc) from exc

    async def create_signed_upload_url(self, bucket: str, path: str) -> str:
        """Mint a write-capable signed URL for one object path."""
        result = await self._call(self._bucket(bucket).create_signed_upload_url, path)
        return _signed_url(result)

    async def create_signed_url(
        self,
        bucket: str,
        path: str,
        expires_in: int = SIGNED_URL_TTL_S,
    ) -> str:
        """Mint a read-only signed URL valid for expires_in seconds."""
        result = await self._call(self._bucket(bucket).create_signed_url, path, expires_in)
        return _signed_url(result)

    async def upload_file(
        self,
        bucket: str,
        path: str,
        source: Union[Path, bytes],
        content_type: str,
    ) -> None:
        """Upload a local file (or bytes) to bucket/path, overwriting."""
        data = Path(source).read_bytes() if isinstance(source, Path) else source
        await self._call(
            self._bucket(bucket).upload,
            path,
            data,
            {"content-type": content_type, "upsert": "true"},
        )
        logger.info("Uploaded %d bytes to %s/%s", len(data), bucket, path)

    async def put_stream(
        self,
        upload_url: str,
        body: Union[bytes, AsyncIterable[bytes]],
        content_type: str,
        content_length: Optional[int] = None,
    ) -> None:
        """PUT a body (bytes or async chunk iterator) to a signed upload URL."""
        headers = {"Content-Type": content_type}
        if content_length is not None:
            headers["Content-Length"] = str(content_length)
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=_TRANSFER_TIMEOUT)
        response = await self._http.put(upload_url, content=body, headers=headers)
        if response.status_code >= 300:
            raise UpstreamError("storage", response.status_code, response.text)
