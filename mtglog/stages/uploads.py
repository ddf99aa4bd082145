"""Direct-upload URL minting for clients that upload videos themselves.

WHY: Browser or script clients can push a video straight to storage
instead of routing the bytes through intake. They only need a signed
write URL and the storage path to report back.

HOW: Validate name and content type, build videos/<epoch_ms>_<name>,
and ask storage for a signed upload URL.

RULES:
- Only .mp4 files with content type video/mp4 are accepted (400 otherwise)
- The storage path uses the same sanitization as intake
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Optional

from mtglog.api.storage import video_storage_path
from mtglog.config import ACCEPTED_CONTENT_TYPE, ACCEPTED_EXTENSION
from mtglog.errors import StageError
from mtglog.services import Services

logger = logging.getLogger(__name__)


def validate_upload_request(file_name: Optional[str], content_type: Optional[str]) -> None:
    if not file_name or not content_type:
        raise StageError("fileName and contentType are required", 400)
    if Path(file_name).suffix.lower() != ACCEPTED_EXTENSION:
        raise StageError(f"Only {ACCEPTED_EXTENSION} files are allowed", 400)
    if content_type.lower() != ACCEPTED_CONTENT_TYPE:
        raise StageError(f"Only {ACCEPTED_CONTENT_TYPE} content is allowed", 400)


async def create_upload_url(
    services: Services,
    file_name: Optional[str],
    content_type: Optional[str],
) -> Dict[str, str]:
    validate_upload_request(file_name, content_type)
    storage = services.need("storage")
    storage_path = video_storage_path(file_name)
    upload_url = await storage.create_signed_upload_url(
        services.settings.video_bucket, storage_path
    )
    logger.info("Minted upload URL for %s", storage_path)
    return {"uploadUrl": upload_url, "storagePath": storage_path}
