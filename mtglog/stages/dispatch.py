"""Start/Dispatch stage: hand a stored video to the transcription worker.

WHY: The worker never sees database credentials or storage keys. It gets
a 30-minute read URL for the video, the bucket and path for its audio
output, and the task id to thread through.

HOW:
  1. Load the task; it must exist (404) and have a storage_path (400)
  2. Move it to 'processing' (a repeated dispatch is allowed)
  3. Mint a signed read URL for the video
  4. POST {signedUrl, gcsBucket, gcsDestPath, taskId} to the worker and
     await its answer
A worker rejection marks the task 'failed' and surfaces as 502.

RULES:
- The task status is unchanged when the task is not actionable (400/404)
- gcsDestPath is audio/<taskId>/<epoch_ms>.mp3 in the audio bucket
- Recording a failure never masks the original error
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

from mtglog.config import AUDIO_PREFIX, SIGNED_URL_TTL_S
from mtglog.core.status import TaskStatus
from mtglog.errors import (
    InvalidTransitionError,
    StageError,
    TaskNotFoundError,
    UpstreamError,
)
from mtglog.services import Services

logger = logging.getLogger(__name__)

WORKER_TIMEOUT_S = 60 * 60


def audio_dest_path(task_id: str, now_ms: Optional[int] = None) -> str:
    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"{AUDIO_PREFIX}/{task_id}/{stamp}.mp3"


def record_failure(
    services: Services,
    task_id: str,
    status: TaskStatus,
    message: str,
) -> None:
    """Move a task to a failure status; a refused move is only logged."""
    try:
        services.tasks.transition(task_id, status, error_message=message)
    except (InvalidTransitionError, TaskNotFoundError) as exc:
        logger.warning("Could not record %s for task %s: %s", status.value, task_id, exc)


async def start_task(services: Services, task_id: str) -> Dict[str, Any]:
    settings = services.settings
    transcriber_url = settings.require("transcriber_url")
    storage = services.need("storage")

    task = services.tasks.get_task(task_id)
    if task is None:
        raise TaskNotFoundError(task_id)
    if not task.storage_path:
        raise StageError(f"Task {task_id} has no storage_path", 400)

    services.tasks.transition(task_id, TaskStatus.PROCESSING, error_message=None)

    try:
        signed_url = await storage.create_signed_url(
            settings.video_bucket, task.storage_path, SIGNED_URL_TTL_S
        )
    except UpstreamError as exc:
        message = f"Failed to create signed URL: {exc.message}"
        record_failure(services, task_id, TaskStatus.FAILED, message)
        raise StageError(message, 500) from exc

    payload = {
        "signedUrl": signed_url,
        "gcsBucket": settings.audio_bucket,
        "gcsDestPath": audio_dest_path(task_id),
        "taskId": task_id,
    }
    logger.info("Dispatching task %s to %s", task_id, transcriber_url)
    try:
        await services.caller.post(
            transcriber_url, payload, service="transcriber", timeout=WORKER_TIMEOUT_S
        )
    except UpstreamError as exc:
        status = exc.status_code if exc.status_code is not None else "unreachable"
        message = f"Transcriber request failed: {status} - {exc.message}"
        record_failure(services, task_id, TaskStatus.FAILED, message)
        raise StageError(message, 502) from exc

    return {
        "message": "Task dispatched to transcriber",
        "taskId": task_id,
        "status": TaskStatus.PROCESSING.value,
    }
