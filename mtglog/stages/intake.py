"""Intake stage: move a Slack video into storage and create its task.

WHY: Everything downstream works from a storage path and a task id. Intake
is the only stage that touches the Slack file, so it resolves the private
download URL, copies the bytes into the videos bucket and records the task
with its meeting metadata in one place.

HOW:
  1. Filter: only .mp4 / video/mp4 sources are accepted; others are skipped
  2. Resolve the download URL via Slack files.info when it is missing
  3. Mint a signed upload URL for videos/<epoch_ms>_<sanitized name>
  4. Stream Slack GET -> storage PUT (or buffer, when streaming is disabled)
  5. Insert the task in 'uploaded' status with the resolved metadata
Steps 2-4 retry transient failures with exponential backoff. Every
transfer attempt is recorded in upload_logs, with progress at 10% steps.

RULES:
- A skipped source never creates a task row
- Buffered transfers are capped at MTGLOG_MAX_BUFFERED_UPLOAD_BYTES
- Upload-log writes are best-effort and never fail the stage
- The start-task handoff is best-effort and never fails the stage
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import (
    Any,
    AsyncIterable,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Tuple,
)

from mtglog.api.storage import video_storage_path
from mtglog.config import ACCEPTED_CONTENT_TYPE, ACCEPTED_EXTENSION
from mtglog.core.metadata import resolve_metadata
from mtglog.core.retry import with_retry
from mtglog.errors import StageError, UploadTooLargeError
from mtglog.services import Services

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024
PROGRESS_STEP = 10


@dataclass
class SourceFile:
    """A video to ingest and where it came from.

    RULES:
    - name is the original file name (sanitized only for the storage path)
    - download_url may be None; it is then resolved from file_id
    """

    name: str
    file_id: Optional[str] = None
    mimetype: Optional[str] = None
    filetype: Optional[str] = None
    download_url: Optional[str] = None
    size: Optional[int] = None
    slack_user_id: Optional[str] = None
    slack_channel_id: Optional[str] = None
    slack_team_id: Optional[str] = None
    slack_event_ts: Optional[str] = None


@dataclass
class IntakeResult:
    status: str
    file_name: str
    task_id: Optional[str] = None
    storage_path: Optional[str] = None
    reason: Optional[str] = None

    @property
    def created(self) -> bool:
        return self.status == "uploaded"


@dataclass
class EventBatch:
    """Files and message text pulled out of one Slack event envelope."""

    sources: List[SourceFile] = field(default_factory=list)
    text: Optional[str] = None
    file_ids: List[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Acceptance
# ---------------------------------------------------------------------------


def rejection_reason(
    name: str,
    mimetype: Optional[str] = None,
    filetype: Optional[str] = None,
) -> Optional[str]:
    """Return why a source is not accepted, or None when it is."""
    extension = Path(name or "").suffix.lower()
    if extension != ACCEPTED_EXTENSION:
        return f"Unsupported file extension '{extension or name}'; only {ACCEPTED_EXTENSION} is accepted"
    if mimetype and mimetype.lower() != ACCEPTED_CONTENT_TYPE:
        return f"Unsupported content type '{mimetype}'; only {ACCEPTED_CONTENT_TYPE} is accepted"
    if filetype and filetype.lower() != ACCEPTED_EXTENSION.lstrip("."):
        return f"Unsupported Slack filetype '{filetype}'"
    return None


# ---------------------------------------------------------------------------
# Transfer helpers
# ---------------------------------------------------------------------------


class _ProgressReporter:
    """Writes upload progress to the upload log at every 10% boundary."""

    def __init__(self, services: Services, log_id: Optional[str], total: Optional[int]) -> None:
        self._services = services
        self._log_id = log_id
        self._total = total
        self._sent = 0
        self._last_step = 0

    def advance(self, count: int) -> None:
        self._sent += count
        if not self._total:
            return
        percent = min(int(self._sent * 100 / self._total), 100)
        step = percent - percent % PROGRESS_STEP
        if step > self._last_step:
            self._last_step = step
            logger.info("Upload progress %d%% (%d/%d bytes)", step, self._sent, self._total)
            self._services.upload_logs.update(self._log_id, progress=step)


async def _counted(
    chunks: AsyncIterable[bytes],
    reporter: _ProgressReporter,
) -> AsyncIterator[bytes]:
    async for chunk in chunks:
        reporter.advance(len(chunk))
        yield chunk


async def _buffer(
    chunks: AsyncIterable[bytes],
    limit: int,
    declared_size: Optional[int],
) -> bytes:
    if declared_size is not None and declared_size > limit:
        raise UploadTooLargeError(declared_size, limit)
    data = bytearray()
    async for chunk in chunks:
        data.extend(chunk)
        if len(data) > limit:
            raise UploadTooLargeError(len(data), limit)
    return bytes(data)


async def send_to_storage(
    services: Services,
    upload_url: str,
    chunks: AsyncIterable[bytes],
    size: Optional[int],
    log_id: Optional[str],
    content_type: str = ACCEPTED_CONTENT_TYPE,
) -> None:
    """PUT chunks to a signed upload URL, streaming or buffered per settings."""
    storage = services.need("storage")
    settings = services.settings
    services.upload_logs.update(log_id, status="uploading", file_size=size)
    if settings.stream_uploads:
        reporter = _ProgressReporter(services, log_id, size)
        await storage.put_stream(upload_url, _counted(chunks, reporter), content_type, size)
        return
    logger.info("Streaming disabled; buffering upload (limit %d bytes)", settings.max_buffered_upload_bytes)
    data = await _buffer(chunks, settings.max_buffered_upload_bytes, size)
    await storage.put_stream(upload_url, data, content_type, len(data))


# Transfer callable: (upload_url, log_id) -> None
Transfer = Callable[[str, Optional[str]], Awaitable[None]]


async def _ingest(
    services: Services,
    source: SourceFile,
    metadata: Optional[Mapping[str, Any]],
    text: Optional[str],
    transfer: Transfer,
) -> IntakeResult:
    settings = services.settings
    storage = services.need("storage")
    storage_path = video_storage_path(source.name)
    log_id = services.upload_logs.start(
        source.name,
        storage_path=storage_path,
        content_type=source.mimetype or ACCEPTED_CONTENT_TYPE,
        file_size=source.size,
        slack_file_id=source.file_id,
        slack_download_url=source.download_url,
        source_metadata={
            "slack_user_id": source.slack_user_id,
            "slack_channel_id": source.slack_channel_id,
            "slack_event_ts": source.slack_event_ts,
        },
    )

    try:
        upload_url = await with_retry(
            storage.create_signed_upload_url,
            settings.video_bucket,
            storage_path,
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay,
        )
        await with_retry(
            transfer,
            upload_url,
            log_id,
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay,
        )
        task = services.tasks.create_task(
            original_file_name=source.name,
            storage_path=storage_path,
            slack_file_id=source.file_id,
            slack_file_url=source.download_url,
            slack_user_id=source.slack_user_id,
            slack_channel_id=source.slack_channel_id,
            slack_team_id=source.slack_team_id,
            slack_event_ts=source.slack_event_ts,
            **resolve_metadata(metadata, text),
        )
    except Exception as exc:
        services.upload_logs.update(log_id, status="failed", error_message=str(exc))
        raise

    services.upload_logs.update(log_id, status="uploaded", progress=100, task_id=task.id)
    logger.info("Intake complete: task %s stored at %s", task.id, storage_path)
    return IntakeResult(
        status="uploaded",
        file_name=source.name,
        task_id=task.id,
        storage_path=storage_path,
    )


def _skipped(source: SourceFile, reason: str) -> IntakeResult:
    logger.info("Skipping %s: %s", source.name, reason)
    return IntakeResult(status="skipped", file_name=source.name, reason=reason)


# ---------------------------------------------------------------------------
# Public stage entry points
# ---------------------------------------------------------------------------


async def ingest_slack_file(
    services: Services,
    source: SourceFile,
    metadata: Optional[Mapping[str, Any]] = None,
    text: Optional[str] = None,
) -> IntakeResult:
    """Copy a Slack-hosted video into storage and create its task.

    RULES:
    - Non-mp4 sources return status 'skipped' with a reason
    - Missing download_url requires file_id (400 otherwise)
    """
    reason = rejection_reason(source.name, source.mimetype, source.filetype)
    if reason:
        return _skipped(source, reason)

    slack = services.need("slack")
    settings = services.settings
    if not source.download_url:
        if not source.file_id:
            raise StageError("file_id or slack_download_url is required", 400)
        source.download_url = await with_retry(
            slack.resolve_download_url,
            source.file_id,
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay,
        )

    async def transfer(upload_url: str, log_id: Optional[str]) -> None:
        async with slack.stream_download(source.download_url) as response:
            length = response.headers.get("content-length")
            size = int(length) if length and length.isdigit() else source.size
            await send_to_storage(
                services, upload_url, response.aiter_bytes(CHUNK_SIZE), size, log_id
            )

    return await _ingest(services, source, metadata, text, transfer)


async def ingest_uploaded_file(
    services: Services,
    source: SourceFile,
    read_chunk: Callable[[int], Awaitable[bytes]],
    rewind: Optional[Callable[[], Awaitable[Any]]] = None,
    metadata: Optional[Mapping[str, Any]] = None,
    text: Optional[str] = None,
) -> IntakeResult:
    """Store a video posted directly to the intake endpoint (multipart).

    read_chunk(n) returns up to n bytes ('' / b'' at end); rewind() is
    called before a retried attempt so the body is re-read from the start.
    """
    reason = rejection_reason(source.name, source.mimetype, source.filetype)
    if reason:
        return _skipped(source, reason)

    attempts = {"count": 0}

    async def chunks() -> AsyncIterator[bytes]:
        while True:
            chunk = await read_chunk(CHUNK_SIZE)
            if not chunk:
                return
            yield chunk

    async def transfer(upload_url: str, log_id: Optional[str]) -> None:
        if attempts["count"] and rewind is not None:
            await rewind()
        attempts["count"] += 1
        await send_to_storage(services, upload_url, chunks(), source.size, log_id)

    return await _ingest(services, source, metadata, text, transfer)


async def request_start(services: Services, task_id: str) -> bool:
    """Best-effort trigger of the start-task stage for a new task."""
    settings = services.settings
    if not settings.auto_start:
        return False
    if not settings.app_url:
        logger.warning("APP_URL not set; task %s waits for a manual start", task_id)
        return False
    return await services.caller.trigger(
        settings.stage_url("/api/start-task"),
        {"taskId": task_id},
        timeout=settings.handoff_timeout,
    )


# ---------------------------------------------------------------------------
# Slack Events API envelopes
# ---------------------------------------------------------------------------


def _source_from_file(file_obj: Mapping[str, Any], event: Mapping[str, Any], team_id: Optional[str]) -> SourceFile:
    return SourceFile(
        name=file_obj.get("name") or file_obj.get("title") or "",
        file_id=file_obj.get("id"),
        mimetype=file_obj.get("mimetype"),
        filetype=file_obj.get("filetype"),
        download_url=file_obj.get("url_private_download"),
        size=file_obj.get("size"),
        slack_user_id=event.get("user") or file_obj.get("user"),
        slack_channel_id=event.get("channel") or event.get("channel_id"),
        slack_team_id=team_id,
        slack_event_ts=event.get("event_ts") or event.get("ts"),
    )


def parse_event(envelope: Mapping[str, Any]) -> EventBatch:
    """Extract the files and message text from an event_callback envelope.

    RULES:
    - Bot messages and events without files yield an empty batch
    - message events with a files list yield one source per file
    - file_shared events only carry an id; it is listed in file_ids
    """
    batch = EventBatch()
    if envelope.get("type") != "event_callback":
        return batch
    event = envelope.get("event") or {}
    if event.get("bot_id") or event.get("subtype") == "bot_message":
        return batch

    team_id = envelope.get("team_id")
    batch.text = event.get("text")
    for file_obj in event.get("files") or []:
        batch.sources.append(_source_from_file(file_obj, event, team_id))
    if event.get("type") == "file_shared" and event.get("file_id"):
        batch.file_ids.append(event["file_id"])
    return batch


async def process_event(services: Services, envelope: Mapping[str, Any]) -> List[IntakeResult]:
    """Ingest every file in a Slack event; one failure never stops the rest."""
    batch = parse_event(envelope)
    sources = list(batch.sources)
    event = envelope.get("event") or {}

    for file_id in batch.file_ids:
        try:
            file_obj = await services.need("slack").files_info(file_id)
        except Exception:
            logger.exception("Could not look up shared file %s", file_id)
            continue
        sources.append(_source_from_file(file_obj, event, envelope.get("team_id")))

    results: List[IntakeResult] = []
    for source in sources:
        try:
            result = await ingest_slack_file(services, source, text=batch.text)
        except Exception:
            logger.exception("Intake failed for Slack file %s (%s)", source.file_id, source.name)
            continue
        results.append(result)
        if result.created:
            await request_start(services, result.task_id)
    return results


def describe_results(results: List[IntakeResult]) -> Tuple[int, int]:
    """(created, skipped) counts for logging."""
    created = sum(1 for r in results if r.created)
    return created, len(results) - created


def result_payload(result: IntakeResult) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"status": result.status, "fileName": result.file_name}
    if result.created:
        payload.update(
            message="Upload successful and task created",
            taskId=result.task_id,
            storagePath=result.storage_path,
        )
    else:
        payload["reason"] = result.reason
    return payload
