"""Transcription worker pipeline: video URL in, transcript handed onward.

WHY: Audio extraction needs ffmpeg and minutes of CPU, which does not fit
the stage app's request budget. The worker runs on its own host, gets a
signed read URL for the video and only talks back over HTTP (and, when
it has database access, records the transcription outcome on the task).

HOW:
  1. Stream the video from the signed URL into a temp directory
  2. Extract mono 16 kHz MP3 audio with ffmpeg
  3. Upload the audio to <bucket>/<dest path> in storage
  4. Transcribe the audio (OpenAI Whisper)
  5. Record 'transcribed' (if the worker has a database) and POST
     {taskId, transcript} to the summarize endpoint with the bearer secret
The temp directory is removed whatever happens.

RULES:
- Failures raise StageError(500) with a message free of URLs and secrets
- An empty transcript is a failure
- With a database, failures before the handoff record 'transcribe_failed'
"""

from __future__ import annotations

import logging
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import httpx

from mtglog.core.status import TaskStatus
from mtglog.errors import StageError, UpstreamError, truncate
from mtglog.services import Services
from mtglog.stages.dispatch import record_failure
from mtglog.worker.audio import AudioExtractionError, extract_audio

logger = logging.getLogger(__name__)

DOWNLOAD_CHUNK_SIZE = 1024 * 1024
SUMMARIZE_TIMEOUT_S = 15 * 60


@dataclass
class TranscribeJob:
    signed_url: str
    bucket: str
    dest_path: str
    task_id: str


class TranscriptionError(RuntimeError):
    """A worker step failed; message is safe to store and return."""


async def download_video(
    url: str,
    dest: Path,
    http: Optional[httpx.AsyncClient] = None,
) -> int:
    """Stream a signed URL to dest; returns the number of bytes written."""
    client = http or httpx.AsyncClient(timeout=httpx.Timeout(900.0, connect=30.0))
    written = 0
    try:
        async with client.stream("GET", url) as response:
            if response.status_code >= 300:
                raise TranscriptionError(f"Video download failed with status {response.status_code}")
            with open(dest, "wb") as f:
                async for chunk in response.aiter_bytes(DOWNLOAD_CHUNK_SIZE):
                    f.write(chunk)
                    written += len(chunk)
    except httpx.TransportError as exc:
        raise TranscriptionError(f"Video download failed: {type(exc).__name__}") from exc
    finally:
        if http is None:
            await client.aclose()
    logger.info("Downloaded %d bytes to %s", written, dest.name)
    return written


def _records_status(services: Services) -> bool:
    return services.settings.database_configured


async def _transcribe(services: Services, job: TranscribeJob, workdir: Path) -> str:
    storage = services.need("storage")
    speech = services.need("speech")

    video_path = workdir / "input.mp4"
    audio_path = workdir / "audio.mp3"
    await download_video(job.signed_url, video_path)
    try:
        await extract_audio(video_path, audio_path)
    except AudioExtractionError as exc:
        raise TranscriptionError(f"Audio extraction failed (ffmpeg exit {exc.returncode})") from exc
    except FileNotFoundError as exc:
        raise TranscriptionError("ffmpeg is not installed on the worker") from exc

    await storage.upload_file(job.bucket, job.dest_path, audio_path, "audio/mpeg")
    transcript = await speech.transcribe(audio_path)
    if not transcript:
        raise TranscriptionError("Speech recognition returned an empty transcript")
    return transcript


async def run_transcription(services: Services, job: TranscribeJob) -> Dict[str, Any]:
    summarize_url = services.settings.require("summarize_endpoint")
    workdir = Path(tempfile.mkdtemp(prefix="mtglog_worker_"))
    logger.info("Transcribing task %s in %s", job.task_id, workdir)
    try:
        try:
            transcript = await _transcribe(services, job, workdir)
        except (TranscriptionError, UpstreamError) as exc:
            message = f"Transcription failed: {exc}"
            logger.error("Task %s: %s", job.task_id, message)
            if _records_status(services):
                record_failure(services, job.task_id, TaskStatus.TRANSCRIBE_FAILED, message)
            raise StageError(truncate(message), 500) from exc

        if _records_status(services):
            record_transcript(services, job.task_id, transcript)

        try:
            await services.caller.post(
                summarize_url,
                {"taskId": job.task_id, "transcript": transcript},
                service="summarize",
                timeout=SUMMARIZE_TIMEOUT_S,
            )
        except UpstreamError as exc:
            raise StageError(f"Summarize request failed: {exc.message}", 500) from exc
    finally:
        shutil.rmtree(workdir, ignore_errors=True)

    logger.info("Task %s transcribed (%d chars) and handed to summarize", job.task_id, len(transcript))
    return {
        "message": "Transcription completed",
        "taskId": job.task_id,
        "audioPath": f"{job.bucket}/{job.dest_path}",
        "transcriptLength": len(transcript),
    }


def record_transcript(services: Services, task_id: str, transcript: str) -> None:
    """Store the transcript and move the task to 'transcribed' when allowed."""
    try:
        services.tasks.transition(task_id, TaskStatus.TRANSCRIBED, transcription_result=transcript)
    except StageError as exc:
        logger.warning("Could not record transcript for task %s: %s", task_id, exc)
