"""Audio extraction from meeting videos with ffmpeg.

WHY: Speech-to-text providers cap upload size, and a one-hour MP4 is far
over it. Mono 16 kHz speech at 64 kbit/s keeps an hour under 30 MB with
no loss that matters for recognition.

HOW: ffmpeg runs as an asyncio subprocess so the worker's event loop
stays responsive while a long video is converted.

RULES:
- Output: MP3 (libmp3lame), 16000 Hz, 1 channel, 64k bitrate, no video
- Existing output files are overwritten (-y)
- A non-zero exit raises AudioExtractionError with the stderr tail
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import List

logger = logging.getLogger(__name__)

SAMPLE_RATE_HZ = 16000
CHANNELS = 1
BITRATE = "64k"


class AudioExtractionError(RuntimeError):
    def __init__(self, returncode: int, stderr: str) -> None:
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(f"ffmpeg exited with {returncode}: {stderr[-500:]}")


def ffmpeg_command(video_path: Path, audio_path: Path, ffmpeg: str = "ffmpeg") -> List[str]:
    return [
        ffmpeg,
        "-y",
        "-i", str(video_path),
        "-vn",
        "-acodec", "libmp3lame",
        "-ar", str(SAMPLE_RATE_HZ),
        "-ac", str(CHANNELS),
        "-b:a", BITRATE,
        str(audio_path),
    ]


async def extract_audio(video_path: Path, audio_path: Path, ffmpeg: str = "ffmpeg") -> Path:
    """Convert video_path to a speech-ready MP3 at audio_path."""
    cmd = ffmpeg_command(video_path, audio_path, ffmpeg)
    logger.info("Extracting audio from %s", video_path.name)
    process = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    _, stderr = await process.communicate()
    if process.returncode != 0:
        text = stderr.decode("utf-8", "replace")
        logger.error("ffmpeg failed for %s: %s", video_path.name, text[-500:])
        raise AudioExtractionError(process.returncode, text)
    logger.info("Audio written to %s (%d bytes)", audio_path.name, audio_path.stat().st_size)
    return audio_path
