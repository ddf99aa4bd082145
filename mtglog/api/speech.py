"""Speech-to-text client used by the transcription worker.

WHY: The worker turns the extracted MP3 into plain transcript text for
the summarization stage. Only the text is needed; timestamps and speaker
labels are left to the LLM phases.

HOW: openai.AsyncOpenAI audio.transcriptions.create with the Whisper
model and a fixed language hint (Japanese by default), reading the audio
file from disk.

RULES:
- transcribe() returns stripped text; an empty result is the caller's
  problem to reject
- Provider errors become UpstreamError("speech", ...)
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import openai
from openai import AsyncOpenAI

from mtglog.errors import UpstreamError

logger = logging.getLogger(__name__)


class SpeechClient:
    def __init__(
        self,
        api_key: str,
        model: str = "whisper-1",
        language: str = "ja",
        base_url: Optional[str] = None,
        timeout: float = 900.0,
    ) -> None:
        self._client = AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout)
        self.model = model
        self.language = language

    async def aclose(self) -> None:
        await self._client.close()

    async def transcribe(self, audio_path: Path) -> str:
        logger.info("Transcribing %s (model=%s, language=%s)", audio_path.name, self.model, self.language)
        try:
            with open(audio_path, "rb") as audio_file:
                transcription = await self._client.audio.transcriptions.create(
                    file=audio_file,
                    model=self.model,
                    language=self.language,
                )
        except openai.APIStatusError as exc:
            raise UpstreamError("speech", exc.status_code, exc.message) from exc
        except openai.APIError as exc:
            raise UpstreamError("speech", None, exc.message) from exc
        return (transcription.text or "").strip()
