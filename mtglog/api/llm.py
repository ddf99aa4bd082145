"""Generative-text client used by the summarization stage.

WHY: Summarization issues four prompts per task (three phases plus the
consolidation). The stage only needs "prompt in, text out"; keeping the
provider behind one method lets tests substitute a scripted fake.

HOW: openai.AsyncOpenAI chat completions with a single user message.
Provider errors are wrapped in UpstreamError("llm", ...).

RULES:
- complete() returns the first choice's text ('' if the model sent none)
- The API key is never included in error messages
"""

from __future__ import annotations

import logging
from typing import Optional

import openai
from openai import AsyncOpenAI

from mtglog.errors import UpstreamError

logger = logging.getLogger(__name__)


class LLMClient:
    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: Optional[str] = None,
        timeout: float = 120.0,
    ) -> None:
        self._client = AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout)
        self.model = model

    async def aclose(self) -> None:
        await self._client.close()

    async def complete(self, prompt: str) -> str:
        try:
            response = await self._client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
            )
        except openai.APIStatusError as exc:
            raise UpstreamError("llm", exc.status_code, exc.message) from exc
        except openai.APIError as exc:
            raise UpstreamError("llm", None, exc.message) from exc
        content = response.choices[0].message.content if response.choices else None
        logger.debug("LLM returned %d characters", len(content or ""))
        return content or ""
