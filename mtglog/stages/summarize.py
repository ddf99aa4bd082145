"""Summarization stage: three concurrent LLM phases plus a consolidation.

WHY: One long prompt over a whole meeting loses structure. Splitting the
work into key points, agenda sections and per-speaker summaries gives the
consolidation prompt structured material to write short minutes from.

HOW:
  1. Load the task (404) and move it to 'summarizing', storing the transcript
  2. Trim the transcript to its last MAX_TRANSCRIPT_TOKENS * 4 characters
  3. Run phase1..phase3 concurrently; the first failure cancels the others
  4. Parse and schema-check each reply (core.phases)
  5. Consolidate into Markdown minutes titled "# 議事メモ"
  6. Persist all outputs and move the task to 'completed'
  7. Trigger Notion Sync (bounded timeout, failures only logged)

RULES:
- Any phase or consolidation failure -> 'summarize_failed', nothing partial saved
- Unexpected exceptions are recorded the same way, then re-raised
- A repeated call while 'summarizing' is allowed; completed tasks are refused (409)
- The notion-sync trigger runs before the response is returned
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Mapping, Optional

from mtglog.core.phases import parse_phase_output, trim_transcript
from mtglog.core.prompts import PHASES, build_consolidation_prompt, build_phase_prompt
from mtglog.core.status import TaskStatus
from mtglog.errors import PhaseError, StageError, TaskNotFoundError, UpstreamError
from mtglog.stages.dispatch import record_failure
from mtglog.services import Services

logger = logging.getLogger(__name__)


async def run_phase(
    llm: Any,
    phase: str,
    transcript: str,
    metadata: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    raw = await llm.complete(build_phase_prompt(phase, transcript, metadata))
    result = parse_phase_output(phase, raw)
    logger.info("%s produced %s", phase, ", ".join(sorted(result)))
    return result


async def run_phases(
    llm: Any,
    transcript: str,
    metadata: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Dict[str, Any]]:
    """Run every phase concurrently; the first failure cancels the rest."""
    phase_tasks = [
        asyncio.ensure_future(run_phase(llm, phase, transcript, metadata))
        for phase in PHASES
    ]
    try:
        results = await asyncio.gather(*phase_tasks)
    except BaseException:
        for task in phase_tasks:
            task.cancel()
        await asyncio.gather(*phase_tasks, return_exceptions=True)
        raise
    return dict(zip(PHASES, results))


async def consolidate(
    llm: Any,
    phase_outputs: Mapping[str, Any],
    metadata: Optional[Mapping[str, Any]] = None,
) -> str:
    summary = (await llm.complete(build_consolidation_prompt(phase_outputs, metadata))).strip()
    if not summary:
        raise PhaseError("phase4", "empty consolidation output")
    return summary


async def request_notion_sync(services: Services, task_id: str) -> bool:
    settings = services.settings
    if not settings.app_url:
        logger.warning("APP_URL not set; skipping notion-sync for task %s", task_id)
        return False
    return await services.caller.trigger(
        settings.stage_url("/api/notion-sync"),
        {"taskId": task_id},
        timeout=settings.handoff_timeout,
    )


async def summarize_task(
    services: Services,
    task_id: str,
    transcript: Optional[str] = None,
) -> Dict[str, Any]:
    llm = services.need("llm")
    task = services.tasks.get_task(task_id)
    if task is None:
        raise TaskNotFoundError(task_id)

    text = transcript or task.transcription_result
    if not text:
        raise StageError("transcript is required", 400)

    services.tasks.transition(
        task_id,
        TaskStatus.SUMMARIZING,
        transcription_result=text,
        error_message=None,
    )
    metadata = task.metadata_fields
    trimmed = trim_transcript(text)
    if len(trimmed) < len(text):
        logger.info("Transcript for %s trimmed from %d to %d chars", task_id, len(text), len(trimmed))

    try:
        outputs = await run_phases(llm, trimmed, metadata)
        final_summary = await consolidate(llm, outputs, metadata)
    except (PhaseError, UpstreamError) as exc:
        logger.error("Summarization failed for task %s: %s", task_id, exc)
        record_failure(services, task_id, TaskStatus.SUMMARIZE_FAILED, str(exc))
        raise StageError(f"Summarization failed: {exc}", 500) from exc
    except Exception as exc:
        logger.exception("Summarization crashed for task %s", task_id)
        record_failure(services, task_id, TaskStatus.SUMMARIZE_FAILED, f"{type(exc).__name__}: {exc}")
        raise

    services.tasks.transition(
        task_id,
        TaskStatus.COMPLETED,
        phase1_output=outputs["phase1"],
        phase2_output=outputs["phase2"],
        phase3_output=outputs["phase3"],
        final_summary=final_summary,
    )
    logger.info("Task %s summarized (%d chars)", task_id, len(final_summary))

    notion_triggered = await request_notion_sync(services, task_id)
    return {
        "message": "Summarization completed",
        "taskId": task_id,
        "phase1": outputs["phase1"],
        "phase2": outputs["phase2"],
        "phase3": outputs["phase3"],
        "finalSummary": final_summary,
        "notionTriggered": notion_triggered,
    }
