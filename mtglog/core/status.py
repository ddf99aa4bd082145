"""Task status vocabulary and the allowed-transition table.

WHY: Six independently deployed hops write to the same task row, and
webhooks can be delivered twice or late. Keeping the legal moves as data
lets the store reject a write that would rewind a task (e.g. a duplicate
summarize call on a completed task) instead of trusting every caller.

HOW: TaskStatus is a str enum so values persist and serialize as plain
strings. ALLOWED_TRANSITIONS maps each status to the statuses it may move
to. TaskStore.transition() turns the inverse of this table into a guarded
UPDATE ... WHERE status IN (...).

RULES:
- completed, transcribe_failed and summarize_failed are protected: only
  Notion Sync may leave completed, and only towards notion_failed
- notion_failed never moves back to completed
- Self-loops exist only where a repeated delivery is harmless
  (processing, summarizing, notion_failed)
- REQUEUE_TARGETS is for the operator CLI, never for stage code
"""

from __future__ import annotations

import enum
from typing import Dict, FrozenSet, Optional


class TaskStatus(str, enum.Enum):
    """Valid states for a pipeline task.

    RULES:
    - uploaded: video stored, task row created by intake
    - processing: dispatched to the transcription worker
    - transcribed: transcript recorded on the task
    - summarizing: LLM phases running
    - completed: final_summary persisted
    - failed: the worker rejected the dispatch
    - transcribe_failed / summarize_failed / notion_failed: stage failures
    """

    UPLOADED = "uploaded"
    PROCESSING = "processing"
    TRANSCRIBED = "transcribed"
    SUMMARIZING = "summarizing"
    COMPLETED = "completed"
    FAILED = "failed"
    TRANSCRIBE_FAILED = "transcribe_failed"
    SUMMARIZE_FAILED = "summarize_failed"
    NOTION_FAILED = "notion_failed"


S = TaskStatus

ALLOWED_TRANSITIONS: Dict[TaskStatus, FrozenSet[TaskStatus]] = {
    S.UPLOADED: frozenset({S.PROCESSING, S.TRANSCRIBE_FAILED}),
    S.PROCESSING: frozenset(
        {S.PROCESSING, S.TRANSCRIBED, S.TRANSCRIBE_FAILED, S.SUMMARIZING, S.FAILED}
    ),
    S.FAILED: frozenset({S.PROCESSING}),
    S.TRANSCRIBED: frozenset({S.SUMMARIZING}),
    S.SUMMARIZING: frozenset({S.SUMMARIZING, S.COMPLETED, S.SUMMARIZE_FAILED}),
    S.COMPLETED: frozenset({S.NOTION_FAILED}),
    S.NOTION_FAILED: frozenset({S.NOTION_FAILED}),
    S.TRANSCRIBE_FAILED: frozenset(),
    S.SUMMARIZE_FAILED: frozenset(),
}

PROTECTED_STATUSES: FrozenSet[TaskStatus] = frozenset(
    {S.COMPLETED, S.TRANSCRIBE_FAILED, S.SUMMARIZE_FAILED}
)

# Statuses whose rows must carry a transcription_result
TRANSCRIPT_REQUIRED: FrozenSet[TaskStatus] = frozenset(
    {S.TRANSCRIBED, S.SUMMARIZING, S.COMPLETED, S.NOTION_FAILED}
)

# Operator requeue: failure status -> status the task restarts from
REQUEUE_TARGETS: Dict[TaskStatus, TaskStatus] = {
    S.FAILED: S.UPLOADED,
    S.TRANSCRIBE_FAILED: S.UPLOADED,
    S.SUMMARIZE_FAILED: S.TRANSCRIBED,
    S.NOTION_FAILED: S.COMPLETED,
}


def can_transition(current: TaskStatus, target: TaskStatus) -> bool:
    """Return True if a task in `current` may move to `target`."""
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def sources_for(target: TaskStatus) -> FrozenSet[TaskStatus]:
    """All statuses from which `target` is reachable in one step."""
    return frozenset(
        source for source, targets in ALLOWED_TRANSITIONS.items() if target in targets
    )


def parse_status(value: Optional[str]) -> Optional[TaskStatus]:
    """Parse a stored status string; unknown values return None."""
    if value is None:
        return None
    try:
        return TaskStatus(value)
    except ValueError:
        return None
