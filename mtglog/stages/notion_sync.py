"""Notion Sync stage: publish finished minutes to three Notion databases.

WHY: Each meeting is filed three times: in the shared database, in the
consultant's database and in the client company's database. Which
database is which lives in notion_db_map, curated by the team.

HOW: Load the task, require final_summary, resolve the (all, all),
(consultant, <name>) and (company, <name>) map rows, then create the
three pages concurrently with the same properties and one paragraph
block holding the Markdown summary.

RULES:
- Unset text metadata is sent as "なし", unset status selects as "エラー"
- Any missing map row -> 'notion_failed' + 400 "Mapping not found ..."
- Any page failure -> 'notion_failed' + 500
- Success records {all, consultant, company} page ids; status is unchanged
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List

from mtglog.api.notion import rich_text
from mtglog.core.status import TaskStatus
from mtglog.db.models import Task
from mtglog.errors import StageError, TaskNotFoundError, UpstreamError
from mtglog.services import Services
from mtglog.stages.dispatch import record_failure

logger = logging.getLogger(__name__)

NONE_TEXT = "なし"
ERROR_STATUS = "エラー"
MAP_KINDS = ("all", "consultant", "company")


def build_properties(task: Task) -> Dict[str, Any]:
    """Notion page properties for a task, with sentinel defaults."""

    def text(value: Any) -> Dict[str, Any]:
        return {"rich_text": rich_text(str(value) if value else NONE_TEXT)}

    def status(value: Any) -> Dict[str, Any]:
        return {"status": {"name": str(value) if value else ERROR_STATUS}}

    return {
        "面談日": {"title": rich_text(task.meeting_date or NONE_TEXT)},
        "企業名": text(task.company_name),
        "コンサルタント名": text(task.consultant_name),
        "企業タイプ": status(task.company_type),
        "企業の課題": text(task.company_problem),
        "面談回数": {"number": task.meeting_count},
        "支援領域": status(task.support_area),
        "企業のフェーズ": text(task.company_phase),
        "社内共有が必要な事項": text(task.internal_sharing_items),
    }


def build_children(summary: str) -> List[Dict[str, Any]]:
    return [
        {
            "object": "block",
            "type": "paragraph",
            "paragraph": {"rich_text": rich_text(summary)},
        }
    ]


async def sync_task(services: Services, task_id: str) -> Dict[str, Any]:
    notion = services.need("notion")
    task = services.tasks.get_task(task_id)
    if task is None:
        raise TaskNotFoundError(task_id)
    if not task.final_summary:
        raise StageError("final_summary missing", 400)

    keys = {
        "all": "all",
        "consultant": task.consultant_name or NONE_TEXT,
        "company": task.company_name or NONE_TEXT,
    }
    rows = {kind: services.notion_maps.lookup(kind, keys[kind]) for kind in MAP_KINDS}
    missing = [f"{kind}={keys[kind]}" for kind in MAP_KINDS if rows[kind] is None]
    if missing:
        message = f"Mapping not found for some target DB: {', '.join(missing)}"
        record_failure(services, task_id, TaskStatus.NOTION_FAILED, message)
        raise StageError(message, 400)

    properties = build_properties(task)
    children = build_children(task.final_summary)
    try:
        page_ids = await asyncio.gather(
            *(notion.create_page(rows[kind].db_id, properties, children) for kind in MAP_KINDS)
        )
    except UpstreamError as exc:
        message = f"Failed to create notion pages: {exc.message}"
        record_failure(services, task_id, TaskStatus.NOTION_FAILED, message)
        raise StageError(message, 500) from exc

    recorded = dict(zip(MAP_KINDS, page_ids))
    services.tasks.update_task(task_id, notion_page_ids=recorded)
    logger.info("Task %s published to Notion: %s", task_id, recorded)
    return {
        "message": "Notion pages created",
        "taskId": task_id,
        "ids": list(page_ids),
        "pageIds": recorded,
    }
