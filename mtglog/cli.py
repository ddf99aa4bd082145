"""Command-line interface for running and operating the pipeline.

WHY: Operators need one entry point to run either app, create the schema,
push a Slack file through intake by hand, inspect a task, curate the
Notion database map and requeue a failed task, all without writing SQL.

HOW: argparse sub-commands. Long-running commands (serve, worker) hand
off to uvicorn; the rest build a Services container from the environment,
do one thing and print JSON to stdout. Status output goes to stderr.

RULES:
- main() returns a process exit code (0 success, 1 failure, 2 usage)
- argv=None means use sys.argv; explicit argv is for tests
- Secrets come from the environment / .env only, never from flags
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import PurePosixPath
from typing import Any, Dict, List, Optional
from urllib.parse import unquote, urlparse

from mtglog.config import Settings
from mtglog.db.store import task_summary
from mtglog.errors import ConfigurationError, StageError, UpstreamError
from mtglog.services import Services
from mtglog.stages import intake

logger = logging.getLogger(__name__)

MAP_KINDS = ("all", "consultant", "company")


def _status(msg: str) -> None:
    print(msg, file=sys.stderr, flush=True)


def _print_json(data: Any) -> None:
    print(json.dumps(data, ensure_ascii=False, indent=2, default=str))


def _parse_metadata(pairs: Optional[List[str]]) -> Dict[str, str]:
    metadata: Dict[str, str] = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Metadata must be KEY=VALUE, got '{pair}'")
        metadata[key.strip()] = value.strip()
    return metadata


def file_name_from_url(url: str) -> str:
    """Last path segment of a Slack file URL (percent-decoded)."""
    return unquote(PurePosixPath(urlparse(url).path).name)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def _cmd_serve(args: argparse.Namespace, settings: Settings) -> int:
    from mtglog.server.app import run_api

    run_api(host=args.host, port=args.port)
    return 0


def _cmd_worker(args: argparse.Namespace, settings: Settings) -> int:
    from mtglog.worker.app import run_worker

    run_worker(host=args.host, port=args.port)
    return 0


def _cmd_init_db(args: argparse.Namespace, settings: Settings) -> int:
    Services.from_settings(settings, create_schema=True)
    _status(f"Schema ready at {settings.database_url.split('@')[-1]}")
    return 0


async def _upload_slack(args: argparse.Namespace, services: Services) -> int:
    try:
        source = intake.SourceFile(
            name=args.name or file_name_from_url(args.url),
            download_url=args.url,
        )
        result = await intake.ingest_slack_file(
            services, source, metadata=_parse_metadata(args.metadata), text=args.text
        )
        if result.created and not args.no_start:
            started = await intake.request_start(services, result.task_id)
            _status("start-task triggered" if started else "start-task not triggered")
        _print_json(intake.result_payload(result))
        return 0 if result.created else 1
    finally:
        await services.aclose()


def _cmd_upload_slack(args: argparse.Namespace, settings: Settings) -> int:
    settings.require("slack_bot_token")
    services = Services.from_settings(settings)
    _status(f"Uploading {args.url}")
    return asyncio.run(_upload_slack(args, services))


def _cmd_task(args: argparse.Namespace, settings: Settings) -> int:
    services = Services.from_settings(settings)
    task = services.tasks.get_task(args.task_id)
    if task is None:
        _status(f"Task not found: {args.task_id}")
        return 1
    data = task_summary(task)
    data["metadata"] = task.metadata_fields
    if args.full:
        data["final_summary"] = task.final_summary
        data["uploads"] = [
            {"id": log.id, "status": log.status, "progress": log.progress, "error": log.error_message}
            for log in services.upload_logs.for_task(task.id)
        ]
    _print_json(data)
    return 0


def _cmd_map_set(args: argparse.Namespace, settings: Settings) -> int:
    services = Services.from_settings(settings)
    name = "all" if args.kind == "all" else args.name
    row = services.notion_maps.set(args.kind, name, args.db_id, page_id=args.page_id)
    _print_json({"kind": row.kind, "name": row.name, "db_id": row.db_id, "page_id": row.page_id})
    return 0


def _cmd_map_list(args: argparse.Namespace, settings: Settings) -> int:
    services = Services.from_settings(settings)
    _print_json(
        [
            {"kind": row.kind, "name": row.name, "db_id": row.db_id, "page_id": row.page_id}
            for row in services.notion_maps.list_all()
        ]
    )
    return 0


def _cmd_requeue(args: argparse.Namespace, settings: Settings) -> int:
    services = Services.from_settings(settings)
    task = services.tasks.requeue(args.task_id)
    _status(f"Task {task.id} requeued as '{task.status}'")
    _print_json(task_summary(task))
    return 0


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse parser for the CLI.

    RULES:
    - Every sub-command sets a handler via set_defaults(handler=...)
    - serve defaults to port 8000, worker to port 8080
    """
    parser = argparse.ArgumentParser(
        prog="mtglog",
        description="Meeting video pipeline: Slack intake, transcription, "
                    "AI minutes and Notion publication.",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Logging level (default: LOG_LEVEL env or INFO).",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the stage API.")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)
    serve.set_defaults(handler=_cmd_serve)

    worker = sub.add_parser("worker", help="Run the transcription worker.")
    worker.add_argument("--host", default="0.0.0.0")
    worker.add_argument("--port", type=int, default=8080)
    worker.set_defaults(handler=_cmd_worker)

    init_db = sub.add_parser("init-db", help="Create database tables.")
    init_db.set_defaults(handler=_cmd_init_db)

    upload = sub.add_parser("upload-slack", help="Ingest a Slack file by its private URL.")
    upload.add_argument("url", help="Slack url_private_download of an .mp4 file.")
    upload.add_argument("--name", default=None, help="File name (default: last URL segment).")
    upload.add_argument("--text", default=None, help="Message text with labeled metadata lines.")
    upload.add_argument(
        "--metadata",
        action="append",
        default=None,
        metavar="KEY=VALUE",
        help="Explicit metadata field. Can be specified multiple times.",
    )
    upload.add_argument("--no-start", action="store_true", help="Do not trigger start-task.")
    upload.set_defaults(handler=_cmd_upload_slack)

    task = sub.add_parser("task", help="Show a task.")
    task.add_argument("task_id")
    task.add_argument("--full", action="store_true", help="Include summary and upload logs.")
    task.set_defaults(handler=_cmd_task)

    map_set = sub.add_parser("map-set", help="Set the Notion database for a kind/name.")
    map_set.add_argument("kind", choices=MAP_KINDS)
    map_set.add_argument("name", help="Consultant or company name ('all' for kind all).")
    map_set.add_argument("db_id", help="Notion database id.")
    map_set.add_argument("--page-id", default=None)
    map_set.set_defaults(handler=_cmd_map_set)

    map_list = sub.add_parser("map-list", help="List the Notion database map.")
    map_list.set_defaults(handler=_cmd_map_list)

    requeue = sub.add_parser("requeue", help="Reset a failed task so its stage can run again.")
    requeue.add_argument("task_id")
    requeue.set_defaults(handler=_cmd_requeue)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point for the CLI (``python -m mtglog`` and the console script)."""
    parser = build_parser()
    args = parser.parse_args(argv)
    settings = Settings.from_env()
    logging.basicConfig(
        level=(args.log_level or settings.log_level).upper(),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    try:
        return args.handler(args, settings)
    except ConfigurationError as exc:
        _status(f"Configuration error: {exc}")
        return 1
    except (StageError, UpstreamError, ValueError) as exc:
        logger.debug("Command %s failed", args.command, exc_info=True)
        _status(f"Error: {exc}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
