"""Entry point for `python -m remediation_pipeline` and the `remediation-pipeline` CLI script."""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Any, Sequence

from pydantic import ValidationError

from remediation_pipeline import RemediationPipeline, get_version
from remediation_pipeline.errors import ConflictError, NotFoundError
from remediation_pipeline.models import FeedbackBatch
from remediation_pipeline.settings import RuntimeSettings

EXIT_ERROR = 1
EXIT_NOT_FOUND = 2
EXIT_CONFLICT = 3


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Feedback-driven remediation pipeline")
    parser.add_argument("--version", action="version", version=f"%(prog)s {get_version()}")
    parser.add_argument(
        "--base-dir",
        type=Path,
        default=None,
        help="Directory relative state paths resolve against (default: cwd)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    workspace = commands.add_parser("workspace", help="Create a workspace")
    workspace_commands = workspace.add_subparsers(dest="workspace_command", required=True)
    create = workspace_commands.add_parser("create", help="Create a draft workspace")
    create.add_argument("workspace_id")
    create.add_argument("--name", default="")
    create.add_argument("--category", default="")
    create.add_argument("--description", default="")

    for name, help_text in (
        ("enqueue", "Queue a feedback batch; the worker opens the Execution"),
        ("trigger", "Open an Execution for a feedback batch and queue it"),
    ):
        command = commands.add_parser(name, help=help_text)
        command.add_argument("workspace_id")
        command.add_argument("--batch-file", type=Path, required=True, help="JSON feedback batch")
        if name == "trigger":
            command.add_argument("--triggered-by", default=None)

    commands.add_parser("queue", help="List queue entries by state")

    for name, help_text in (
        ("retry", "Retry a failed queue entry"),
        ("cancel", "Cancel a pending or retrying queue entry"),
    ):
        command = commands.add_parser(name, help=help_text)
        command.add_argument("entry_id")

    prune = commands.add_parser("prune", help="Delete completed queue entries")
    prune.add_argument("--retain", type=int, default=0, help="Newest completed entries to keep")

    for name in ("approve", "verify"):
        command = commands.add_parser(name, help=f"{name.capitalize()} a workspace")
        command.add_argument("workspace_id")

    status = commands.add_parser("status", help="Show one Execution")
    status.add_argument("execution_id")

    timeline = commands.add_parser("timeline", help="Show a workspace timeline, newest first")
    timeline.add_argument("workspace_id")
    timeline.add_argument("--limit", type=int, default=50)
    timeline.add_argument("--offset", type=int, default=0)

    stats = commands.add_parser("stats", help="Queue and Execution statistics")
    stats.add_argument("--workspace", default=None)

    worker = commands.add_parser("worker", help="Run the queue worker")
    worker.add_argument("--once", action="store_true", help="Drain the queue once and exit")
    return parser.parse_args(argv)


def load_batch(path: Path) -> FeedbackBatch:
    if not path.is_file():
        raise FileNotFoundError(f"Batch file does not exist: {path}")
    try:
        return FeedbackBatch.model_validate_json(path.read_text(encoding="utf-8"))
    except ValidationError as exc:
        raise ValueError(f"Batch file {path} is not a valid feedback batch: {exc}") from exc


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def run_command(pipeline: RemediationPipeline, args: argparse.Namespace) -> int:
    command = args.command
    if command == "workspace":
        workspace = pipeline.create_workspace(
            args.workspace_id, name=args.name, category=args.category, description=args.description
        )
        _print_json(workspace.model_dump(mode="json"))
    elif command == "enqueue":
        entry_id = pipeline.enqueue(args.workspace_id, load_batch(args.batch_file))
        print(f"entry_id={entry_id}")
    elif command == "trigger":
        execution_id = pipeline.trigger(
            args.workspace_id, load_batch(args.batch_file), triggered_by=args.triggered_by
        )
        print(f"execution_id={execution_id}")
    elif command == "queue":
        listing = pipeline.list_queue()
        _print_json({"stats": listing.stats(), **listing.model_dump(mode="json")})
    elif command == "retry":
        entry = pipeline.retry(args.entry_id)
        print(f"retried={entry.entry_id}")
    elif command == "cancel":
        entry = pipeline.cancel(args.entry_id)
        print(f"cancelled={entry.entry_id}")
    elif command == "prune":
        print(f"removed={pipeline.prune(args.retain)}")
    elif command in ("approve", "verify"):
        workspace = getattr(pipeline, command)(args.workspace_id)
        print(f"status={workspace.status.value}")
    elif command == "status":
        _print_json(pipeline.status(args.execution_id).model_dump(mode="json"))
    elif command == "timeline":
        messages, has_more = pipeline.timeline(args.workspace_id, limit=args.limit, offset=args.offset)
        _print_json({"messages": [item.model_dump(mode="json") for item in messages], "has_more": has_more})
    elif command == "stats":
        _print_json(pipeline.stats(args.workspace))
    elif command == "worker":
        if args.once:
            print(f"processed={pipeline.run_until_idle()}")
        else:
            try:
                pipeline.run_worker()
            except KeyboardInterrupt:
                logging.info("Worker interrupted")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = RuntimeSettings.from_env()
        pipeline = RemediationPipeline.from_settings(settings, args.base_dir.resolve() if args.base_dir else None)
        return run_command(pipeline, args)
    except NotFoundError as exc:
        logging.error("Not found: %s", exc)
        return EXIT_NOT_FOUND
    except ConflictError as exc:
        logging.error("Conflict: %s", exc)
        return EXIT_CONFLICT
    except (OSError, ValueError, RuntimeError) as exc:
        logging.error("%s", exc)
        return EXIT_ERROR


if __name__ == "__main__":
    raise SystemExit(main())
