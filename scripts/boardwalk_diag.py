"""Boardwalk MCP diagnostics CLI."""

from __future__ import annotations

import argparse
import asyncio
import json
from dataclasses import asdict

from boardwalk_mcp.config import BoardwalkSettings
from boardwalk_mcp.storage import ActivityJournal, JournalUnavailableError, TaskStore
from boardwalk_mcp.tools import task_summary


def load_journal(settings: BoardwalkSettings) -> ActivityJournal:
    journal = ActivityJournal(settings.chroma_persist_path)
    try:
        journal.ping()
    except JournalUnavailableError as exc:
        print(f"Journal unavailable: {exc}")
        raise SystemExit(1)
    return journal


def load_store(settings: BoardwalkSettings) -> TaskStore:
    return TaskStore(settings.data_dir)


async def _board(store: TaskStore, project_id: str | None) -> list[dict]:
    projects = await store.list_projects()
    board = []
    for project in projects:
        if project_id and project.id != project_id:
            continue
        columns = await store.get_all_tasks(project.id)
        board.append(
            {
                "id": project.id,
                "name": project.name,
                "path": project.path,
                "execution_mode": await store.get_execution_mode(project.id),
                "columns": {
                    status: [task_summary(task) for task in tasks]
                    for status, tasks in columns.items()
                },
            }
        )
    return board


def cmd_board(args: argparse.Namespace) -> None:
    settings = BoardwalkSettings()
    board = asyncio.run(_board(load_store(settings), args.project_id))
    if args.json:
        print(json.dumps(board, indent=2))
        return
    for project in board:
        print(f"{project['name']} ({project['id']}) [{project['execution_mode']}]")
        for status, tasks in project["columns"].items():
            for task in tasks:
                dispatch = f" {task['dispatch']}" if task["dispatch"] else ""
                label = task["title"] or task["description"][:40]
                print(f"  {task['id'][:8]} [{status}{dispatch}] {label}")


def cmd_history(args: argparse.Namespace) -> None:
    settings = BoardwalkSettings()
    journal = load_journal(settings)
    try:
        events = journal.task_history(args.task_id, limit=args.limit)
    except JournalUnavailableError as exc:
        print(f"Journal unavailable: {exc}")
        raise SystemExit(1)
    payload = [
        {
            "event_id": event.id,
            "event_type": event.event_type,
            "document": event.document,
            "timestamp": event.timestamp.isoformat(),
        }
        for event in events
    ]
    print(json.dumps(payload, indent=2))


def cmd_worktrees(args: argparse.Namespace) -> None:
    settings = BoardwalkSettings()
    journal = load_journal(settings)
    try:
        records = journal.list_worktrees(task_id=args.task_id)
    except JournalUnavailableError as exc:
        print(f"Journal unavailable: {exc}")
        raise SystemExit(1)
    print(json.dumps([asdict(record) for record in records], indent=2, default=str))


def cmd_sessions(args: argparse.Namespace) -> None:
    settings = BoardwalkSettings()
    journal = load_journal(settings)
    try:
        records = journal.list_sessions(task_id=args.task_id)
    except JournalUnavailableError as exc:
        print(f"Journal unavailable: {exc}")
        raise SystemExit(1)
    print(json.dumps([asdict(record) for record in records], indent=2, default=str))


def cmd_metrics(args: argparse.Namespace) -> None:
    settings = BoardwalkSettings()
    board = asyncio.run(_board(load_store(settings), None))

    status_counts: dict[str, int] = {}
    dispatch_counts: dict[str, int] = {}
    conflicts = []
    for project in board:
        for status, tasks in project["columns"].items():
            status_counts[status] = status_counts.get(status, 0) + len(tasks)
            for task in tasks:
                if task["dispatch"]:
                    dispatch_counts[task["dispatch"]] = dispatch_counts.get(task["dispatch"], 0) + 1
                if task["merge_conflict"]:
                    conflicts.append({"project_id": project["id"], "task_id": task["id"]})

    metrics = {
        "projects_total": len(board),
        "tasks_total": sum(status_counts.values()),
        "status_counts": status_counts,
        "dispatch_counts": dispatch_counts,
        "merge_conflicts": conflicts,
    }

    if args.journal:
        journal = load_journal(settings)
        try:
            metrics["worktrees_total"] = len(journal.list_worktrees())
            metrics["sessions_total"] = len(journal.list_sessions())
        except JournalUnavailableError as exc:
            print(f"Journal unavailable: {exc}")
            raise SystemExit(1)

    print(json.dumps(metrics, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Boardwalk MCP diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_board = sub.add_parser("board", help="List projects and their task columns")
    p_board.add_argument("--project-id")
    p_board.add_argument("--json", action="store_true", help="Output JSON")
    p_board.set_defaults(func=cmd_board)

    p_history = sub.add_parser("history", help="Show journaled events for a task")
    p_history.add_argument("task_id")
    p_history.add_argument("--limit", type=int, default=None)
    p_history.set_defaults(func=cmd_history)

    p_worktrees = sub.add_parser("worktrees", help="List journaled worktree records")
    p_worktrees.add_argument("--task-id")
    p_worktrees.set_defaults(func=cmd_worktrees)

    p_sessions = sub.add_parser("sessions", help="List journaled session records")
    p_sessions.add_argument("--task-id")
    p_sessions.set_defaults(func=cmd_sessions)

    p_metrics = sub.add_parser("metrics", help="Show task, dispatch and conflict counts")
    p_metrics.add_argument(
        "--journal",
        action="store_true",
        help="Include worktree and session totals from the journal",
    )
    p_metrics.set_defaults(func=cmd_metrics)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
