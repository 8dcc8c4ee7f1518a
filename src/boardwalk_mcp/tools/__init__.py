"""Tool registration for Boardwalk MCP."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Literal

from fastmcp import Context, FastMCP

from ..blocks import Attachment, dump_blocks
from ..cleanup import CleanupManager
from ..dispatch import DispatchScheduler
from ..lifecycle import TaskLifecycle
from ..session.observer import QueueObserver
from ..session.runtime import SessionRuntime
from ..storage.chroma import ActivityJournal
from ..storage.models import Task
from ..storage.tasks import TaskStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ToolHandles:
    create_project: Any
    create_task: Any
    update_task: Any
    delete_task: Any
    task_status: Any
    list_tasks: Any
    set_execution_mode: Any
    process_queue: Any
    session_log: Any
    watch_session: Any
    send_followup: Any
    stop_session: Any
    resolve_conflict: Any
    cleanup_status: Any
    task_history: Any


def task_summary(task: Task) -> dict[str, Any]:
    """JSON-friendly view of a task without its block log and attachment payloads."""

    payload = task.model_dump(mode="json", exclude={"blocks", "attachments"})
    payload["block_count"] = len(task.blocks)
    payload["attachments"] = [
        {"id": item.id, "name": item.name, "size": item.size, "type": item.type}
        for item in task.attachments
    ]
    return payload


def register_tools(
    server: FastMCP,
    *,
    store: TaskStore,
    lifecycle: TaskLifecycle,
    scheduler: DispatchScheduler,
    runtime: SessionRuntime,
    cleanup: CleanupManager,
    journal: ActivityJournal | None = None,
) -> ToolHandles:
    """Register Boardwalk's MCP tools on the server."""

    async def _require_task(project_id: str, task_id: str) -> Task:
        task = await store.get_task(project_id, task_id)
        if task is None:
            raise ValueError(f"Task '{task_id}' not found in project '{project_id}'")
        return task

    async def _create_project(
        name: str, path: str, context: Context | None = None
    ) -> dict[str, Any]:
        """Register a project directory on the board."""

        project = await store.create_project(name, path)
        await _emit_log(context, "info", "Project created", extra={"project_id": project.id})
        return project.model_dump(mode="json")

    async def _create_task(
        project_id: str,
        description: str,
        *,
        title: str | None = None,
        mode: Literal["code", "plan", "answer"] = "code",
        attachments: list[dict[str, Any]] | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        task = await lifecycle.create_task(
            project_id,
            description,
            title=title,
            mode=mode,
            attachments=[Attachment.model_validate(item) for item in attachments or []],
        )
        await _emit_log(context, "info", "Task created", extra={"task_id": task.id})
        return task_summary(task)

    async def _update_task(
        project_id: str,
        task_id: str,
        fields: dict[str, Any],
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Apply a partial update; status changes trigger dispatch, merge and cleanup."""

        await _require_task(project_id, task_id)
        task = await lifecycle.update_task(project_id, task_id, fields)
        await _emit_log(
            context,
            "info",
            "Task updated",
            extra={"task_id": task_id, "fields": sorted(fields)},
        )
        return task_summary(task)

    async def _delete_task(project_id: str, task_id: str) -> dict[str, Any]:
        deleted = await lifecycle.delete_task(project_id, task_id)
        if not deleted:
            raise ValueError(f"Task '{task_id}' not found in project '{project_id}'")
        return {"task_id": task_id, "deleted": True}

    async def _task_status(project_id: str, task_id: str) -> dict[str, Any]:
        task = await _require_task(project_id, task_id)
        session = runtime.get_session(task_id)
        expires_at = cleanup.expires_at(task_id)
        payload = task_summary(task)
        payload["session"] = (
            {
                "status": session.status.value,
                "session_id": session.session_id,
                "block_count": len(session.blocks),
                "observers": len(session.observers),
                "started_at": session.started_at.isoformat(),
            }
            if session is not None
            else None
        )
        payload["alive"] = await scheduler.is_session_alive(task_id)
        payload["cleanup_expires_at"] = expires_at.isoformat() if expires_at else None
        return payload

    async def _list_tasks(project_id: str) -> dict[str, Any]:
        await store.require_project(project_id)
        columns = await store.get_all_tasks(project_id)
        return {
            "project_id": project_id,
            "execution_mode": await store.get_execution_mode(project_id),
            "columns": {
                status: [task_summary(task) for task in tasks] for status, tasks in columns.items()
            },
        }

    async def _set_execution_mode(
        project_id: str, mode: Literal["sequential", "parallel"]
    ) -> dict[str, Any]:
        await store.require_project(project_id)
        await store.set_execution_mode(project_id, mode)
        await scheduler.process_queue(project_id)
        return {"project_id": project_id, "execution_mode": mode}

    async def _process_queue(project_id: str) -> dict[str, Any]:
        await store.require_project(project_id)
        await scheduler.process_queue(project_id)
        columns = await store.get_all_tasks(project_id)
        return {
            "project_id": project_id,
            "dispatch": {task.id: task.dispatch for task in columns["in-progress"]},
        }

    async def _session_log(project_id: str, task_id: str) -> dict[str, Any]:
        """Return the block log, live if the session is in memory, else as persisted."""

        session = runtime.get_session(task_id)
        if session is not None:
            return {
                "task_id": task_id,
                "status": session.status.value,
                "blocks": dump_blocks(session.blocks),
            }
        task = await _require_task(project_id, task_id)
        return {"task_id": task_id, "status": None, "blocks": dump_blocks(task.blocks)}

    async def _watch_session(
        project_id: str,
        task_id: str,
        *,
        timeout: float = 5.0,
        max_messages: int = 200,
    ) -> dict[str, Any]:
        """Attach as an observer for up to ``timeout`` seconds and return what arrived."""

        observer = QueueObserver()
        live = await runtime.attach(task_id, observer, project_id=project_id)
        messages = observer.drain()
        try:
            while live and len(messages) < max_messages and runtime.is_running(task_id):
                message = await observer.receive(timeout=timeout)
                if message is None:
                    break
                messages.append(message)
        finally:
            runtime.detach(task_id, observer)
        return {
            "task_id": task_id,
            "live": live,
            "messages": [message.model_dump(mode="json", exclude_none=True) for message in messages],
        }

    async def _send_followup(
        project_id: str,
        task_id: str,
        text: str,
        *,
        attachments: list[dict[str, Any]] | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        await _require_task(project_id, task_id)
        result = await lifecycle.send_followup(
            project_id,
            task_id,
            text,
            [Attachment.model_validate(item) for item in attachments or []],
        )
        await _emit_log(
            context,
            "info",
            "Follow-up sent",
            extra={"task_id": task_id, "outcome": result.outcome.value},
        )
        return {"task_id": task_id, "outcome": result.outcome.value, "error": result.error}

    def _stop_session(project_id: str, task_id: str) -> dict[str, Any]:
        return {"project_id": project_id, "task_id": task_id, "stopped": lifecycle.stop(task_id)}

    async def _resolve_conflict(project_id: str, task_id: str) -> dict[str, Any]:
        prompt = await lifecycle.resolve_conflict(project_id, task_id)
        return {"task_id": task_id, "prompt": prompt}

    def _cleanup_status() -> dict[str, Any]:
        return {
            "timers": {
                task_id: expires.isoformat()
                for task_id, expires in cleanup.all_expirations().items()
            }
        }

    def _task_history(task_id: str, *, limit: int = 50) -> dict[str, Any]:
        if journal is None:
            return {"task_id": task_id, "available": False, "events": []}
        events = journal.task_history(task_id, limit=limit)
        return {
            "task_id": task_id,
            "available": True,
            "events": [
                {
                    "id": event.id,
                    "event_type": event.event_type,
                    "document": event.document,
                    "metadata": event.metadata,
                    "timestamp": event.timestamp.isoformat(),
                }
                for event in events
            ],
        }

    tool_create_project = server.tool(
        name="create_project",
        description="Register a project directory on the task board.",
    )(_create_project)

    tool_create_task = server.tool(
        name="create_task",
        description="Create a task in a project's todo column.",
    )(_create_task)

    tool_update_task = server.tool(
        name="update_task",
        description=(
            "Partially update a task. Moving it to in-progress queues or starts an agent; "
            "moving it to done merges its worktree."
        ),
    )(_update_task)

    tool_delete_task = server.tool(
        name="delete_task",
        description="Delete a task, aborting its agent and removing its worktree.",
    )(_delete_task)

    tool_task_status = server.tool(
        name="task_status",
        description="Fetch a task with its live session and cleanup state.",
    )(_task_status)

    tool_list_tasks = server.tool(
        name="list_tasks",
        description="List a project's tasks grouped by status column.",
    )(_list_tasks)

    tool_set_mode = server.tool(
        name="set_execution_mode",
        description="Switch a project between sequential and parallel execution.",
    )(_set_execution_mode)

    tool_process_queue = server.tool(
        name="process_queue",
        description="Admit waiting in-progress tasks according to the execution mode.",
    )(_process_queue)

    tool_session_log = server.tool(
        name="session_log",
        description="Return the structured block log for a task's agent session.",
    )(_session_log)

    tool_watch = server.tool(
        name="watch_session",
        description="Observe a running session for a few seconds and return replay plus new blocks.",
    )(_watch_session)

    tool_followup = server.tool(
        name="send_followup",
        description="Resume a finished agent session with a follow-up message.",
    )(_send_followup)

    tool_stop = server.tool(
        name="stop_session",
        description="Abort a running agent session.",
    )(_stop_session)

    tool_resolve = server.tool(
        name="resolve_conflict",
        description="Merge the primary branch into a conflicted task worktree and reopen the task.",
    )(_resolve_conflict)

    tool_cleanup = server.tool(
        name="cleanup_status",
        description="List pending session cleanup timers and when they fire.",
    )(_cleanup_status)

    tool_history = server.tool(
        name="task_history",
        description="Return journaled dispatch, session and worktree events for a task.",
    )(_task_history)

    return ToolHandles(
        create_project=tool_create_project,
        create_task=tool_create_task,
        update_task=tool_update_task,
        delete_task=tool_delete_task,
        task_status=tool_task_status,
        list_tasks=tool_list_tasks,
        set_execution_mode=tool_set_mode,
        process_queue=tool_process_queue,
        session_log=tool_session_log,
        watch_session=tool_watch,
        send_followup=tool_followup,
        stop_session=tool_stop,
        resolve_conflict=tool_resolve,
        cleanup_status=tool_cleanup,
        task_history=tool_history,
    )


async def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Log to the module logger and, when a request context is present, to the client."""

    payload = extra or {}
    fallback = getattr(logger, level, logger.info)
    fallback(message, extra=payload)

    if context is None:
        return
    ctx_log = getattr(context, level, None)
    if callable(ctx_log):
        await ctx_log(message, extra=payload)


__all__ = ["ToolHandles", "register_tools", "task_summary"]
