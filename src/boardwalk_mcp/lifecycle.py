"""Task status transitions and the side effects they trigger."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping

from .blocks import Attachment, TaskUpdateBlock
from .cleanup import CleanupManager
from .dispatch import DispatchScheduler
from .notify import AutoTitler, Notifier
from .prompts.builder import build_resolution_prompt
from .session.runtime import SessionResult, SessionRuntime
from .storage.chroma import JournalRecorder
from .storage.models import MergeConflict, Project, Task, utcnow
from .storage.tasks import ProjectNotFoundError, TaskNotFoundError, TaskStore
from .worktree import WorktreeError, WorktreeManager, branch_name

logger = logging.getLogger(__name__)

RESET_FIELDS: dict[str, Any] = {
    "dispatch": None,
    "findings": "",
    "human_steps": "",
    "agent_log": "",
    "worktree_path": None,
    "branch": None,
    "merge_conflict": None,
    "render_mode": None,
    "blocks": [],
    "session_id": None,
}


class LifecycleError(RuntimeError):
    """Raised when a requested transition is not possible for the task."""


class TaskLifecycle:
    """Front door for task mutations.

    Every status change goes through :meth:`update_task`, which applies the
    partial update and then starts, stops, merges or cleans up as needed.
    """

    def __init__(
        self,
        store: TaskStore,
        scheduler: DispatchScheduler,
        runtime: SessionRuntime,
        worktrees: WorktreeManager,
        cleanup: CleanupManager,
        notifier: Notifier,
        titler: AutoTitler | None = None,
        *,
        recorder: JournalRecorder | None = None,
    ) -> None:
        self._store = store
        self._scheduler = scheduler
        self._runtime = runtime
        self._worktrees = worktrees
        self._cleanup = cleanup
        self._notifier = notifier
        self._titler = titler
        self._recorder = recorder or JournalRecorder()
        runtime.set_hooks(
            on_terminal=scheduler.on_session_terminal,
            on_resume=lambda _project_id, task_id: cleanup.cancel_cleanup(task_id),
        )

    @property
    def store(self) -> TaskStore:
        return self._store

    async def _require_task(self, project_id: str, task_id: str) -> Task:
        task = await self._store.get_task(project_id, task_id)
        if task is None:
            raise TaskNotFoundError(f"Task '{task_id}' not found in project '{project_id}'")
        return task

    async def create_task(
        self,
        project_id: str,
        description: str,
        *,
        title: str | None = None,
        mode: str = "code",
        attachments: Iterable[Attachment] | None = None,
    ) -> Task:
        await self._store.require_project(project_id)
        task = await self._store.create_task(
            project_id, description, title=title, mode=mode, attachments=attachments
        )
        if not task.title and self._titler is not None:
            self._titler.request(project_id, task.id, task.description)
        return task

    async def update_task(
        self, project_id: str, task_id: str, fields: Mapping[str, Any]
    ) -> Task:
        previous = await self._require_task(project_id, task_id)
        updated = await self._store.update_task(project_id, task_id, fields)
        if updated is None:
            raise TaskNotFoundError(f"Task '{task_id}' not found in project '{project_id}'")

        if not updated.title and updated.description.strip() and self._titler is not None:
            self._titler.request(project_id, task_id, updated.description)

        findings = fields.get("findings")
        if findings is not None and self._scheduler.render_mode_for(updated) == "pretty":
            self._runtime.inject_block(
                task_id,
                TaskUpdateBlock(
                    findings=findings,
                    human_steps=fields.get("human_steps"),
                    timestamp=utcnow().isoformat(),
                ),
            )

        status = fields.get("status")
        if status is not None and status != previous.status:
            await self._transition(project_id, previous, updated, status)
            await self._scheduler.process_queue(project_id)

        return await self._store.get_task(project_id, task_id) or updated

    async def _transition(self, project_id: str, previous: Task, updated: Task, status: str) -> None:
        task_id = previous.id
        self._recorder.event(task_id, "transition", f"{previous.status} -> {status}")
        logger.info(
            "Task transition",
            extra={"task_id": previous.short_id, "from": previous.status, "to": status},
        )

        if status == "in-progress":
            self._cleanup.cancel_cleanup(task_id)
            if previous.status != "verify":
                dispatch = await self._scheduler.initial_dispatch_state(project_id, task_id)
                render_mode = updated.render_mode or self._scheduler.default_render_mode
                await self._store.update_task(
                    project_id, task_id, {"dispatch": dispatch, "render_mode": render_mode}
                )
        elif status == "todo":
            await self._reset(project_id, previous)
        elif status == "verify" and previous.status == "in-progress":
            self._notifier.notify(f"*{updated.label}* -> verify")
        elif status == "done":
            await self._complete(project_id, previous, updated)

    async def _discard_isolation(self, project: Project, task: Task) -> None:
        path = project.resolved_path
        try:
            await self._worktrees.ensure_not_on_task_branch(
                path, task.branch or branch_name(task.short_id)
            )
        except WorktreeError as exc:
            logger.warning(
                "Could not leave task branch", extra={"task_id": task.short_id, "error": str(exc)}
            )
        await self._worktrees.remove_worktree(path, task.short_id)
        await self._worktrees.pop_auto_stash(path)
        self._recorder.worktree(task.id, task.worktree_path or "", task.branch, "removed")

    async def _reset(self, project_id: str, previous: Task) -> None:
        task_id = previous.id
        self._cleanup.cancel_cleanup(task_id)
        if previous.status == "in-progress":
            await self._scheduler.abort_task(project_id, task_id)
        await self._runtime.clear_session(task_id)
        if previous.worktree_path or previous.branch:
            project = await self._store.get_project(project_id)
            if project is not None:
                await self._discard_isolation(project, previous)
        await self._store.update_task(project_id, task_id, RESET_FIELDS)

    async def _complete(self, project_id: str, previous: Task, updated: Task) -> None:
        task_id = previous.id
        if previous.status == "in-progress":
            self._runtime.stop_session(task_id)
        if previous.worktree_path or previous.branch:
            project = await self._store.get_project(project_id)
            if project is not None:
                branch = previous.branch or branch_name(previous.short_id)
                result = await self._worktrees.merge_worktree(
                    project.resolved_path, previous.short_id
                )
                await self._worktrees.pop_auto_stash(project.resolved_path)
                if not result.success:
                    conflict = MergeConflict(
                        error=result.error or "Merge conflict",
                        files=result.conflict_files,
                        diff=result.diff,
                        branch=branch,
                    )
                    await self._store.update_task(
                        project_id, task_id, {"status": "verify", "merge_conflict": conflict}
                    )
                    self._recorder.event(
                        task_id, "merge_conflict", conflict.error, files=conflict.files
                    )
                    return
                await self._store.update_task(
                    project_id,
                    task_id,
                    {"worktree_path": None, "branch": None, "merge_conflict": None},
                )
                self._recorder.worktree(task_id, previous.worktree_path or "", branch, "merged")

        self._cleanup.schedule_cleanup(project_id, task_id)
        await self._runtime.clear_session(task_id)
        self._notifier.notify(f"*{updated.label}* -> done")

    async def delete_task(self, project_id: str, task_id: str) -> bool:
        task = await self._store.get_task(project_id, task_id)
        if task is None:
            return False

        self._cleanup.cancel_cleanup(task_id)
        if task.status == "in-progress":
            await self._scheduler.abort_task(project_id, task_id)
        await self._runtime.clear_session(task_id)
        if task.worktree_path or task.branch:
            project = await self._store.get_project(project_id)
            if project is not None:
                await self._discard_isolation(project, task)

        deleted = await self._store.delete_task(project_id, task_id)
        if deleted and task.status == "in-progress":
            await self._scheduler.process_queue(project_id)
        return deleted

    async def resolve_conflict(self, project_id: str, task_id: str) -> str:
        """Merge the primary branch into the task's worktree and reopen the task.

        Returns a suggested follow-up asking the agent to finish the merge.
        """

        task = await self._require_task(project_id, task_id)
        if task.merge_conflict is None:
            raise LifecycleError("Task has no merge conflict")
        if not task.worktree_path or not task.branch:
            raise LifecycleError("Task has no worktree to resolve conflicts in")
        project = await self._store.get_project(project_id)
        if project is None:
            raise ProjectNotFoundError(f"Project '{project_id}' not found")

        result = await self._worktrees.merge_main_into_worktree(
            project.resolved_path, task.short_id
        )
        if not result.success:
            raise LifecycleError(result.error or "Failed to merge the primary branch into the worktree")

        await self._store.update_task(
            project_id, task_id, {"status": "in-progress", "merge_conflict": None}
        )
        self._recorder.event(task_id, "resolve", "Primary branch merged into worktree")
        await self._scheduler.process_queue(project_id)
        return build_resolution_prompt(result.conflict_files or task.merge_conflict.files)

    async def send_followup(
        self,
        project_id: str,
        task_id: str,
        text: str,
        attachments: Iterable[Attachment] | None = None,
    ) -> SessionResult:
        task = await self._require_task(project_id, task_id)
        project = await self._store.require_project(project_id)
        cwd = task.worktree_path or str(project.resolved_path)
        return await self._runtime.continue_session(
            task_id,
            project_id,
            text,
            cwd,
            attachments=attachments,
            system_prompt=self._scheduler.system_prompt_for(project, task),
        )

    def stop(self, task_id: str) -> bool:
        return self._runtime.stop_session(task_id)


__all__ = ["LifecycleError", "RESET_FIELDS", "TaskLifecycle"]
