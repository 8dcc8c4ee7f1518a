"""Admission control and dispatch of tasks to agent sessions.

In ``sequential`` mode a project runs at most one agent at a time and waiting
tasks are admitted in column order. In ``parallel`` mode every pending task is
dispatched immediately, code tasks each into their own git worktree.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable

from .notify import Notifier
from .prompts.builder import build_system_prompt, build_task_prompt, write_attachments
from .prompts.models import ModePrompt
from .session.runtime import SessionOutcome, SessionRuntime, SessionStatus
from .storage.chroma import JournalRecorder
from .storage.models import ACTIVE_DISPATCH, PENDING_DISPATCH, DispatchState, Project, Task
from .storage.tasks import TaskStoreProtocol
from .terminal import TerminalSessions
from .worktree import WorktreeError, WorktreeManager, branch_name

logger = logging.getLogger(__name__)


class DispatchScheduler:
    """Decides when tasks start and launches their agents."""

    def __init__(
        self,
        store: TaskStoreProtocol,
        runtime: SessionRuntime,
        worktrees: WorktreeManager,
        terminals: TerminalSessions,
        prompts: dict[str, ModePrompt],
        notifier: Notifier,
        *,
        scratch_dir: Path,
        api_url: str,
        system_prompt_additions: str | None = None,
        default_render_mode: str = "pretty",
        recorder: JournalRecorder | None = None,
    ) -> None:
        self._store = store
        self._runtime = runtime
        self._worktrees = worktrees
        self._terminals = terminals
        self._prompts = prompts
        self._notifier = notifier
        self._scratch_dir = Path(scratch_dir)
        self._api_url = api_url
        self._additions = system_prompt_additions
        self._default_render_mode = default_render_mode
        self._recorder = recorder or JournalRecorder()
        self._processing: set[str] = set()

    @property
    def default_render_mode(self) -> str:
        return self._default_render_mode

    def render_mode_for(self, task: Task) -> str:
        return task.render_mode or self._default_render_mode

    def system_prompt_for(self, project: Project, task: Task) -> str:
        return build_system_prompt(
            self._prompts[task.mode],
            project_id=project.id,
            task_id=task.id,
            api_url=self._api_url,
            project_name=project.name,
            additions=self._additions,
        )

    async def initial_dispatch_state(
        self, project_id: str, excluding_task_id: str | None = None
    ) -> DispatchState:
        """``starting`` if the task may run right away, else ``queued``."""

        if await self._store.get_execution_mode(project_id) == "parallel":
            return "starting"
        columns = await self._store.get_all_tasks(project_id)
        busy = any(
            task.id != excluding_task_id and task.dispatch in ACTIVE_DISPATCH
            for task in columns["in-progress"]
        )
        return "queued" if busy else "starting"

    async def process_queue(self, project_id: str) -> None:
        """Admit waiting tasks according to the project's execution mode.

        A call made while the same project is already being processed is
        dropped; the running call or the next session exit picks up the work.
        """

        if project_id in self._processing:
            logger.info("Queue processing already active, skipping", extra={"project_id": project_id})
            return
        self._processing.add(project_id)
        try:
            mode = await self._store.get_execution_mode(project_id)
            columns = await self._store.get_all_tasks(project_id)
            in_progress = columns["in-progress"]
            pending = [task for task in in_progress if task.dispatch in PENDING_DISPATCH]
            running = [task for task in in_progress if task.dispatch == "running"]
            logger.info(
                "Processing queue",
                extra={
                    "project_id": project_id,
                    "mode": mode,
                    "running": len(running),
                    "pending": len(pending),
                },
            )
            if mode == "sequential":
                if not running and pending:
                    await self._launch(project_id, pending[0])
            else:
                for task in pending:
                    await self._launch(project_id, task)
        except Exception:
            logger.exception("Queue processing failed", extra={"project_id": project_id})
        finally:
            self._processing.discard(project_id)

    async def _launch(self, project_id: str, task: Task) -> None:
        logger.info("Launching task", extra={"task_id": task.short_id, "label": task.label})
        await self._store.update_task(project_id, task.id, {"dispatch": "starting"})
        if await self.dispatch_task(project_id, task):
            current = await self._store.get_task(project_id, task.id)
            if current is not None and current.status == "in-progress" and current.dispatch == "starting":
                await self._store.update_task(project_id, task.id, {"dispatch": "running"})
            return

        logger.warning("Dispatch failed, rolling back", extra={"task_id": task.short_id})
        current = await self._store.get_task(project_id, task.id)
        if current is not None and current.status == "in-progress":
            await self._store.update_task(project_id, task.id, {"dispatch": "queued"})

    async def dispatch_task(self, project_id: str, task: Task) -> bool:
        """Start an agent for ``task``. Failures are logged and reported as ``False``."""

        try:
            return await self._dispatch(project_id, task)
        except Exception:
            logger.exception("Dispatch raised", extra={"task_id": task.short_id})
            return False

    async def _dispatch(self, project_id: str, task: Task) -> bool:
        project = await self._store.get_project(project_id)
        if project is None:
            logger.error("Project not found", extra={"project_id": project_id})
            return False
        project_path = project.resolved_path
        if not project_path.exists():
            logger.error("Project path does not exist", extra={"path": str(project_path)})
            return False

        cwd = project_path
        mode = await self._store.get_execution_mode(project_id)
        if mode == "parallel" and task.mutates_source:
            try:
                worktree = await self._worktrees.create_worktree(project_path, task.short_id)
            except WorktreeError as exc:
                logger.warning(
                    "Worktree unavailable, using shared checkout",
                    extra={"task_id": task.short_id, "error": str(exc)},
                )
            else:
                branch = branch_name(task.short_id)
                await self._store.update_task(
                    project_id, task.id, {"worktree_path": str(worktree), "branch": branch}
                )
                self._recorder.worktree(task.id, str(worktree), branch, "created")
                cwd = worktree

        template = self._prompts[task.mode]
        system_prompt = self.system_prompt_for(project, task)
        images = write_attachments(task.attachments, self._scratch_dir / f"{task.short_id}-attachments")
        prompt = build_task_prompt(
            template, description=task.description, title=task.title, image_files=images
        )

        render_mode = self.render_mode_for(task)
        if render_mode == "terminal":
            await self._terminals.launch(task.id, cwd, prompt, system_prompt)
        else:
            result = await self._runtime.start_session(
                task.id, project_id, prompt, cwd, system_prompt=system_prompt
            )
            if result.outcome is SessionOutcome.ALREADY_RUNNING:
                logger.info("Session already running", extra={"task_id": task.short_id})
            elif not result.ok:
                logger.error(
                    "Session failed to start",
                    extra={"task_id": task.short_id, "error": result.error},
                )
                return False

        self._recorder.event(task.id, "dispatch", f"Dispatched in {cwd}", render_mode=render_mode)
        self._notifier.notify(f"*{task.label}* dispatched")
        logger.info(
            "Dispatched task",
            extra={"task_id": task.short_id, "render_mode": render_mode, "cwd": str(cwd)},
        )
        return True

    async def abort_task(self, project_id: str, task_id: str) -> None:
        """Stop whatever is running for the task and drop its worktree."""

        task = await self._store.get_task(project_id, task_id)
        if task is None:
            return

        if self._runtime.get_session(task_id) is not None:
            self._runtime.stop_session(task_id)
            await self._runtime.clear_session(task_id)
        if self.render_mode_for(task) == "terminal":
            await self._terminals.kill(task_id)
            self._terminals.discard(task_id)

        if task.worktree_path or task.branch:
            project = await self._store.get_project(project_id)
            if project is not None:
                await self._worktrees.remove_worktree(project.resolved_path, task.short_id)
                await self._store.update_task(
                    project_id, task_id, {"worktree_path": None, "branch": None}
                )
                self._recorder.worktree(task_id, task.worktree_path or "", task.branch, "removed")
        self._recorder.event(task_id, "abort", "Task aborted")
        logger.info("Aborted task", extra={"task_id": task.short_id})

    async def is_session_alive(self, task_id: str) -> bool:
        if self._runtime.is_running(task_id):
            return True
        return await self._terminals.is_alive(task_id)

    async def recover(self, project_ids: Iterable[str]) -> None:
        """Requeue tasks whose agents did not survive a restart, then admit work."""

        for project_id in project_ids:
            columns = await self._store.get_all_tasks(project_id)
            for task in columns["in-progress"]:
                if task.dispatch in ACTIVE_DISPATCH and not await self.is_session_alive(task.id):
                    await self._store.update_task(project_id, task.id, {"dispatch": "queued"})
                    logger.info("Requeued orphaned task", extra={"task_id": task.short_id})
            await self.process_queue(project_id)

    async def on_session_terminal(
        self, project_id: str, task_id: str, status: SessionStatus, handed_off: bool
    ) -> None:
        if handed_off and status is SessionStatus.DONE:
            task = await self._store.get_task(project_id, task_id)
            if task is not None:
                self._notifier.notify(f"*{task.label}* -> verify")
        await self.process_queue(project_id)


__all__ = ["DispatchScheduler"]
