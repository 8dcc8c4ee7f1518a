"""Fire-and-forget background jobs: chat notifications and task auto-titles."""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Coroutine

from .agent.runner import AgentRunner, AgentRunnerError
from .agent.utils import sanitize_environment
from .storage.tasks import TaskStoreProtocol

logger = logging.getLogger(__name__)

TITLE_PROMPT = (
    "Give this task a short title (3-8 words, no quotes, no punctuation at the end). "
    "Just output the title, nothing else.\n\nTask description:\n{description}"
)


class BackgroundJobs:
    """Keeps references to running jobs and logs their failures."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str | None = None) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._finished)
        return task

    def _finished(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Background job failed",
                exc_info=(type(exc), exc, exc.__traceback__),
                extra={"job": task.get_name()},
            )

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: float | None = None) -> None:
        if self._tasks:
            await asyncio.wait(set(self._tasks), timeout=timeout)


class Notifier:
    """Sends one-line chat messages through an external messaging CLI."""

    def __init__(
        self,
        jobs: BackgroundJobs,
        *,
        executable: str | None = None,
        channel: str | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._jobs = jobs
        self._executable = executable
        self._channel = channel
        self._timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self._executable and self._channel)

    def notify(self, message: str) -> None:
        if not self.enabled:
            return
        self._jobs.spawn(self._send(message), name="notify")

    async def _send(self, message: str) -> None:
        if not self._executable or not self._channel:
            return
        try:
            process = await asyncio.create_subprocess_exec(
                self._executable,
                "message",
                "send",
                "--channel",
                "slack",
                "--target",
                self._channel,
                "--message",
                message,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
                env=sanitize_environment(),
            )
            _, stderr = await asyncio.wait_for(process.communicate(), timeout=self._timeout)
        except (OSError, asyncio.TimeoutError) as exc:
            logger.warning("Notification failed", extra={"error": str(exc)})
            return
        if process.returncode != 0:
            logger.warning(
                "Notification failed",
                extra={"error": stderr.decode("utf-8", errors="replace").strip()},
            )


def clean_title(raw: str) -> str:
    lines = raw.strip().splitlines()
    if not lines:
        return ""
    title = re.sub(r"^[\"']|[\"']$", "", lines[0].strip())
    return title.rstrip(".").strip()


class AutoTitler:
    """Asks a small model for a short task title and stores it."""

    def __init__(
        self,
        runner: AgentRunner,
        store: TaskStoreProtocol,
        jobs: BackgroundJobs,
        *,
        model: str = "haiku",
    ) -> None:
        self._runner = runner
        self._store = store
        self._jobs = jobs
        self._model = model
        self._pending: set[str] = set()

    def request(self, project_id: str, task_id: str, description: str) -> bool:
        if task_id in self._pending or not description.strip():
            return False
        self._pending.add(task_id)
        self._jobs.spawn(self._generate(project_id, task_id, description), name="auto-title")
        return True

    async def _generate(self, project_id: str, task_id: str, description: str) -> None:
        try:
            prompt = TITLE_PROMPT.format(description=description[:1000])
            try:
                result = await self._runner.one_shot(prompt, model=self._model)
            except (AgentRunnerError, OSError, asyncio.TimeoutError) as exc:
                logger.warning("Auto-title failed", extra={"task_id": task_id, "error": str(exc)})
                return
            if not result.ok:
                logger.warning(
                    "Auto-title failed",
                    extra={"task_id": task_id, "error": result.stderr.strip()},
                )
                return
            title = clean_title(result.stdout)
            if not title:
                return
            task = await self._store.get_task(project_id, task_id)
            if task is None or task.title:
                return
            await self._store.update_task(project_id, task_id, {"title": title})
            logger.info("Auto-titled task", extra={"task_id": task_id, "title": title})
        finally:
            self._pending.discard(task_id)


__all__ = ["AutoTitler", "BackgroundJobs", "Notifier", "clean_title"]
