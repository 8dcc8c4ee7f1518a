"""Delayed teardown of finished task sessions."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from .storage.chroma import JournalRecorder
from .storage.models import utcnow
from .storage.tasks import TaskStoreProtocol
from .terminal import TerminalSessions

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CleanupTimer:
    task: asyncio.Task
    expires_at: datetime


class CleanupManager:
    """One pending teardown timer per task.

    When a timer fires the task's lingering tmux session is killed and its
    captured output is saved to the task as ``agent_log``.
    """

    def __init__(
        self,
        store: TaskStoreProtocol,
        terminals: TerminalSessions,
        *,
        delay_seconds: float = 3600.0,
        capture_wait: float = 0.3,
        recorder: JournalRecorder | None = None,
    ) -> None:
        self._store = store
        self._terminals = terminals
        self._delay = delay_seconds
        self._capture_wait = capture_wait
        self._recorder = recorder or JournalRecorder()
        self._timers: dict[str, CleanupTimer] = {}

    def schedule_cleanup(self, project_id: str, task_id: str) -> datetime:
        self.cancel_cleanup(task_id)
        expires_at = utcnow() + timedelta(seconds=self._delay)
        task = asyncio.create_task(self._run(project_id, task_id))
        self._timers[task_id] = CleanupTimer(task=task, expires_at=expires_at)
        logger.info(
            "Scheduled cleanup",
            extra={"task_id": task_id, "expires_at": expires_at.isoformat()},
        )
        return expires_at

    def cancel_cleanup(self, task_id: str) -> bool:
        timer = self._timers.pop(task_id, None)
        if timer is None:
            return False
        timer.task.cancel()
        logger.info("Cancelled cleanup", extra={"task_id": task_id})
        return True

    def expires_at(self, task_id: str) -> datetime | None:
        timer = self._timers.get(task_id)
        return timer.expires_at if timer is not None else None

    def all_expirations(self) -> dict[str, datetime]:
        return {task_id: timer.expires_at for task_id, timer in self._timers.items()}

    async def _run(self, project_id: str, task_id: str) -> None:
        try:
            await asyncio.sleep(self._delay)
            await self._cleanup(project_id, task_id)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Cleanup failed", extra={"task_id": task_id})
        finally:
            timer = self._timers.get(task_id)
            if timer is not None and timer.task is asyncio.current_task():
                del self._timers[task_id]

    async def _cleanup(self, project_id: str, task_id: str) -> None:
        await self._terminals.kill(task_id)
        await asyncio.sleep(self._capture_wait)
        output = self._terminals.capture(task_id).strip()
        if output:
            await self._store.update_task(project_id, task_id, {"agent_log": output})
        self._recorder.event(task_id, "cleanup", f"Cleaned up session ({len(output)} chars captured)")
        logger.info("Cleanup finished", extra={"task_id": task_id, "captured": len(output)})

    async def shutdown(self) -> None:
        tasks = [timer.task for timer in self._timers.values()]
        self._timers.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


__all__ = ["CleanupManager", "CleanupTimer"]
