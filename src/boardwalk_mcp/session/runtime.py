"""Agent session runtime.

A session wraps one agent process working on one task. Its stdout is decoded
into an append-only list of blocks which is broadcast to attached observers
and persisted onto the task when the process ends.

States: ``running`` -> ``done`` | ``error`` | ``aborted``. A finished session
can be resumed with :meth:`SessionRuntime.continue_session`, which spawns a new
process with the stored continuation token.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Iterable

from ..agent.events import (
    AgentEvent,
    AssistantEvent,
    LineDecoder,
    ResultEvent,
    SystemEvent,
    TextContent,
    ThinkingContent,
    ToolResultContent,
    ToolUseContent,
    UserEvent,
)
from ..agent.runner import AgentRunner, AgentRunnerError
from ..blocks import (
    Attachment,
    Block,
    BlockMessage,
    ErrorMessage,
    ObserverMessage,
    ReplayMessage,
    StatusBlock,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
    UserBlock,
)
from ..prompts.builder import attachment_section, write_attachments
from ..storage.chroma import JournalRecorder
from ..storage.models import short_id, utcnow
from ..storage.tasks import TaskStoreProtocol

if TYPE_CHECKING:
    from .observer import Observer

logger = logging.getLogger(__name__)

FINDINGS_LIMIT = 2000
READ_CHUNK = 64 * 1024
EXIT_GRACE = 5.0
ASK_USER_TOOL = "AskUserQuestion"


class SessionStatus(str, Enum):
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"
    ABORTED = "aborted"


class SessionOutcome(str, Enum):
    STARTED = "started"
    ALREADY_RUNNING = "already_running"
    NO_SESSION_TO_RESUME = "no_session_to_resume"
    SPAWN_FAILED = "spawn_failed"


@dataclass(slots=True)
class SessionResult:
    outcome: SessionOutcome
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.outcome is SessionOutcome.STARTED


@dataclass(slots=True, eq=False)
class Session:
    task_id: str
    project_id: str
    cwd: Path
    status: SessionStatus = SessionStatus.RUNNING
    blocks: list[Block] = field(default_factory=list)
    observers: list["Observer"] = field(default_factory=list)
    session_id: str | None = None
    process: asyncio.subprocess.Process | None = None
    started_at: datetime = field(default_factory=utcnow)
    stderr: str = ""
    failure: str | None = None
    last_activity: float = field(default_factory=time.monotonic)
    pump: asyncio.Task | None = None


TerminalHook = Callable[[str, str, SessionStatus, bool], Awaitable[None]]
ResumeHook = Callable[[str, str], None]


def last_text(blocks: Iterable[Block]) -> str:
    text = ""
    for block in blocks:
        if isinstance(block, TextBlock):
            text = block.text
    return text


def pending_question(blocks: list[Block]) -> str | None:
    """Return the questions of a trailing unanswered ``AskUserQuestion`` call."""

    answered = {block.tool_id for block in blocks if isinstance(block, ToolResultBlock)}
    for block in reversed(blocks):
        if not isinstance(block, ToolUseBlock):
            continue
        if block.name != ASK_USER_TOOL or block.tool_id in answered:
            return None
        lines: list[str] = []
        for question in block.input.get("questions") or []:
            if not isinstance(question, dict):
                continue
            lines.append(str(question.get("question", "")).strip())
            for option in question.get("options") or []:
                label = option.get("label") if isinstance(option, dict) else option
                if label:
                    lines.append(f"  - {label}")
        return "\n".join(line for line in lines if line) or None
    return None


class SessionRuntime:
    """Registry of agent sessions keyed by task id."""

    def __init__(
        self,
        store: TaskStoreProtocol,
        runner: AgentRunner,
        *,
        scratch_dir: Path,
        liveness_timeout: float | None = None,
        recorder: JournalRecorder | None = None,
    ) -> None:
        self._store = store
        self._runner = runner
        self._scratch_dir = Path(scratch_dir)
        self._liveness_timeout = liveness_timeout
        self._recorder = recorder or JournalRecorder()
        self._sessions: dict[str, Session] = {}
        self._on_terminal: TerminalHook | None = None
        self._on_resume: ResumeHook | None = None

    def set_hooks(
        self,
        *,
        on_terminal: TerminalHook | None = None,
        on_resume: ResumeHook | None = None,
    ) -> None:
        self._on_terminal = on_terminal
        self._on_resume = on_resume

    # Queries

    def get_session(self, task_id: str) -> Session | None:
        return self._sessions.get(task_id)

    def is_running(self, task_id: str) -> bool:
        session = self._sessions.get(task_id)
        return session is not None and session.status is SessionStatus.RUNNING

    def running_task_ids(self) -> list[str]:
        return [
            task_id
            for task_id, session in self._sessions.items()
            if session.status is SessionStatus.RUNNING
        ]

    # Block log

    def _deliver(self, session: Session, observer: "Observer", message: ObserverMessage) -> bool:
        try:
            observer.send(message)
        except Exception:  # an observer failure must not stall the session
            logger.debug("Dropping observer", exc_info=True, extra={"task_id": session.task_id})
            if observer in session.observers:
                session.observers.remove(observer)
            return False
        return True

    def _append(self, session: Session, block: Block) -> None:
        session.blocks.append(block)
        message = BlockMessage(block=block)
        for observer in list(session.observers):
            self._deliver(session, observer, message)

    def inject_block(self, task_id: str, block: Block) -> bool:
        """Append an externally produced block (e.g. a progress report) to a session."""

        session = self._sessions.get(task_id)
        if session is None:
            return False
        self._append(session, block)
        return True

    async def attach(
        self,
        task_id: str,
        observer: "Observer",
        *,
        project_id: str | None = None,
    ) -> bool:
        """Replay the log to ``observer`` and subscribe it to new blocks.

        Returns ``True`` when the observer was registered on a live session.
        """

        session = self._sessions.get(task_id)
        if session is not None:
            if self._deliver(session, observer, ReplayMessage(blocks=list(session.blocks))):
                session.observers.append(observer)
                return True
            return False

        task = await self._store.get_task(project_id, task_id) if project_id else None
        if task is not None and task.blocks:
            observer.send(ReplayMessage(blocks=task.blocks))
        else:
            observer.send(ErrorMessage(error="No session for this task"))
        return False

    def detach(self, task_id: str, observer: "Observer") -> None:
        session = self._sessions.get(task_id)
        if session is not None and observer in session.observers:
            session.observers.remove(observer)

    # Lifecycle

    async def start_session(
        self,
        task_id: str,
        project_id: str,
        prompt: str,
        cwd: Path | str,
        *,
        model: str | None = None,
        system_prompt: str | None = None,
    ) -> SessionResult:
        existing = self._sessions.get(task_id)
        if existing is not None and existing.status is not SessionStatus.RUNNING:
            await self._await_exit(existing)
            existing = self._sessions.get(task_id)
        if existing is not None and existing.status is SessionStatus.RUNNING:
            return SessionResult(SessionOutcome.ALREADY_RUNNING)

        session = Session(
            task_id=task_id,
            project_id=project_id,
            cwd=Path(cwd),
            blocks=list(existing.blocks) if existing is not None else [],
            observers=list(existing.observers) if existing is not None else [],
        )
        self._sessions[task_id] = session
        self._append(session, StatusBlock(subtype="init", model=model or self._runner.default_model))
        self._append(session, UserBlock(text=prompt))
        self._recorder.session(task_id, project_id, SessionStatus.RUNNING.value, None)
        logger.info("Starting session", extra={"task_id": task_id, "cwd": str(cwd)})
        return await self._spawn(session, prompt, model=model, system_prompt=system_prompt)

    async def continue_session(
        self,
        task_id: str,
        project_id: str,
        text: str,
        cwd: Path | str,
        *,
        attachments: Iterable[Attachment] | None = None,
        model: str | None = None,
        system_prompt: str | None = None,
    ) -> SessionResult:
        """Send a follow-up message by resuming the agent conversation."""

        session = self._sessions.get(task_id)
        if session is not None and session.status is not SessionStatus.RUNNING:
            await self._await_exit(session)
            session = self._sessions.get(task_id)
        if session is None:
            task = await self._store.get_task(project_id, task_id)
            if task is None or not task.session_id:
                return SessionResult(SessionOutcome.NO_SESSION_TO_RESUME)
            session = self._sessions.get(task_id)
            if session is None:
                session = Session(
                    task_id=task_id,
                    project_id=project_id,
                    cwd=Path(cwd),
                    status=SessionStatus.DONE,
                    blocks=list(task.blocks),
                    session_id=task.session_id,
                )
                self._sessions[task_id] = session

        if session.status is SessionStatus.RUNNING:
            return SessionResult(SessionOutcome.ALREADY_RUNNING)
        if not session.session_id:
            return SessionResult(SessionOutcome.NO_SESSION_TO_RESUME)

        session.status = SessionStatus.RUNNING
        session.cwd = Path(cwd)
        session.stderr = ""
        session.failure = None
        session.started_at = utcnow()

        attached = list(attachments or [])
        directory = self._scratch_dir / f"followup-{short_id(task_id)}-{int(time.time() * 1000)}"
        prompt = text + attachment_section(write_attachments(attached, directory))
        self._append(session, UserBlock(text=text, attachments=attached or None))

        if self._on_resume is not None:
            self._on_resume(project_id, task_id)
        self._recorder.session(task_id, project_id, "resumed", session.session_id)
        logger.info("Resuming session", extra={"task_id": task_id, "session_id": session.session_id})
        return await self._spawn(
            session,
            prompt,
            model=model,
            system_prompt=system_prompt,
            resume_token=session.session_id,
        )

    async def _spawn(
        self,
        session: Session,
        prompt: str,
        *,
        model: str | None = None,
        system_prompt: str | None = None,
        resume_token: str | None = None,
    ) -> SessionResult:
        try:
            process = await self._runner.launch(
                prompt,
                cwd=session.cwd,
                model=model,
                system_prompt=system_prompt,
                resume_token=resume_token,
            )
        except AgentRunnerError as exc:
            message = str(exc)
            logger.error("Agent spawn failed", extra={"task_id": session.task_id, "error": message})
            session.status = SessionStatus.ERROR
            self._append(session, StatusBlock(subtype="error", error=message))
            await self._persist(session)
            return SessionResult(SessionOutcome.SPAWN_FAILED, error=message)

        session.process = process
        session.last_activity = time.monotonic()
        if session.status is not SessionStatus.RUNNING:
            # stopped while the process was being spawned
            self._terminate(process)
        session.pump = asyncio.create_task(self._pump(session, process))
        return SessionResult(SessionOutcome.STARTED)

    @staticmethod
    def _terminate(process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                pass

    async def _await_exit(self, session: Session) -> None:
        """Wait for a stopped session's previous process to exit, killing it after a grace period."""

        pump = session.pump
        if pump is None or pump.done():
            return
        done, _ = await asyncio.wait({pump}, timeout=EXIT_GRACE)
        if done:
            return
        process = session.process
        if process is not None and process.returncode is None:
            logger.warning(
                "Agent ignored termination, killing it",
                extra={"task_id": session.task_id, "pid": process.pid},
            )
            try:
                process.kill()
            except ProcessLookupError:
                pass
        await asyncio.wait({pump}, timeout=EXIT_GRACE)

    def stop_session(self, task_id: str) -> bool:
        """Abort a running session. Returns ``False`` if nothing was running."""

        session = self._sessions.get(task_id)
        if session is None or session.status is not SessionStatus.RUNNING:
            return False
        session.status = SessionStatus.ABORTED
        self._append(session, StatusBlock(subtype="abort", error="Session aborted"))
        if session.process is not None:
            self._terminate(session.process)
        logger.info("Stopped session", extra={"task_id": task_id})
        return True

    async def clear_session(self, task_id: str) -> None:
        """Persist the log, terminate any process and forget the session."""

        self.stop_session(task_id)
        session = self._sessions.pop(task_id, None)
        if session is None:
            return
        session.observers.clear()
        await self._persist(session)

    async def shutdown(self, timeout: float = 5.0) -> None:
        pumps = []
        for task_id, session in list(self._sessions.items()):
            self.stop_session(task_id)
            if session.pump is not None and not session.pump.done():
                pumps.append(session.pump)
        if pumps:
            await asyncio.wait(pumps, timeout=timeout)

    # Process I/O

    async def _collect_stderr(self, session: Session, process: asyncio.subprocess.Process) -> None:
        if process.stderr is None:
            return
        while True:
            chunk = await process.stderr.read(READ_CHUNK)
            if not chunk:
                return
            session.stderr += chunk.decode("utf-8", errors="replace")

    async def _watch_liveness(
        self, session: Session, process: asyncio.subprocess.Process, timeout: float
    ) -> None:
        while session.process is process and session.status is SessionStatus.RUNNING:
            idle = time.monotonic() - session.last_activity
            if idle >= timeout:
                session.failure = f"Agent produced no output for {int(timeout)} seconds"
                logger.warning(
                    "Session stalled, terminating",
                    extra={"task_id": session.task_id, "idle_seconds": idle},
                )
                self._terminate(process)
                return
            await asyncio.sleep(timeout - idle)

    async def _read(self, session: Session, process: asyncio.subprocess.Process) -> int:
        if process.stdout is None:
            raise AgentRunnerError("Agent process was started without a stdout pipe")
        decoder = LineDecoder()
        stderr_task = asyncio.create_task(self._collect_stderr(session, process))
        watchdog = (
            asyncio.create_task(self._watch_liveness(session, process, self._liveness_timeout))
            if self._liveness_timeout
            else None
        )
        try:
            while True:
                chunk = await process.stdout.read(READ_CHUNK)
                if not chunk:
                    break
                session.last_activity = time.monotonic()
                for event in decoder.feed(chunk):
                    self._handle_event(session, process, event)
            for event in decoder.flush():
                self._handle_event(session, process, event)
            await stderr_task
            return await process.wait()
        finally:
            if watchdog is not None:
                watchdog.cancel()
            stderr_task.cancel()

    async def _pump(self, session: Session, process: asyncio.subprocess.Process) -> None:
        try:
            returncode = await self._read(session, process)
        except asyncio.CancelledError:
            self._terminate(process)
            raise
        except Exception as exc:
            logger.exception("Session stream failed", extra={"task_id": session.task_id})
            self._terminate(process)
            session.failure = session.failure or f"Session stream failed: {exc}"
            returncode = process.returncode if process.returncode is not None else -1
        try:
            await self._finish(session, process, returncode)
        except Exception:
            logger.exception("Session finalization failed", extra={"task_id": session.task_id})

    # Event handling

    def _handle_event(
        self, session: Session, process: asyncio.subprocess.Process, event: AgentEvent
    ) -> None:
        if session.process is not process or session.status is SessionStatus.ABORTED:
            return
        if event.session_id:
            session.session_id = event.session_id

        if isinstance(event, SystemEvent):
            if event.subtype == "init" and event.model:
                for block in reversed(session.blocks):
                    if isinstance(block, StatusBlock) and block.subtype == "init":
                        block.model = event.model
                        break
        elif isinstance(event, AssistantEvent):
            for item in event.message.items():
                if isinstance(item, TextContent):
                    self._append(session, TextBlock(text=item.text))
                elif isinstance(item, ThinkingContent):
                    self._append(session, ThinkingBlock(thinking=item.thinking))
                elif isinstance(item, ToolUseContent):
                    self._append(
                        session, ToolUseBlock(tool_id=item.id, name=item.name, input=item.input)
                    )
        elif isinstance(event, UserEvent):
            for item in event.message.items():
                if isinstance(item, ToolResultContent):
                    self._append(
                        session,
                        ToolResultBlock(
                            tool_id=item.tool_use_id,
                            name=self._tool_name(session, item.tool_use_id),
                            output=item.output_text,
                            is_error=bool(item.is_error),
                        ),
                    )
        elif isinstance(event, ResultEvent):
            if session.status is not SessionStatus.RUNNING:
                return
            self._append(
                session,
                StatusBlock(
                    subtype="error" if event.is_error else "complete",
                    session_id=event.session_id,
                    cost_usd=event.total_cost_usd,
                    duration_ms=event.duration_ms,
                    turns=event.num_turns,
                    error=(event.result or "Agent error") if event.is_error else None,
                ),
            )
            session.status = SessionStatus.ERROR if event.is_error else SessionStatus.DONE

    @staticmethod
    def _tool_name(session: Session, tool_id: str) -> str:
        for block in reversed(session.blocks):
            if isinstance(block, ToolUseBlock) and block.tool_id == tool_id:
                return block.name
        return ""

    # Finalization

    async def _persist(self, session: Session, extra: dict[str, Any] | None = None) -> None:
        fields: dict[str, Any] = {"blocks": list(session.blocks), "session_id": session.session_id}
        fields.update(extra or {})
        await self._store.update_task(session.project_id, session.task_id, fields)

    async def _finish(
        self, session: Session, process: asyncio.subprocess.Process, returncode: int
    ) -> None:
        if session.process is not process or self._sessions.get(session.task_id) is not session:
            return

        if session.status is SessionStatus.RUNNING:
            elapsed = int((utcnow() - session.started_at).total_seconds() * 1000)
            if returncode != 0 or session.failure:
                error = (
                    session.failure
                    or session.stderr.strip()
                    or f"Agent exited with code {returncode}"
                )
                session.status = SessionStatus.ERROR
                self._append(
                    session, StatusBlock(subtype="error", error=error, duration_ms=elapsed)
                )
            else:
                session.status = SessionStatus.DONE
                self._append(session, StatusBlock(subtype="complete", duration_ms=elapsed))

        extra: dict[str, Any] = {}
        if session.status in (SessionStatus.DONE, SessionStatus.ERROR):
            task = await self._store.get_task(session.project_id, session.task_id)
            if task is not None and task.status == "in-progress":
                extra.update(status="verify", dispatch=None, findings=self._findings(session))
                question = pending_question(session.blocks)
                if question:
                    extra["human_steps"] = question
        await self._persist(session, extra)

        logger.info(
            "Session finished",
            extra={
                "task_id": session.task_id,
                "status": session.status.value,
                "returncode": returncode,
            },
        )
        self._recorder.session(
            session.task_id, session.project_id, session.status.value, session.session_id
        )
        if self._on_terminal is not None:
            await self._on_terminal(
                session.project_id, session.task_id, session.status, "status" in extra
            )

    @staticmethod
    def _findings(session: Session) -> str:
        if session.status is SessionStatus.ERROR:
            for block in reversed(session.blocks):
                if isinstance(block, StatusBlock) and block.subtype == "error":
                    return f"Error: {block.error or 'Agent error'}"
            return "Error: Agent error"
        return last_text(session.blocks)[:FINDINGS_LIMIT]


__all__ = [
    "Session",
    "SessionOutcome",
    "SessionResult",
    "SessionRuntime",
    "SessionStatus",
    "last_text",
    "pending_question",
]
