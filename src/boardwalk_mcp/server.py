"""FastMCP server bootstrap for Boardwalk."""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Optional

from fastmcp import Context, FastMCP

from . import __version__
from .agent import AgentNotFoundError, AgentRunner
from .agent.runner import DEFAULT_EXECUTABLE
from .cleanup import CleanupManager
from .config import BoardwalkSettings, get_settings
from .dispatch import DispatchScheduler
from .lifecycle import TaskLifecycle
from .notify import AutoTitler, BackgroundJobs, Notifier
from .prompts import DEFAULT_PROMPTS, ModePrompt, PromptLoadError, PromptLoader
from .session import SessionRuntime
from .storage import ActivityJournal, JournalRecorder, JournalUnavailableError, TaskStore
from .terminal import TerminalSessions
from .tools import ToolHandles, register_tools
from .worktree import WorktreeManager

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    """Configure root logging for the Boardwalk server."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


@dataclass(slots=True)
class Engine:
    """Every long-lived component of a running server, wired together."""

    settings: BoardwalkSettings
    store: TaskStore
    runner: AgentRunner
    runtime: SessionRuntime
    worktrees: WorktreeManager
    terminals: TerminalSessions
    cleanup: CleanupManager
    scheduler: DispatchScheduler
    lifecycle: TaskLifecycle
    jobs: BackgroundJobs
    notifier: Notifier
    journal: ActivityJournal | None
    prompts: dict[str, ModePrompt]
    agent_metadata: dict[str, Any]
    journal_metadata: dict[str, Any]
    prompt_error: str | None = None

    async def recover(self) -> None:
        projects = await self.store.list_projects()
        await self.scheduler.recover(project.id for project in projects)

    async def shutdown(self) -> None:
        await self.cleanup.shutdown()
        await self.runtime.shutdown()
        await self.jobs.drain(timeout=5.0)


def _load_prompts(settings: BoardwalkSettings) -> tuple[dict[str, ModePrompt], str | None]:
    try:
        return PromptLoader(settings.prompt_paths).load_all(), None
    except PromptLoadError as exc:
        logger.warning("Falling back to built-in prompts", extra={"error": str(exc)})
        return dict(DEFAULT_PROMPTS), str(exc)


def build_engine(
    settings: BoardwalkSettings,
    *,
    runner: AgentRunner | None = None,
    journal: ActivityJournal | None = None,
) -> Engine:
    """Construct and wire the orchestration components for ``settings``."""

    settings.data_dir.mkdir(parents=True, exist_ok=True)
    settings.scratch_dir.mkdir(parents=True, exist_ok=True)

    runner = runner or AgentRunner(
        Path(settings.claude_path) if settings.claude_path else None,
        default_model=settings.default_model,
        max_turns=settings.max_turns,
    )
    agent_metadata: dict[str, Any] = {"available": False, "path": None, "error": None}
    try:
        agent_path = str(runner.executable)
        agent_metadata.update({"available": True, "path": agent_path})
    except AgentNotFoundError as exc:
        agent_path = settings.claude_path or DEFAULT_EXECUTABLE
        agent_metadata["error"] = str(exc)

    journal_metadata: dict[str, Any] = {
        "enabled": settings.journal_enabled,
        "available": False,
        "path": str(settings.chroma_persist_path),
        "error": None,
    }
    if journal is None and settings.journal_enabled:
        journal = ActivityJournal(settings.chroma_persist_path)
    if journal is not None:
        try:
            journal.ping()
            journal_metadata["available"] = True
        except JournalUnavailableError as exc:
            journal_metadata["error"] = str(exc)
            journal = None
    recorder = JournalRecorder(journal)

    prompts, prompt_error = _load_prompts(settings)

    store = TaskStore(settings.data_dir)
    jobs = BackgroundJobs()
    notifier = Notifier(jobs, executable=settings.notify_bin, channel=settings.notify_channel)
    runtime = SessionRuntime(
        store,
        runner,
        scratch_dir=settings.scratch_dir,
        liveness_timeout=settings.liveness_timeout_seconds,
        recorder=recorder,
    )
    worktrees = WorktreeManager(primary_branch=settings.primary_branch)
    terminals = TerminalSessions(
        settings.scratch_dir, agent_path, default_model=settings.default_model
    )
    cleanup = CleanupManager(
        store, terminals, delay_seconds=settings.cleanup_delay_seconds, recorder=recorder
    )
    scheduler = DispatchScheduler(
        store,
        runtime,
        worktrees,
        terminals,
        prompts,
        notifier,
        scratch_dir=settings.scratch_dir,
        api_url=settings.board_api_url,
        system_prompt_additions=settings.system_prompt_additions,
        default_render_mode=settings.default_render_mode,
        recorder=recorder,
    )
    lifecycle = TaskLifecycle(
        store,
        scheduler,
        runtime,
        worktrees,
        cleanup,
        notifier,
        AutoTitler(runner, store, jobs),
        recorder=recorder,
    )

    return Engine(
        settings=settings,
        store=store,
        runner=runner,
        runtime=runtime,
        worktrees=worktrees,
        terminals=terminals,
        cleanup=cleanup,
        scheduler=scheduler,
        lifecycle=lifecycle,
        jobs=jobs,
        notifier=notifier,
        journal=journal,
        prompts=prompts,
        agent_metadata=agent_metadata,
        journal_metadata=journal_metadata,
        prompt_error=prompt_error,
    )


def create_server(
    settings: Optional[BoardwalkSettings] = None,
    *,
    runner: AgentRunner | None = None,
    journal: ActivityJournal | None = None,
) -> FastMCP:
    """Instantiate the FastMCP server with its tools and status resource."""

    settings = settings or get_settings()
    engine = build_engine(settings, runner=runner, journal=journal)

    @asynccontextmanager
    async def lifespan(_server: FastMCP) -> AsyncIterator[Engine]:
        await engine.recover()
        try:
            yield engine
        finally:
            await engine.shutdown()

    server = FastMCP(
        name="Boardwalk MCP",
        version=__version__,
        instructions=(
            "Boardwalk runs coding agents against tasks on a project board. Move a task "
            "to in-progress to dispatch it, watch its session log, send follow-ups and "
            "move it to done to merge its worktree."
        ),
        lifespan=lifespan,
    )

    handles: ToolHandles = register_tools(
        server,
        store=engine.store,
        lifecycle=engine.lifecycle,
        scheduler=engine.scheduler,
        runtime=engine.runtime,
        cleanup=engine.cleanup,
        journal=engine.journal,
    )

    @server.resource(
        "resource://boardwalk/status",
        name="boardwalk_status",
        title="Boardwalk MCP Status",
        description="Current runtime status for the Boardwalk MCP server.",
        mime_type="application/json",
        tags={"status", "health"},
    )
    async def status_resource(context: Context) -> str:
        """Return a JSON string summarizing runtime state."""

        projects = await engine.store.list_projects()
        project_summary = []
        for project in projects:
            columns = await engine.store.get_all_tasks(project.id)
            project_summary.append(
                {
                    "id": project.id,
                    "name": project.name,
                    "execution_mode": await engine.store.get_execution_mode(project.id),
                    "counts": {status: len(tasks) for status, tasks in columns.items()},
                }
            )

        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server_version": __version__,
            "log_level": settings.log_level,
            "agent": {
                "default_model": settings.default_model,
                **engine.agent_metadata,
            },
            "prompts": {
                "modes": sorted(engine.prompts),
                "error": engine.prompt_error,
            },
            "journal": engine.journal_metadata,
            "notifications": engine.notifier.enabled,
            "projects": project_summary,
            "sessions": {
                "running": engine.runtime.running_task_ids(),
                "cleanup_timers": len(engine.cleanup.all_expirations()),
                "background_jobs": engine.jobs.pending,
            },
            "request_id": getattr(context, "request_id", None),
        }
        return json.dumps(payload)

    setattr(server, "engine", engine)
    setattr(server, "agent_metadata", engine.agent_metadata)
    setattr(server, "journal_metadata", engine.journal_metadata)
    setattr(server, "tool_handles", handles)
    return server


def main() -> None:
    """Entry point for running the Boardwalk MCP server via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    logger.info(
        "Launching Boardwalk MCP server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "agent_available": getattr(server, "agent_metadata", {}).get("available"),
            "journal_available": getattr(server, "journal_metadata", {}).get("available"),
        },
    )
    server.run()


if __name__ == "__main__":
    main()
