"""Data models for the task board and persistent tracking."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from ..blocks import Attachment, Block

TaskStatus = Literal["todo", "in-progress", "verify", "done"]
DispatchState = Literal["queued", "starting", "running"]
TaskMode = Literal["code", "plan", "answer"]
RenderMode = Literal["pretty", "terminal"]
ExecutionMode = Literal["sequential", "parallel"]

TASK_STATUSES: tuple[TaskStatus, ...] = ("todo", "in-progress", "verify", "done")
ACTIVE_DISPATCH: frozenset[str] = frozenset({"starting", "running"})
PENDING_DISPATCH: frozenset[str] = frozenset({"queued", "starting"})
READ_ONLY_MODES: frozenset[str] = frozenset({"plan", "answer"})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def short_id(task_id: str) -> str:
    """Return the short identifier used for branches, worktrees and terminals."""

    return task_id[:8]


class MergeConflict(BaseModel):
    error: str
    files: list[str] = Field(default_factory=list)
    diff: str = ""
    branch: str


class Task(BaseModel):
    """A single card on the project board."""

    model_config = ConfigDict(validate_assignment=True)

    id: str
    title: str | None = None
    description: str = ""
    status: TaskStatus = "todo"
    dispatch: DispatchState | None = None
    mode: TaskMode = "code"
    render_mode: RenderMode | None = None
    order: int = 0
    worktree_path: str | None = None
    branch: str | None = None
    merge_conflict: MergeConflict | None = None
    findings: str = ""
    human_steps: str = ""
    agent_log: str = ""
    session_id: str | None = None
    blocks: list[Block] = Field(default_factory=list)
    attachments: list[Attachment] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def short_id(self) -> str:
        return short_id(self.id)

    @property
    def label(self) -> str:
        return self.title or self.description[:40] or self.short_id

    @property
    def mutates_source(self) -> bool:
        return self.mode not in READ_ONLY_MODES


class Project(BaseModel):
    id: str
    name: str
    path: str
    order: int = 0
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def resolved_path(self) -> Path:
        return Path(self.path).expanduser()


class ProjectState(BaseModel):
    """Everything persisted for one project."""

    tasks: list[Task] = Field(default_factory=list)
    execution_mode: ExecutionMode = "sequential"


class BoardConfig(BaseModel):
    projects: list[Project] = Field(default_factory=list)


TaskColumns = dict[TaskStatus, list[Task]]

UPDATABLE_FIELDS: frozenset[str] = frozenset(Task.model_fields) - {"id", "created_at", "updated_at"}


@dataclass(slots=True)
class WorktreeRecord:
    task_id: str
    path: str
    branch: str | None
    created_at: datetime
    status: str
    metadata: dict[str, Any]


@dataclass(slots=True)
class SessionTrackingRecord:
    session_id: str
    task_id: str | None
    project_id: str
    started_at: datetime
    status: str
    metadata: dict[str, Any]


__all__ = [
    "ACTIVE_DISPATCH",
    "BoardConfig",
    "DispatchState",
    "ExecutionMode",
    "MergeConflict",
    "PENDING_DISPATCH",
    "Project",
    "ProjectState",
    "READ_ONLY_MODES",
    "RenderMode",
    "SessionTrackingRecord",
    "TASK_STATUSES",
    "Task",
    "TaskColumns",
    "TaskMode",
    "TaskStatus",
    "UPDATABLE_FIELDS",
    "WorktreeRecord",
    "short_id",
    "utcnow",
]
