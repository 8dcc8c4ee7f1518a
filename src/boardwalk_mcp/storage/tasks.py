"""JSON-file task store.

Each project's tasks live in ``<data_dir>/state/<project_id>.json`` and the
project registry in ``<data_dir>/config.json``. Every read-modify-write runs
under a per-project :class:`asyncio.Lock` so concurrent partial updates to the
same task never drop each other's fields.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from pathlib import Path
from typing import Any, Iterable, Mapping, Protocol
from uuid import uuid4

from pydantic import BaseModel

from ..blocks import Attachment
from .models import (
    TASK_STATUSES,
    BoardConfig,
    ExecutionMode,
    Project,
    ProjectState,
    Task,
    TaskColumns,
    TaskMode,
    UPDATABLE_FIELDS,
    utcnow,
)

logger = logging.getLogger(__name__)


class TaskStoreError(RuntimeError):
    """Base class for task store errors."""


class ProjectNotFoundError(TaskStoreError):
    """Raised when a project id is not registered."""


class TaskNotFoundError(TaskStoreError):
    """Raised when a task id does not exist in its project."""


class TaskStoreProtocol(Protocol):
    """The subset of the task store the orchestration engine depends on."""

    async def get_project(self, project_id: str) -> Project | None:
        ...

    async def get_task(self, project_id: str, task_id: str) -> Task | None:
        ...

    async def update_task(
        self, project_id: str, task_id: str, fields: Mapping[str, Any]
    ) -> Task | None:
        ...

    async def get_all_tasks(self, project_id: str) -> TaskColumns:
        ...

    async def get_execution_mode(self, project_id: str) -> ExecutionMode:
        ...


class TaskStore:
    """Persist projects and tasks as JSON documents on disk."""

    def __init__(self, data_dir: Path) -> None:
        self._data_dir = Path(data_dir)
        self._config: BoardConfig | None = None
        self._states: dict[str, ProjectState] = {}
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @property
    def data_dir(self) -> Path:
        return self._data_dir

    def _config_path(self) -> Path:
        return self._data_dir / "config.json"

    def _state_path(self, project_id: str) -> Path:
        return self._data_dir / "state" / f"{project_id}.json"

    @staticmethod
    def _write(path: Path, document: BaseModel) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(document.model_dump_json(indent=2, exclude_none=True), encoding="utf-8")
        tmp.replace(path)

    def _load_config(self) -> BoardConfig:
        if self._config is None:
            path = self._config_path()
            if path.exists():
                self._config = BoardConfig.model_validate_json(path.read_text(encoding="utf-8"))
            else:
                self._config = BoardConfig()
        return self._config

    def _load_state(self, project_id: str) -> ProjectState:
        state = self._states.get(project_id)
        if state is None:
            path = self._state_path(project_id)
            if path.exists():
                state = ProjectState.model_validate_json(path.read_text(encoding="utf-8"))
            else:
                state = ProjectState()
            self._states[project_id] = state
        return state

    def _save_state(self, project_id: str) -> None:
        self._write(self._state_path(project_id), self._load_state(project_id))

    @staticmethod
    def _find(state: ProjectState, task_id: str) -> int:
        for index, task in enumerate(state.tasks):
            if task.id == task_id:
                return index
        return -1

    # Projects

    async def list_projects(self) -> list[Project]:
        config = self._load_config()
        return sorted((project.model_copy() for project in config.projects), key=lambda p: p.order)

    async def get_project(self, project_id: str) -> Project | None:
        for project in self._load_config().projects:
            if project.id == project_id:
                return project.model_copy()
        return None

    async def require_project(self, project_id: str) -> Project:
        project = await self.get_project(project_id)
        if project is None:
            raise ProjectNotFoundError(f"Project '{project_id}' not found")
        return project

    async def create_project(self, name: str, path: str) -> Project:
        async with self._locks["config"]:
            config = self._load_config()
            project = Project(
                id=uuid4().hex,
                name=name,
                path=path,
                order=max((p.order for p in config.projects), default=-1) + 1,
            )
            config.projects.append(project)
            self._write(self._config_path(), config)
            logger.info("Created project", extra={"project_id": project.id, "path": path})
            return project.model_copy()

    # Tasks

    async def get_task(self, project_id: str, task_id: str) -> Task | None:
        state = self._load_state(project_id)
        index = self._find(state, task_id)
        if index < 0:
            return None
        return state.tasks[index].model_copy(deep=True)

    async def get_all_tasks(self, project_id: str) -> TaskColumns:
        """Return tasks grouped by status; list order within a column is priority."""

        state = self._load_state(project_id)
        columns: TaskColumns = {status: [] for status in TASK_STATUSES}
        for task in sorted(state.tasks, key=lambda t: t.order):
            columns[task.status].append(task.model_copy(deep=True))
        return columns

    async def create_task(
        self,
        project_id: str,
        description: str,
        *,
        title: str | None = None,
        mode: TaskMode = "code",
        attachments: Iterable[Attachment] | None = None,
    ) -> Task:
        async with self._locks[project_id]:
            state = self._load_state(project_id)
            task = Task(
                id=uuid4().hex,
                title=title,
                description=description,
                mode=mode,
                attachments=list(attachments or []),
                order=max((t.order for t in state.tasks), default=-1) + 1,
            )
            state.tasks.append(task)
            self._save_state(project_id)
            return task.model_copy(deep=True)

    async def update_task(
        self, project_id: str, task_id: str, fields: Mapping[str, Any]
    ) -> Task | None:
        """Merge ``fields`` into the task and bump ``updated_at``.

        Passing ``None`` clears an optional field. Unknown field names raise
        ``ValueError`` so typos never silently vanish.
        """

        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown task fields: {sorted(unknown)}")

        async with self._locks[project_id]:
            state = self._load_state(project_id)
            index = self._find(state, task_id)
            if index < 0:
                return None
            current = state.tasks[index]
            merged = {**current.model_dump(), **fields, "updated_at": utcnow()}
            updated = Task.model_validate(merged)
            state.tasks[index] = updated
            self._save_state(project_id)
            return updated.model_copy(deep=True)

    async def delete_task(self, project_id: str, task_id: str) -> bool:
        async with self._locks[project_id]:
            state = self._load_state(project_id)
            index = self._find(state, task_id)
            if index < 0:
                return False
            del state.tasks[index]
            self._save_state(project_id)
            return True

    # Execution mode

    async def get_execution_mode(self, project_id: str) -> ExecutionMode:
        return self._load_state(project_id).execution_mode

    async def set_execution_mode(self, project_id: str, mode: ExecutionMode) -> None:
        if mode not in ("sequential", "parallel"):
            raise ValueError(f"Invalid execution mode '{mode}'")
        async with self._locks[project_id]:
            state = self._load_state(project_id)
            state.execution_mode = mode
            self._save_state(project_id)


__all__ = [
    "ProjectNotFoundError",
    "TaskNotFoundError",
    "TaskStore",
    "TaskStoreError",
    "TaskStoreProtocol",
]
