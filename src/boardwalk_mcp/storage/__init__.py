"""Storage abstractions for Boardwalk MCP."""

from .chroma import ActivityJournal, JournalEvent, JournalRecorder, JournalUnavailableError
from .models import (
    MergeConflict,
    Project,
    SessionTrackingRecord,
    Task,
    TaskColumns,
    WorktreeRecord,
)
from .tasks import (
    ProjectNotFoundError,
    TaskNotFoundError,
    TaskStore,
    TaskStoreError,
    TaskStoreProtocol,
)

__all__ = [
    "ActivityJournal",
    "JournalEvent",
    "JournalRecorder",
    "JournalUnavailableError",
    "MergeConflict",
    "Project",
    "ProjectNotFoundError",
    "SessionTrackingRecord",
    "Task",
    "TaskColumns",
    "TaskNotFoundError",
    "TaskStore",
    "TaskStoreError",
    "TaskStoreProtocol",
    "WorktreeRecord",
]
