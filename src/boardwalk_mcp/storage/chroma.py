"""Chroma-backed activity journal.

The journal is an append-only audit trail of what the orchestrator did for each
task: admissions, sessions, worktree changes and cleanups. It is optional; the
engine runs without it and only records when one is configured.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Protocol

from .models import SessionTrackingRecord, WorktreeRecord

logger = logging.getLogger(__name__)


class JournalUnavailableError(RuntimeError):
    """Raised when the Chroma client cannot be constructed."""


class CollectionProtocol(Protocol):
    """Minimal Chroma collection API used by the journal."""

    def add(
        self,
        *,
        documents: Iterable[str],
        metadatas: Iterable[dict[str, Any]],
        ids: Iterable[str],
    ) -> None:
        ...

    def get(
        self,
        *,
        ids: Iterable[str] | None = None,
        where: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> dict[str, list[Any]]:
        ...


class ClientProtocol(Protocol):
    def get_or_create_collection(self, name: str) -> CollectionProtocol:
        ...


@dataclass(slots=True)
class JournalEvent:
    id: str
    task_id: str
    event_type: str
    document: str
    metadata: dict[str, Any]
    timestamp: datetime


def _scalar_metadata(metadata: dict[str, Any]) -> dict[str, Any]:
    # Chroma only accepts str/int/float/bool metadata values
    cleaned: dict[str, Any] = {}
    for key, value in metadata.items():
        if value is None:
            continue
        if isinstance(value, (str, int, float, bool)):
            cleaned[key] = value
        else:
            cleaned[key] = json.dumps(value)
    return cleaned


class ActivityJournal:
    """Record orchestration events in a ChromaDB collection."""

    def __init__(
        self,
        path: Path,
        *,
        collection_name: str = "boardwalk_activity",
        client_factory: Callable[[], ClientProtocol] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._path = Path(path)
        self._collection_name = collection_name
        self._client_factory = client_factory or self._default_client_factory
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._collection: CollectionProtocol | None = None
        self._counters: dict[str, int] = defaultdict(int)

    def _default_client_factory(self) -> ClientProtocol:
        try:
            import chromadb
        except ImportError as exc:  # pragma: no cover - depends on environment
            raise JournalUnavailableError(
                "chromadb package is not installed; install boardwalk-mcp[persistence]"
            ) from exc

        return chromadb.PersistentClient(path=str(self._path))

    def _ensure_collection(self) -> CollectionProtocol:
        if self._collection is None:
            client = self._client_factory()
            self._collection = client.get_or_create_collection(self._collection_name)
        return self._collection

    def _convert(self, result: dict[str, list[Any]]) -> list[JournalEvent]:
        events: list[JournalEvent] = []
        for event_id, document, metadata in zip(
            result.get("ids", []), result.get("documents", []), result.get("metadatas", [])
        ):
            timestamp_raw = metadata.get("timestamp")
            timestamp = (
                datetime.fromisoformat(timestamp_raw)
                if isinstance(timestamp_raw, str)
                else self._clock()
            )
            events.append(
                JournalEvent(
                    id=event_id,
                    task_id=metadata.get("task_id", ""),
                    event_type=metadata.get("event_type", ""),
                    document=document,
                    metadata=metadata,
                    timestamp=timestamp,
                )
            )
        events.sort(key=lambda event: (event.timestamp, event.metadata.get("sequence", 0)))
        return events

    def ping(self) -> bool:
        self._ensure_collection()
        return True

    def record_event(
        self,
        *,
        task_id: str,
        event_type: str,
        body: Any,
        metadata: dict[str, Any] | None = None,
    ) -> JournalEvent:
        collection = self._ensure_collection()
        self._counters[task_id] += 1
        timestamp = self._clock()
        document = body if isinstance(body, str) else json.dumps(body, default=str)
        record_metadata = {
            "task_id": task_id,
            "event_type": event_type,
            "timestamp": timestamp.isoformat(),
            "sequence": self._counters[task_id],
        }
        if metadata:
            record_metadata.update(metadata)
        record_metadata = _scalar_metadata(record_metadata)
        event_id = f"{task_id}:{uuid.uuid4().hex}"

        collection.add(documents=[document], metadatas=[record_metadata], ids=[event_id])

        return JournalEvent(
            id=event_id,
            task_id=task_id,
            event_type=event_type,
            document=document,
            metadata=record_metadata,
            timestamp=timestamp,
        )

    def task_history(self, task_id: str, *, limit: int | None = None) -> list[JournalEvent]:
        collection = self._ensure_collection()
        return self._convert(collection.get(where={"task_id": task_id}, limit=limit))

    def search_events(
        self,
        query: str | None = None,
        *,
        filters: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[JournalEvent]:
        collection = self._ensure_collection()
        events = self._convert(collection.get(where=filters or None))
        if query:
            needle = query.lower()
            events = [
                event
                for event in events
                if needle in event.document.lower()
                or any(needle in str(value).lower() for value in event.metadata.values())
            ]
        return events[:limit] if limit else events

    def record_worktree(
        self,
        *,
        task_id: str,
        path: str,
        branch: str | None,
        status: str,
        metadata: dict[str, Any] | None = None,
    ) -> WorktreeRecord:
        payload = {"task_id": task_id, "path": path, "branch": branch, "status": status}
        if metadata:
            payload.update(metadata)
        event = self.record_event(
            task_id=task_id,
            event_type="worktree",
            body=payload,
            metadata={"path": path, "branch": branch, "status": status},
        )
        return WorktreeRecord(
            task_id=task_id,
            path=path,
            branch=branch,
            created_at=event.timestamp,
            status=status,
            metadata=metadata or {},
        )

    def list_worktrees(self, task_id: str | None = None) -> list[WorktreeRecord]:
        filters: dict[str, Any] = {"event_type": "worktree"}
        if task_id:
            filters = {"$and": [{"event_type": "worktree"}, {"task_id": task_id}]}
        records: list[WorktreeRecord] = []
        for event in self.search_events(filters=filters):
            doc = json.loads(event.document)
            records.append(
                WorktreeRecord(
                    task_id=doc["task_id"],
                    path=doc["path"],
                    branch=doc.get("branch"),
                    created_at=event.timestamp,
                    status=doc.get("status", "unknown"),
                    metadata={
                        k: v
                        for k, v in doc.items()
                        if k not in {"task_id", "path", "branch", "status"}
                    },
                )
            )
        return records

    def record_session(
        self,
        *,
        task_id: str,
        project_id: str,
        status: str,
        session_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> SessionTrackingRecord:
        payload = {
            "task_id": task_id,
            "project_id": project_id,
            "session_id": session_id,
            "status": status,
        }
        if metadata:
            payload.update(metadata)
        event = self.record_event(
            task_id=task_id,
            event_type="session",
            body=payload,
            metadata={"project_id": project_id, "session_id": session_id, "status": status},
        )
        return SessionTrackingRecord(
            session_id=session_id or "",
            task_id=task_id,
            project_id=project_id,
            started_at=event.timestamp,
            status=status,
            metadata=metadata or {},
        )

    def list_sessions(self, task_id: str | None = None) -> list[SessionTrackingRecord]:
        filters: dict[str, Any] = {"event_type": "session"}
        if task_id:
            filters = {"$and": [{"event_type": "session"}, {"task_id": task_id}]}
        records: list[SessionTrackingRecord] = []
        for event in self.search_events(filters=filters):
            doc = json.loads(event.document)
            records.append(
                SessionTrackingRecord(
                    session_id=doc.get("session_id") or "",
                    task_id=doc.get("task_id"),
                    project_id=doc.get("project_id", ""),
                    started_at=event.timestamp,
                    status=doc.get("status", "unknown"),
                    metadata={
                        k: v
                        for k, v in doc.items()
                        if k not in {"session_id", "task_id", "project_id", "status"}
                    },
                )
            )
        return records


class JournalRecorder:
    """Best-effort front for an optional journal.

    Components call this unconditionally; when no journal is configured, or a
    write fails, nothing propagates to the caller.
    """

    def __init__(self, journal: ActivityJournal | None = None) -> None:
        self._journal = journal

    @property
    def journal(self) -> ActivityJournal | None:
        return self._journal

    def event(self, task_id: str, event_type: str, body: Any, **metadata: Any) -> None:
        if self._journal is None:
            return
        try:
            self._journal.record_event(
                task_id=task_id, event_type=event_type, body=body, metadata=metadata
            )
        except Exception:  # audit trail only
            logger.warning(
                "Failed to record journal event",
                exc_info=True,
                extra={"task_id": task_id, "event_type": event_type},
            )

    def session(self, task_id: str, project_id: str, status: str, session_id: str | None) -> None:
        if self._journal is None:
            return
        try:
            self._journal.record_session(
                task_id=task_id, project_id=project_id, status=status, session_id=session_id
            )
        except Exception:
            logger.warning("Failed to record session", exc_info=True, extra={"task_id": task_id})

    def worktree(self, task_id: str, path: str, branch: str | None, status: str) -> None:
        if self._journal is None:
            return
        try:
            self._journal.record_worktree(task_id=task_id, path=path, branch=branch, status=status)
        except Exception:
            logger.warning("Failed to record worktree", exc_info=True, extra={"task_id": task_id})


__all__ = [
    "ActivityJournal",
    "JournalEvent",
    "JournalRecorder",
    "JournalUnavailableError",
]
