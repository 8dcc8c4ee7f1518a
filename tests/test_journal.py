from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

import pytest

from boardwalk_mcp.storage import ActivityJournal, JournalRecorder, JournalUnavailableError


@dataclass
class _Record:
    document: str
    metadata: dict[str, Any]
    id: str


def _matches(metadata: dict[str, Any], where: dict[str, Any]) -> bool:
    if "$and" in where:
        return all(_matches(metadata, clause) for clause in where["$and"])
    return all(metadata.get(key) == value for key, value in where.items())


class StubCollection:
    def __init__(self) -> None:
        self.records: list[_Record] = []

    def add(self, *, documents, metadatas, ids) -> None:  # type: ignore[override]
        for document, metadata, record_id in zip(documents, metadatas, ids):
            self.records.append(_Record(document=document, metadata=dict(metadata), id=record_id))

    def get(self, *, ids=None, where=None, limit=None):  # type: ignore[override]
        filtered = [record for record in self.records if not where or _matches(record.metadata, where)]
        if limit is not None:
            filtered = filtered[:limit]
        return {
            "ids": [record.id for record in filtered],
            "documents": [record.document for record in filtered],
            "metadatas": [record.metadata for record in filtered],
        }


class StubClient:
    def __init__(self) -> None:
        self.collections = defaultdict(StubCollection)

    def get_or_create_collection(self, name: str) -> StubCollection:
        return self.collections[name]


def _journal(tmp_path: Path) -> ActivityJournal:
    client = StubClient()
    return ActivityJournal(
        tmp_path,
        client_factory=lambda: client,
        clock=lambda: datetime.fromisoformat("2025-01-01T00:00:00+00:00"),
    )


def test_record_and_fetch_task_history(tmp_path: Path) -> None:
    journal = _journal(tmp_path)

    journal.record_event(task_id="t1", event_type="dispatch", body="Dispatched", metadata={"render_mode": "pretty"})
    journal.record_event(task_id="t1", event_type="transition", body={"to": "verify"})
    journal.record_event(task_id="t2", event_type="dispatch", body="Other")

    history = journal.task_history("t1")

    assert [event.event_type for event in history] == ["dispatch", "transition"]
    assert [event.metadata["sequence"] for event in history] == [1, 2]
    assert history[0].metadata["render_mode"] == "pretty"
    assert history[1].document == '{"to": "verify"}'


def test_metadata_is_flattened_to_scalars(tmp_path: Path) -> None:
    journal = _journal(tmp_path)

    event = journal.record_event(
        task_id="t1", event_type="merge_conflict", body="conflict", metadata={"files": ["a.py"], "skip": None}
    )

    assert event.metadata["files"] == '["a.py"]'
    assert "skip" not in event.metadata


def test_worktree_and_session_records(tmp_path: Path) -> None:
    journal = _journal(tmp_path)

    journal.record_worktree(task_id="t1", path="/repo/.boardwalk/worktrees/t1", branch="boardwalk/t1", status="created")
    journal.record_worktree(task_id="t2", path="/repo/.boardwalk/worktrees/t2", branch="boardwalk/t2", status="created")
    journal.record_session(task_id="t1", project_id="p1", status="running", session_id=None)
    journal.record_session(task_id="t1", project_id="p1", status="done", session_id="sess-1")

    worktrees = journal.list_worktrees(task_id="t1")
    sessions = journal.list_sessions("t1")

    assert len(journal.list_worktrees()) == 2
    assert [record.branch for record in worktrees] == ["boardwalk/t1"]
    assert [record.status for record in sessions] == ["running", "done"]
    assert sessions[-1].session_id == "sess-1"


def test_search_events_matches_documents(tmp_path: Path) -> None:
    journal = _journal(tmp_path)
    journal.record_event(task_id="t1", event_type="abort", body="Task aborted")
    journal.record_event(task_id="t1", event_type="dispatch", body="Dispatched in /repo")

    assert [event.event_type for event in journal.search_events("ABORTED")] == ["abort"]
    assert len(journal.search_events(filters={"event_type": "dispatch"})) == 1


def test_recorder_swallows_journal_failures(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    def broken_client():
        raise JournalUnavailableError("disk full")

    recorder = JournalRecorder(ActivityJournal(tmp_path, client_factory=broken_client))

    with caplog.at_level("WARNING"):
        recorder.event("t1", "dispatch", "Dispatched")
        recorder.worktree("t1", "/repo", None, "removed")

    assert "Failed to record journal event" in caplog.text
    assert "Failed to record worktree" in caplog.text


def test_recorder_without_journal_is_noop() -> None:
    recorder = JournalRecorder()

    recorder.event("t1", "dispatch", "Dispatched")
    recorder.session("t1", "p1", "running", None)

    assert recorder.journal is None
