from __future__ import annotations

import asyncio
import shutil
from pathlib import Path

import pytest

from conftest import git, init_repo

from boardwalk_mcp.worktree import (
    AUTOSTASH_MESSAGE,
    WorktreeError,
    WorktreeManager,
    branch_name,
    is_preview_branch,
    preview_branch_name,
    source_branch,
)

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    return init_repo(tmp_path / "repo")


def test_branch_naming_helpers() -> None:
    assert branch_name("abcd1234") == "boardwalk/abcd1234"
    assert preview_branch_name("abcd1234") == "boardwalk-preview/abcd1234"
    assert is_preview_branch("boardwalk-preview/abcd1234")
    assert not is_preview_branch("boardwalk/abcd1234")
    assert source_branch("boardwalk-preview/abcd1234") == "boardwalk/abcd1234"


def test_create_worktree_is_idempotent_and_excluded(repo: Path) -> None:
    manager = WorktreeManager()

    first = asyncio.run(manager.create_worktree(repo, "abcd1234"))
    second = asyncio.run(manager.create_worktree(repo, "abcd1234"))

    assert first == second == repo / ".boardwalk" / "worktrees" / "abcd1234"
    assert git(first, "rev-parse", "--abbrev-ref", "HEAD") == "boardwalk/abcd1234"
    assert "/.boardwalk/" in (repo / ".git" / "info" / "exclude").read_text().splitlines()
    assert git(repo, "status", "--porcelain") == ""


def test_create_worktree_outside_git_raises(tmp_path: Path) -> None:
    plain = tmp_path / "plain"
    plain.mkdir()

    with pytest.raises(WorktreeError):
        asyncio.run(WorktreeManager().create_worktree(plain, "abcd1234"))


def test_merge_commits_leftovers_and_removes_worktree(repo: Path) -> None:
    manager = WorktreeManager()
    worktree = asyncio.run(manager.create_worktree(repo, "abcd1234"))
    (worktree / "feature.py").write_text("FEATURE = True\n", encoding="utf-8")

    result = asyncio.run(manager.merge_worktree(repo, "abcd1234"))

    assert result.success
    assert (repo / "feature.py").exists()
    assert not worktree.exists()
    assert git(repo, "branch", "--list", "boardwalk/abcd1234") == ""
    assert git(repo, "rev-parse", "--abbrev-ref", "HEAD") == "main"


def test_merge_conflict_aborts_and_reports_files(repo: Path) -> None:
    manager = WorktreeManager()
    worktree = asyncio.run(manager.create_worktree(repo, "abcd1234"))
    (worktree / "app.py").write_text("print('task')\n", encoding="utf-8")
    git(worktree, "commit", "-q", "-am", "task change")
    (repo / "app.py").write_text("print('main')\n", encoding="utf-8")
    git(repo, "commit", "-q", "-am", "main change")
    head_before = git(repo, "rev-parse", "HEAD")

    result = asyncio.run(manager.merge_worktree(repo, "abcd1234"))

    assert not result.success
    assert result.conflict_files == ["app.py"]
    assert "task" in result.diff
    assert git(repo, "rev-parse", "HEAD") == head_before
    assert git(repo, "status", "--porcelain") == ""
    assert worktree.exists()


def test_merge_missing_branch_fails(repo: Path) -> None:
    result = asyncio.run(WorktreeManager().merge_worktree(repo, "deadbeef"))

    assert not result.success
    assert "does not exist" in result.error


def test_merge_preserves_dirty_primary_copy(repo: Path) -> None:
    manager = WorktreeManager()
    worktree = asyncio.run(manager.create_worktree(repo, "abcd1234"))
    (worktree / "feature.py").write_text("FEATURE = True\n", encoding="utf-8")
    git(worktree, "add", "feature.py")
    git(worktree, "commit", "-q", "-m", "feature")
    (repo / "notes.txt").write_text("scratch\n", encoding="utf-8")

    result = asyncio.run(manager.merge_worktree(repo, "abcd1234"))

    assert result.success
    assert (repo / "notes.txt").read_text() == "scratch\n"
    assert AUTOSTASH_MESSAGE not in git(repo, "stash", "list")


def test_merge_from_preview_restores_local_changes(repo: Path) -> None:
    manager = WorktreeManager()
    worktree = asyncio.run(manager.create_worktree(repo, "abcd1234"))
    (worktree / "feature.py").write_text("FEATURE = True\n", encoding="utf-8")
    git(worktree, "add", "feature.py")
    git(worktree, "commit", "-q", "-m", "feature")
    asyncio.run(manager.checkout_preview(repo, "abcd1234"))
    (repo / "notes.txt").write_text("scratch\n", encoding="utf-8")

    result = asyncio.run(manager.merge_worktree(repo, "abcd1234"))

    assert result.success
    assert git(repo, "rev-parse", "--abbrev-ref", "HEAD") == "main"
    assert (repo / "feature.py").read_text() == "FEATURE = True\n"
    assert (repo / "notes.txt").read_text() == "scratch\n"
    assert AUTOSTASH_MESSAGE not in git(repo, "stash", "list")
    assert git(repo, "branch", "--list", "boardwalk*") == ""


def test_merge_main_into_worktree_leaves_conflict_markers(repo: Path) -> None:
    manager = WorktreeManager()
    worktree = asyncio.run(manager.create_worktree(repo, "abcd1234"))
    (worktree / "app.py").write_text("print('task')\n", encoding="utf-8")
    git(worktree, "commit", "-q", "-am", "task change")
    (repo / "app.py").write_text("print('main')\n", encoding="utf-8")
    git(repo, "commit", "-q", "-am", "main change")

    result = asyncio.run(manager.merge_main_into_worktree(repo, "abcd1234"))

    assert result.success
    assert result.conflict_files == ["app.py"]
    assert "<<<<<<<" in (worktree / "app.py").read_text()


def test_preview_checkout_is_undone_before_removal(repo: Path) -> None:
    manager = WorktreeManager()
    asyncio.run(manager.create_worktree(repo, "abcd1234"))

    preview = asyncio.run(manager.checkout_preview(repo, "abcd1234"))
    assert git(repo, "rev-parse", "--abbrev-ref", "HEAD") == preview

    asyncio.run(manager.ensure_not_on_task_branch(repo, "boardwalk/abcd1234"))
    asyncio.run(manager.remove_worktree(repo, "abcd1234"))

    assert git(repo, "rev-parse", "--abbrev-ref", "HEAD") == "main"
    assert git(repo, "branch", "--list", "boardwalk*") == ""


def test_remove_worktree_never_raises(tmp_path: Path) -> None:
    asyncio.run(WorktreeManager().remove_worktree(tmp_path, "abcd1234"))


def test_primary_branch_override(repo: Path) -> None:
    git(repo, "branch", "develop")

    assert asyncio.run(WorktreeManager().primary_branch(repo)) == "main"
    assert asyncio.run(WorktreeManager(primary_branch="develop").primary_branch(repo)) == "develop"
