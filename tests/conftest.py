from __future__ import annotations

import asyncio
import json
import shlex
import subprocess
from pathlib import Path
from typing import Any, Iterable

import pytest

from boardwalk_mcp.storage import TaskStore


def write_agent(
    path: Path,
    events: Iterable[dict[str, Any]] = (),
    *,
    delay: float = 0,
    exit_code: int = 0,
    stderr: str | None = None,
    hang: bool = False,
    args_log: Path | None = None,
) -> Path:
    """Write a shell script that behaves like a stream-json agent CLI."""

    lines = ["#!/bin/sh"]
    if args_log is not None:
        lines.append(f'echo "$@" >> {shlex.quote(str(args_log))}')
    if delay:
        lines.append(f"sleep {delay}")
    for event in events:
        lines.append(f"echo {shlex.quote(json.dumps(event))}")
    if stderr:
        lines.append(f"echo {shlex.quote(stderr)} >&2")
    if hang:
        lines.append("exec sleep 30")
    lines.append(f"exit {exit_code}")
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    path.chmod(0o755)
    return path


def success_events(text: str = "Working on it", session_id: str = "sess-1") -> list[dict[str, Any]]:
    return [
        {"type": "system", "subtype": "init", "session_id": session_id, "model": "test-model"},
        {"type": "assistant", "message": {"content": [{"type": "text", "text": text}]}},
        {"type": "result", "subtype": "success", "session_id": session_id, "num_turns": 1},
    ]


def write_tmux(path: Path, log: Path, *, has_session: int = 1) -> Path:
    """Fake tmux that records its argv and answers ``has-session`` with a fixed code."""

    script = (
        "#!/bin/sh\n"
        f'echo "$@" >> {shlex.quote(str(log))}\n'
        f'if [ "$1" = "has-session" ]; then exit {has_session}; fi\n'
        "exit 0\n"
    )
    path.write_text(script, encoding="utf-8")
    path.chmod(0o755)
    return path


def git(repo: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", *args], cwd=repo, capture_output=True, text=True, check=True
    )
    return result.stdout.strip()


def init_repo(path: Path) -> Path:
    """Create a repository on ``main`` with one committed file."""

    path.mkdir(parents=True, exist_ok=True)
    git(path, "init", "-q")
    git(path, "symbolic-ref", "HEAD", "refs/heads/main")
    git(path, "config", "user.email", "dev@example.com")
    git(path, "config", "user.name", "Dev")
    git(path, "config", "commit.gpgsign", "false")
    (path / "app.py").write_text("print('hello')\n", encoding="utf-8")
    git(path, "add", "app.py")
    git(path, "commit", "-q", "-m", "initial")
    return path


async def settle(store: TaskStore, runtime, project_id: str, timeout: float = 10.0) -> None:
    """Wait until every in-progress task of the project has been handed off."""

    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        columns = await store.get_all_tasks(project_id)
        if not columns["in-progress"] and not runtime.running_task_ids():
            break
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("sessions did not finish")
        await asyncio.sleep(0.05)
    await asyncio.sleep(0.1)


async def wait_for(predicate, timeout: float = 5.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.02)


@pytest.fixture
def store(tmp_path: Path) -> TaskStore:
    return TaskStore(tmp_path / "data")


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    path = tmp_path / "project"
    path.mkdir()
    return path
