from __future__ import annotations

import asyncio
import json
import shlex
from pathlib import Path

from conftest import success_events, wait_for, write_agent

from boardwalk_mcp.agent.runner import AgentRunner
from boardwalk_mcp.blocks import (
    BlockMessage,
    ErrorMessage,
    ReplayMessage,
    StatusBlock,
    TextBlock,
    ToolResultBlock,
    UserBlock,
)
from boardwalk_mcp.session import (
    QueueObserver,
    SessionOutcome,
    SessionRuntime,
    SessionStatus,
    handle_client_message,
)
from boardwalk_mcp.session.runtime import pending_question
from boardwalk_mcp.storage import TaskStore


class RecordingHooks:
    def __init__(self) -> None:
        self.terminal: list[tuple[str, str, SessionStatus, bool]] = []
        self.resumed: list[str] = []

    async def on_terminal(self, project_id, task_id, status, handed_off) -> None:
        self.terminal.append((project_id, task_id, status, handed_off))

    def on_resume(self, project_id, task_id) -> None:
        self.resumed.append(task_id)


class ExplodingObserver:
    def send(self, message) -> None:
        raise RuntimeError("socket closed")


async def _in_progress_task(store: TaskStore, project_dir: Path):
    project = await store.create_project("demo", str(project_dir))
    task = await store.create_task(project.id, "Fix the login form")
    await store.update_task(project.id, task.id, {"status": "in-progress", "dispatch": "running"})
    return project, task


def _runtime(store: TaskStore, agent: Path, tmp_path: Path, **kwargs) -> tuple[SessionRuntime, RecordingHooks]:
    runtime = SessionRuntime(store, AgentRunner(agent), scratch_dir=tmp_path / "scratch", **kwargs)
    hooks = RecordingHooks()
    runtime.set_hooks(on_terminal=hooks.on_terminal, on_resume=hooks.on_resume)
    return runtime, hooks


def write_stubborn_agent(path: Path, on_term: str) -> Path:
    """Agent that announces its session, then idles and runs ``on_term`` when terminated."""

    init = json.dumps(success_events()[0])
    script = (
        "#!/bin/sh\n"
        f"trap {shlex.quote(on_term + '; exit 143')} TERM\n"
        f"echo {shlex.quote(init)}\n"
        "while true; do sleep 0.05; done\n"
    )
    path.write_text(script, encoding="utf-8")
    path.chmod(0o755)
    return path


def test_completed_session_hands_task_to_verify(store, project_dir, tmp_path: Path) -> None:
    agent = write_agent(tmp_path / "claude", success_events("All fixed"))
    runtime, hooks = _runtime(store, agent, tmp_path)

    async def run():
        project, task = await _in_progress_task(store, project_dir)
        result = await runtime.start_session(task.id, project.id, "Fix it", project_dir)
        assert result.ok
        await runtime.get_session(task.id).pump
        return project, task, await store.get_task(project.id, task.id)

    project, task, stored = asyncio.run(run())

    assert stored.status == "verify"
    assert stored.dispatch is None
    assert stored.findings == "All fixed"
    assert stored.session_id == "sess-1"
    kinds = [(block.type, getattr(block, "subtype", None)) for block in stored.blocks]
    assert kinds == [
        ("status", "init"),
        ("user", None),
        ("text", None),
        ("status", "complete"),
    ]
    assert stored.blocks[0].model == "test-model"
    assert hooks.terminal == [(project.id, task.id, SessionStatus.DONE, True)]


def test_nonzero_exit_records_stderr(store, project_dir, tmp_path: Path) -> None:
    agent = write_agent(tmp_path / "claude", stderr="rate limited", exit_code=3)
    runtime, hooks = _runtime(store, agent, tmp_path)

    async def run():
        project, task = await _in_progress_task(store, project_dir)
        await runtime.start_session(task.id, project.id, "Fix it", project_dir)
        await runtime.get_session(task.id).pump
        return await store.get_task(project.id, task.id), runtime.get_session(task.id)

    stored, session = asyncio.run(run())

    assert session.status is SessionStatus.ERROR
    assert stored.status == "verify"
    assert stored.findings == "Error: rate limited"
    last = stored.blocks[-1]
    assert isinstance(last, StatusBlock) and last.subtype == "error"
    assert hooks.terminal[0][2] is SessionStatus.ERROR


def test_error_result_event_marks_session_failed(store, project_dir, tmp_path: Path) -> None:
    events = [{"type": "result", "subtype": "error_max_turns", "is_error": True, "result": "Too many turns"}]
    agent = write_agent(tmp_path / "claude", events)
    runtime, _ = _runtime(store, agent, tmp_path)

    async def run():
        project, task = await _in_progress_task(store, project_dir)
        await runtime.start_session(task.id, project.id, "Fix it", project_dir)
        await runtime.get_session(task.id).pump
        return await store.get_task(project.id, task.id)

    stored = asyncio.run(run())

    statuses = [block for block in stored.blocks if isinstance(block, StatusBlock)]
    assert [block.subtype for block in statuses] == ["init", "error"]
    assert stored.findings == "Error: Too many turns"


def test_spawn_failure_is_reported_not_raised(store, project_dir, tmp_path: Path) -> None:
    runtime, hooks = _runtime(store, tmp_path / "missing-agent", tmp_path)

    async def run():
        project, task = await _in_progress_task(store, project_dir)
        result = await runtime.start_session(task.id, project.id, "Fix it", project_dir)
        return result, await store.get_task(project.id, task.id)

    result, stored = asyncio.run(run())

    assert result.outcome is SessionOutcome.SPAWN_FAILED
    assert not result.ok
    assert stored.blocks[-1].subtype == "error"
    assert stored.status == "in-progress"
    assert hooks.terminal == []


def test_second_start_reports_already_running_and_stop_aborts(store, project_dir, tmp_path: Path) -> None:
    agent = write_agent(tmp_path / "claude", success_events()[:1], hang=True)
    runtime, hooks = _runtime(store, agent, tmp_path)

    async def run():
        project, task = await _in_progress_task(store, project_dir)
        first = await runtime.start_session(task.id, project.id, "Fix it", project_dir)
        second = await runtime.start_session(task.id, project.id, "Fix it", project_dir)
        assert runtime.is_running(task.id)
        assert runtime.stop_session(task.id)
        assert not runtime.stop_session(task.id)
        await runtime.get_session(task.id).pump
        return first, second, await store.get_task(project.id, task.id)

    first, second, stored = asyncio.run(run())

    assert first.outcome is SessionOutcome.STARTED
    assert second.outcome is SessionOutcome.ALREADY_RUNNING
    assert stored.status == "in-progress"
    assert stored.blocks[-1].subtype == "abort"
    assert hooks.terminal[0][2] is SessionStatus.ABORTED
    assert hooks.terminal[0][3] is False


def test_attach_replays_then_streams(store, project_dir, tmp_path: Path) -> None:
    events = success_events()
    agent = write_agent(tmp_path / "claude", events, delay=0.3)
    runtime, _ = _runtime(store, agent, tmp_path)

    async def run():
        project, task = await _in_progress_task(store, project_dir)
        await runtime.start_session(task.id, project.id, "Fix it", project_dir)
        observer = QueueObserver()
        broken = ExplodingObserver()
        assert await runtime.attach(task.id, observer)
        assert not await runtime.attach(task.id, broken)
        await runtime.get_session(task.id).pump
        return observer.drain(), runtime.get_session(task.id)

    messages, session = asyncio.run(run())

    assert isinstance(messages[0], ReplayMessage)
    assert [block.type for block in messages[0].blocks] == ["status", "user"]
    streamed = [message.block for message in messages[1:]]
    assert all(isinstance(message, BlockMessage) for message in messages[1:])
    assert isinstance(streamed[0], TextBlock)
    assert streamed[-1].subtype == "complete"
    assert len(session.observers) == 1


def test_attach_without_session_replays_persisted_log(store, project_dir, tmp_path: Path) -> None:
    runtime, _ = _runtime(store, tmp_path / "claude", tmp_path)

    async def run():
        project, task = await _in_progress_task(store, project_dir)
        empty = QueueObserver()
        await runtime.attach(task.id, empty, project_id=project.id)
        await store.update_task(project.id, task.id, {"blocks": [UserBlock(text="earlier")]})
        persisted = QueueObserver()
        live = await runtime.attach(task.id, persisted, project_id=project.id)
        return empty.drain(), persisted.drain(), live

    empty, persisted, live = asyncio.run(run())

    assert isinstance(empty[0], ErrorMessage)
    assert isinstance(persisted[0], ReplayMessage)
    assert persisted[0].blocks[0].text == "earlier"
    assert live is False


def test_tool_results_are_named_after_their_call(store, project_dir, tmp_path: Path) -> None:
    events = [
        {"type": "system", "subtype": "init", "session_id": "sess-1"},
        {
            "type": "assistant",
            "message": {"content": [{"type": "tool_use", "id": "t1", "name": "Bash", "input": {"command": "ls"}}]},
        },
        {
            "type": "user",
            "message": {"content": [{"type": "tool_result", "tool_use_id": "t1", "content": "a.py"}]},
        },
        {"type": "result", "subtype": "success", "session_id": "sess-1"},
    ]
    agent = write_agent(tmp_path / "claude", events)
    runtime, _ = _runtime(store, agent, tmp_path)

    async def run():
        project, task = await _in_progress_task(store, project_dir)
        await runtime.start_session(task.id, project.id, "List files", project_dir)
        await runtime.get_session(task.id).pump
        return runtime.get_session(task.id).blocks

    blocks = asyncio.run(run())

    results = [block for block in blocks if isinstance(block, ToolResultBlock)]
    assert results[0].name == "Bash"
    assert results[0].output == "a.py"


def test_unanswered_question_becomes_human_steps(store, project_dir, tmp_path: Path) -> None:
    question = {
        "type": "tool_use",
        "id": "q1",
        "name": "AskUserQuestion",
        "input": {
            "questions": [
                {"question": "Which database?", "options": [{"label": "Postgres"}, {"label": "SQLite"}]}
            ]
        },
    }
    events = [
        {"type": "system", "subtype": "init", "session_id": "sess-1"},
        {"type": "assistant", "message": {"content": [{"type": "text", "text": "Need input"}, question]}},
        {"type": "result", "subtype": "success", "session_id": "sess-1"},
    ]
    agent = write_agent(tmp_path / "claude", events)
    runtime, _ = _runtime(store, agent, tmp_path)

    async def run():
        project, task = await _in_progress_task(store, project_dir)
        await runtime.start_session(task.id, project.id, "Set up storage", project_dir)
        await runtime.get_session(task.id).pump
        return await store.get_task(project.id, task.id)

    stored = asyncio.run(run())

    assert stored.human_steps == "Which database?\n  - Postgres\n  - SQLite"


def test_pending_question_ignores_answered_calls() -> None:
    from boardwalk_mcp.blocks import ToolUseBlock

    blocks = [
        ToolUseBlock(tool_id="q1", name="AskUserQuestion", input={"questions": [{"question": "Ok?"}]}),
        ToolResultBlock(tool_id="q1", output="yes"),
    ]

    assert pending_question(blocks) is None
    assert pending_question(blocks[:1]) == "Ok?"


def test_continue_session_resumes_with_stored_token(store, project_dir, tmp_path: Path) -> None:
    args_log = tmp_path / "args.log"
    agent = write_agent(tmp_path / "claude", success_events(), args_log=args_log)
    runtime, hooks = _runtime(store, agent, tmp_path)

    async def run():
        project, task = await _in_progress_task(store, project_dir)
        await store.update_task(
            project.id,
            task.id,
            {"status": "verify", "dispatch": None, "session_id": "sess-1", "blocks": [UserBlock(text="first")]},
        )
        result = await runtime.continue_session(task.id, project.id, "Also fix logout", project_dir)
        await runtime.get_session(task.id).pump
        return result, runtime.get_session(task.id)

    result, session = asyncio.run(run())

    assert result.ok
    assert args_log.read_text().startswith("--resume sess-1 -p Also fix logout")
    assert [block.type for block in session.blocks][:2] == ["user", "user"]
    assert session.status is SessionStatus.DONE
    assert hooks.resumed == [session.task_id]


def test_continue_without_session_id_is_rejected(store, project_dir, tmp_path: Path) -> None:
    runtime, _ = _runtime(store, tmp_path / "claude", tmp_path)

    async def run():
        project, task = await _in_progress_task(store, project_dir)
        return await runtime.continue_session(task.id, project.id, "Hello", project_dir)

    result = asyncio.run(run())

    assert result.outcome is SessionOutcome.NO_SESSION_TO_RESUME


def test_liveness_watchdog_terminates_silent_agent(store, project_dir, tmp_path: Path) -> None:
    agent = write_agent(tmp_path / "claude", hang=True)
    runtime, _ = _runtime(store, agent, tmp_path, liveness_timeout=0.2)

    async def run():
        project, task = await _in_progress_task(store, project_dir)
        await runtime.start_session(task.id, project.id, "Fix it", project_dir)
        await asyncio.wait_for(runtime.get_session(task.id).pump, timeout=5)
        return runtime.get_session(task.id)

    session = asyncio.run(run())

    assert session.status is SessionStatus.ERROR
    assert "no output" in session.blocks[-1].error


def test_clear_session_terminates_and_forgets(store, project_dir, tmp_path: Path) -> None:
    agent = write_agent(tmp_path / "claude", hang=True)
    runtime, hooks = _runtime(store, agent, tmp_path)

    async def run():
        project, task = await _in_progress_task(store, project_dir)
        await runtime.start_session(task.id, project.id, "Fix it", project_dir)
        pump = runtime.get_session(task.id).pump
        await runtime.clear_session(task.id)
        await pump
        return task, await store.get_task(project.id, task.id)

    task, stored = asyncio.run(run())

    assert runtime.get_session(task.id) is None
    assert stored.status == "in-progress"
    assert hooks.terminal == []


def test_client_messages_stop_and_gate_followups(store, project_dir, tmp_path: Path) -> None:
    agent = write_agent(tmp_path / "claude", hang=True)
    runtime, _ = _runtime(store, agent, tmp_path)
    followups: list[str] = []

    async def on_followup(project_id, task_id, text, attachments):
        followups.append(text)
        return None

    async def run():
        project, task = await _in_progress_task(store, project_dir)
        await runtime.start_session(task.id, project.id, "Fix it", project_dir)
        kwargs = {"project_id": project.id, "task_id": task.id, "on_followup": on_followup}
        ignored = await handle_client_message(runtime, '{"type": "followup", "text": "more"}', **kwargs)
        malformed = await handle_client_message(runtime, "not json", **kwargs)
        stopped = await handle_client_message(runtime, '{"type": "stop"}', **kwargs)
        await runtime.get_session(task.id).pump
        await handle_client_message(runtime, '{"type": "followup", "text": "now"}', **kwargs)
        return ignored, malformed, stopped

    ignored, malformed, stopped = asyncio.run(run())

    assert ignored is None
    assert malformed is None
    assert stopped is True
    assert followups == ["now"]


def test_output_after_stop_is_dropped(store, project_dir, tmp_path: Path) -> None:
    late = {"type": "assistant", "message": {"content": [{"type": "text", "text": "late"}]}}
    agent = write_stubborn_agent(tmp_path / "claude", f"echo {shlex.quote(json.dumps(late))}")
    runtime, _ = _runtime(store, agent, tmp_path)

    async def run():
        project, task = await _in_progress_task(store, project_dir)
        await runtime.start_session(task.id, project.id, "Fix it", project_dir)
        session = runtime.get_session(task.id)
        await wait_for(lambda: session.session_id is not None)
        assert runtime.stop_session(task.id)
        await asyncio.wait_for(session.pump, timeout=5)
        return session, await store.get_task(project.id, task.id)

    session, stored = asyncio.run(run())

    assert [block.type for block in session.blocks] == ["status", "user", "status"]
    assert session.blocks[-1].subtype == "abort"
    assert [block.model_dump() for block in stored.blocks] == [
        block.model_dump() for block in session.blocks
    ]


def test_resume_waits_for_stopped_process_to_exit(store, project_dir, tmp_path: Path) -> None:
    agent = write_stubborn_agent(tmp_path / "claude", "sleep 1")
    runtime, _ = _runtime(store, agent, tmp_path)

    async def run():
        project, task = await _in_progress_task(store, project_dir)
        await runtime.start_session(task.id, project.id, "Fix it", project_dir)
        session = runtime.get_session(task.id)
        await wait_for(lambda: session.session_id is not None)
        previous = session.process
        runtime.stop_session(task.id)
        result = await runtime.continue_session(task.id, project.id, "Try again", project_dir)
        previous_exit = previous.returncode
        current = runtime.get_session(task.id).process
        await runtime.shutdown()
        return result, previous, previous_exit, current

    result, previous, previous_exit, current = asyncio.run(run())

    assert result.ok
    assert previous_exit is not None
    assert current is not previous
