"""tmux-backed agent sessions for the ``terminal`` render mode.

The agent runs interactively inside a detached tmux session named
``bw-<short_id>``. Pane output is piped into ``<scratch>/bw-<short_id>.log``
so it can be captured onto the task after the session is torn down.
"""

from __future__ import annotations

import asyncio
import logging
import shlex
from pathlib import Path

from .agent.utils import strip_ansi
from .storage.models import short_id

logger = logging.getLogger(__name__)

SESSION_PREFIX = "bw-"


class TerminalError(RuntimeError):
    """Raised when a tmux session cannot be launched."""


def session_name(task_id: str) -> str:
    return f"{SESSION_PREFIX}{short_id(task_id)}"


class TerminalSessions:
    """Launch, probe, kill and capture tmux agent sessions."""

    def __init__(
        self,
        scratch_dir: Path,
        agent_executable: Path | str,
        *,
        tmux: str = "tmux",
        default_model: str | None = None,
        command_timeout: float = 10.0,
    ) -> None:
        self._scratch_dir = Path(scratch_dir)
        self._agent = str(agent_executable)
        self._tmux = tmux
        self._default_model = default_model
        self._timeout = command_timeout

    def log_path(self, task_id: str) -> Path:
        return self._scratch_dir / f"{session_name(task_id)}.log"

    async def _tmux_call(self, *args: str) -> int:
        try:
            process = await asyncio.create_subprocess_exec(
                self._tmux,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise TerminalError(f"Unable to run tmux: {exc}") from exc
        try:
            _, stderr = await asyncio.wait_for(process.communicate(), timeout=self._timeout)
        except asyncio.TimeoutError:
            process.kill()
            raise TerminalError(f"tmux {args[0]} timed out")
        if process.returncode != 0:
            logger.debug(
                "tmux call failed",
                extra={"command": args, "stderr": stderr.decode("utf-8", errors="replace")},
            )
        return process.returncode

    def _write_launcher(
        self, name: str, prompt: str, system_prompt: str, model: str | None
    ) -> Path:
        prompt_dir = self._scratch_dir / "prompts"
        prompt_dir.mkdir(parents=True, exist_ok=True)
        prompt_file = prompt_dir / f"{name}.md"
        system_file = prompt_dir / f"{name}-system.md"
        launcher = prompt_dir / f"{name}.sh"
        prompt_file.write_text(prompt, encoding="utf-8")
        system_file.write_text(system_prompt, encoding="utf-8")

        command = ["exec", "env", "-u", "CLAUDECODE", "-u", "PORT", shlex.quote(self._agent)]
        command.append("--dangerously-skip-permissions")
        effective_model = model or self._default_model
        if effective_model:
            command.extend(["--model", shlex.quote(effective_model)])
        command.append(f'--append-system-prompt "$(cat {shlex.quote(str(system_file))})"')
        command.append(f'"$(cat {shlex.quote(str(prompt_file))})"')
        launcher.write_text("#!/bin/bash\n" + " ".join(command) + "\n", encoding="utf-8")
        launcher.chmod(0o755)
        return launcher

    async def launch(
        self,
        task_id: str,
        cwd: Path | str,
        prompt: str,
        system_prompt: str,
        *,
        model: str | None = None,
    ) -> str:
        """Start the agent in a detached tmux session and return the session name."""

        name = session_name(task_id)
        launcher = self._write_launcher(name, prompt, system_prompt, model)
        log = self.log_path(task_id)
        log.parent.mkdir(parents=True, exist_ok=True)

        code = await self._tmux_call(
            "new-session", "-d", "-s", name, "-c", str(cwd), shlex.quote(str(launcher))
        )
        if code != 0:
            raise TerminalError(f"Failed to start tmux session {name}")
        await self._tmux_call("pipe-pane", "-t", name, "-o", f"cat >> {shlex.quote(str(log))}")
        logger.info("Launched terminal session", extra={"session": name, "cwd": str(cwd)})
        return name

    async def is_alive(self, task_id: str) -> bool:
        try:
            return await self._tmux_call("has-session", "-t", session_name(task_id)) == 0
        except TerminalError:
            return False

    async def kill(self, task_id: str) -> bool:
        name = session_name(task_id)
        try:
            killed = await self._tmux_call("kill-session", "-t", name) == 0
        except TerminalError as exc:
            logger.warning("Failed to kill terminal session", extra={"session": name, "error": str(exc)})
            return False
        if killed:
            logger.info("Killed terminal session", extra={"session": name})
        return killed

    def capture(self, task_id: str) -> str:
        """Read and delete the captured pane output, without ANSI escapes."""

        log = self.log_path(task_id)
        if not log.exists():
            return ""
        output = log.read_text(encoding="utf-8", errors="replace")
        log.unlink()
        return strip_ansi(output)

    def discard(self, task_id: str) -> None:
        self.log_path(task_id).unlink(missing_ok=True)


__all__ = ["SESSION_PREFIX", "TerminalError", "TerminalSessions", "session_name"]
