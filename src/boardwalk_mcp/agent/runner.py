"""Async runner for the agent CLI."""

from __future__ import annotations

import asyncio
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Sequence

from .utils import sanitize_environment

DEFAULT_EXECUTABLE = "claude"


class AgentRunnerError(RuntimeError):
    """Base class for agent runner errors."""


class AgentNotFoundError(AgentRunnerError):
    """Raised when the agent CLI executable cannot be located."""


class AgentSpawnError(AgentRunnerError):
    """Raised when the agent process could not be started."""


@dataclass(slots=True)
class AgentExecutionResult:
    """Holds the outcome of a one-shot agent CLI invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class AgentRunner:
    """Spawn agent CLI processes asynchronously."""

    def __init__(
        self,
        executable: Path | None = None,
        *,
        default_model: str | None = None,
        max_turns: int = 200,
    ) -> None:
        self._explicit = executable
        self._executable_path: Path | None = None
        self.default_model = default_model
        self.max_turns = max_turns

    @staticmethod
    def _resolve_executable(explicit: Path | None) -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if candidate.exists() and candidate.is_file():
                return candidate
            resolved = shutil.which(str(explicit))
            if resolved is not None:
                return Path(resolved)
            raise AgentNotFoundError(f"Agent executable not found at {candidate}")

        binary = shutil.which(DEFAULT_EXECUTABLE)
        if binary is None:
            raise AgentNotFoundError("Agent CLI executable not found on PATH")
        return Path(binary)

    @property
    def executable(self) -> Path:
        """Resolved agent executable; raises ``AgentNotFoundError`` when missing."""

        if self._executable_path is None:
            self._executable_path = self._resolve_executable(self._explicit)
        return self._executable_path

    def build_stream_args(
        self,
        prompt: str,
        *,
        model: str | None = None,
        system_prompt: str | None = None,
        resume_token: str | None = None,
    ) -> list[str]:
        """Build the argv for a streaming, non-interactive agent run."""

        args: list[str] = []
        if resume_token:
            args.extend(["--resume", resume_token])
        args.extend(
            [
                "-p",
                prompt,
                "--output-format",
                "stream-json",
                "--verbose",
                "--dangerously-skip-permissions",
                "--max-turns",
                str(self.max_turns),
            ]
        )
        effective_model = model or self.default_model
        if effective_model:
            args.extend(["--model", effective_model])
        if system_prompt:
            args.extend(["--append-system-prompt", system_prompt])
        return args

    async def launch(
        self,
        prompt: str,
        *,
        cwd: Path | str,
        model: str | None = None,
        system_prompt: str | None = None,
        resume_token: str | None = None,
    ) -> asyncio.subprocess.Process:
        """Start a streaming agent process and return its handle."""

        args = self.build_stream_args(
            prompt, model=model, system_prompt=system_prompt, resume_token=resume_token
        )
        try:
            return await asyncio.create_subprocess_exec(
                str(self.executable),
                *args,
                cwd=str(cwd),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=sanitize_environment(),
            )
        except OSError as exc:
            raise AgentSpawnError(f"Failed to start agent in {cwd}: {exc}") from exc

    async def one_shot(
        self,
        prompt: str,
        *,
        model: str = "haiku",
        flags: Sequence[str] | None = None,
        timeout: float | None = 30.0,
    ) -> AgentExecutionResult:
        """Run ``-p <prompt>`` to completion and return its text output."""

        args = ["-p", prompt, "--model", model, *(flags or [])]
        if timeout is None:
            return await self._invoke(*args)
        return await asyncio.wait_for(self._invoke(*args), timeout=timeout)

    async def _invoke(self, *args: str) -> AgentExecutionResult:
        cmd = [str(self.executable), *args]
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=sanitize_environment(),
        )
        try:
            stdout_bytes, stderr_bytes = await process.communicate()
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
            raise
        return AgentExecutionResult(
            args=tuple(cmd),
            returncode=process.returncode,
            stdout=stdout_bytes.decode("utf-8", errors="replace"),
            stderr=stderr_bytes.decode("utf-8", errors="replace"),
        )


class FakeAgentRunner(AgentRunner):
    """Test double that answers one-shot calls from canned results."""

    def __init__(self, responses: Iterable[AgentExecutionResult] | None = None) -> None:  # type: ignore[override]
        self._responses = list(responses or [])
        self._invocations: list[tuple[str, ...]] = []
        self._explicit = None
        self._executable_path = Path("/tmp/fake-agent")
        self.default_model = None
        self.max_turns = 200

    async def _invoke(self, *args: str) -> AgentExecutionResult:  # type: ignore[override]
        self._invocations.append(tuple(args))
        if self._responses:
            return self._responses.pop(0)
        return AgentExecutionResult(args=tuple(args), returncode=0, stdout="", stderr="")

    @property
    def invocations(self) -> list[tuple[str, ...]]:
        return self._invocations


__all__ = [
    "AgentExecutionResult",
    "AgentNotFoundError",
    "AgentRunner",
    "AgentRunnerError",
    "AgentSpawnError",
    "FakeAgentRunner",
]
