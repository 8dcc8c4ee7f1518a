"""Agent CLI orchestration utilities."""

from .events import AgentEvent, LineDecoder, decode_event
from .runner import (
    AgentExecutionResult,
    AgentNotFoundError,
    AgentRunner,
    AgentRunnerError,
    AgentSpawnError,
)

__all__ = [
    "AgentEvent",
    "AgentExecutionResult",
    "AgentNotFoundError",
    "AgentRunner",
    "AgentRunnerError",
    "AgentSpawnError",
    "LineDecoder",
    "decode_event",
]
