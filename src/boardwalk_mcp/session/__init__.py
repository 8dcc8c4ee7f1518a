"""Agent session runtime and observer protocol."""

from .observer import Observer, QueueObserver, handle_client_message
from .runtime import (
    Session,
    SessionOutcome,
    SessionResult,
    SessionRuntime,
    SessionStatus,
)

__all__ = [
    "Observer",
    "QueueObserver",
    "Session",
    "SessionOutcome",
    "SessionResult",
    "SessionRuntime",
    "SessionStatus",
    "handle_client_message",
]
