"""Observer side of a session: message sinks and client message handling."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Protocol

from ..blocks import Attachment, FollowupMessage, ObserverMessage, StopMessage, parse_client_message
from .runtime import SessionResult, SessionRuntime

logger = logging.getLogger(__name__)


class Observer(Protocol):
    """Anything that can receive session messages.

    ``send`` must not block; an observer whose ``send`` raises is dropped.
    """

    def send(self, message: ObserverMessage) -> None:
        ...


class QueueObserver:
    """Buffers session messages on an :class:`asyncio.Queue`."""

    def __init__(self, maxsize: int = 0) -> None:
        self._queue: asyncio.Queue[ObserverMessage] = asyncio.Queue(maxsize)

    def send(self, message: ObserverMessage) -> None:
        self._queue.put_nowait(message)

    async def receive(self, timeout: float | None = None) -> ObserverMessage | None:
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def drain(self) -> list[ObserverMessage]:
        messages: list[ObserverMessage] = []
        while not self._queue.empty():
            messages.append(self._queue.get_nowait())
        return messages


FollowupHandler = Callable[[str, str, str, list[Attachment]], Awaitable[SessionResult]]


async def handle_client_message(
    runtime: SessionRuntime,
    raw: str | bytes,
    *,
    project_id: str,
    task_id: str,
    on_followup: FollowupHandler,
) -> SessionResult | bool | None:
    """Apply a message sent by an observer.

    ``stop`` aborts the running session. ``followup`` resumes the conversation
    but only once the current run has finished. Malformed messages are ignored.
    """

    message = parse_client_message(raw)
    if message is None:
        logger.debug("Ignoring malformed client message", extra={"task_id": task_id})
        return None
    if isinstance(message, StopMessage):
        return runtime.stop_session(task_id)
    if isinstance(message, FollowupMessage):
        if runtime.is_running(task_id):
            logger.info("Ignoring follow-up while session is running", extra={"task_id": task_id})
            return None
        return await on_followup(project_id, task_id, message.text, list(message.attachments or []))
    return None


__all__ = ["FollowupHandler", "Observer", "QueueObserver", "handle_client_message"]
