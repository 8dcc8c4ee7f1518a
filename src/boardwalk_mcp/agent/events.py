"""Decoding of the agent's newline-delimited JSON event stream.

The stream is untyped on the wire. Every line is routed through
:data:`EVENT_TYPES`, a table from the ``type`` discriminator to a pydantic
model; anything that is not JSON, has an unknown discriminator, or does not
validate is dropped. Agent processes print incidental non-protocol output, so
a bad line is never fatal.
"""

from __future__ import annotations

import codecs
import json
from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError


class _Event(BaseModel):
    model_config = ConfigDict(extra="ignore")


class TextContent(_Event):
    type: Literal["text"] = "text"
    text: str = ""


class ThinkingContent(_Event):
    type: Literal["thinking"] = "thinking"
    thinking: str = ""


class ToolUseContent(_Event):
    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResultContent(_Event):
    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: Any = None
    is_error: bool | None = None

    @property
    def output_text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        if isinstance(self.content, list):
            return "\n".join(
                str(item.get("text", ""))
                for item in self.content
                if isinstance(item, dict) and item.get("type") == "text"
            )
        if self.content is None:
            return ""
        return json.dumps(self.content)


Content = Union[TextContent, ThinkingContent, ToolUseContent, ToolResultContent]

CONTENT_TYPES: dict[str, type[_Event]] = {
    "text": TextContent,
    "thinking": ThinkingContent,
    "tool_use": ToolUseContent,
    "tool_result": ToolResultContent,
}


class EventMessage(_Event):
    content: list[Any] | str = Field(default_factory=list)

    def items(self) -> list[Content]:
        """Decode the content list, skipping entries of unknown shape."""

        if isinstance(self.content, str):
            return [TextContent(text=self.content)]
        decoded: list[Content] = []
        for raw in self.content:
            if not isinstance(raw, dict):
                continue
            model = CONTENT_TYPES.get(raw.get("type", ""))
            if model is None:
                continue
            try:
                decoded.append(model.model_validate(raw))  # type: ignore[arg-type]
            except ValidationError:
                continue
        return decoded


class SystemEvent(_Event):
    type: Literal["system"] = "system"
    subtype: str | None = None
    session_id: str | None = None
    model: str | None = None


class AssistantEvent(_Event):
    type: Literal["assistant"] = "assistant"
    session_id: str | None = None
    message: EventMessage = Field(default_factory=EventMessage)


class UserEvent(_Event):
    type: Literal["user"] = "user"
    session_id: str | None = None
    message: EventMessage = Field(default_factory=EventMessage)


class ResultEvent(_Event):
    type: Literal["result"] = "result"
    subtype: str | None = None
    session_id: str | None = None
    is_error: bool = False
    result: str | None = None
    total_cost_usd: float | None = None
    duration_ms: int | None = None
    num_turns: int | None = None


AgentEvent = Union[SystemEvent, AssistantEvent, UserEvent, ResultEvent]

EVENT_TYPES: dict[str, type[_Event]] = {
    "system": SystemEvent,
    "assistant": AssistantEvent,
    "user": UserEvent,
    "result": ResultEvent,
}


def decode_event(payload: Any) -> AgentEvent | None:
    """Map a parsed JSON value to its event variant, or ``None``."""

    if not isinstance(payload, dict):
        return None
    model = EVENT_TYPES.get(payload.get("type", ""))
    if model is None:
        return None
    try:
        return model.model_validate(payload)  # type: ignore[return-value]
    except ValidationError:
        return None


def decode_line(line: str) -> AgentEvent | None:
    stripped = line.strip()
    if not stripped:
        return None
    try:
        payload = json.loads(stripped)
    except ValueError:
        return None
    return decode_event(payload)


class LineDecoder:
    """Accumulate raw stdout chunks and emit events for complete lines only."""

    def __init__(self) -> None:
        self._bytes = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    @property
    def pending(self) -> str:
        return self._buffer

    def feed(self, chunk: bytes | str) -> list[AgentEvent]:
        text = self._bytes.decode(chunk) if isinstance(chunk, bytes) else chunk
        self._buffer += text
        *lines, self._buffer = self._buffer.split("\n")
        return [event for event in map(decode_line, lines) if event is not None]

    def flush(self) -> list[AgentEvent]:
        """Decode whatever remains once the stream has closed."""

        remainder = self._buffer + self._bytes.decode(b"", final=True)
        self._buffer = ""
        event = decode_line(remainder)
        return [event] if event is not None else []


__all__ = [
    "AgentEvent",
    "AssistantEvent",
    "EVENT_TYPES",
    "LineDecoder",
    "ResultEvent",
    "SystemEvent",
    "TextContent",
    "ThinkingContent",
    "ToolResultContent",
    "ToolUseContent",
    "UserEvent",
    "decode_event",
    "decode_line",
]
