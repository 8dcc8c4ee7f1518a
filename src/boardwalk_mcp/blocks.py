"""Normalized session blocks and observer protocol messages."""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError


class Attachment(BaseModel):
    """A file attached to a task or follow-up message."""

    id: str = Field(..., description="Stable identifier for the attachment.")
    name: str = Field(..., description="Original file name.")
    size: int = Field(default=0, ge=0, description="Size in bytes.")
    type: str = Field(default="application/octet-stream", description="MIME type.")
    data_url: str | None = Field(
        default=None,
        description="Optional base64 data URL carrying the file content.",
    )

    @property
    def is_image(self) -> bool:
        return self.type.startswith("image/")


class _Block(BaseModel):
    model_config = ConfigDict(extra="ignore")


class TextBlock(_Block):
    type: Literal["text"] = "text"
    text: str


class ThinkingBlock(_Block):
    type: Literal["thinking"] = "thinking"
    thinking: str


class ToolUseBlock(_Block):
    type: Literal["tool_use"] = "tool_use"
    tool_id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResultBlock(_Block):
    type: Literal["tool_result"] = "tool_result"
    tool_id: str
    name: str = ""
    output: str = ""
    is_error: bool = False


class UserBlock(_Block):
    type: Literal["user"] = "user"
    text: str
    attachments: list[Attachment] | None = None


StatusSubtype = Literal["init", "complete", "error", "abort"]


class StatusBlock(_Block):
    type: Literal["status"] = "status"
    subtype: StatusSubtype
    session_id: str | None = None
    model: str | None = None
    cost_usd: float | None = None
    duration_ms: int | None = None
    turns: int | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.subtype != "init"


class StreamDeltaBlock(_Block):
    type: Literal["stream_delta"] = "stream_delta"
    text: str


class TaskUpdateBlock(_Block):
    """Progress report the agent wrote to the task board while running."""

    type: Literal["task_update"] = "task_update"
    findings: str = ""
    human_steps: str | None = None
    timestamp: str | None = None


Block = Annotated[
    Union[
        TextBlock,
        ThinkingBlock,
        ToolUseBlock,
        ToolResultBlock,
        UserBlock,
        StatusBlock,
        StreamDeltaBlock,
        TaskUpdateBlock,
    ],
    Field(discriminator="type"),
]

BLOCK_ADAPTER: TypeAdapter[Block] = TypeAdapter(Block)
BLOCK_LIST_ADAPTER: TypeAdapter[list[Block]] = TypeAdapter(list[Block])


def parse_block(payload: dict[str, Any]) -> Block:
    """Validate a raw mapping into one of the block variants."""

    return BLOCK_ADAPTER.validate_python(payload)


def dump_blocks(blocks: list[Block]) -> list[dict[str, Any]]:
    return [block.model_dump(mode="json", exclude_none=True) for block in blocks]


# Server -> observer


class ReplayMessage(BaseModel):
    type: Literal["replay"] = "replay"
    blocks: list[Block] = Field(default_factory=list)


class BlockMessage(BaseModel):
    type: Literal["block"] = "block"
    block: Block


class ErrorMessage(BaseModel):
    type: Literal["error"] = "error"
    error: str


ObserverMessage = Union[ReplayMessage, BlockMessage, ErrorMessage]


# Observer -> server


class FollowupMessage(BaseModel):
    type: Literal["followup"] = "followup"
    text: str
    attachments: list[Attachment] | None = None


class StopMessage(BaseModel):
    type: Literal["stop"] = "stop"


ClientMessage = Annotated[Union[FollowupMessage, StopMessage], Field(discriminator="type")]

CLIENT_MESSAGE_ADAPTER: TypeAdapter[ClientMessage] = TypeAdapter(ClientMessage)


def parse_client_message(raw: str | bytes) -> FollowupMessage | StopMessage | None:
    """Decode a client message, returning ``None`` for anything malformed."""

    try:
        return CLIENT_MESSAGE_ADAPTER.validate_json(raw)
    except ValidationError:
        return None


__all__ = [
    "Attachment",
    "Block",
    "BlockMessage",
    "ClientMessage",
    "ErrorMessage",
    "FollowupMessage",
    "ObserverMessage",
    "ReplayMessage",
    "StatusBlock",
    "StatusSubtype",
    "StopMessage",
    "StreamDeltaBlock",
    "TaskUpdateBlock",
    "TextBlock",
    "ThinkingBlock",
    "ToolResultBlock",
    "ToolUseBlock",
    "UserBlock",
    "dump_blocks",
    "parse_block",
    "parse_client_message",
]
