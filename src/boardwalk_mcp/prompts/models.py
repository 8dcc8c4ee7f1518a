"""Prompt template models for each task mode."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator

from ..storage.models import TaskMode


class ModePrompt(BaseModel):
    """How a task of a given mode is presented to the agent."""

    mode: TaskMode = Field(..., description="Task mode this template applies to.")
    preamble: str = Field(
        default="",
        description="Text placed before the task heading in the user prompt.",
    )
    closing: str = Field(
        default="",
        description="Text placed after the task description in the user prompt.",
    )
    reporting: str = Field(
        default="",
        description=(
            "System prompt section telling the agent how to report progress. "
            "May reference {update_command}."
        ),
    )
    completion: str | None = Field(
        default=None,
        description=(
            "System prompt section telling the agent how to signal completion. "
            "May reference {complete_command}. Omitted for read-only modes."
        ),
    )
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("preamble", "closing", "reporting", mode="before")
    @classmethod
    def _none_as_empty(cls, value: Any) -> Any:
        return "" if value is None else value


__all__ = ["ModePrompt"]
