"""Mode prompt templates, loader and builders."""

from .builder import (
    attachment_section,
    build_resolution_prompt,
    build_system_prompt,
    build_task_prompt,
    write_attachments,
)
from .loader import DEFAULT_PROMPTS, PromptLoadError, PromptLoader
from .models import ModePrompt

__all__ = [
    "DEFAULT_PROMPTS",
    "ModePrompt",
    "PromptLoadError",
    "PromptLoader",
    "attachment_section",
    "build_resolution_prompt",
    "build_system_prompt",
    "build_task_prompt",
    "write_attachments",
]
