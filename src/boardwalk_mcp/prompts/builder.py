"""Assemble agent prompts from task data and mode templates."""

from __future__ import annotations

import base64
import binascii
import logging
import re
from pathlib import Path
from typing import Iterable

from ..blocks import Attachment
from .models import ModePrompt

logger = logging.getLogger(__name__)

_DATA_URL = re.compile(r"^data:[^;]+;base64,(.+)$", re.DOTALL)


def _curl_patch(api_url: str, project_id: str, task_id: str, body: str) -> str:
    return (
        f"curl -s -X PATCH {api_url}/api/projects/{project_id}/tasks/{task_id} \\\n"
        "  -H 'Content-Type: application/json' \\\n"
        f"  -d '{body}'"
    )


def build_system_prompt(
    prompt: ModePrompt,
    *,
    project_id: str,
    task_id: str,
    api_url: str,
    project_name: str | None = None,
    additions: str | None = None,
) -> str:
    """Tell the agent how to report progress and completion back to the board."""

    update_command = _curl_patch(
        api_url,
        project_id,
        task_id,
        '{"findings":"<newline-separated cumulative summary of all work done>"}',
    )
    complete_command = _curl_patch(
        api_url,
        project_id,
        task_id,
        '{"status":"verify","dispatch":null,"findings":"<final summary>",'
        '"human_steps":"<steps for the human, or empty string>"}',
    )
    title_command = _curl_patch(api_url, project_id, task_id, '{"title":"<short 3-8 word title>"}')

    project_line = f" The project is **{project_name}**." if project_name else ""
    sections = [
        "## Fulfilling the task\n\n"
        f"You are working on a task assigned to you from a project task board.{project_line}\n\n"
        "### Naming the Task\n"
        f"Before starting work, give this task a short descriptive title (3-8 words):\n{title_command}"
    ]
    if prompt.reporting:
        sections.append(prompt.reporting.replace("{update_command}", update_command))
    if prompt.completion:
        sections.append(prompt.completion.replace("{complete_command}", complete_command))
    if additions:
        sections.append(additions)
    return "\n\n".join(sections)


def build_task_prompt(
    prompt: ModePrompt,
    *,
    description: str,
    title: str | None = None,
    image_files: Iterable[Path] = (),
) -> str:
    heading = f"# {title}\n\n{description}" if title else description
    parts = [part for part in (prompt.preamble, heading, prompt.closing) if part]
    text = "\n\n".join(parts)
    return text + attachment_section(image_files, noun="task")


def attachment_section(image_files: Iterable[Path], *, noun: str = "message") -> str:
    files = list(image_files)
    if not files:
        return ""
    listing = "\n".join(f"- {path}" for path in files)
    return (
        "\n\n## Attached Images\n"
        f"The following image files are attached to this {noun}. "
        f"Use your Read tool to view them:\n{listing}\n"
    )


def write_attachments(attachments: Iterable[Attachment], directory: Path) -> list[Path]:
    """Decode image attachments carried as data URLs into ``directory``."""

    written: list[Path] = []
    for attachment in attachments:
        if not attachment.is_image or not attachment.data_url:
            continue
        match = _DATA_URL.match(attachment.data_url)
        if match is None:
            continue
        try:
            payload = base64.b64decode(match.group(1), validate=False)
        except (binascii.Error, ValueError):
            logger.warning("Skipping undecodable attachment", extra={"attachment": attachment.name})
            continue
        directory.mkdir(parents=True, exist_ok=True)
        target = directory / Path(attachment.name).name
        target.write_bytes(payload)
        written.append(target)
    return written


def build_resolution_prompt(conflict_files: Iterable[str]) -> str:
    """Suggested follow-up asking the agent to finish a conflicted merge."""

    files = list(conflict_files)
    prompt = (
        "Resolve the merge conflicts. The primary branch has been merged into this branch "
        "and conflict markers are in the working tree.\n\n"
    )
    if files:
        prompt += "Conflicting files:\n" + "\n".join(f"- {name}" for name in files) + "\n\n"
    prompt += (
        "Check `git status`, resolve all conflict markers, stage the files, and complete the "
        "merge commit. Make sure the code builds correctly after resolution."
    )
    return prompt


__all__ = [
    "attachment_section",
    "build_resolution_prompt",
    "build_system_prompt",
    "build_task_prompt",
    "write_attachments",
]
