"""Mode prompt loading utilities."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable

import yaml
from pydantic import ValidationError

from .models import ModePrompt

_READ_ONLY_RULE = (
    "IMPORTANT: Do NOT make any code changes. Do NOT create, edit, or delete any files. "
    "Do NOT commit anything."
)

DEFAULT_PROMPTS: dict[str, ModePrompt] = {
    "code": ModePrompt(
        mode="code",
        closing="When completely finished, stage and commit the changes with a descriptive message.",
        reporting=(
            "### Code Changes\n"
            "Always commit your code changes unless explicitly asked not to. Stage and commit "
            "with a descriptive message after each logical unit of work.\n\n"
            "### Reporting Progress\n"
            "After committing code or finishing a significant phase of work, update the task "
            "board so the human can follow along:\n{update_command}\n\n"
            "Findings are cumulative: each update replaces the previous one, so always include "
            "the full picture of everything done so far. Do not report for short clarifying "
            "answers or when asking the user a question."
        ),
        completion=(
            "### Completing the Task\n"
            "When the entire task is done and ready for human review, signal completion:\n"
            "{complete_command}\n\n"
            "This moves the task to the Verify column. Only do this when the work is fully "
            "complete, not on follow-up responses."
        ),
    ),
    "plan": ModePrompt(
        mode="plan",
        preamble=f"{_READ_ONLY_RULE} Only research and write the plan.",
        reporting=(
            "### Planning Mode\n"
            "This is a plan-only task. Do NOT make any code changes, create files, edit files, "
            "or commit anything. Only research, analyze, and report your findings.\n\n"
            "### Reporting Results\nWhen finished, report your findings:\n{update_command}"
        ),
    ),
    "answer": ModePrompt(
        mode="answer",
        closing=f"{_READ_ONLY_RULE} Only research and answer the question.",
        reporting=(
            "### Research Mode\n"
            "This is an answer-only task. Do NOT make any code changes, create files, edit "
            "files, or commit anything. Only research, analyze, and report your findings.\n\n"
            "### Reporting Results\nWhen finished, report your findings:\n{update_command}"
        ),
    ),
}


class PromptLoadError(RuntimeError):
    """Raised when one or more prompt files cannot be parsed."""


class PromptLoader:
    """Loads mode prompt overrides from YAML files on disk."""

    def __init__(self, search_paths: Iterable[Path] | None = None) -> None:
        paths = [Path(path) for path in (search_paths or [])]
        self._search_paths: list[Path] = [path for path in paths if path.exists()]

    @property
    def search_paths(self) -> list[Path]:
        return list(self._search_paths)

    def load_all(self) -> dict[str, ModePrompt]:
        """Return the built-in prompts overlaid with any files found.

        Later search paths override earlier ones when modes collide.
        """

        prompts = dict(DEFAULT_PROMPTS)
        errors: list[str] = []

        for base in self._search_paths:
            for path in sorted(base.glob("*.yml")) + sorted(base.glob("*.yaml")):
                try:
                    document = yaml.safe_load(path.read_text(encoding="utf-8"))
                except yaml.YAMLError as exc:  # pragma: no cover - library type
                    errors.append(f"Failed to parse YAML in {path}: {exc}")
                    continue

                if document is None:
                    continue

                try:
                    prompt = ModePrompt.model_validate(document)
                except ValidationError as exc:
                    errors.append(f"Prompt validation error in {path}: {exc}")
                    continue

                prompts[prompt.mode] = prompt

        if errors:
            raise PromptLoadError("; ".join(errors))

        return prompts

    def get(self, mode: str) -> ModePrompt:
        prompts = self.load_all()
        try:
            return prompts[mode]
        except KeyError as exc:  # pragma: no cover - modes are a closed set
            raise PromptLoadError(f"No prompt template for mode '{mode}'") from exc


__all__ = ["DEFAULT_PROMPTS", "PromptLoadError", "PromptLoader"]
