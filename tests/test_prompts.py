from __future__ import annotations

import base64
import textwrap
from pathlib import Path

import pytest

from boardwalk_mcp.blocks import Attachment
from boardwalk_mcp.prompts import (
    DEFAULT_PROMPTS,
    PromptLoadError,
    PromptLoader,
    build_resolution_prompt,
    build_system_prompt,
    build_task_prompt,
    write_attachments,
)


def write_prompt(path: Path, *, closing: str) -> None:
    path.write_text(
        textwrap.dedent(
            """
            mode: code
            preamble: Read CONTRIBUTING.md first.
            closing: {closing}
            reporting: "Report with {{update_command}}"
            completion: "Finish with {{complete_command}}"
            """
        ).strip().format(closing=closing),
        encoding="utf-8",
    )


def test_loader_overlays_defaults(tmp_path: Path) -> None:
    base = tmp_path / "base"
    base.mkdir()
    override = tmp_path / "override"
    override.mkdir()

    write_prompt(base / "code.yaml", closing="Base closing")
    write_prompt(override / "code.yml", closing="Override closing")

    prompts = PromptLoader([base, override]).load_all()

    assert prompts["code"].closing == "Override closing"
    assert prompts["plan"] == DEFAULT_PROMPTS["plan"]


def test_loader_without_files_returns_defaults(tmp_path: Path) -> None:
    loader = PromptLoader([tmp_path, tmp_path / "missing"])

    assert loader.load_all() == DEFAULT_PROMPTS
    assert loader.search_paths == [tmp_path]


def test_loader_reports_validation_error(tmp_path: Path) -> None:
    (tmp_path / "broken.yaml").write_text("mode: review\nclosing: x", encoding="utf-8")

    with pytest.raises(PromptLoadError):
        PromptLoader([tmp_path]).load_all()


def test_system_prompt_embeds_callback_commands() -> None:
    prompt = build_system_prompt(
        DEFAULT_PROMPTS["code"],
        project_id="p1",
        task_id="t1",
        api_url="http://localhost:1337",
        project_name="Shop",
        additions="Use pnpm.",
    )

    assert "The project is **Shop**." in prompt
    assert "curl -s -X PATCH http://localhost:1337/api/projects/p1/tasks/t1" in prompt
    assert '"status":"verify"' in prompt
    assert "{update_command}" not in prompt
    assert prompt.endswith("Use pnpm.")


def test_read_only_modes_have_no_completion_section() -> None:
    prompt = build_system_prompt(
        DEFAULT_PROMPTS["plan"], project_id="p1", task_id="t1", api_url="http://board"
    )

    assert "Planning Mode" in prompt
    assert '"status":"verify"' not in prompt


def test_task_prompt_wraps_description() -> None:
    prompt = build_task_prompt(
        DEFAULT_PROMPTS["answer"],
        description="Why is the build slow?",
        title="Slow build",
        image_files=[Path("/tmp/shot.png")],
    )

    assert prompt.startswith("# Slow build\n\nWhy is the build slow?")
    assert "Do NOT make any code changes" in prompt
    assert "- /tmp/shot.png" in prompt
    assert "attached to this task" in prompt


def test_write_attachments_decodes_images_only(tmp_path: Path) -> None:
    payload = base64.b64encode(b"\x89PNG").decode()
    attachments = [
        Attachment(id="a1", name="../shot.png", type="image/png", data_url=f"data:image/png;base64,{payload}"),
        Attachment(id="a2", name="notes.txt", type="text/plain", data_url="data:text/plain;base64,aGk="),
        Attachment(id="a3", name="empty.png", type="image/png"),
    ]

    written = write_attachments(attachments, tmp_path / "out")

    assert written == [tmp_path / "out" / "shot.png"]
    assert written[0].read_bytes() == b"\x89PNG"


def test_resolution_prompt_lists_files() -> None:
    prompt = build_resolution_prompt(["app.py", "lib/util.py"])

    assert "- app.py\n- lib/util.py" in prompt
    assert "git status" in prompt
