from __future__ import annotations

import os
from pathlib import Path

import pytest
from pydantic import ValidationError

from boardwalk_mcp.config import BoardwalkSettings, get_settings


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)
    for name in (
        "BOARDWALK_PROMPT_PATHS",
        "BOARDWALK_LIVENESS_TIMEOUT_SECONDS",
        "BOARDWALK_LOG_LEVEL",
        "BOARDWALK_RENDER_MODE",
        "BOARDWALK_MAX_TURNS",
    ):
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()


def test_defaults() -> None:
    settings = BoardwalkSettings()

    assert settings.default_render_mode == "pretty"
    assert settings.cleanup_delay_seconds == 3600.0
    assert settings.liveness_timeout_seconds is None
    assert settings.journal_enabled is False
    assert settings.prompt_paths == (Path("prompts"),)


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    first, second = tmp_path / "a", tmp_path / "b"
    monkeypatch.setenv("BOARDWALK_PROMPT_PATHS", f"{first}{os.pathsep}{second}")
    monkeypatch.setenv("BOARDWALK_LOG_LEVEL", "debug")
    monkeypatch.setenv("BOARDWALK_RENDER_MODE", "Terminal")
    monkeypatch.setenv("BOARDWALK_LIVENESS_TIMEOUT_SECONDS", "90")

    settings = BoardwalkSettings()

    assert settings.prompt_paths == (first, second)
    assert settings.log_level == "DEBUG"
    assert settings.default_render_mode == "terminal"
    assert settings.liveness_timeout_seconds == 90.0


def test_zero_liveness_timeout_disables_watchdog(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BOARDWALK_LIVENESS_TIMEOUT_SECONDS", "0")

    assert BoardwalkSettings().liveness_timeout_seconds is None


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("BOARDWALK_LOG_LEVEL", "chatty"),
        ("BOARDWALK_RENDER_MODE", "fancy"),
        ("BOARDWALK_MAX_TURNS", "0"),
    ],
)
def test_invalid_values_are_rejected(monkeypatch: pytest.MonkeyPatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ValidationError):
        BoardwalkSettings()


def test_get_settings_resolves_paths(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("BOARDWALK_DATA_DIR", "relative-data")

    settings = get_settings()

    assert settings.data_dir == (tmp_path / "relative-data").resolve()
    assert settings.data_dir.is_absolute()
    get_settings.cache_clear()
