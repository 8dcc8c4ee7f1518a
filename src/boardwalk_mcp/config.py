"""Configuration management for Boardwalk MCP."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Annotated
import os
import tempfile

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class BoardwalkSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    claude_path: str | None = Field(default=None, validation_alias="CLAUDE_BIN")
    default_model: str | None = Field(default=None, validation_alias="BOARDWALK_DEFAULT_MODEL")
    system_prompt_additions: str | None = Field(
        default=None, validation_alias="BOARDWALK_SYSTEM_PROMPT_ADDITIONS"
    )
    max_turns: int = Field(default=200, validation_alias="BOARDWALK_MAX_TURNS")
    data_dir: Path = Field(default=Path("./data"), validation_alias="BOARDWALK_DATA_DIR")
    scratch_dir: Path = Field(
        default=Path(tempfile.gettempdir()) / "boardwalk",
        validation_alias="BOARDWALK_SCRATCH_DIR",
    )
    cleanup_delay_seconds: float = Field(
        default=3600.0, validation_alias="BOARDWALK_CLEANUP_DELAY_SECONDS"
    )
    liveness_timeout_seconds: float | None = Field(
        default=None, validation_alias="BOARDWALK_LIVENESS_TIMEOUT_SECONDS"
    )
    default_render_mode: str = Field(default="pretty", validation_alias="BOARDWALK_RENDER_MODE")
    primary_branch: str | None = Field(default=None, validation_alias="BOARDWALK_PRIMARY_BRANCH")
    board_api_url: str = Field(
        default="http://localhost:1337", validation_alias="BOARDWALK_API_URL"
    )
    notify_bin: str | None = Field(default=None, validation_alias="OPENCLAW_BIN")
    notify_channel: str | None = Field(default=None, validation_alias="SLACK_CHANNEL")
    prompt_paths: Annotated[tuple[Path, ...], NoDecode] = Field(
        default=(Path("prompts"),), validation_alias="BOARDWALK_PROMPT_PATHS"
    )
    chroma_persist_path: Path = Field(
        default=Path("./storage/chroma"), validation_alias="CHROMA_PERSIST_PATH"
    )
    journal_enabled: bool = Field(default=False, validation_alias="BOARDWALK_JOURNAL")
    log_level: str = Field(default="INFO", validation_alias="BOARDWALK_LOG_LEVEL")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "BOARDWALK_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("default_render_mode")
    @classmethod
    def _normalize_render_mode(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in {"pretty", "terminal"}:
            raise ValueError("BOARDWALK_RENDER_MODE must be 'pretty' or 'terminal'")
        return normalized

    @field_validator("prompt_paths", mode="before")
    @classmethod
    def _parse_prompt_paths(cls, value):
        if value is None or value == "":
            return (Path("prompts"),)
        if isinstance(value, (list, tuple)):
            return tuple(Path(str(item)) for item in value)
        if isinstance(value, str):
            parts = [part.strip() for part in value.split(os.pathsep) if part.strip()]
            return tuple(Path(part) for part in parts) or (Path("prompts"),)
        raise TypeError("BOARDWALK_PROMPT_PATHS must be a list of paths or a path-separated string")

    @field_validator("max_turns")
    @classmethod
    def _validate_max_turns(cls, value: int) -> int:
        if value < 1:
            raise ValueError("BOARDWALK_MAX_TURNS must be >= 1")
        return value

    @field_validator("cleanup_delay_seconds")
    @classmethod
    def _validate_cleanup_delay(cls, value: float) -> float:
        if value < 0:
            raise ValueError("BOARDWALK_CLEANUP_DELAY_SECONDS must be >= 0")
        return value

    @field_validator("liveness_timeout_seconds", mode="before")
    @classmethod
    def _parse_liveness_timeout(cls, value):
        # 0 or empty disables the watchdog
        if value in (None, "", 0, "0"):
            return None
        return value


@lru_cache(maxsize=1)
def get_settings() -> BoardwalkSettings:
    """Return cached settings instance."""

    settings = BoardwalkSettings()
    settings.data_dir = settings.data_dir.expanduser().resolve()
    settings.scratch_dir = settings.scratch_dir.expanduser().resolve()
    settings.chroma_persist_path = settings.chroma_persist_path.expanduser().resolve()
    settings.prompt_paths = tuple(path.expanduser().resolve() for path in settings.prompt_paths)
    return settings


__all__ = ["BoardwalkSettings", "get_settings"]
