"""Utility helpers for the agent runner."""

from __future__ import annotations

import os
import re
from typing import Mapping

# Variables that would make the agent CLI believe it is nested inside another
# agent or inherit this server's port and interpreter.
_SANITIZED_VARS = {
    "CLAUDECODE",
    "PORT",
    "PYTHONHOME",
    "PYTHONPATH",
    "VIRTUAL_ENV",
    "PIP_RESPECT_VIRTUALENV",
}

_ANSI_PATTERN = re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]|\x1b\][^\x07]*(?:\x07|\x1b\\)|\x1b[@-Z\\-_]")


def sanitize_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return a sanitized environment suitable for subprocess execution."""

    env = dict(os.environ)
    for key in _SANITIZED_VARS:
        env.pop(key, None)
    if additional:
        env.update(additional)
    return env


def strip_ansi(text: str) -> str:
    """Remove terminal escape sequences from captured output."""

    return _ANSI_PATTERN.sub("", text)
