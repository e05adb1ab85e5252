"""Pytest configuration for inferra tests."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from inferra.core.storage import InferraPaths


@pytest.fixture(scope="session", autouse=True)
def _disable_ansi_colors() -> None:
    """Disable ANSI colors in CLI output for consistent test assertions."""
    os.environ["TERM"] = "dumb"


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("INFERRA_HOME", str(tmp_path / ".inferra"))
    for key in (
        "INFERRA_HF_TOKEN",
        "HF_TOKEN",
        "INFERRA_HOST",
        "INFERRA_PORT",
        "INFERRA_ENGINE",
        "INFERRA_EFFECTIVE_HOST_BINDING",
        "INFERRA_CHATGPT_API_KEY",
        "INFERRA_CLAUDE_API_KEY",
        "INFERRA_GEMINI_API_KEY",
        "INFERRA_DEEPSEEK_API_KEY",
    ):
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def paths(tmp_path: Path) -> InferraPaths:
    return InferraPaths(base_dir=tmp_path / ".inferra")
