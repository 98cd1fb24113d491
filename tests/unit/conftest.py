"""Shared fixtures for unit tests."""

from __future__ import annotations

import os
from typing import TYPE_CHECKING

import pytest

from converge.config import load

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    from converge.config.schema import Config


@pytest.fixture(autouse=True)
def _clean_converge_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove CONVERGE_* env vars so unit tests don't leak host config."""
    for var in list(os.environ):
        if var.startswith("CONVERGE_"):
            monkeypatch.delenv(var, raising=False)


@pytest.fixture
def make_config(tmp_path: Path) -> Callable[..., Config]:
    """Factory fixture: write YAML + optional .env, return loaded Config."""

    def _make(yaml_str: str, *, dotenv: str | None = None) -> Config:
        (tmp_path / "converge.yaml").write_text(yaml_str)
        if dotenv is not None:
            (tmp_path / ".env").write_text(dotenv)
        return load(tmp_path / "converge.yaml")

    return _make
