"""Test harness configuration.

This repo uses a `src/` layout; make sure tests import the in-repo code
rather than an installed copy.
"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest


def pytest_configure() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    src_path = str(repo_root / "src")
    if sys.path[:1] != [src_path] and src_path not in sys.path:
        sys.path.insert(0, src_path)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture()
def project(tmp_path: Path) -> Path:
    """A project directory with a two-task plan and no git history."""
    root = tmp_path / "project"
    root.mkdir()
    (root / "plan.md").write_text(
        "# Plan\n\n- [x] scaffold\n- [ ] implement\n", encoding="utf-8"
    )
    return root
