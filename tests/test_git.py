import shutil
import subprocess
from pathlib import Path

import pytest

from ralph_loop.git import DiffStats, GitReader, parse_numstat

needs_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def test_parse_numstat_skips_binary_counts():
    text = "3\t1\tsrc/app.py\n-\t-\tlogo.png\n10\t0\tREADME.md\n"
    assert parse_numstat(text) == DiffStats(added=13, removed=1)


@pytest.mark.anyio
async def test_non_repo_degrades_to_empty(tmp_path: Path):
    reader = GitReader(tmp_path)
    assert await reader.head_hash() == ""
    assert await reader.commits_since("") == 0
    assert await reader.diff_stats("deadbeef") == DiffStats()


def _git(root: Path, *args: str) -> str:
    return subprocess.run(
        ["git", *args], cwd=root, check=True, capture_output=True, text=True
    ).stdout.strip()


@needs_git
@pytest.mark.anyio
async def test_commits_and_diff_since_start(tmp_path: Path):
    _git(tmp_path, "init", "-q")
    _git(tmp_path, "config", "user.email", "loop@example.com")
    _git(tmp_path, "config", "user.name", "Loop")
    (tmp_path / "a.txt").write_text("one\n", encoding="utf-8")
    _git(tmp_path, "add", "a.txt")
    _git(tmp_path, "commit", "-q", "-m", "first")

    reader = GitReader(tmp_path)
    start = await reader.head_hash()
    assert start == _git(tmp_path, "rev-parse", "HEAD")

    (tmp_path / "a.txt").write_text("one\ntwo\nthree\n", encoding="utf-8")
    _git(tmp_path, "commit", "-q", "-am", "second")
    (tmp_path / "a.txt").write_text("two\nthree\n", encoding="utf-8")

    assert await reader.commits_since(start) == 1
    assert await reader.diff_stats(start) == DiffStats(added=2, removed=1)
