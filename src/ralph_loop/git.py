from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .logging_utils import log_event

_logger = logging.getLogger(__name__)


class GitError(Exception):
    pass


@dataclass(frozen=True)
class DiffStats:
    added: int = 0
    removed: int = 0


def parse_numstat(text: str) -> DiffStats:
    added = 0
    removed = 0
    for line in text.splitlines():
        fields = line.split("\t")
        if len(fields) < 3:
            continue
        # Binary files report "-" for both counts.
        if fields[0].isdigit():
            added += int(fields[0])
        if fields[1].isdigit():
            removed += int(fields[1])
    return DiffStats(added=added, removed=removed)


class GitReader:
    """Read-only git queries used to report progress.

    Every query is best effort: a missing binary, a non-repo directory or a
    timeout degrades to an empty answer instead of failing the iteration.
    """

    def __init__(self, repo_root: Path, *, timeout_seconds: float = 15.0) -> None:
        self._repo_root = repo_root
        self._timeout = timeout_seconds

    async def _run(self, *args: str) -> str:
        try:
            proc = await asyncio.create_subprocess_exec(
                "git",
                *args,
                cwd=str(self._repo_root),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise GitError("Missing binary: git") from exc
        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=self._timeout
            )
        except asyncio.TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise GitError(f"Command timed out: git {' '.join(args)}") from exc
        if proc.returncode != 0:
            detail = stderr.decode("utf-8", errors="ignore").strip()
            raise GitError(
                f"Command failed: git {' '.join(args)}: {detail or proc.returncode}"
            )
        return stdout.decode("utf-8", errors="ignore")

    async def head_hash(self) -> str:
        try:
            return (await self._run("rev-parse", "HEAD")).strip()
        except GitError as exc:
            log_event(_logger, logging.DEBUG, "git.head_hash.failed", exc=exc)
            return ""

    async def commits_since(self, commit_hash: Optional[str]) -> int:
        if not commit_hash:
            return 0
        try:
            output = await self._run("rev-list", "--count", f"{commit_hash}..HEAD")
        except GitError as exc:
            log_event(_logger, logging.DEBUG, "git.commits_since.failed", exc=exc)
            return 0
        output = output.strip()
        return int(output) if output.isdigit() else 0

    async def diff_stats(self, commit_hash: Optional[str]) -> DiffStats:
        """Lines added/removed between commit_hash and the working tree."""
        args = ["diff", "--numstat"]
        if commit_hash:
            args.append(commit_hash)
        try:
            output = await self._run(*args)
        except GitError as exc:
            log_event(_logger, logging.DEBUG, "git.diff_stats.failed", exc=exc)
            return DiffStats()
        return parse_numstat(output)
