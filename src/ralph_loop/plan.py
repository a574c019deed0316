from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

_CODE_FENCE_RE = re.compile(r"```[\s\S]*?```")
_DONE_RE = re.compile(r"- \[x\]", re.IGNORECASE)
_OPEN_RE = re.compile(r"- \[ \]")


@dataclass(frozen=True)
class PlanProgress:
    done: int
    total: int
    error: Optional[str] = None

    @property
    def remaining(self) -> int:
        return max(0, self.total - self.done)

    @property
    def is_complete(self) -> bool:
        return self.total > 0 and self.done >= self.total


def count_tasks(text: str) -> PlanProgress:
    """Count markdown checkboxes, ignoring any inside fenced code blocks."""
    stripped = _CODE_FENCE_RE.sub("", text)
    done = len(_DONE_RE.findall(stripped))
    open_ = len(_OPEN_RE.findall(stripped))
    return PlanProgress(done=done, total=done + open_)


def parse_plan(path: Path) -> PlanProgress:
    if not path.exists():
        return PlanProgress(done=0, total=0, error=f"Plan file not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        return PlanProgress(done=0, total=0, error=f"Failed to read {path}: {exc}")
    return count_tasks(text)
