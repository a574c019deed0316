import dataclasses
import json
from pathlib import Path
from typing import List, Optional

from .utils import atomic_write, now_ms, read_json


@dataclasses.dataclass
class PersistedState:
    start_time: int
    initial_commit_hash: str
    iteration_times: List[int] = dataclasses.field(default_factory=list)
    plan_file: str = "plan.md"
    paused_ms: int = 0
    last_save_time: Optional[int] = None

    @property
    def completed_iterations(self) -> int:
        return len(self.iteration_times)

    def elapsed_ms(self, now: Optional[int] = None) -> int:
        """Wall clock since start, minus time spent paused."""
        current = now if now is not None else now_ms()
        return max(0, current - self.start_time - self.paused_ms)

    def to_json(self) -> str:
        payload = {
            "start_time": self.start_time,
            "initial_commit_hash": self.initial_commit_hash,
            "iteration_times": list(self.iteration_times),
            "plan_file": self.plan_file,
            "paused_ms": self.paused_ms,
            "last_save_time": self.last_save_time,
        }
        return json.dumps(payload, indent=2) + "\n"


def new_state(plan_file: str, initial_commit_hash: str) -> PersistedState:
    return PersistedState(
        start_time=now_ms(),
        initial_commit_hash=initial_commit_hash,
        plan_file=plan_file,
    )


def load_state(state_path: Path) -> Optional[PersistedState]:
    try:
        data = read_json(state_path)
    except (OSError, json.JSONDecodeError):
        return None
    if not data:
        return None
    try:
        return PersistedState(
            start_time=int(data["start_time"]),
            initial_commit_hash=str(data.get("initial_commit_hash") or ""),
            iteration_times=[int(value) for value in data.get("iteration_times", [])],
            plan_file=str(data.get("plan_file") or "plan.md"),
            paused_ms=int(data.get("paused_ms") or 0),
            last_save_time=data.get("last_save_time"),
        )
    except (KeyError, TypeError, ValueError):
        return None


def save_state(state_path: Path, state: PersistedState) -> None:
    state.last_save_time = now_ms()
    atomic_write(state_path, state.to_json())


def clear_state(state_path: Path) -> None:
    state_path.unlink(missing_ok=True)
