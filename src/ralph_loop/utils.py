import json
import os
import shutil
import time
from pathlib import Path
from typing import Dict, Mapping, Optional, Sequence, cast


def now_ms() -> int:
    return int(time.time() * 1000)


def atomic_write(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    with tmp_path.open("w", encoding="utf-8") as f:
        f.write(content)
    tmp_path.replace(path)


def read_json(path: Path) -> Optional[dict]:
    if not path.exists():
        return None
    with path.open("r", encoding="utf-8") as f:
        return cast(Optional[dict], json.load(f))


def _default_path_prefixes() -> list[str]:
    """
    Non-interactive shells often have a minimal PATH that excludes the
    places the opencode installer and Homebrew put binaries.
    """
    home = Path.home()
    candidates = [
        "/opt/homebrew/bin",
        "/usr/local/bin",
        str(home / ".opencode" / "bin"),
        str(home / ".bun" / "bin"),
        str(home / ".local" / "bin"),
    ]
    return [p for p in candidates if os.path.isdir(p)]


def augmented_path(path: Optional[str] = None) -> str:
    prefixes = _default_path_prefixes()
    existing = [p for p in (path or "").split(os.pathsep) if p]
    merged: list[str] = []
    for p in prefixes + existing:
        if p and p not in merged:
            merged.append(p)
    return os.pathsep.join(merged)


def subprocess_env(
    extra_paths: Optional[Sequence[str]] = None,
    base_env: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    env = dict(base_env) if base_env is not None else dict(os.environ)
    merged = augmented_path(env.get("PATH"))
    if extra_paths:
        extra = [p for p in extra_paths if p]
        if extra:
            merged = augmented_path(os.pathsep.join(extra + [merged]))
    env["PATH"] = merged
    return env


def resolve_executable(
    binary: str, *, env: Optional[Mapping[str, str]] = None
) -> Optional[str]:
    """
    Resolve an executable path in a way that's resilient to minimal PATHs.
    Returns an absolute path if found, else None.
    """
    if not binary:
        return None
    if os.path.sep in binary or (os.path.altsep and os.path.altsep in binary):
        candidate = Path(binary).expanduser()
        if candidate.is_file() and os.access(str(candidate), os.X_OK):
            return str(candidate)
        return None

    resolved = shutil.which(binary)
    if resolved:
        return resolved
    path = env.get("PATH") if env is not None else os.environ.get("PATH")
    return shutil.which(binary, path=augmented_path(path))
