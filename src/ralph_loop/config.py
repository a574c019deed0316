import dataclasses
import json
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from dotenv import load_dotenv

from .errors import RalphError

CONFIG_DIRNAME = ".ralph"
CONFIG_FILENAME = ".ralph/config.yml"
DEFAULT_MODEL = "opencode/claude-opus-4-5"
DEFAULT_HOSTNAME = "127.0.0.1"
DEFAULT_PORT = 4190

ERROR_STRATEGIES = ("retry", "skip", "abort")
OUTPUT_FORMATS = ("text", "json", "jsonl")

DEFAULT_CONFIG: Dict[str, Any] = {
    "model": DEFAULT_MODEL,
    "plan": "plan.md",
    "progress": "progress.txt",
    "prompt": None,
    "prompt_file": ".ralph-prompt.md",
    "agent": None,
    "server": {
        "url": None,
        "timeout": 5.0,
        "hostname": DEFAULT_HOSTNAME,
        "port": DEFAULT_PORT,
        "ready_timeout": 20.0,
    },
    "opencode": {
        "command": ["opencode", "serve"],
    },
    "error_handling": {
        "strategy": "retry",
        "max_retries": 3,
        "retry_delay": 5.0,
        "backoff_multiplier": 2.0,
        "max_delay": 60.0,
    },
    # Primary model -> fallback model, used after a rate limit.
    "fallback_agents": {},
    "limits": {
        "max_iterations": None,
        "max_time": None,
    },
    "headless": {
        "format": "text",
        "timestamps": False,
        "auto_start": True,
    },
    "cleanup": {
        "enabled": True,
        "timeout": 10.0,
    },
    "loop": {
        "pause_poll_interval": 1.0,
        "require_plan_complete": False,
    },
    "state": {
        "path": ".ralph-state.json",
        "lock": ".ralph-lock",
    },
    "log": {
        "path": ".ralph/ralph.log",
        "max_bytes": 10_000_000,
        "backup_count": 3,
    },
}


class ConfigError(RalphError):
    """Raised when configuration is invalid."""


@dataclasses.dataclass
class LogConfig:
    path: Path
    max_bytes: int
    backup_count: int


@dataclasses.dataclass
class ServerConfig:
    url: Optional[str]
    timeout: float
    hostname: str
    port: int
    ready_timeout: float


@dataclasses.dataclass
class ErrorHandlingConfig:
    strategy: str = "retry"
    max_retries: int = 3
    retry_delay: float = 5.0
    backoff_multiplier: float = 2.0
    max_delay: float = 60.0


@dataclasses.dataclass
class LimitsConfig:
    max_iterations: Optional[int] = None
    max_time: Optional[float] = None


@dataclasses.dataclass
class HeadlessConfig:
    format: str = "text"
    timestamps: bool = False
    auto_start: bool = True


@dataclasses.dataclass
class CleanupConfig:
    enabled: bool = True
    timeout: float = 10.0


@dataclasses.dataclass
class RalphConfig:
    raw: Dict[str, Any]
    root: Path
    config_path: Optional[Path]
    model: str
    plan_file: str
    progress_file: str
    prompt: Optional[str]
    prompt_file: Optional[str]
    agent: Optional[str]
    server: ServerConfig
    opencode_command: List[str]
    error_handling: ErrorHandlingConfig
    fallback_agents: Dict[str, str]
    limits: LimitsConfig
    headless: HeadlessConfig
    cleanup: CleanupConfig
    pause_poll_interval: float
    require_plan_complete: bool
    state_path: Path
    lock_path: Path
    log: LogConfig


def _merge_defaults(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = json.loads(json.dumps(base))
    for key, value in overrides.items():
        if isinstance(value, dict) and key in merged and isinstance(merged[key], dict):
            merged[key] = _merge_defaults(merged[key], value)
        else:
            merged[key] = value
    return merged


def find_nearest_config_path(start: Path) -> Optional[Path]:
    """Return the closest .ralph/config.yml walking upward from start."""
    start = start.resolve()
    search_dir = start if start.is_dir() else start.parent
    for current in [search_dir] + list(search_dir.parents):
        candidate = current / CONFIG_FILENAME
        if candidate.exists():
            return candidate
    return None


def _load_dotenv_for_root(root: Path) -> None:
    """
    Best-effort load of environment variables for this project root.

    Loaded from deterministic locations rather than the process CWD.
    """
    try:
        candidates = [
            root / ".env",
            root / CONFIG_DIRNAME / ".env",
        ]
        for candidate in candidates:
            if candidate.exists():
                load_dotenv(dotenv_path=candidate, override=True)
    except Exception:
        # Never fail config loading due to dotenv issues.
        pass


def _apply_env_overrides(cfg: Dict[str, Any], env: Mapping[str, str]) -> None:
    if env.get("RALPH_MODEL"):
        cfg["model"] = env["RALPH_MODEL"]
    if env.get("RALPH_PLAN"):
        cfg["plan"] = env["RALPH_PLAN"]
    if env.get("RALPH_PROGRESS"):
        cfg["progress"] = env["RALPH_PROGRESS"]
    if env.get("RALPH_SERVER"):
        cfg["server"]["url"] = env["RALPH_SERVER"]
    raw_timeout = env.get("RALPH_SERVER_TIMEOUT")
    if raw_timeout:
        # Milliseconds, like the rest of the RALPH_* environment.
        try:
            timeout_ms = int(raw_timeout)
        except ValueError:
            raise ConfigError(
                f"RALPH_SERVER_TIMEOUT must be an integer (milliseconds), got {raw_timeout!r}"
            ) from None
        if timeout_ms <= 0:
            raise ConfigError("RALPH_SERVER_TIMEOUT must be a positive number of milliseconds")
        cfg["server"]["timeout"] = timeout_ms / 1000.0


def load_config(
    start: Path, *, env: Optional[Mapping[str, str]] = None
) -> RalphConfig:
    """
    Load the nearest config walking upward from the provided path.

    A missing config file is not an error: defaults apply, rooted at start.
    Environment overrides win over the file.
    """
    config_path = find_nearest_config_path(start)
    if config_path is not None:
        root = config_path.parent.parent.resolve()
    else:
        root = (start if start.is_dir() else start.parent).resolve()
    _load_dotenv_for_root(root)
    data: Dict[str, Any] = {}
    if config_path is not None:
        try:
            with config_path.open("r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {config_path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError(f"{config_path} must contain a mapping")
    merged = _merge_defaults(DEFAULT_CONFIG, data)
    _apply_env_overrides(merged, os.environ if env is None else env)
    _validate_config(merged)
    return _build_config(root, config_path, merged)


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value)
    return text if text.strip() else None


def _build_config(
    root: Path, config_path: Optional[Path], cfg: Dict[str, Any]
) -> RalphConfig:
    server_cfg = cfg["server"]
    error_cfg = cfg["error_handling"]
    limits_cfg = cfg["limits"]
    headless_cfg = cfg["headless"]
    cleanup_cfg = cfg["cleanup"]
    loop_cfg = cfg["loop"]
    log_cfg = cfg["log"]
    command = cfg["opencode"]["command"]
    if isinstance(command, str):
        command = command.split()
    max_time = limits_cfg.get("max_time")
    return RalphConfig(
        raw=cfg,
        root=root,
        config_path=config_path,
        model=str(cfg["model"]),
        plan_file=str(cfg["plan"]),
        progress_file=str(cfg["progress"] or "progress.txt"),
        prompt=_optional_str(cfg.get("prompt")),
        prompt_file=_optional_str(cfg.get("prompt_file")),
        agent=_optional_str(cfg.get("agent")),
        server=ServerConfig(
            url=_optional_str(server_cfg.get("url")),
            timeout=float(server_cfg["timeout"]),
            hostname=str(server_cfg["hostname"]),
            port=int(server_cfg["port"]),
            ready_timeout=float(server_cfg["ready_timeout"]),
        ),
        opencode_command=[str(part) for part in command],
        error_handling=ErrorHandlingConfig(
            strategy=str(error_cfg["strategy"]),
            max_retries=int(error_cfg["max_retries"]),
            retry_delay=float(error_cfg["retry_delay"]),
            backoff_multiplier=float(error_cfg["backoff_multiplier"]),
            max_delay=float(error_cfg["max_delay"]),
        ),
        fallback_agents={
            str(key): str(value)
            for key, value in (cfg.get("fallback_agents") or {}).items()
        },
        limits=LimitsConfig(
            max_iterations=limits_cfg.get("max_iterations"),
            max_time=float(max_time) if max_time is not None else None,
        ),
        headless=HeadlessConfig(
            format=str(headless_cfg["format"]),
            timestamps=bool(headless_cfg["timestamps"]),
            auto_start=bool(headless_cfg["auto_start"]),
        ),
        cleanup=CleanupConfig(
            enabled=bool(cleanup_cfg["enabled"]),
            timeout=float(cleanup_cfg["timeout"]),
        ),
        pause_poll_interval=float(loop_cfg["pause_poll_interval"]),
        require_plan_complete=bool(loop_cfg["require_plan_complete"]),
        state_path=root / cfg["state"]["path"],
        lock_path=root / cfg["state"]["lock"],
        log=LogConfig(
            path=root / log_cfg["path"],
            max_bytes=int(log_cfg["max_bytes"]),
            backup_count=int(log_cfg["backup_count"]),
        ),
    )


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _validate_config(cfg: Dict[str, Any]) -> None:
    for key in ("model", "plan", "progress"):
        if not isinstance(cfg.get(key), str) or not cfg[key]:
            raise ConfigError(f"{key} must be a non-empty string")
    for key in ("prompt", "prompt_file", "agent"):
        if cfg.get(key) is not None and not isinstance(cfg[key], str):
            raise ConfigError(f"{key} must be a string or null")
    server = cfg.get("server")
    if not isinstance(server, dict):
        raise ConfigError("server section must be a mapping")
    if server.get("url") is not None and not isinstance(server["url"], str):
        raise ConfigError("server.url must be a string or null")
    for key in ("timeout", "ready_timeout"):
        if not _is_number(server.get(key)) or server[key] <= 0:
            raise ConfigError(f"server.{key} must be a positive number")
    if not isinstance(server.get("hostname"), str):
        raise ConfigError("server.hostname must be a string")
    if not isinstance(server.get("port"), int) or not 0 < server["port"] < 65536:
        raise ConfigError("server.port must be an integer between 1 and 65535")
    opencode = cfg.get("opencode")
    if not isinstance(opencode, dict):
        raise ConfigError("opencode section must be a mapping")
    if not isinstance(opencode.get("command"), (list, str)) or not opencode["command"]:
        raise ConfigError("opencode.command must be a non-empty list or string")
    error_cfg = cfg.get("error_handling")
    if not isinstance(error_cfg, dict):
        raise ConfigError("error_handling section must be a mapping")
    if error_cfg.get("strategy") not in ERROR_STRATEGIES:
        raise ConfigError(
            f"error_handling.strategy must be one of {', '.join(ERROR_STRATEGIES)}"
        )
    max_retries = error_cfg.get("max_retries")
    if not isinstance(max_retries, int) or not 0 <= max_retries <= 10:
        raise ConfigError("error_handling.max_retries must be an integer in 0..10")
    for key in ("retry_delay", "max_delay"):
        if not _is_number(error_cfg.get(key)) or error_cfg[key] < 0:
            raise ConfigError(f"error_handling.{key} must be a non-negative number")
    if (
        not _is_number(error_cfg.get("backoff_multiplier"))
        or error_cfg["backoff_multiplier"] <= 0
    ):
        raise ConfigError("error_handling.backoff_multiplier must be positive")
    fallback = cfg.get("fallback_agents")
    if fallback is not None:
        if not isinstance(fallback, dict):
            raise ConfigError("fallback_agents must be a mapping")
        for key, value in fallback.items():
            if not isinstance(key, str) or not isinstance(value, str):
                raise ConfigError("fallback_agents entries must map strings to strings")
    limits = cfg.get("limits")
    if not isinstance(limits, dict):
        raise ConfigError("limits section must be a mapping")
    max_iterations = limits.get("max_iterations")
    if max_iterations is not None and (
        not isinstance(max_iterations, int) or max_iterations <= 0
    ):
        raise ConfigError("limits.max_iterations must be a positive integer or null")
    max_time = limits.get("max_time")
    if max_time is not None and (not _is_number(max_time) or max_time <= 0):
        raise ConfigError("limits.max_time must be a positive number or null")
    headless = cfg.get("headless")
    if not isinstance(headless, dict):
        raise ConfigError("headless section must be a mapping")
    if headless.get("format") not in OUTPUT_FORMATS:
        raise ConfigError(
            f"headless.format must be one of {', '.join(OUTPUT_FORMATS)}"
        )
    for key in ("timestamps", "auto_start"):
        if not isinstance(headless.get(key), bool):
            raise ConfigError(f"headless.{key} must be boolean")
    cleanup = cfg.get("cleanup")
    if not isinstance(cleanup, dict):
        raise ConfigError("cleanup section must be a mapping")
    if not isinstance(cleanup.get("enabled"), bool):
        raise ConfigError("cleanup.enabled must be boolean")
    if not _is_number(cleanup.get("timeout")) or cleanup["timeout"] <= 0:
        raise ConfigError("cleanup.timeout must be a positive number")
    loop_cfg = cfg.get("loop")
    if not isinstance(loop_cfg, dict):
        raise ConfigError("loop section must be a mapping")
    poll = loop_cfg.get("pause_poll_interval")
    if not _is_number(poll) or poll <= 0:
        raise ConfigError("loop.pause_poll_interval must be a positive number")
    if not isinstance(loop_cfg.get("require_plan_complete"), bool):
        raise ConfigError("loop.require_plan_complete must be boolean")
    state = cfg.get("state")
    if not isinstance(state, dict):
        raise ConfigError("state section must be a mapping")
    for key in ("path", "lock"):
        if not isinstance(state.get(key), str) or not state[key]:
            raise ConfigError(f"state.{key} must be a non-empty string path")
    log_cfg = cfg.get("log")
    if not isinstance(log_cfg, dict):
        raise ConfigError("log section must be a mapping")
    if not isinstance(log_cfg.get("path", ""), str):
        raise ConfigError("log.path must be a string path")
    for key in ("max_bytes", "backup_count"):
        if not isinstance(log_cfg.get(key, 0), int):
            raise ConfigError(f"log.{key} must be an integer")
