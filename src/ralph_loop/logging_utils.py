import collections
import json
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional, OrderedDict

from .config import LogConfig

_MAX_CACHED_LOGGERS = 16
_LOGGER_CACHE: "OrderedDict[str, logging.Logger]" = collections.OrderedDict()


def setup_rotating_logger(name: str, log_config: LogConfig) -> logging.Logger:
    """
    Configure (or retrieve) a rotating file logger for the given name.

    The logger owns exactly one handler; child loggers (``name.*``) propagate
    into it, so modules can keep using ``logging.getLogger(__name__)``.
    """
    existing = _LOGGER_CACHE.get(name)
    if existing is not None:
        _LOGGER_CACHE.move_to_end(name)
        return existing

    log_path: Path = log_config.path
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        log_path,
        maxBytes=log_config.max_bytes,
        backupCount=log_config.backup_count,
        encoding="utf-8",
    )
    handler.setFormatter(
        logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    )

    logger = logging.getLogger(name)
    logger.handlers.clear()
    logger.setLevel(logging.INFO)
    logger.addHandler(handler)
    logger.propagate = False

    _LOGGER_CACHE[name] = logger
    _LOGGER_CACHE.move_to_end(name)
    while len(_LOGGER_CACHE) > _MAX_CACHED_LOGGERS:
        _, evicted = _LOGGER_CACHE.popitem(last=False)
        for h in list(evicted.handlers):
            try:
                h.close()
            except Exception:
                pass
        evicted.handlers.clear()
    return logger


def log_event(
    logger: logging.Logger,
    level: int,
    event: str,
    *,
    exc: Optional[BaseException] = None,
    **fields: Any,
) -> None:
    """Log a structured event as ``event {json fields}``."""
    if not logger.isEnabledFor(level):
        return
    payload = {key: value for key, value in fields.items() if value is not None}
    if exc is not None:
        payload["error"] = str(exc) or exc.__class__.__name__
        payload["error_type"] = exc.__class__.__name__
    try:
        encoded = json.dumps(payload, default=str, sort_keys=True)
    except (TypeError, ValueError):
        encoded = str(payload)
    logger.log(level, "%s %s", event, encoded)
