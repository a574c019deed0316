import json
import logging
from pathlib import Path

from ralph_loop.config import LogConfig
from ralph_loop.logging_utils import log_event, setup_rotating_logger


def test_rotating_loggers_are_isolated(tmp_path: Path):
    log_a = tmp_path / "a.log"
    log_b = tmp_path / "b.log"
    cfg_a = LogConfig(path=log_a, max_bytes=80, backup_count=1)
    cfg_b = LogConfig(path=log_b, max_bytes=40, backup_count=2)

    logger_a = setup_rotating_logger("ralph-test:a", cfg_a)
    logger_b = setup_rotating_logger("ralph-test:b", cfg_b)

    logger_a.info("first")
    logger_b.info("second")

    assert log_a.exists()
    assert log_b.exists()
    assert logger_a.handlers[0] is not logger_b.handlers[0]

    # Rotation should be contained per logger
    for _ in range(10):
        logger_b.info("x" * 20)
    logger_b.handlers[0].flush()
    assert (tmp_path / "b.log.1").exists()

    same_logger = setup_rotating_logger("ralph-test:a", cfg_a)
    assert same_logger is logger_a
    assert len(same_logger.handlers) == 1


def test_child_loggers_write_into_parent_file(tmp_path: Path):
    log_path = tmp_path / "ralph.log"
    logger = setup_rotating_logger(
        "ralph-test:child", LogConfig(path=log_path, max_bytes=10_000, backup_count=1)
    )
    log_event(logger.getChild("loop"), logging.INFO, "loop.iteration.start", iteration=3)
    logger.handlers[0].flush()

    line = log_path.read_text(encoding="utf-8").strip().splitlines()[-1]
    assert "loop.iteration.start" in line
    payload = json.loads(line.split("loop.iteration.start ", 1)[1])
    assert payload == {"iteration": 3}
