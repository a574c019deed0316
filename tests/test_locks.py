import json
import os
from pathlib import Path

import pytest

from ralph_loop import locks
from ralph_loop.locks import LockError, RunLock, read_lock_info


def test_acquire_writes_pid_and_release_removes(tmp_path: Path):
    path = tmp_path / ".ralph-lock"
    lock = RunLock(path)
    lock.acquire()
    assert read_lock_info(path).pid == os.getpid()
    lock.release()
    assert not path.exists()


def test_stale_lock_is_replaced(tmp_path: Path, monkeypatch):
    path = tmp_path / ".ralph-lock"
    path.write_text(json.dumps({"pid": 999999}), encoding="utf-8")
    monkeypatch.setattr(locks, "process_alive", lambda pid: False)

    with RunLock(path):
        assert read_lock_info(path).pid == os.getpid()


def test_live_lock_blocks_unless_forced(tmp_path: Path, monkeypatch):
    path = tmp_path / ".ralph-lock"
    path.write_text(json.dumps({"pid": 424242}), encoding="utf-8")
    monkeypatch.setattr(locks, "process_alive", lambda pid: True)

    with pytest.raises(LockError):
        RunLock(path).acquire()

    lock = RunLock(path)
    lock.acquire(force=True)
    assert read_lock_info(path).pid == os.getpid()
    lock.release()


def test_read_lock_info_accepts_plain_pid(tmp_path: Path):
    path = tmp_path / ".ralph-lock"
    path.write_text("1234\n", encoding="utf-8")
    assert read_lock_info(path).pid == 1234
    path.write_text("garbage", encoding="utf-8")
    assert read_lock_info(path).pid is None
