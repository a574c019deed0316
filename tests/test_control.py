from pathlib import Path

from ralph_loop.control import (
    DONE_FILENAME,
    PAUSE_FILENAME,
    ControlChannel,
    FileSignal,
)


def test_file_signal_tracks_presence(tmp_path: Path):
    signal = FileSignal(tmp_path / PAUSE_FILENAME)
    assert not signal.is_set()
    signal.set('{"pid": 1}')
    assert signal.is_set()
    assert (tmp_path / PAUSE_FILENAME).read_text(encoding="utf-8") == '{"pid": 1}'
    signal.clear()
    assert not signal.is_set()


def test_clear_missing_file_is_noop(tmp_path: Path):
    FileSignal(tmp_path / DONE_FILENAME).clear()


def test_for_directory_uses_sentinel_names(tmp_path: Path):
    control = ControlChannel.for_directory(tmp_path)
    (tmp_path / DONE_FILENAME).touch()
    assert control.done.is_set()
    assert not control.pause.is_set()


def test_in_memory_channel():
    control = ControlChannel.in_memory()
    control.pause.set()
    assert control.pause.is_set()
    control.pause.clear()
    assert not control.pause.is_set()
    assert control.pause.clear_calls == 1
