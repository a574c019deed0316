import asyncio
import json
import os
import signal
import sys
from pathlib import Path
from typing import Any, Optional

import pytest
from fakes import FakeGit, FakeProvider, NullController, make_sessions

from ralph_loop.config import CleanupConfig, ErrorHandlingConfig, LimitsConfig
from ralph_loop.control import ControlChannel
from ralph_loop.events import CompleteEvent, ErrorEvent, ModelEvent
from ralph_loop.headless import ANY_EVENT, ExitCode, HeadlessEngine, create_output
from ralph_loop.headless.interrupt import (
    InterruptMenu,
    MenuChoice,
    is_ci,
    wait_for_start,
)
from ralph_loop.headless.requirements import (
    check_requirements,
    format_requirements_error,
)
from ralph_loop.loop import IterationLoop, LoopOptions
from ralph_loop.processes import ProcessRegistry, Terminator
from ralph_loop.ratelimit import BackoffController
from ralph_loop.state import PersistedState, new_state

posix_only = pytest.mark.skipif(sys.platform.startswith("win"), reason="posix signals")


class Capture:
    def __init__(self) -> None:
        self.chunks: list[str] = []

    def __call__(self, text: str) -> None:
        self.chunks.append(text)

    def json_lines(self) -> list[dict]:
        return [json.loads(line) for line in "".join(self.chunks).splitlines() if line]

    def types(self) -> list[str]:
        return [entry["type"] for entry in self.json_lines()]


def _keys(*keys: str):
    pending = list(keys)

    async def _read() -> str:
        if not pending:
            await asyncio.sleep(3600)
        return pending.pop(0)

    return _read


class Harness:
    def __init__(
        self,
        project: Path,
        provider: FakeProvider,
        *,
        limits: Optional[LimitsConfig] = None,
        error_handling: Optional[ErrorHandlingConfig] = None,
        options: Optional[dict[str, Any]] = None,
        **engine_kwargs: Any,
    ) -> None:
        self.provider = provider
        self.control = ControlChannel.in_memory()
        self.out = Capture()
        self.prompts = Capture()
        self.saved: list[int] = []
        self.state: PersistedState = new_state("plan.md", "abc123")
        self.loop = IterationLoop(
            LoopOptions(
                plan_file="plan.md",
                model="anthropic/claude-opus-4",
                **(options or {}),
            ),
            make_sessions(provider, project, server_url="http://localhost:4096"),
            root=project,
            control=self.control,
            git=FakeGit(),
            backoff=BackoffController(
                error_handling or ErrorHandlingConfig(retry_delay=0.01),
                rand=lambda: 0.0,
            ),
            pause_poll_interval=0.02,
        )
        engine_kwargs.setdefault("interactive", False)
        self.engine = HeadlessEngine(
            create_output("jsonl", write=self.out),
            root=project,
            control=self.control,
            terminator=Terminator(ProcessRegistry(), NullController()),
            limits=limits,
            cleanup=CleanupConfig(enabled=True, timeout=5.0),
            write=self.prompts,
            save_state=lambda state: self.saved.append(len(state.iteration_times)),
            env={},
            **engine_kwargs,
        )

    async def run(self) -> ExitCode:
        return await asyncio.wait_for(self.engine.run(self.loop, self.state), timeout=10)


@pytest.mark.anyio
async def test_done_file_exits_success_with_summary(project: Path):
    provider = FakeProvider()
    harness = Harness(project, provider)
    provider.scripts = [["connected", ("tool", "bash"), harness.control.done.set, "idle"]]

    code = await harness.run()

    assert code == ExitCode.SUCCESS
    types = harness.out.types()
    assert types[0] == "start"
    assert types[-2:] == ["complete", "summary"]
    assert "iteration_start" in types and "iteration_end" in types
    summary = harness.out.json_lines()[-1]
    assert summary["exit_code"] == 0
    assert summary["iterations"] == 1
    assert (summary["tasks_complete"], summary["total_tasks"]) == (1, 2)
    assert harness.saved == [1]
    assert harness.engine.cleanup_result is not None
    assert harness.engine.cleanup_result.success


@pytest.mark.anyio
async def test_max_iterations_reached(project: Path):
    harness = Harness(project, FakeProvider(), limits=LimitsConfig(max_iterations=2))

    code = await harness.run()

    assert code == ExitCode.LIMIT_REACHED
    assert harness.out.types().count("iteration_end") == 2
    assert harness.out.types().count("iteration_start") == 2
    assert "complete" not in harness.out.types()
    assert harness.out.json_lines()[-1]["exit_code"] == 3


@pytest.mark.anyio
async def test_max_time_reached(project: Path):
    provider = FakeProvider(default_script=("connected", ("sleep", 60), "idle"))
    harness = Harness(project, provider, limits=LimitsConfig(max_time=0.3))

    code = await harness.run()

    assert code == ExitCode.LIMIT_REACHED
    assert provider.aborted == ["ses-1"]
    assert "iteration_end" not in harness.out.types()


@pytest.mark.anyio
async def test_missing_plan_fails_before_start(project: Path):
    (project / "plan.md").unlink()
    provider = FakeProvider()
    harness = Harness(project, provider)

    code = await harness.run()

    assert code == ExitCode.ERROR
    lines = harness.out.json_lines()
    assert lines[0]["type"] == "error"
    assert "Plan file not found" in lines[0]["message"]
    assert "start" not in harness.out.types()
    assert provider.health_checks == []


@pytest.mark.anyio
async def test_loop_error_exits_with_error(project: Path):
    provider = FakeProvider(default_script=("connected", ("fail", "boom")))
    harness = Harness(project, provider, error_handling=ErrorHandlingConfig(strategy="abort"))

    code = await harness.run()

    assert code == ExitCode.ERROR
    errors = [line for line in harness.out.json_lines() if line["type"] == "error"]
    assert errors[0]["message"] == "Aborting due to error: boom"


@pytest.mark.anyio
async def test_retry_emits_error_then_backoff_then_cleared(project: Path):
    provider = FakeProvider()
    harness = Harness(project, provider)
    provider.scripts = [
        ["connected", ("fail", "boom")],
        ["connected", harness.control.done.set, "idle"],
    ]

    assert await harness.run() == ExitCode.SUCCESS

    types = harness.out.types()
    assert types.index("error") < types.index("backoff") < types.index("backoff_cleared")


@pytest.mark.anyio
async def test_cancel_at_start_prompt(project: Path):
    provider = FakeProvider()
    harness = Harness(
        project,
        provider,
        auto_start=False,
        interactive=True,
        key_reader=_keys("x", "q"),
    )

    code = await harness.run()

    assert code == ExitCode.INTERRUPTED
    assert "start" not in harness.out.types()
    assert "Press [P] to start" in "".join(harness.prompts.chunks)
    assert provider.sessions == []


@pytest.mark.anyio
async def test_start_prompt_accepts_start_key(project: Path):
    provider = FakeProvider()
    harness = Harness(
        project,
        provider,
        auto_start=False,
        interactive=True,
        key_reader=_keys("p"),
        limits=LimitsConfig(max_iterations=1),
    )

    assert await harness.run() == ExitCode.LIMIT_REACHED
    assert harness.out.types()[0] == "start"


@posix_only
@pytest.mark.anyio
async def test_sigterm_interrupts(project: Path):
    provider = FakeProvider(default_script=("connected", ("sleep", 60), "idle"))
    harness = Harness(project, provider)
    harness.engine.on(
        "iteration_start", lambda event: os.kill(os.getpid(), signal.SIGTERM)
    )

    code = await harness.run()

    assert code == ExitCode.INTERRUPTED
    assert harness.out.json_lines()[-1]["exit_code"] == 2


@posix_only
@pytest.mark.anyio
async def test_sigint_without_terminal_quits(project: Path):
    provider = FakeProvider(default_script=("connected", ("sleep", 60), "idle"))
    harness = Harness(project, provider)
    harness.engine.on(
        "iteration_start", lambda event: os.kill(os.getpid(), signal.SIGINT)
    )

    assert await harness.run() == ExitCode.INTERRUPTED


@posix_only
@pytest.mark.anyio
async def test_interrupt_menu_pause_writes_sentinel(project: Path):
    provider = FakeProvider(default_script=("connected", ("tool", "bash"), "idle"))
    harness = Harness(
        project,
        provider,
        interactive=True,
        key_reader=_keys("p"),
        limits=LimitsConfig(max_iterations=3),
    )
    sent = []

    def _interrupt_once(event) -> None:
        if not sent:
            sent.append(True)
            os.kill(os.getpid(), signal.SIGINT)

    def _resume_later(event) -> None:
        asyncio.get_running_loop().call_later(0.05, harness.control.pause.clear)

    harness.engine.on("iteration_start", _interrupt_once)
    harness.engine.on("pause", _resume_later)

    code = await harness.run()

    assert code == ExitCode.LIMIT_REACHED
    types = harness.out.types()
    assert "pause" in types and "resume" in types
    assert "Interrupt received" in "".join(harness.prompts.chunks)


@pytest.mark.anyio
async def test_listeners_and_timestamps(project: Path):
    harness = Harness(project, FakeProvider())
    engine = harness.engine
    seen: list[Any] = []
    everything: list[str] = []

    def _boom(event) -> None:
        raise RuntimeError("listener failure")

    engine.on("model", seen.append)
    engine.on("model", _boom)
    engine.on(ANY_EVENT, lambda event: everything.append(event.type))

    engine.emit(ModelEvent("anthropic/claude-opus-4"))
    engine.off("model", seen.append)
    engine.emit(ModelEvent("anthropic/claude-sonnet-4"))
    engine.emit(CompleteEvent(timestamp=42))

    assert len(seen) == 1
    assert seen[0].timestamp is not None
    assert everything == ["model", "model", "complete"]


def test_raw_output_reaches_the_sink(project: Path):
    harness = Harness(project, FakeProvider())

    harness.engine.on_output("$ make test\n")

    (entry,) = harness.out.json_lines()
    assert entry["type"] == "output"
    assert entry["data"] == "$ make test\n"


def test_first_abort_decides_exit_code(project: Path):
    engine = Harness(project, FakeProvider()).engine
    engine.request_abort(ExitCode.LIMIT_REACHED, "limit")
    engine.request_abort(ExitCode.INTERRUPTED, "signal")
    assert engine.exit_code == ExitCode.LIMIT_REACHED
    assert engine.abort_event.is_set()


def test_stats_only_emitted_on_change(project: Path):
    harness = Harness(project, FakeProvider())
    engine = harness.engine
    engine.on_commits_updated(1)
    engine.on_diff_updated(0, 0)
    engine.on_commits_updated(1)
    engine.on_diff_updated(5, 1)
    stats = [line for line in harness.out.json_lines() if line["type"] == "stats"]
    assert stats == [
        {"type": "stats", "commits": 1, "lines_added": 0, "lines_removed": 0},
        {"type": "stats", "commits": 1, "lines_added": 5, "lines_removed": 1},
    ]


def test_requirements(project: Path):
    ok = check_requirements(LoopOptions(plan_file="plan.md", model="a/b"), project)
    assert ok.ok
    assert format_requirements_error(ok) == ""

    bad = check_requirements(LoopOptions(plan_file="missing.md", model="nope"), project)
    assert len(bad.problems) == 2
    assert format_requirements_error(bad).startswith("Cannot start:\n  - ")

    # A configured prompt file that does not exist falls back to the default.
    absent = check_requirements(
        LoopOptions(plan_file="plan.md", model="a/b", prompt_file=".ralph-prompt.md"),
        project,
    )
    assert absent.ok


def test_is_ci():
    assert is_ci({"CI": "true"})
    assert is_ci({"GITHUB_ACTIONS": "1"})
    assert not is_ci({})


@pytest.mark.anyio
async def test_interrupt_menu_choices():
    out: list[str] = []
    menu = InterruptMenu(out.append, key_reader=_keys("z", "P"))
    assert await menu.show() is MenuChoice.PAUSE
    assert not menu.active
    assert "Force Quit" in out[0]

    menu = InterruptMenu(out.append, key_reader=_keys("\x1b"))
    assert await menu.show() is MenuChoice.RESUME
    menu = InterruptMenu(out.append, key_reader=_keys("\x03"))
    assert await menu.show() is MenuChoice.FORCE_QUIT


@pytest.mark.anyio
async def test_wait_for_start():
    out: list[str] = []
    assert await wait_for_start(out.append, _keys("\r")) is True
    assert await wait_for_start(out.append, _keys("q")) is False


def test_error_event_round_trip_through_output(project: Path):
    harness = Harness(project, FakeProvider())
    harness.engine.emit(ErrorEvent("bad"))
    assert harness.out.json_lines() == [{"type": "error", "message": "bad"}]
