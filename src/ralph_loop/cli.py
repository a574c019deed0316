import asyncio
import dataclasses
import json
import logging
import os
from pathlib import Path
from typing import Optional

import typer

from .agents.opencode import OpenCodeProvider, server_auth_from_env
from .config import OUTPUT_FORMATS, ConfigError, RalphConfig, load_config
from .control import ControlChannel
from .git import GitReader
from .headless import ExitCode, HeadlessEngine, create_output
from .locks import LockError, RunLock, read_lock_info
from .logging_utils import log_event, setup_rotating_logger
from .loop import IterationLoop, LoopOptions
from .plan import parse_plan
from .processes import ProcessRegistry, Terminator, create_process_controller
from .ratelimit import BackoffController
from .sessions import SessionManager
from .state import PersistedState, clear_state, load_state, new_state, save_state

app = typer.Typer(add_completion=False, help="Run an agent in a loop until the plan is done.")


def _load(repo: Optional[Path]) -> RalphConfig:
    try:
        return load_config(repo or Path.cwd())
    except ConfigError as exc:
        raise typer.Exit(str(exc))


def _format_ms(value: int) -> str:
    seconds = max(0, value) // 1000
    minutes, seconds = divmod(seconds, 60)
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes:02d}m {seconds:02d}s"


async def _resolve_state(config: RalphConfig, git: GitReader, reset: bool) -> PersistedState:
    if reset:
        clear_state(config.state_path)
    state = load_state(config.state_path)
    if state is not None and state.plan_file == config.plan_file:
        return state
    return new_state(config.plan_file, await git.head_hash())


async def _run_headless(config: RalphConfig, *, reset: bool) -> ExitCode:
    logger = setup_rotating_logger("ralph_loop", config.log)
    root = config.root
    control = ControlChannel.for_directory(root)
    if reset:
        control.pause.clear()
        control.done.clear()
    registry = ProcessRegistry()
    controller = create_process_controller()
    terminator = Terminator(registry, controller)
    provider = OpenCodeProvider(
        config.opencode_command,
        cwd=root,
        logger=logger.getChild("opencode"),
        auth=server_auth_from_env(),
    )
    sessions = SessionManager(
        provider,
        registry,
        controller,
        terminator,
        server_url=config.server.url,
        server_timeout=config.server.timeout,
        hostname=config.server.hostname,
        port=config.server.port,
        ready_timeout=config.server.ready_timeout,
        cwd=root,
        logger=logger,
    )
    git = GitReader(root)
    state = await _resolve_state(config, git, reset)
    options = LoopOptions(
        plan_file=config.plan_file,
        model=config.model,
        progress_file=config.progress_file,
        prompt=config.prompt,
        prompt_file=config.prompt_file,
        server_url=config.server.url,
        server_timeout=config.server.timeout,
        agent=config.agent,
        fallback_agents=dict(config.fallback_agents),
        require_plan_complete=config.require_plan_complete,
    )
    loop = IterationLoop(
        options,
        sessions,
        root=root,
        control=control,
        git=git,
        backoff=BackoffController(config.error_handling),
        pause_poll_interval=config.pause_poll_interval,
        logger=logger,
    )
    engine = HeadlessEngine(
        create_output(config.headless.format, timestamps=config.headless.timestamps),
        root=root,
        control=control,
        terminator=terminator,
        limits=config.limits,
        cleanup=config.cleanup,
        auto_start=config.headless.auto_start,
        save_state=lambda current: save_state(config.state_path, current),
        logger=logger,
    )
    log_event(
        logger,
        logging.INFO,
        "cli.run.start",
        root=str(root),
        model=config.model,
        plan=config.plan_file,
        resumed_iterations=len(state.iteration_times) or None,
    )
    return await engine.run(loop, state)


@app.command()
def run(
    repo: Optional[Path] = typer.Option(None, "--repo", help="Project path"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="provider/model"),
    plan: Optional[str] = typer.Option(None, "--plan", "-p", help="Plan file"),
    progress: Optional[str] = typer.Option(None, "--progress", help="Progress log file"),
    prompt: Optional[str] = typer.Option(None, "--prompt", help="Prompt template"),
    prompt_file: Optional[str] = typer.Option(
        None, "--prompt-file", help="Prompt template file"
    ),
    agent: Optional[str] = typer.Option(None, "--agent", "-a", help="Agent profile"),
    server: Optional[str] = typer.Option(
        None, "--server", "-s", help="Attach to an existing OpenCode server URL"
    ),
    server_timeout: Optional[float] = typer.Option(
        None, "--server-timeout", help="Health check timeout in seconds"
    ),
    output_format: Optional[str] = typer.Option(
        None, "--format", help="Output format: text, json or jsonl"
    ),
    timestamps: Optional[bool] = typer.Option(
        None, "--timestamps/--no-timestamps", help="Include event timestamps"
    ),
    max_iterations: Optional[int] = typer.Option(
        None, "--max-iterations", help="Stop after this many iterations"
    ),
    max_time: Optional[float] = typer.Option(
        None, "--max-time", help="Stop after this many seconds"
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Start without waiting for a key"),
    force: bool = typer.Option(False, "--force", help="Override an active run lock"),
    reset: bool = typer.Option(False, "--reset", help="Discard persisted state first"),
):
    """Run the loop headlessly until the plan is done or a limit is hit."""
    config = _load(repo)
    overrides = {
        "model": model,
        "plan_file": plan,
        "progress_file": progress,
        "prompt": prompt,
        "prompt_file": prompt_file,
        "agent": agent,
    }
    config = dataclasses.replace(
        config, **{key: value for key, value in overrides.items() if value is not None}
    )
    if server is not None or server_timeout is not None:
        config.server = dataclasses.replace(
            config.server,
            url=server if server is not None else config.server.url,
            timeout=server_timeout if server_timeout is not None else config.server.timeout,
        )
    if output_format is not None:
        if output_format not in OUTPUT_FORMATS:
            raise typer.Exit(
                f"Invalid format {output_format!r}; expected one of {', '.join(OUTPUT_FORMATS)}"
            )
        config.headless = dataclasses.replace(config.headless, format=output_format)
    if timestamps is not None:
        config.headless = dataclasses.replace(config.headless, timestamps=timestamps)
    if yes:
        config.headless = dataclasses.replace(config.headless, auto_start=True)
    if max_iterations is not None or max_time is not None:
        config.limits = dataclasses.replace(
            config.limits,
            max_iterations=(
                max_iterations if max_iterations is not None else config.limits.max_iterations
            ),
            max_time=max_time if max_time is not None else config.limits.max_time,
        )

    lock = RunLock(config.lock_path)
    try:
        lock.acquire(force=force)
    except LockError as exc:
        raise typer.Exit(str(exc))
    try:
        code = asyncio.run(_run_headless(config, reset=reset))
    finally:
        lock.release()
    raise typer.Exit(code=int(code))


@app.command()
def status(
    repo: Optional[Path] = typer.Option(None, "--repo", help="Project path"),
    output_json: bool = typer.Option(False, "--json", help="Emit JSON"),
):
    """Show persisted run state."""
    config = _load(repo)
    state = load_state(config.state_path)
    control = ControlChannel.for_directory(config.root)
    progress = parse_plan(config.root / config.plan_file)
    lock = read_lock_info(config.lock_path)
    payload = {
        "root": str(config.root),
        "plan": config.plan_file,
        "tasks_complete": progress.done,
        "total_tasks": progress.total,
        "iterations": len(state.iteration_times) if state else 0,
        "start_time": state.start_time if state else None,
        "elapsed_ms": state.elapsed_ms() if state else None,
        "paused_ms": state.paused_ms if state else None,
        "initial_commit": state.initial_commit_hash if state else None,
        "paused": control.pause.is_set(),
        "done_requested": control.done.is_set(),
        "runner_pid": lock.pid,
    }
    if output_json:
        typer.echo(json.dumps(payload, indent=2))
        return
    typer.echo(f"Project: {config.root}")
    typer.echo(f"Plan: {config.plan_file} ({progress.done}/{progress.total} tasks)")
    if progress.error:
        typer.echo(f"Plan error: {progress.error}")
    if state is None:
        typer.echo("State: no persisted run")
    else:
        typer.echo(f"Iterations: {len(state.iteration_times)}")
        typer.echo(f"Elapsed: {_format_ms(state.elapsed_ms())}")
        typer.echo(f"Paused: {_format_ms(state.paused_ms)}")
        typer.echo(f"Initial commit: {state.initial_commit_hash or '-'}")
    typer.echo(f"Pause requested: {payload['paused']}")
    typer.echo(f"Done requested: {payload['done_requested']}")
    typer.echo(f"Runner pid: {payload['runner_pid']}")


@app.command()
def pause(repo: Optional[Path] = typer.Option(None, "--repo", help="Project path")):
    """Ask a running loop to pause before its next step."""
    config = _load(repo)
    control = ControlChannel.for_directory(config.root)
    control.pause.set(json.dumps({"pid": os.getpid()}))
    typer.echo("Pause requested")


@app.command()
def resume(repo: Optional[Path] = typer.Option(None, "--repo", help="Project path")):
    """Let a paused loop continue."""
    config = _load(repo)
    control = ControlChannel.for_directory(config.root)
    if not control.pause.is_set():
        typer.echo("Not paused")
        return
    control.pause.clear()
    typer.echo("Resume requested")


@app.command()
def done(repo: Optional[Path] = typer.Option(None, "--repo", help="Project path")):
    """Stop the loop after the current iteration finishes."""
    config = _load(repo)
    ControlChannel.for_directory(config.root).done.set()
    typer.echo("Done requested")


@app.command()
def cleanup(
    repo: Optional[Path] = typer.Option(None, "--repo", help="Project path"),
    port: Optional[int] = typer.Option(None, "--port", help="Backend port to free"),
):
    """Kill a stray OpenCode server left listening on the configured port."""
    config = _load(repo)
    target_port = port or config.server.port
    controller = create_process_controller()
    pid = controller.find_pid_by_port(target_port)
    if pid is None:
        typer.echo(f"Nothing listening on port {target_port}")
        return
    registry = ProcessRegistry()
    registry.register(pid)
    result = asyncio.run(Terminator(registry, controller, root_pid=os.getpid()).shutdown())
    for terminated in result.terminated_pids:
        typer.echo(f"Terminated pid {terminated}")
    if not result.success:
        for error in result.errors:
            typer.echo(error, err=True)
        raise typer.Exit(code=1)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
