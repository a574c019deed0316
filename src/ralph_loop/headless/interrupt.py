"""Single-key terminal prompts: the interrupt menu and the start gate."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from enum import Enum
from typing import Awaitable, Callable, Mapping, Optional

from ..logging_utils import log_event

_logger = logging.getLogger(__name__)

KeyReader = Callable[[], Awaitable[str]]
Writer = Callable[[str], None]

CTRL_C = "\x03"
ESCAPE = "\x1b"

CI_ENV_VARS = (
    "CI",
    "GITHUB_ACTIONS",
    "GITLAB_CI",
    "JENKINS_URL",
    "BUILDKITE",
    "CIRCLECI",
    "TRAVIS",
)


class MenuChoice(str, Enum):
    FORCE_QUIT = "force_quit"
    PAUSE = "pause"
    RESUME = "resume"


MENU_KEYS: Mapping[str, MenuChoice] = {
    "q": MenuChoice.FORCE_QUIT,
    CTRL_C: MenuChoice.FORCE_QUIT,
    "p": MenuChoice.PAUSE,
    "r": MenuChoice.RESUME,
    ESCAPE: MenuChoice.RESUME,
}

START_KEYS = frozenset({"p", "\r", "\n", " "})
QUIT_KEYS = frozenset({"q", CTRL_C, ESCAPE})

MENU_TEXT = (
    "\n[!] Interrupt received. Choose an action:\n\n"
    "    [Q] Force Quit - Exit immediately\n"
    "    [P] Pause - Pause the session\n"
    "    [R] Resume - Continue execution\n\n"
)


def is_ci(env: Optional[Mapping[str, str]] = None) -> bool:
    env = os.environ if env is None else env
    return any(env.get(name) for name in CI_ENV_VARS)


async def read_key() -> str:
    """Read one keypress from stdin without echo or line buffering."""
    if os.name == "nt":
        import msvcrt

        while not msvcrt.kbhit():
            await asyncio.sleep(0.05)
        return msvcrt.getwch()

    import termios
    import tty

    fd = sys.stdin.fileno()
    previous = termios.tcgetattr(fd)
    loop = asyncio.get_running_loop()
    future: asyncio.Future[str] = loop.create_future()

    def _on_readable() -> None:
        if future.done():
            return
        data = os.read(fd, 1)
        future.set_result(data.decode("utf-8", errors="ignore"))

    tty.setcbreak(fd)
    loop.add_reader(fd, _on_readable)
    try:
        return await future
    finally:
        loop.remove_reader(fd)
        termios.tcsetattr(fd, termios.TCSADRAIN, previous)


class InterruptMenu:
    """Force quit / pause / resume prompt shown on SIGINT."""

    def __init__(self, write: Writer, *, key_reader: KeyReader = read_key) -> None:
        self._write = write
        self._read_key = key_reader
        self._active = False

    @property
    def active(self) -> bool:
        return self._active

    async def show(self) -> MenuChoice:
        self._active = True
        self._write(MENU_TEXT)
        try:
            while True:
                key = await self._read_key()
                choice = MENU_KEYS.get(key.lower() if key else key)
                if choice is not None:
                    log_event(_logger, logging.INFO, "interrupt.choice", choice=choice.value)
                    return choice
        finally:
            self._active = False


async def wait_for_start(write: Writer, key_reader: KeyReader = read_key) -> bool:
    """True once the operator presses a start key, False on a quit key."""
    write("\n> Press [P] to start or [Q] to quit...\n\n")
    while True:
        key = (await key_reader()).lower()
        if key in QUIT_KEYS:
            return False
        if key in START_KEYS:
            write("> Starting...\n\n")
            return True


async def wait_for_quit(write: Writer, key_reader: KeyReader = read_key) -> None:
    write("> Press [Q] to quit...\n\n")
    while (await key_reader()).lower() not in QUIT_KEYS:
        pass
