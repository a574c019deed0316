from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Optional

_logger = logging.getLogger(__name__)

DEFAULT_PROGRESS_FILE = "progress.txt"

DEFAULT_PROMPT = (
    "READ all of {plan} and {progress}. Pick ONE unchecked task "
    "(prefer highest-risk/highest-impact). Keep changes small: one logical "
    "change per commit. Update {plan} by checking the task off and adding "
    "notes or steps as needed. Append a brief entry to {progress} with what "
    "changed and why. Run the project's feedback loops (tests, type checks, "
    "lint) before committing; if one is missing, note it in {progress} and "
    "continue. Commit the change (update {plan} in the same commit). ONLY do "
    "one task unless GLARINGLY OBVIOUS steps should run together. Quality bar: "
    "production code, maintainable, tests when appropriate. If you learn a "
    "critical operational detail, update AGENTS.md. When ALL tasks are "
    "complete, create .ralph-done and output <promise>COMPLETE</promise>. "
    "NEVER GIT PUSH. ONLY COMMIT."
)

_FRONTMATTER_RE = re.compile(r"\A---\r?\n.*?\r?\n---[ \t]*(?:\r?\n|\Z)", re.DOTALL)


class ModelFormatError(ValueError):
    pass


def parse_model(model: str) -> tuple[str, str]:
    """Split ``provider/model`` at the first slash."""
    provider_id, sep, model_id = (model or "").partition("/")
    if not sep:
        raise ModelFormatError(
            f"Invalid model format: {model!r}. Expected 'provider/model' "
            "(e.g. 'anthropic/claude-opus-4')"
        )
    return provider_id, model_id


def strip_frontmatter(text: str) -> str:
    return _FRONTMATTER_RE.sub("", text, count=1).lstrip("\r\n")


def substitute_placeholders(template: str, plan_file: str, progress_file: str) -> str:
    return (
        template.replace("{plan}", plan_file)
        .replace("{{PLAN_FILE}}", plan_file)
        .replace("{progress}", progress_file)
        .replace("{{PROGRESS_FILE}}", progress_file)
    )


def load_template(prompt: Optional[str], prompt_file: Optional[str]) -> str:
    """Pick the template: explicit prompt, then prompt file, then the default."""
    if prompt and prompt.strip():
        return prompt
    if prompt_file:
        path = Path(prompt_file)
        if path.is_file():
            try:
                text = path.read_text(encoding="utf-8")
            except OSError as exc:
                _logger.warning("Failed to read prompt file %s: %s", path, exc)
            else:
                return strip_frontmatter(text)
    return DEFAULT_PROMPT


def build_prompt(
    plan_file: str,
    *,
    progress_file: Optional[str] = None,
    prompt: Optional[str] = None,
    prompt_file: Optional[str] = None,
) -> str:
    template = load_template(prompt, prompt_file)
    return substitute_placeholders(
        template, plan_file, progress_file or DEFAULT_PROGRESS_FILE
    )


class SteeringContext:
    """Operator notes appended to every prompt for the rest of the run."""

    def __init__(self) -> None:
        self._messages: list[str] = []

    def add(self, message: str) -> bool:
        trimmed = (message or "").strip()
        if not trimmed:
            return False
        self._messages.append(trimmed)
        return True

    def clear(self) -> None:
        self._messages.clear()

    @property
    def messages(self) -> list[str]:
        return list(self._messages)

    def apply(self, prompt: str) -> str:
        if not self._messages:
            return prompt
        joined = "\n".join(self._messages)
        return f"{prompt}\n\nAdditional context from user:\n{joined}"
