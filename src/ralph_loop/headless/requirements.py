from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from ..loop import LoopOptions
from ..prompt import ModelFormatError, parse_model


@dataclass(frozen=True)
class RequirementsResult:
    problems: tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.problems


def check_requirements(options: LoopOptions, root: Path) -> RequirementsResult:
    """Everything that must hold before the first iteration may start."""
    problems: list[str] = []
    plan_path = root / options.plan_file
    if not plan_path.is_file():
        problems.append(f"Plan file not found: {options.plan_file}")
    try:
        parse_model(options.model)
    except ModelFormatError as exc:
        problems.append(str(exc))
    if options.prompt_file:
        prompt_path = Path(options.prompt_file)
        if not prompt_path.is_absolute():
            prompt_path = root / prompt_path
        # Missing means the built-in prompt; present but unreadable is fatal.
        if prompt_path.exists():
            try:
                prompt_path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as exc:
                problems.append(
                    f"Prompt file not readable: {options.prompt_file} ({exc})"
                )
    return RequirementsResult(tuple(problems))


def format_requirements_error(result: RequirementsResult) -> str:
    if result.ok:
        return ""
    if len(result.problems) == 1:
        return f"Cannot start: {result.problems[0]}"
    listed = "\n".join(f"  - {problem}" for problem in result.problems)
    return f"Cannot start:\n{listed}"
