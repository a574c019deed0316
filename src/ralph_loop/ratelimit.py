"""Rate-limit classification and retry backoff.

Only stderr (or an error message standing in for it) is inspected. Agents
routinely print code and prose that mention "rate limit" or "429" on stdout,
so scanning it produces false positives.
"""

from __future__ import annotations

import random
import re
from dataclasses import dataclass, field
from typing import Callable, Mapping, Optional, Pattern

from .config import ErrorHandlingConfig
from .utils import now_ms

MAX_RETRY_AFTER_SECONDS = 3600
RATE_LIMIT_EXIT_CODES = frozenset({1, 2, 429})
JITTER_RATIO = 0.1

_RETRY_AFTER_S = re.compile(r"retry[- ]?after[:\s]+(\d+)\s*s", re.IGNORECASE)
_SECONDS = re.compile(r"(\d+)\s*seconds?", re.IGNORECASE)


@dataclass(frozen=True)
class _RatePattern:
    pattern: Pattern[str]
    retry_after: Optional[Pattern[str]] = None


def _p(pattern: str, retry_after: Optional[Pattern[str]] = None) -> _RatePattern:
    return _RatePattern(re.compile(pattern, re.IGNORECASE), retry_after)


COMMON_PATTERNS: tuple[_RatePattern, ...] = (
    _p(
        r"(?:HTTP|status|error|code|response)[\s:]*429|429\s*(?:too many|rate limit|error)",
        _RETRY_AFTER_S,
    ),
    # Separator required so package names like "ratelimit" don't match.
    _p(r"rate[- ]limit", _RETRY_AFTER_S),
    _p(r"too many requests", _SECONDS),
    _p(r"quota[- ]?exceeded", _SECONDS),
    _p(r"\boverloaded\b", _SECONDS),
)

AGENT_PATTERNS: dict[str, tuple[_RatePattern, ...]] = {
    "claude": (
        _p(r"anthropic.*rate[- ]?limit", _RETRY_AFTER_S),
        _p(r"API rate limit exceeded", re.compile(r"wait[:\s]+(\d+)\s*s", re.I)),
        _p(r"claude.*is currently overloaded", _SECONDS),
        _p(r"api[- ]?error.*429", re.compile(r"retry[- ]?after[:\s]+(\d+)", re.I)),
    ),
    "opencode": (
        _p(r"openai.*rate[- ]?limit", _RETRY_AFTER_S),
        _p(r"tokens per minute", _SECONDS),
        _p(r"requests per minute", _SECONDS),
        _p(r"azure.*throttl", _SECONDS),
    ),
}

# Provider ids that share an agent's pattern set.
AGENT_ALIASES = {"anthropic": "claude"}

LOOSE_PATTERNS: tuple[Pattern[str], ...] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"throttl",
        r"limit.*exceeded",
        r"exceeded.*limit",
        r"capacity",
        r"backoff",
    )
)

ANY_RETRY_AFTER: tuple[Pattern[str], ...] = (
    _RETRY_AFTER_S,
    re.compile(r"wait[:\s]+(\d+)\s*s", re.IGNORECASE),
    re.compile(r"try again in[:\s]+(\d+)\s*s", re.IGNORECASE),
    re.compile(r"(\d+)\s*seconds?(?:\s*(?:before|until|wait))", re.IGNORECASE),
)


@dataclass(frozen=True)
class RateLimitResult:
    is_rate_limit: bool
    message: Optional[str] = None
    retry_after: Optional[int] = None


NOT_RATE_LIMITED = RateLimitResult(is_rate_limit=False)


def _clamp_retry_after(raw: str) -> Optional[int]:
    try:
        seconds = int(raw)
    except (TypeError, ValueError):
        return None
    if 0 < seconds <= MAX_RETRY_AFTER_SECONDS:
        return seconds
    return None


def _excerpt(output: str, match: re.Match) -> str:
    start = max(0, match.start() - 50)
    end = min(len(output), match.end() + 100)
    message = re.sub(r"\s+", " ", output[start:end].strip())
    if len(message) > 200:
        message = message[:200] + "..."
    return message


class RateLimitDetector:
    """Classify a failure as transient rate limiting.

    Pattern order: agent-specific, common, then a loose fallback that only
    applies when the exit code is in RATE_LIMIT_EXIT_CODES. First match wins.
    """

    def patterns_for(self, agent_id: Optional[str]) -> tuple[_RatePattern, ...]:
        key = (agent_id or "").strip().lower()
        key = AGENT_ALIASES.get(key, key)
        return AGENT_PATTERNS.get(key, ()) + COMMON_PATTERNS

    def detect(
        self,
        stderr: str,
        exit_code: Optional[int] = None,
        agent_id: Optional[str] = None,
    ) -> RateLimitResult:
        output = stderr or ""
        if not output.strip() and exit_code == 0:
            return NOT_RATE_LIMITED

        for entry in self.patterns_for(agent_id):
            match = entry.pattern.search(output)
            if match is None:
                continue
            retry_after = None
            if entry.retry_after is not None:
                found = entry.retry_after.search(output)
                if found:
                    retry_after = _clamp_retry_after(found.group(1))
            return RateLimitResult(
                is_rate_limit=True,
                message=_excerpt(output, match),
                retry_after=retry_after,
            )

        if exit_code is not None and exit_code in RATE_LIMIT_EXIT_CODES:
            for pattern in LOOSE_PATTERNS:
                match = pattern.search(output)
                if match is not None:
                    return RateLimitResult(
                        is_rate_limit=True,
                        message=_excerpt(output, match),
                        retry_after=self.extract_any_retry_after(output),
                    )
        return NOT_RATE_LIMITED

    @staticmethod
    def extract_any_retry_after(output: str) -> Optional[int]:
        for pattern in ANY_RETRY_AFTER:
            match = pattern.search(output)
            if match:
                seconds = _clamp_retry_after(match.group(1))
                if seconds is not None:
                    return seconds
        return None


def resolve_fallback_agent(
    model: str, mappings: Optional[Mapping[str, str]]
) -> Optional[str]:
    """Exact key match, else substring match in either direction, else None."""
    if not model or not mappings:
        return None
    exact = mappings.get(model)
    if exact:
        return exact
    for key, fallback in mappings.items():
        if not key or not fallback:
            continue
        if key in model or model in key:
            return fallback
    return None


@dataclass
class BackoffState:
    delay: float = 0.0
    retry_at: Optional[int] = None
    failures: int = 0

    @property
    def active(self) -> bool:
        return self.failures > 0

    def reset(self) -> None:
        self.delay = 0.0
        self.retry_at = None
        self.failures = 0


@dataclass(frozen=True)
class BackoffDecision:
    strategy: str
    should_continue: bool
    delay: float
    retry_at: Optional[int]
    attempt: int
    message: str

    @property
    def retry(self) -> bool:
        return self.strategy == "retry" and self.should_continue


@dataclass
class BackoffController:
    """Turn consecutive iteration failures into retry/skip/abort decisions."""

    config: ErrorHandlingConfig = field(default_factory=ErrorHandlingConfig)
    state: BackoffState = field(default_factory=BackoffState)
    rand: Callable[[], float] = random.random
    clock: Callable[[], int] = now_ms

    def compute_delay(self, failures: int) -> float:
        base = self.config.retry_delay * (self.config.backoff_multiplier**failures)
        capped = min(base, self.config.max_delay)
        return capped + capped * JITTER_RATIO * self.rand()

    def record_failure(
        self, error: str, retry_after: Optional[int] = None
    ) -> BackoffDecision:
        strategy = self.config.strategy
        if strategy == "skip":
            self.state.reset()
            return BackoffDecision(
                strategy="skip",
                should_continue=True,
                delay=0.0,
                retry_at=None,
                attempt=0,
                message=f"Skipping iteration due to error: {error}",
            )
        if strategy != "retry":
            self.state.reset()
            return BackoffDecision(
                strategy="abort",
                should_continue=False,
                delay=0.0,
                retry_at=None,
                attempt=0,
                message=f"Aborting due to error: {error}",
            )
        if self.state.failures >= self.config.max_retries:
            attempts = self.state.failures
            self.state.reset()
            return BackoffDecision(
                strategy="abort",
                should_continue=False,
                delay=0.0,
                retry_at=None,
                attempt=attempts,
                message=f"Max retries ({self.config.max_retries}) exceeded: {error}",
            )
        if retry_after is not None:
            delay = float(retry_after)
        else:
            delay = self.compute_delay(self.state.failures)
        self.state.failures += 1
        self.state.delay = delay
        self.state.retry_at = self.clock() + int(delay * 1000)
        return BackoffDecision(
            strategy="retry",
            should_continue=True,
            delay=delay,
            retry_at=self.state.retry_at,
            attempt=self.state.failures,
            message=(
                f"Retry attempt {self.state.failures}/{self.config.max_retries} "
                f"after {int(delay * 1000)}ms"
            ),
        )

    def record_success(self) -> bool:
        """Reset after a successful iteration. True if a backoff was active."""
        was_active = self.state.active
        self.state.reset()
        return was_active
