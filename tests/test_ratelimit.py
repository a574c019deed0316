import pytest

from ralph_loop.config import ErrorHandlingConfig
from ralph_loop.ratelimit import (
    BackoffController,
    RateLimitDetector,
    resolve_fallback_agent,
)


@pytest.mark.parametrize(
    "stderr",
    [
        "Error: HTTP 429 Too Many Requests",
        "rate limit reached for requests",
        "Rate-limit hit, slow down",
        "quota exceeded for this project",
        "The server is overloaded, try later",
    ],
)
def test_common_patterns_detected(stderr: str):
    assert RateLimitDetector().detect(stderr).is_rate_limit


def test_agent_specific_retry_after():
    result = RateLimitDetector().detect(
        "API rate limit exceeded, wait: 30s", agent_id="claude"
    )
    assert result.is_rate_limit
    assert result.retry_after == 30


def test_provider_alias_uses_agent_patterns():
    detector = RateLimitDetector()
    assert detector.patterns_for("anthropic") == detector.patterns_for("claude")


def test_package_name_is_not_a_rate_limit():
    assert not RateLimitDetector().detect("ModuleNotFoundError: ratelimit").is_rate_limit


def test_loose_patterns_need_rate_limit_exit_code():
    detector = RateLimitDetector()
    assert not detector.detect("request throttled").is_rate_limit
    result = detector.detect("request throttled, try again in 12s", exit_code=1)
    assert result.is_rate_limit
    assert result.retry_after == 12


def test_clean_exit_with_empty_stderr():
    assert not RateLimitDetector().detect("", exit_code=0).is_rate_limit


def test_retry_after_out_of_range_ignored():
    result = RateLimitDetector().detect("429 too many requests; retry-after: 99999s")
    assert result.is_rate_limit
    assert result.retry_after is None


def test_resolve_fallback_agent():
    mapping = {"anthropic/claude-opus-4": "anthropic/claude-sonnet-4"}
    assert resolve_fallback_agent("anthropic/claude-opus-4", mapping) == (
        "anthropic/claude-sonnet-4"
    )
    assert resolve_fallback_agent("claude-opus-4", mapping) == "anthropic/claude-sonnet-4"
    assert resolve_fallback_agent("openai/gpt-5", mapping) is None
    assert resolve_fallback_agent("openai/gpt-5", None) is None


def _controller(**overrides) -> BackoffController:
    config = ErrorHandlingConfig(**overrides)
    return BackoffController(config=config, rand=lambda: 0.0, clock=lambda: 1_000)


def test_backoff_grows_then_aborts():
    controller = _controller(max_retries=2, retry_delay=1.0, backoff_multiplier=2.0)

    first = controller.record_failure("boom")
    assert first.retry
    assert first.delay == 1.0
    assert first.retry_at == 2_000

    second = controller.record_failure("boom")
    assert second.retry
    assert second.delay == 2.0
    assert second.attempt == 2

    third = controller.record_failure("boom")
    assert not third.should_continue
    assert third.strategy == "abort"
    assert "Max retries (2) exceeded" in third.message


def test_backoff_caps_delay_and_honors_retry_after():
    controller = _controller(retry_delay=50.0, backoff_multiplier=10.0, max_delay=60.0)
    controller.record_failure("boom")
    assert controller.record_failure("boom").delay == 60.0
    assert controller.record_failure("boom", retry_after=7).delay == 7.0


def test_skip_and_abort_strategies():
    skip = _controller(strategy="skip").record_failure("boom")
    assert skip.should_continue and not skip.retry
    abort = _controller(strategy="abort").record_failure("boom")
    assert not abort.should_continue


def test_record_success_reports_cleared_backoff():
    controller = _controller()
    assert controller.record_success() is False
    controller.record_failure("boom")
    assert controller.record_success() is True
    assert controller.state.failures == 0
