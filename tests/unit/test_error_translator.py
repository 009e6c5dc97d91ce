"""Tests for ErrorTranslator and the quota/auth phrase heuristics."""

import pytest

from agent_pipeline.errors.exceptions import (
    AgentExecutionError,
    ExecutionCancelledError,
    IdleTimeoutError,
    MissingOutputError,
    ProcessExitError,
    ProcessTimeoutError,
    StartupTimeoutError,
)
from agent_pipeline.errors.translator import ErrorCategory, ErrorTranslator, UserFriendlyError, classify_text


class TestClassifyText:
    """Phrase matching against backend output."""

    @pytest.mark.parametrize("text", [
        "Credit balance is too low",
        "insufficient quota for this request",
        "USAGE LIMIT reached for this week",
        "Error: out of credits",
    ])
    def test_billing_phrases(self, text):
        assert classify_text(text) == ErrorCategory.QUOTA_EXHAUSTED

    @pytest.mark.parametrize("text", [
        "rate limit exceeded",
        "HTTP 429 Too Many Requests",
        "rate_limit_error",
    ])
    def test_rate_limit_phrases(self, text):
        assert classify_text(text) == ErrorCategory.RATE_LIMIT

    @pytest.mark.parametrize("text", [
        "401 Unauthorized",
        "invalid x-api-key",
        "Authentication failed for this account",
    ])
    def test_auth_phrases(self, text):
        assert classify_text(text) == ErrorCategory.AUTHENTICATION

    def test_billing_wins_over_rate_limit(self):
        """Quota wording that also mentions a limit is still quota exhaustion."""
        assert classify_text("usage limit reached: rate limit applies") == ErrorCategory.QUOTA_EXHAUSTED

    def test_rate_limit_wins_over_auth(self):
        assert classify_text("429 rate limit (unauthorized retries)") == ErrorCategory.RATE_LIMIT

    def test_no_match(self):
        assert classify_text("segmentation fault") is None
        assert classify_text("") is None
        assert classify_text(None) is None

    def test_number_inside_word_does_not_match(self):
        assert classify_text("processed 4290 files") is None


class TestTranslate:

    def test_quota_exhausted(self):
        result = ErrorTranslator().translate(ProcessExitError(1, "Credit balance is too low"))

        assert isinstance(result, UserFriendlyError)
        assert result.category == ErrorCategory.QUOTA_EXHAUSTED
        assert result.title == "Usage limit reached"
        assert len(result.actions) > 0
        assert not result.show_technical

    def test_plain_text_input(self):
        result = ErrorTranslator().translate("Invalid API key")

        assert result.category == ErrorCategory.AUTHENTICATION
        assert result.title == "Authentication failed"

    def test_cancellation_and_timeout_by_type(self):
        translator = ErrorTranslator()

        assert translator.categorize(ExecutionCancelledError()) == ErrorCategory.CANCELLED
        assert translator.categorize(IdleTimeoutError(30)) == ErrorCategory.TIMEOUT
        assert translator.categorize(StartupTimeoutError(30)) == ErrorCategory.TIMEOUT

    def test_startup_timeout_explanation(self):
        result = ErrorTranslator().translate(StartupTimeoutError(120))

        assert "never started" in result.explanation

    def test_unknown_error_shows_technical_details(self):
        result = ErrorTranslator().translate(RuntimeError("disk on fire"))

        assert result.category == ErrorCategory.UNKNOWN
        assert result.show_technical
        assert "disk on fire" in result.explanation

    def test_format_for_cli(self):
        translator = ErrorTranslator()

        output = translator.format_for_cli(translator.translate("rate limit exceeded"))

        assert "[bold red]API rate limit exceeded[/]" in output
        assert "How to fix:" in output
        assert "  1. " in output


class TestExceptionTaxonomy:

    def test_cancellation_is_not_a_timeout(self):
        assert not isinstance(ExecutionCancelledError(), ProcessTimeoutError)
        assert isinstance(ExecutionCancelledError(), AgentExecutionError)

    def test_timeout_phases(self):
        assert StartupTimeoutError(5).phase == "startup"
        assert IdleTimeoutError(5).phase == "idle"
        assert str(IdleTimeoutError(2.5)) == "Process timed out after 2.5s without output"

    def test_exit_error_messages(self):
        assert str(ProcessExitError(1, "  boom \n")) == "boom"
        assert str(ProcessExitError(-9, "", "SIGKILL")) == "Process exited with code -9 (signal: SIGKILL)"
        assert str(MissingOutputError()) == "CLI process exited with code 0 and no output"
