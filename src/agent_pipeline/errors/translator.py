"""Translate technical errors and backend text to user-friendly messages."""

import re
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Union

from .exceptions import (
    ExecutionCancelledError,
    ProcessTimeoutError,
    StartupTimeoutError,
)


class ErrorCategory(str, Enum):
    """Coarse failure categories shown to users."""
    QUOTA_EXHAUSTED = "quota_exhausted"
    RATE_LIMIT = "rate_limit"
    AUTHENTICATION = "authentication"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


# Phrase heuristics matched case-insensitively against backend output.
# Order matters: billing wording often also contains "limit".
BILLING_PATTERNS = [
    "insufficient balance",
    "insufficient quota",
    "credit balance",
    "out of credits",
    "insufficient credits",
    "quota exceeded",
    "usage limit",
    "budget exceeded",
]
RATE_LIMIT_PATTERNS = [
    "rate limit",
    "rate_limit",
    "limit reached",
    "too many requests",
    r"\b429\b",
]
AUTH_PATTERNS = [
    "unauthorized",
    "invalid api key",
    "invalid x-api-key",
    "invalid key",
    "forbidden",
    "authentication failed",
    r"\b401\b",
]


def _matches_any(text: str, patterns: List[str]) -> bool:
    return any(re.search(p, text, re.IGNORECASE) for p in patterns)


def classify_text(text: Optional[str]) -> Optional[ErrorCategory]:
    """Best-effort detection of quota, rate-limit or auth failures in free text.

    Returns None when nothing matched. Never raises.
    """
    if not text:
        return None
    if _matches_any(text, BILLING_PATTERNS):
        return ErrorCategory.QUOTA_EXHAUSTED
    if _matches_any(text, RATE_LIMIT_PATTERNS):
        return ErrorCategory.RATE_LIMIT
    if _matches_any(text, AUTH_PATTERNS):
        return ErrorCategory.AUTHENTICATION
    return None


@dataclass
class UserFriendlyError:
    """User-friendly error representation."""
    original_error: Union[Exception, str]
    title: str
    explanation: str
    actions: List[str]
    category: ErrorCategory = ErrorCategory.UNKNOWN
    documentation: Optional[str] = None
    show_technical: bool = False


class ErrorTranslator:
    """Translate technical errors to user-friendly messages."""

    CATEGORY_MESSAGES = {
        ErrorCategory.QUOTA_EXHAUSTED: {
            "title": "Usage limit reached",
            "explanation": "The backend reports that your credit balance or usage quota is exhausted. Automation will pause until the quota resets.",
            "actions": [
                "Wait for the quota window to reset",
                "Add credits to the account used by the backend",
                "Switch execution mode (cli / api_key) if another account is available",
            ],
        },
        ErrorCategory.RATE_LIMIT: {
            "title": "API rate limit exceeded",
            "explanation": "Too many requests were sent in a short period. Rate limits reset periodically.",
            "actions": [
                "Wait a few minutes and retry",
                "Reduce the number of concurrent pipeline steps",
            ],
        },
        ErrorCategory.AUTHENTICATION: {
            "title": "Authentication failed",
            "explanation": "The backend rejected the configured credentials.",
            "actions": [
                "Check api.api_key in the config file (keys start with 'sk-ant-')",
                "Or log in with the CLI: claude login",
                "Run: agent-pipeline auth-status",
            ],
        },
        ErrorCategory.TIMEOUT: {
            "title": "Agent process timed out",
            "explanation": "The agent produced no output or progress within the configured window and was stopped.",
            "actions": [
                "Increase cli.startup_timeout or cli.idle_timeout",
                "Check that the CLI is responsive: claude --version",
            ],
        },
        ErrorCategory.CANCELLED: {
            "title": "Run cancelled",
            "explanation": "The run was cancelled before it finished.",
            "actions": [
                "Start the step again when ready",
            ],
        },
    }

    def categorize(self, error: Union[Exception, str]) -> ErrorCategory:
        """Categorize an exception or message; cancellation and timeouts by type first."""
        if isinstance(error, ExecutionCancelledError):
            return ErrorCategory.CANCELLED
        if isinstance(error, ProcessTimeoutError):
            return ErrorCategory.TIMEOUT
        if isinstance(error, Exception):
            text = f"{type(error).__name__}: {error}"
        else:
            text = error
        return classify_text(text) or ErrorCategory.UNKNOWN

    def translate(self, error: Union[Exception, str]) -> UserFriendlyError:
        """Convert exception (or raw backend text) to user-friendly format."""
        category = self.categorize(error)
        translation = self.CATEGORY_MESSAGES.get(category)

        if translation is not None:
            explanation = translation["explanation"]
            if isinstance(error, StartupTimeoutError):
                explanation = "The agent never started producing output and was stopped."
            return UserFriendlyError(
                original_error=error,
                title=translation["title"],
                explanation=explanation,
                actions=list(translation["actions"]),
                category=category,
                show_technical=False,
            )

        # Fallback for unknown errors
        return UserFriendlyError(
            original_error=error,
            title="Unexpected error",
            explanation=str(error),
            actions=[
                "Check logs for details",
                "Re-run the step with --log-level DEBUG",
            ],
            category=ErrorCategory.UNKNOWN,
            show_technical=True,
        )

    def format_for_cli(self, friendly_error: UserFriendlyError) -> str:
        """Format error for CLI display."""
        output = f"[bold red]{friendly_error.title}[/]\n\n"
        output += f"{friendly_error.explanation}\n\n"

        output += "[bold]How to fix:[/]\n"
        for i, action in enumerate(friendly_error.actions, 1):
            output += f"  {i}. {action}\n"

        if friendly_error.documentation:
            output += f"\n[dim]Learn more: {friendly_error.documentation}[/]"

        if friendly_error.show_technical:
            output += f"\n\n[dim]Technical details:[/]\n[dim]{friendly_error.original_error}[/]"

        return output
