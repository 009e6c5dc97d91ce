"""Execution errors and user-friendly translation."""

from .exceptions import (
    AgentExecutionError,
    ExecutionCancelledError,
    IdleTimeoutError,
    MissingOutputError,
    ProcessExitError,
    ProcessTimeoutError,
    SpawnError,
    StartupTimeoutError,
)
from .translator import ErrorCategory, ErrorTranslator, UserFriendlyError, classify_text

__all__ = [
    "AgentExecutionError",
    "ExecutionCancelledError",
    "IdleTimeoutError",
    "MissingOutputError",
    "ProcessExitError",
    "ProcessTimeoutError",
    "SpawnError",
    "StartupTimeoutError",
    "ErrorCategory",
    "ErrorTranslator",
    "UserFriendlyError",
    "classify_text",
]
