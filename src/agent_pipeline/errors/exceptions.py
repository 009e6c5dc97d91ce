"""Execution failure taxonomy.

Mechanism-level failures raised by the subprocess supervisor and the
streaming client. Timeouts and cancellation both end in process
termination but stay distinguishable by type.
"""

from typing import Optional


class AgentExecutionError(Exception):
    """Base class for failures surfaced by an execution path."""


class SpawnError(AgentExecutionError):
    """The external command could not be started."""

    def __init__(self, command: str, reason: str):
        self.command = command
        self.reason = reason
        super().__init__(f"Failed to spawn '{command}': {reason}")


class ProcessTimeoutError(AgentExecutionError):
    """No output or activity within the allowed window."""

    phase = "idle"

    def __init__(self, timeout_seconds: float, detail: str = "without output"):
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Process timed out after {timeout_seconds:g}s {detail}"
        )


class StartupTimeoutError(ProcessTimeoutError):
    """Nothing at all arrived between spawn and the startup deadline."""

    phase = "startup"

    def __init__(self, timeout_seconds: float):
        super().__init__(timeout_seconds, detail="without any output")


class IdleTimeoutError(ProcessTimeoutError):
    """Output stalled for longer than the idle window."""

    phase = "idle"


class ExecutionCancelledError(AgentExecutionError):
    """The caller cancelled the run."""

    def __init__(self, message: str = "Process aborted"):
        super().__init__(message)


class ProcessExitError(AgentExecutionError):
    """The process exited with a failing code."""

    def __init__(
        self,
        exit_code: Optional[int],
        stderr: str = "",
        signal_name: Optional[str] = None,
    ):
        self.exit_code = exit_code
        self.stderr = stderr
        self.signal_name = signal_name
        if stderr.strip():
            message = stderr.strip()
        else:
            suffix = f" (signal: {signal_name})" if signal_name else ""
            message = f"Process exited with code {exit_code}{suffix}"
        super().__init__(message)


class MissingOutputError(AgentExecutionError):
    """Zero exit code but nothing usable was produced."""

    def __init__(self, exit_code: Optional[int] = 0):
        self.exit_code = exit_code
        super().__init__(f"CLI process exited with code {exit_code} and no output")


class UsageCheckError(AgentExecutionError):
    """Live quota could not be read."""
