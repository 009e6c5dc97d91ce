"""Claude CLI subprocess execution path."""

import logging
from typing import AsyncIterator, List, Optional

from .base import ExecutionBackend, ExecutionRequest, prompt_text
from .messages import CanonicalMessage, is_terminal, new_session_id, normalize_event
from .subprocess_supervisor import OutputProtocol, SubprocessSpec, SubprocessStreamSupervisor
from ..errors.exceptions import MissingOutputError

logger = logging.getLogger(__name__)

# Removed from the child environment so the CLI uses its own login rather
# than a key that happens to be exported in the parent shell.
_API_KEY_ENV_VARS = ("ANTHROPIC_API_KEY", "ANTHROPIC_AUTH_TOKEN")


class ClaudeCLIBackend(ExecutionBackend):
    """
    Execution path that spawns the Claude CLI, single-turn.

    With the stream_json protocol each stdout line is a JSON event that is
    retagged to a canonical message as it arrives. With the text protocol the
    whole stdout is captured and converted once the process exits.
    """

    DEFAULT_STARTUP_TIMEOUT = 120
    DEFAULT_IDLE_TIMEOUT = 300

    def __init__(
        self,
        executable: str = "claude",
        protocol: OutputProtocol = OutputProtocol.JSONL,
        default_model: str = "sonnet",
        startup_timeout: Optional[float] = DEFAULT_STARTUP_TIMEOUT,
        idle_timeout: Optional[float] = DEFAULT_IDLE_TIMEOUT,
        extra_args: Optional[List[str]] = None,
        supervisor: Optional[SubprocessStreamSupervisor] = None,
    ):
        self.executable = executable
        self.protocol = OutputProtocol(protocol)
        self.default_model = default_model
        self.startup_timeout = startup_timeout
        self.idle_timeout = idle_timeout
        self.extra_args = list(extra_args or [])
        self.supervisor = supervisor or SubprocessStreamSupervisor()

    def build_command(self, request: ExecutionRequest) -> List[str]:
        """Build the argv for one request."""
        model = request.model or self.default_model
        cmd = [self.executable, "--print"]

        if self.protocol == OutputProtocol.JSONL:
            cmd.extend(["--output-format", "stream-json", "--verbose"])

        cmd.extend(["--model", model])

        if request.max_turns:
            cmd.extend(["--max-turns", str(request.max_turns)])

        if request.allowed_tools:
            cmd.extend(["--allowedTools", ",".join(request.allowed_tools)])
            logger.debug(f"Tool restriction active: allowed_tools={request.allowed_tools}")

        cmd.extend(self.extra_args)
        return cmd

    def build_spec(self, request: ExecutionRequest) -> SubprocessSpec:
        prompt = prompt_text(request.prompt)
        if not prompt.strip():
            logger.warning("Empty prompt after extraction, sending empty input to CLI")

        return SubprocessSpec(
            command=self.build_command(request),
            cwd=request.working_dir,
            env=dict(request.env_vars or {}),
            prompt=prompt,
            system_prompt=request.system_prompt,
            idle_timeout=self.idle_timeout,
            startup_timeout=self.startup_timeout,
            cancellation=request.cancellation,
            extra_env_removals=list(_API_KEY_ENV_VARS),
        )

    async def stream(self, request: ExecutionRequest) -> AsyncIterator[CanonicalMessage]:
        spec = self.build_spec(request)
        session_id = new_session_id()
        logger.info(
            f"Starting CLI query (session: {session_id}, model: {request.model or self.default_model}, "
            f"protocol: {self.protocol.value})"
        )

        if self.protocol == OutputProtocol.TEXT:
            for message in await self.supervisor.run_text(spec, session_id=session_id):
                yield message
            return

        finished = False
        async for event in self.supervisor.stream_jsonl(spec):
            if finished:
                logger.debug("Ignoring event after terminal message")
                continue
            message = normalize_event(event)
            if message is None:
                continue
            yield message
            finished = is_terminal(message)

        if not finished:
            # Exit 0 with stdout closed and no result or error event
            logger.warning(f"CLI stream ended without a result (session: {session_id})")
            raise MissingOutputError(0)
