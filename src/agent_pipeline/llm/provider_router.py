"""Provider router.

Picks the execution path for a request (explicit mode, else a bounded lookup
of stored auth state, else the configured fallback) and returns one lazy
canonical message sequence regardless of which path ran.
"""

import asyncio
import dataclasses
import logging
from typing import Any, AsyncIterator, Dict, Optional

from .auth import AuthManager
from .base import ExecutionBackend, ExecutionMode, ExecutionRequest
from .claude_cli_backend import ClaudeCLIBackend
from .litellm_backend import LiteLLMBackend
from .messages import AssistantMessage, CanonicalMessage, ErrorMessage, ResultMessage
from .subprocess_supervisor import OutputProtocol
from ..errors.exceptions import AgentExecutionError
from ..pipeline.extraction import ExtractionResult, build_structured_output_prompt, extract_embedded_json

logger = logging.getLogger(__name__)


class ProviderRouter:
    """Dispatches an ExecutionRequest to the CLI or the streaming client."""

    def __init__(
        self,
        backends: Dict[ExecutionMode, ExecutionBackend],
        auth_manager: Optional[AuthManager] = None,
        auth_lookup_timeout: float = 5.0,
        fallback_mode: ExecutionMode = ExecutionMode.API_KEY,
        default_allowed_tools: Optional[list] = None,
        default_max_turns: Optional[int] = None,
    ):
        missing = set(ExecutionMode) - set(backends)
        if missing:
            raise ValueError(f"No backend registered for modes: {sorted(m.value for m in missing)}")
        self.backends = dict(backends)
        self.auth_manager = auth_manager
        self.auth_lookup_timeout = auth_lookup_timeout
        self.fallback_mode = ExecutionMode(fallback_mode)
        self.default_allowed_tools = list(default_allowed_tools or [])
        self.default_max_turns = default_max_turns

    @classmethod
    def from_config(cls, config) -> "ProviderRouter":
        """Build backends, auth manager and router from a FrameworkConfig."""
        cli_backend = ClaudeCLIBackend(
            executable=config.cli.executable,
            protocol=OutputProtocol(config.cli.protocol),
            default_model=config.cli.default_model,
            startup_timeout=config.cli.startup_timeout,
            idle_timeout=config.cli.idle_timeout,
            extra_args=config.cli.extra_args,
        )
        api_backend = LiteLLMBackend(
            api_key=config.api.api_key,
            api_base=config.api.api_base,
            default_model=config.api.default_model,
            max_tokens=config.api.max_tokens,
            temperature=config.api.temperature,
        )
        auth_manager = AuthManager(
            configured_mode=config.execution.mode,
            api_key=config.api.api_key,
            cli_executable=config.cli.executable,
            cache_ttl=config.execution.auth_cache_ttl,
            verify_cli_login=config.execution.verify_cli_login,
        )
        return cls(
            backends={ExecutionMode.CLI: cli_backend, ExecutionMode.API_KEY: api_backend},
            auth_manager=auth_manager,
            auth_lookup_timeout=config.execution.auth_lookup_timeout,
            fallback_mode=ExecutionMode(config.execution.fallback_mode),
            default_allowed_tools=config.api.default_allowed_tools,
            default_max_turns=config.cli.max_turns,
        )

    async def resolve_mode(self, request: ExecutionRequest) -> ExecutionMode:
        """Explicit mode wins; otherwise bounded auth lookup, otherwise fallback."""
        if request.mode is not None:
            logger.info(f"Using forced execution mode: {request.mode.value}")
            return ExecutionMode(request.mode)

        if self.auth_manager is None:
            return self.fallback_mode

        try:
            status = await asyncio.wait_for(
                self.auth_manager.get_status(), timeout=self.auth_lookup_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"Auth lookup exceeded {self.auth_lookup_timeout:g}s, "
                f"falling back to {self.fallback_mode.value}"
            )
            return self.fallback_mode
        except Exception as e:
            logger.warning(f"Auth lookup failed ({e}), falling back to {self.fallback_mode.value}")
            return self.fallback_mode

        if status.mode is None:
            logger.info(f"No authenticated mode detected, using {self.fallback_mode.value}")
            return self.fallback_mode
        logger.info(f"Using detected execution mode: {status.mode.value}")
        return status.mode

    def _with_defaults(self, request: ExecutionRequest) -> ExecutionRequest:
        changes: Dict[str, Any] = {}
        if not request.allowed_tools and self.default_allowed_tools:
            changes["allowed_tools"] = list(self.default_allowed_tools)
        if self.default_max_turns is not None and request.max_turns is None:
            changes["max_turns"] = self.default_max_turns
        return dataclasses.replace(request, **changes) if changes else request

    async def query(self, request: ExecutionRequest) -> AsyncIterator[CanonicalMessage]:
        """Stream canonical messages from whichever path the request resolves to."""
        mode = await self.resolve_mode(request)
        backend = self.backends[mode]
        request = self._with_defaults(request)
        async for message in backend.stream(request):
            yield message

    async def query_text(self, request: ExecutionRequest) -> str:
        """Run a request to completion and return its final text.

        A successful result's text is preferred over accumulated assistant
        text. An in-band error message raises AgentExecutionError.
        """
        parts = []
        final: Optional[str] = None
        async for message in self.query(request):
            if isinstance(message, AssistantMessage):
                parts.append(message.text)
            elif isinstance(message, ResultMessage):
                if message.is_success and message.result:
                    final = message.result
                elif not message.is_success:
                    raise AgentExecutionError(message.result or "Execution ended with an error result")
            elif isinstance(message, ErrorMessage):
                raise AgentExecutionError(message.error)
        return final if final is not None else "".join(parts)

    async def query_structured(
        self, request: ExecutionRequest, schema: Dict[str, Any]
    ) -> ExtractionResult:
        """Ask for JSON matching ``schema`` via prompt instructions and extract it."""
        if not isinstance(request.prompt, str):
            raise ValueError("query_structured requires a plain-text prompt")
        prompt = build_structured_output_prompt(request.prompt, schema)
        text = await self.query_text(dataclasses.replace(request, prompt=prompt))
        result = extract_embedded_json(text)
        if not result.ok:
            logger.warning(f"Failed to parse structured output from response: {result.error}")
        return result
