"""Execution backends and the router that picks between them."""

from .base import CancellationHandle, ExecutionBackend, ExecutionMode, ExecutionRequest
from .claude_cli_backend import ClaudeCLIBackend
from .litellm_backend import LiteLLMBackend
from .messages import AssistantMessage, CanonicalMessage, ErrorMessage, ResultMessage
from .provider_router import ProviderRouter
from .subprocess_supervisor import OutputProtocol, SubprocessSpec, SubprocessStreamSupervisor

__all__ = [
    "CancellationHandle",
    "ExecutionBackend",
    "ExecutionMode",
    "ExecutionRequest",
    "ClaudeCLIBackend",
    "LiteLLMBackend",
    "AssistantMessage",
    "CanonicalMessage",
    "ErrorMessage",
    "ResultMessage",
    "ProviderRouter",
    "OutputProtocol",
    "SubprocessSpec",
    "SubprocessStreamSupervisor",
]
