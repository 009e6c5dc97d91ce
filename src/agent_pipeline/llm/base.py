"""Execution request, execution mode and the backend interface."""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence, Union

from .messages import CanonicalMessage


class ExecutionMode(str, Enum):
    """Mechanism used to carry out a request."""
    CLI = "cli"  # spawned external command
    API_KEY = "api_key"  # in-process streaming client


class CancellationHandle:
    """Cancellation signal shared between a caller and the execution path.

    Thin wrapper over asyncio.Event with synchronous callbacks so a spawned
    process can be killed the moment cancel() is called.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self._callbacks: List[Callable[[], None]] = []
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled by caller") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        for callback in list(self._callbacks):
            callback()

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Run callback on cancel; runs immediately if already cancelled."""
        if self._event.is_set():
            callback()
            return
        self._callbacks.append(callback)

    def remove_callback(self, callback: Callable[[], None]) -> None:
        try:
            self._callbacks.remove(callback)
        except ValueError:
            pass

    async def wait(self) -> None:
        await self._event.wait()


ConversationUnit = Dict[str, Any]


@dataclass(frozen=True)
class ExecutionRequest:
    """Request dispatched to an execution path. Immutable once created."""
    prompt: Union[str, Sequence[ConversationUnit]]
    model: Optional[str] = None
    working_dir: Optional[str] = None
    system_prompt: Optional[str] = None
    max_turns: Optional[int] = None
    allowed_tools: Optional[List[str]] = None
    cancellation: Optional[CancellationHandle] = field(default=None, compare=False)
    mode: Optional[ExecutionMode] = None  # None = resolve from stored auth state
    api_key: Optional[str] = field(default=None, repr=False)
    env_vars: Optional[Dict[str, str]] = None


class ExecutionBackend(ABC):
    """A mechanism that turns an ExecutionRequest into canonical messages."""

    @abstractmethod
    def stream(self, request: ExecutionRequest) -> AsyncIterator[CanonicalMessage]:
        """
        Produce a lazy, finite, non-restartable message sequence.

        Args:
            request: The execution request.

        Raises:
            AgentExecutionError: on mechanism-level failure.
        """
        pass


def prompt_text(prompt: Union[str, Sequence[ConversationUnit]]) -> str:
    """Flatten a prompt to text for single-turn paths.

    For conversation units the first unit's text blocks are used.
    """
    if isinstance(prompt, str):
        return prompt
    units = list(prompt)
    if not units:
        return ""
    first = units[0]
    message = first.get("message", first) if isinstance(first, dict) else first
    content = message.get("content") if isinstance(message, dict) else None
    if isinstance(content, list):
        return "".join(
            block.get("text", "")
            for block in content
            if isinstance(block, dict) and block.get("type") == "text"
        )
    if content is not None:
        return str(content)
    return str(first)
