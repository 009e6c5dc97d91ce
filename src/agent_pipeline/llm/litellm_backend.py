"""LiteLLM streaming query client.

In-process execution path: forwards the request to litellm.acompletion with
stream=True and retags each chunk as a canonical message. No subprocess and no
watchdogs here. Cancellation is raced against the initial call and every chunk
read through the shared handle; litellm's own retry behavior is left as is.
"""

import asyncio
import logging
from typing import Any, AsyncIterator, Coroutine, Dict, List, Optional

import litellm

from .base import CancellationHandle, ExecutionBackend, ExecutionRequest
from .messages import AssistantMessage, CanonicalMessage, ResultMessage, TextBlock, new_session_id
from ..errors.exceptions import AgentExecutionError, ExecutionCancelledError

logger = logging.getLogger(__name__)


def build_chat_messages(request: ExecutionRequest) -> List[Dict[str, Any]]:
    """Build chat messages from system prompt plus prompt or conversation units."""
    messages: List[Dict[str, Any]] = []
    if request.system_prompt:
        messages.append({"role": "system", "content": request.system_prompt})

    if isinstance(request.prompt, str):
        messages.append({"role": "user", "content": request.prompt})
        return messages

    for unit in request.prompt:
        inner = unit.get("message", unit)
        role = inner.get("role") or unit.get("type") or "user"
        content = inner.get("content", "")
        if isinstance(content, list):
            content = "".join(
                block.get("text", "")
                for block in content
                if isinstance(block, dict) and block.get("type") == "text"
            )
        messages.append({"role": role, "content": str(content)})
    return messages


def _chunk_text(chunk: Any) -> Optional[str]:
    choices = getattr(chunk, "choices", None) or []
    if not choices:
        return None
    delta = getattr(choices[0], "delta", None)
    return getattr(delta, "content", None) if delta is not None else None


_END_OF_STREAM = object()


async def _next_chunk(response: Any) -> Any:
    try:
        return await response.__anext__()
    except StopAsyncIteration:
        return _END_OF_STREAM


async def _close_response(response: Any) -> None:
    aclose = getattr(response, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception as e:
        logger.debug(f"Closing streaming response failed: {e}")


async def _until_cancelled(
    coro: Coroutine[Any, Any, Any], cancellation: Optional[CancellationHandle]
) -> Any:
    """Await ``coro`` unless the cancellation handle fires first.

    A stalled network read is abandoned as soon as cancel() is called instead
    of waiting for the next chunk to arrive.

    Raises:
        ExecutionCancelledError: the handle fired before ``coro`` finished
    """
    if cancellation is None:
        return await coro

    work_task = asyncio.create_task(coro)
    cancel_task = asyncio.create_task(cancellation.wait())
    try:
        done, _ = await asyncio.wait([work_task, cancel_task], return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work_task.cancel()
        cancel_task.cancel()
        raise

    if work_task in done:
        cancel_task.cancel()
        try:
            await cancel_task
        except asyncio.CancelledError:
            pass
        return work_task.result()

    work_task.cancel()
    try:
        await work_task
    except asyncio.CancelledError:
        pass
    except Exception as e:
        logger.debug(f"Pending read raised during cancellation: {e}")
    raise ExecutionCancelledError("Query aborted")


class LiteLLMBackend(ExecutionBackend):
    """Execution path using litellm's streaming completion API.

    The credential travels as an explicit api_key argument on every call so
    concurrent requests with different keys never share ambient state.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_base: Optional[str] = None,
        default_model: str = "claude-sonnet-4-5-20250929",
        max_tokens: int = 4096,
        temperature: float = 0.0,
    ):
        self.api_key = api_key
        self.api_base = api_base
        self.default_model = default_model
        self.max_tokens = max_tokens
        self.temperature = temperature

    def _completion_kwargs(self, request: ExecutionRequest) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "model": request.model or self.default_model,
            "messages": build_chat_messages(request),
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "stream": True,
        }
        api_key = request.api_key or self.api_key
        if api_key:
            kwargs["api_key"] = api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base
        return kwargs

    async def stream(self, request: ExecutionRequest) -> AsyncIterator[CanonicalMessage]:
        cancellation = request.cancellation
        if cancellation is not None and cancellation.cancelled:
            raise ExecutionCancelledError("Query aborted")

        kwargs = self._completion_kwargs(request)
        session_id = new_session_id("api")
        logger.info(f"Starting streaming query (session: {session_id}, model: {kwargs['model']})")

        text_parts: List[str] = []
        usage: Dict[str, int] = {}
        response = None
        try:
            response = await _until_cancelled(litellm.acompletion(**kwargs), cancellation)
            while True:
                chunk = await _until_cancelled(_next_chunk(response), cancellation)
                if chunk is _END_OF_STREAM:
                    break
                if cancellation is not None and cancellation.cancelled:
                    raise ExecutionCancelledError("Query aborted")
                chunk_usage = getattr(chunk, "usage", None)
                if chunk_usage:
                    usage = {
                        "input_tokens": getattr(chunk_usage, "prompt_tokens", 0) or 0,
                        "output_tokens": getattr(chunk_usage, "completion_tokens", 0) or 0,
                    }
                text = _chunk_text(chunk)
                if not text:
                    continue
                text_parts.append(text)
                yield AssistantMessage(content=[TextBlock(text=text)], session_id=session_id)
        except AgentExecutionError:
            raise
        except Exception as e:
            logger.error(f"Streaming query failed (session: {session_id}): {e}")
            raise AgentExecutionError(str(e)) from e
        finally:
            if response is not None:
                await _close_response(response)

        yield ResultMessage(
            subtype="success",
            result="".join(text_parts),
            session_id=session_id,
            usage=usage,
        )
