"""Canonical message types and the normalizer that produces them.

Both execution paths end up here: stream-json events from the CLI, captured
plain-text CLI output, and streamed chunks from the in-process client are all
retagged into the same three shapes.
"""

import logging
import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Literal, Optional, Union

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TextBlock:
    text: str
    type: Literal["text"] = "text"


@dataclass(frozen=True)
class ToolUseBlock:
    name: str
    input: Dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None
    type: Literal["tool_use"] = "tool_use"


ContentBlock = Union[TextBlock, ToolUseBlock]


@dataclass(frozen=True)
class AssistantMessage:
    """Assistant turn with ordered content blocks."""
    content: List[ContentBlock]
    role: str = "assistant"
    session_id: Optional[str] = None
    type: Literal["assistant"] = "assistant"

    @property
    def text(self) -> str:
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))


@dataclass(frozen=True)
class ResultMessage:
    """Terminal message carrying the final text."""
    subtype: Literal["success", "error"]
    result: str = ""
    session_id: Optional[str] = None
    usage: Dict[str, int] = field(default_factory=dict)
    total_cost_usd: Optional[float] = None
    type: Literal["result"] = "result"

    @property
    def is_success(self) -> bool:
        return self.subtype == "success"


@dataclass(frozen=True)
class ErrorMessage:
    """Terminal error reported in-band by a backend."""
    error: str
    session_id: Optional[str] = None
    type: Literal["error"] = "error"


CanonicalMessage = Union[AssistantMessage, ResultMessage, ErrorMessage]


def is_terminal(message: CanonicalMessage) -> bool:
    """A result or error always ends the sequence."""
    return isinstance(message, (ResultMessage, ErrorMessage))


def message_to_dict(message: CanonicalMessage) -> Dict[str, Any]:
    """JSON-serializable view, used by the CLI and logs."""
    return asdict(message)


def new_session_id(prefix: str = "cli") -> str:
    return f"{prefix}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:7]}"


def _parse_content_block(block: Any) -> Optional[ContentBlock]:
    if not isinstance(block, dict):
        return None
    block_type = block.get("type")
    if block_type == "text":
        return TextBlock(text=str(block.get("text", "")))
    if block_type == "tool_use":
        tool_input = block.get("input")
        return ToolUseBlock(
            name=str(block.get("name", "unknown")),
            input=tool_input if isinstance(tool_input, dict) else {},
            id=block.get("id"),
        )
    return None


def normalize_event(event: Any) -> Optional[CanonicalMessage]:
    """Retag one raw backend event as a canonical message.

    Returns None for values without a recognizable message shape (system
    events, partial deltas, arbitrary JSON) so callers can skip them.
    """
    if not isinstance(event, dict):
        return None

    event_type = event.get("type")
    session_id = event.get("session_id")

    if event_type == "assistant":
        message = event.get("message")
        if not isinstance(message, dict):
            return None
        raw_content = message.get("content", [])
        if isinstance(raw_content, str):
            blocks: List[ContentBlock] = [TextBlock(text=raw_content)]
        else:
            blocks = [b for b in map(_parse_content_block, raw_content or []) if b is not None]
        return AssistantMessage(
            content=blocks,
            role=message.get("role", "assistant"),
            session_id=session_id,
        )

    if event_type == "result":
        subtype = event.get("subtype", "success")
        # CLI reports error_max_turns / error_during_execution
        normalized_subtype = "success" if subtype == "success" else "error"
        usage = event.get("usage") if isinstance(event.get("usage"), dict) else {}
        return ResultMessage(
            subtype=normalized_subtype,
            result=str(event.get("result") or ""),
            session_id=session_id,
            usage={
                "input_tokens": usage.get("input_tokens", 0),
                "output_tokens": usage.get("output_tokens", 0),
            },
            total_cost_usd=event.get("total_cost_usd"),
        )

    if event_type == "error":
        error = event.get("error") or event.get("message") or "Unknown error"
        if isinstance(error, dict):
            error = error.get("message", str(error))
        return ErrorMessage(error=str(error), session_id=session_id)

    logger.debug(f"Ignoring stream event without message shape: type={event_type}")
    return None


def text_output_to_messages(output: str, session_id: Optional[str] = None) -> List[CanonicalMessage]:
    """Convert a captured plain-text response to an assistant + result pair."""
    text = output.strip()
    if not text:
        return []
    return [
        AssistantMessage(content=[TextBlock(text=text)], session_id=session_id),
        ResultMessage(subtype="success", result=text, session_id=session_id),
    ]
