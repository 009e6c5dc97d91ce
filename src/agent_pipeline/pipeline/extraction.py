"""Best-effort structured extraction from natural-language responses."""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class ExtractionResult:
    """Outcome of pulling one JSON object out of free text.

    ``ok`` is False when no object was found or it failed to decode; ``data``
    is then empty and ``error`` says why. Never raised as an exception.
    """
    ok: bool
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    @classmethod
    def failed(cls, reason: str) -> "ExtractionResult":
        return cls(ok=False, data={}, error=reason)


def extract_embedded_json(text: Optional[str]) -> ExtractionResult:
    """Parse the span from the first ``{`` to the last ``}`` as a JSON object.

    Prose before and after the object is ignored.
    """
    if not text:
        return ExtractionResult.failed("empty response")

    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        logger.debug("No JSON object found in response")
        return ExtractionResult.failed("no JSON object found")

    try:
        value = json.loads(text[start:end + 1])
    except (json.JSONDecodeError, ValueError) as e:
        logger.debug(f"Embedded JSON failed to decode: {e}")
        return ExtractionResult.failed(f"invalid JSON: {e}")

    if not isinstance(value, dict):
        return ExtractionResult.failed("embedded JSON is not an object")
    return ExtractionResult(ok=True, data=value)


def _describe_property(prop: Dict[str, Any]) -> str:
    desc = prop.get("type", "unknown")
    if prop.get("enum"):
        desc += f" (one of: {', '.join(str(v) for v in prop['enum'])})"
    if prop.get("description"):
        desc += f" - {prop['description']}"
    return desc


def describe_schema(schema: Dict[str, Any], indent: int = 0) -> str:
    """Render a JSON schema as indented prose, one property per line."""
    prefix = "  " * indent
    lines = []
    if schema.get("type") == "object" and schema.get("properties"):
        required = set(schema.get("required", []))
        for key, prop in schema["properties"].items():
            line = f"{prefix}{key}: {_describe_property(prop)}"
            if key in required:
                line += " (required)"
            lines.append(line + "\n")
            if prop.get("type") == "object" and prop.get("properties"):
                lines.append(f"{prefix}  Properties:\n")
                lines.append(describe_schema(prop, indent + 2))
            elif prop.get("type") == "array" and isinstance(prop.get("items"), dict):
                lines.append(describe_schema(prop, indent + 1))
    elif schema.get("type") == "array" and isinstance(schema.get("items"), dict):
        items = schema["items"]
        lines.append(f"{prefix}Array of: {_describe_property(items)}\n")
        if items.get("type") == "object" and items.get("properties"):
            lines.append(describe_schema(items, indent + 1))
    return "".join(lines)


def build_structured_output_prompt(prompt: str, schema: Dict[str, Any]) -> str:
    """Append JSON-only response instructions for backends without native structured output."""
    return (
        f"{prompt}\n\n"
        f"IMPORTANT: You must respond with valid JSON that matches this schema:\n"
        f"{describe_schema(schema)}\n"
        f"Your response must be ONLY the JSON object, with no additional text, "
        f"markdown formatting, or explanation."
    )
