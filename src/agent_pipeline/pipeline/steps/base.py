"""Shared pieces for step prompt construction and result parsing."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from ..extraction import ExtractionResult, extract_embedded_json
from ..models import Issue, IterationMemory, StepStatus, StepType, WorkUnit

logger = logging.getLogger(__name__)


@dataclass
class ParsedStepOutput:
    """What a step made of the final response text."""
    issues: List[Issue] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    status: StepStatus = StepStatus.PASSED
    extracted: bool = False


def unit_details(unit: WorkUnit) -> str:
    return (
        "Feature Details:\n"
        f"- Title: {unit.title}\n"
        f"- Description: {unit.description}\n"
        f"- Status: {unit.status}\n"
    )


def build_memory_context(memory: Optional[IterationMemory]) -> str:
    """The "do not repeat" block listing earlier findings, or ""."""
    if memory is None or not memory.previous_issues:
        return ""
    lines = [
        f"- {issue.summary}{f' ({issue.location})' if issue.location else ''} (already addressed)"
        for issue in memory.previous_issues
    ]
    return (
        f"## Previous Feedback (Iteration {memory.iteration_count})\n"
        "Please review these previous comments and DO NOT repeat them:\n"
        + "\n".join(lines)
        + "\n\nFocus on NEW issues only. Report only issues that are not listed above."
    )


def list_field(data: Dict[str, Any], key: str) -> List[Any]:
    value = data.get(key)
    return value if isinstance(value, list) else []


def dict_field(data: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = data.get(key)
    return value if isinstance(value, dict) else {}


class PipelineStep(ABC):
    """One step type: builds its prompt and interprets the response."""

    step_type: StepType

    @abstractmethod
    def build_prompt(
        self,
        unit: WorkUnit,
        options: BaseModel,
        memory: Optional[IterationMemory] = None,
        attempt: int = 1,
    ) -> str:
        pass

    @abstractmethod
    def parse_data(self, data: Dict[str, Any], options: BaseModel) -> ParsedStepOutput:
        """Map the extracted JSON object to issues and metadata."""
        pass

    def parse_output(self, output: str, options: BaseModel) -> ParsedStepOutput:
        extraction: ExtractionResult = extract_embedded_json(output)
        if not extraction.ok:
            logger.warning(f"[{self.step_type.value}] Could not parse structured result: {extraction.error}")
            return self.on_extraction_failed(output, options)
        parsed = self.parse_data(extraction.data, options)
        parsed.extracted = True
        return parsed

    def on_extraction_failed(self, output: str, options: BaseModel) -> ParsedStepOutput:
        return ParsedStepOutput()

    def should_retry(self, parsed: ParsedStepOutput, options: BaseModel, attempt: int) -> bool:
        return False
