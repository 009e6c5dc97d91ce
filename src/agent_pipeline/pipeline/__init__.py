"""Analysis steps, issue deduplication and iteration memory."""

from .dedup import hash_issue, new_issues
from .extraction import ExtractionResult, extract_embedded_json
from .memory import PipelineMemory
from .models import (
    Issue,
    IterationMemory,
    PipelineStepConfig,
    PipelineStepResult,
    Severity,
    StepStatus,
    StepType,
    WorkUnit,
)

__all__ = [
    "hash_issue",
    "new_issues",
    "ExtractionResult",
    "extract_embedded_json",
    "PipelineMemory",
    "Issue",
    "IterationMemory",
    "PipelineStepConfig",
    "PipelineStepResult",
    "Severity",
    "StepStatus",
    "StepType",
    "WorkUnit",
]
