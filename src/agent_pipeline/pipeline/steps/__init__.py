"""Step implementations, one per step type."""

from typing import Dict

from .base import ParsedStepOutput, PipelineStep, build_memory_context
from .custom import CustomStep
from .performance import PerformanceStep
from .review import ReviewStep
from .security import SecurityStep
from .test import TestStep
from ..models import StepType

STEP_REGISTRY: Dict[StepType, PipelineStep] = {
    StepType.REVIEW: ReviewStep(),
    StepType.SECURITY: SecurityStep(),
    StepType.PERFORMANCE: PerformanceStep(),
    StepType.TEST: TestStep(),
    StepType.CUSTOM: CustomStep(),
}


def get_step(step_type: StepType) -> PipelineStep:
    return STEP_REGISTRY[step_type]


__all__ = [
    "STEP_REGISTRY",
    "CustomStep",
    "ParsedStepOutput",
    "PerformanceStep",
    "PipelineStep",
    "ReviewStep",
    "SecurityStep",
    "TestStep",
    "build_memory_context",
    "get_step",
]
