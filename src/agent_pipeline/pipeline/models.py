"""Pipeline data models: work units, step configuration, issues and results."""

from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Type

from pydantic import BaseModel, Field, field_validator, model_validator


class StepType(str, Enum):
    REVIEW = "review"
    SECURITY = "security"
    PERFORMANCE = "performance"
    TEST = "test"
    CUSTOM = "custom"


class StepStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    ERROR = "error"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class WorkUnit(BaseModel):
    """The feature, issue or review target a step runs against."""
    id: str
    title: str = ""
    description: str = ""
    category: str = ""
    status: str = ""
    model: Optional[str] = None


class Issue(BaseModel):
    """One finding extracted from a step's response."""
    hash: str
    summary: str
    location: Optional[str] = None  # path:line
    severity: Severity = Severity.LOW


class IterationMemory(BaseModel):
    """Findings from earlier iterations that the backend should not repeat."""
    previous_issues: List[Issue] = Field(default_factory=list)
    seen_hashes: List[str] = Field(default_factory=list)
    iteration_count: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.previous_issues and not self.seen_hashes


ReviewFocus = Literal["quality", "standards", "bugs", "best-practices"]
PerformanceArea = Literal["complexity", "memory", "database", "network", "bundle", "rendering"]


class ReviewOptions(BaseModel):
    focus: List[ReviewFocus] = Field(default_factory=lambda: ["quality", "bugs"])
    max_issues: int = 20
    exclude_patterns: List[str] = Field(default_factory=list)
    include_tests: bool = False


class SecurityOptions(BaseModel):
    checklist: List[str] = Field(default_factory=list)
    min_severity: Literal["critical", "high", "medium", "low", "info"] = "low"
    check_dependencies: bool = False
    exclude_tests: bool = True


class PerformanceOptions(BaseModel):
    metrics: List[PerformanceArea] = Field(default_factory=lambda: ["complexity", "memory"])
    thresholds: Dict[str, Any] = Field(default_factory=dict)
    enable_profiling: bool = False


class TestOptions(BaseModel):
    __test__ = False  # not a pytest class

    coverage_threshold: float = 80.0
    check_quality: bool = True
    check_assertions: bool = True
    include_integration: bool = False
    exclude_patterns: List[str] = Field(default_factory=list)

    @field_validator('coverage_threshold')
    @classmethod
    def validate_threshold(cls, v: float) -> float:
        if not 0 <= v <= 100:
            raise ValueError(f"coverage_threshold must be between 0 and 100, got {v}")
        return v


class CustomOptions(BaseModel):
    prompt: str
    success_criteria: str = ""
    variables: Dict[str, str] = Field(default_factory=dict)
    loop_until_success: bool = False
    max_loops: int = 1

    @field_validator('max_loops')
    @classmethod
    def validate_max_loops(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"max_loops must be >= 1, got {v}")
        return v


OPTIONS_MODELS: Dict[StepType, Type[BaseModel]] = {
    StepType.REVIEW: ReviewOptions,
    StepType.SECURITY: SecurityOptions,
    StepType.PERFORMANCE: PerformanceOptions,
    StepType.TEST: TestOptions,
    StepType.CUSTOM: CustomOptions,
}


class PipelineStepConfig(BaseModel):
    """A step definition: closed step type plus type-specific options."""
    id: str
    type: StepType
    name: str = ""
    # Explicit model id, "same" (the unit's model) or "different" (alternate tier)
    model: Optional[str] = None
    options: Dict[str, Any] = Field(default_factory=dict)
    memory_enabled: bool = False
    memory: Optional[IterationMemory] = None

    @model_validator(mode='after')
    def validate_options(self) -> 'PipelineStepConfig':
        # Raises ValidationError for options that don't fit the step type
        OPTIONS_MODELS[self.type](**self.options)
        if not self.name:
            self.name = self.type.value.capitalize()
        return self

    def parsed_options(self) -> BaseModel:
        return OPTIONS_MODELS[self.type](**self.options)


class PipelineStepResult(BaseModel):
    """Outcome of one step run, owned by the caller."""
    status: StepStatus
    output: str = ""
    issues: List[Issue] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    iterations: Optional[int] = None

    def to_document(self) -> Dict[str, Any]:
        """The step result document: status, output, issues[], metadata."""
        return self.model_dump(mode="json", exclude_none=True)
