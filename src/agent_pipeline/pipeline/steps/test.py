"""Test coverage and quality step."""

from typing import Any, Dict, Optional

from .base import ParsedStepOutput, PipelineStep, build_memory_context, dict_field, list_field, unit_details
from ..dedup import findings_to_issues
from ..models import IterationMemory, StepStatus, StepType, TestOptions, WorkUnit

RESPONSE_FORMAT = """
Please analyze the codebase and provide your test analysis in the following JSON format:
{
  "summary": "Brief summary of test coverage and quality",
  "coverage": {
    "overall": number (percentage),
    "statements": number,
    "branches": number,
    "functions": number,
    "lines": number
  },
  "missingTests": [
    {
      "file": "file path",
      "function": "function name",
      "type": "unit|integration|e2e",
      "priority": "high|medium|low",
      "description": "What test is missing"
    }
  ],
  "issues": [
    {
      "severity": "high|medium|low",
      "category": "coverage|quality|assertion|structure",
      "file": "test file path",
      "line": line_number,
      "description": "Issue description",
      "recommendation": "How to fix"
    }
  ],
  "metrics": {
    "totalTests": number,
    "unitTests": number,
    "integrationTests": number,
    "coverage": number,
    "testQualityScore": number (0-100)
  }
}
"""

QUALITY_SECTION = """
Test Quality Checks:
- Verify descriptive test names that explain what is being tested
- Check for proper setup and teardown
- Look for test isolation and independence
- Check for edge case testing
- Look for proper mocking and stubbing
"""

ASSERTION_SECTION = """
Assertion Verification:
- Check for sufficient assertions in each test
- Verify assertions test the right behavior
- Check for positive and negative test cases
- Verify boundary condition testing
- Look for error handling verification
"""

INTEGRATION_SECTION = """
Integration Test Analysis:
- Check for API endpoint testing
- Verify database interaction testing
- Look for external service integration tests
- Verify end-to-end scenarios
"""


def reported_coverage(metrics: Dict[str, Any]) -> float:
    try:
        return float(metrics.get("coverage") or 0)
    except (TypeError, ValueError):
        return 0.0


class TestStep(PipelineStep):
    __test__ = False  # not a pytest class

    step_type = StepType.TEST

    def build_prompt(
        self,
        unit: WorkUnit,
        options: TestOptions,
        memory: Optional[IterationMemory] = None,
        attempt: int = 1,
    ) -> str:
        prompt = (
            "Perform a comprehensive test analysis of the implemented feature.\n\n"
            f"{unit_details(unit)}\n"
        )

        memory_block = build_memory_context(memory)
        if memory_block:
            prompt += f"{memory_block}\n\n"

        prompt += (
            "Test Analysis Requirements:\n"
            f"- Minimum coverage threshold: {options.coverage_threshold:g}%\n"
            f"- Check test quality: {str(options.check_quality).lower()}\n"
            f"- Verify assertions: {str(options.check_assertions).lower()}\n"
            f"- Include integration tests: {str(options.include_integration).lower()}\n"
        )

        if options.exclude_patterns:
            prompt += "\nExclude the following files/patterns from coverage analysis:\n"
            prompt += "\n".join(options.exclude_patterns) + "\n"

        prompt += RESPONSE_FORMAT
        if options.check_quality:
            prompt += QUALITY_SECTION
        if options.check_assertions:
            prompt += ASSERTION_SECTION
        if options.include_integration:
            prompt += INTEGRATION_SECTION

        prompt += (
            "\nFocus on identifying critical gaps in test coverage that could lead to production issues.\n"
            "Prioritize missing tests for core business logic and error handling scenarios.\n"
        )
        return prompt

    def parse_data(self, data: Dict[str, Any], options: TestOptions) -> ParsedStepOutput:
        metrics = dict_field(data, "metrics")
        coverage_met = reported_coverage(metrics) >= options.coverage_threshold
        return ParsedStepOutput(
            issues=findings_to_issues(list_field(data, "issues")),
            metadata={
                "summary": data.get("summary", ""),
                "coverage": dict_field(data, "coverage"),
                "missing_tests": list_field(data, "missingTests"),
                "metrics": metrics,
            },
            status=StepStatus.PASSED if coverage_met else StepStatus.FAILED,
        )

    def on_extraction_failed(self, output: str, options: TestOptions) -> ParsedStepOutput:
        # No report means no coverage figure to meet the threshold with
        status = StepStatus.PASSED if options.coverage_threshold <= 0 else StepStatus.FAILED
        return ParsedStepOutput(status=status)
