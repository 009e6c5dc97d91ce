"""Code review step: quality, standards, bugs and best practices."""

from typing import Any, Dict, Optional

from .base import ParsedStepOutput, PipelineStep, build_memory_context, dict_field, list_field, unit_details
from ..dedup import findings_to_issues
from ..models import IterationMemory, ReviewOptions, StepType, WorkUnit

FOCUS_LABELS = {
    "quality": "code quality (readability, maintainability, complexity)",
    "standards": "coding standards compliance (naming conventions, structure, patterns)",
    "bugs": "potential bugs and error handling issues",
    "best-practices": "best practices and design patterns",
}

FOCUS_SECTIONS = {
    "quality": """
Code Quality Review:
- Check for code readability and maintainability
- Identify overly complex code (high cyclomatic complexity)
- Look for code duplication and redundancy
- Verify proper error handling patterns
- Check for appropriate use of data structures and algorithms
""",
    "standards": """
Standards Compliance:
- Verify naming conventions (variables, functions, classes, files)
- Check code structure and organization
- Ensure consistent formatting and indentation
- Validate proper use of language features
- Check for adherence to project-specific standards
""",
    "bugs": """
Bug Detection:
- Look for null/None reference errors
- Check for race conditions and concurrency issues
- Identify potential resource leaks
- Verify proper input validation and sanitization
- Check for off-by-one errors and boundary conditions
- Look for unhandled exceptions
""",
    "best-practices": """
Best Practices:
- Verify SOLID principles adherence
- Check for appropriate design patterns usage
- Ensure proper separation of concerns
- Look for adequate documentation and comments
- Verify proper testing approach
- Check for security best practices
""",
}

RESPONSE_FORMAT = """
Please provide your review in the following JSON format:
{
  "summary": "Brief summary of the review",
  "issues": [
    {
      "severity": "high|medium|low",
      "category": "quality|standards|bugs|best-practices",
      "file": "file path",
      "line": line_number,
      "description": "Issue description",
      "suggestion": "How to fix it"
    }
  ],
  "suggestions": [
    {
      "type": "improvement|optimization|refactor",
      "description": "Suggestion description",
      "benefit": "Why this should be implemented"
    }
  ],
  "metrics": {
    "totalIssues": number,
    "criticalIssues": number,
    "codeQualityScore": number (0-100)
  }
}
"""


class ReviewStep(PipelineStep):
    step_type = StepType.REVIEW

    def build_prompt(
        self,
        unit: WorkUnit,
        options: ReviewOptions,
        memory: Optional[IterationMemory] = None,
        attempt: int = 1,
    ) -> str:
        focus_areas = ", ".join(FOCUS_LABELS.get(area, area) for area in options.focus)
        prompt = (
            f"Please review the implemented feature for the following areas: {focus_areas}.\n\n"
            f"{unit_details(unit)}\n"
        )

        memory_block = build_memory_context(memory)
        if memory_block:
            prompt += f"{memory_block}\n\n"

        for area in options.focus:
            prompt += FOCUS_SECTIONS.get(area, "")

        if options.exclude_patterns:
            prompt += "\nExclude the following files/patterns from review:\n"
            prompt += "\n".join(options.exclude_patterns) + "\n"

        if not options.include_tests:
            prompt += "\nExclude test files from the review unless they contain production code.\n"

        prompt += RESPONSE_FORMAT
        prompt += f"\nLimit the issues to the {options.max_issues} most important ones.\n"
        return prompt

    def parse_data(self, data: Dict[str, Any], options: ReviewOptions) -> ParsedStepOutput:
        return ParsedStepOutput(
            issues=findings_to_issues(list_field(data, "issues")),
            metadata={
                "summary": data.get("summary", ""),
                "suggestions": list_field(data, "suggestions"),
                "metrics": dict_field(data, "metrics"),
            },
        )
