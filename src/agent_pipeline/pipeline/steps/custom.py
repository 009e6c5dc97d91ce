"""User-templated step with optional success-criteria looping."""

import json
import re
from typing import Any, Dict, Optional

from .base import ParsedStepOutput, PipelineStep, list_field
from ..dedup import findings_to_issues
from ..models import CustomOptions, IterationMemory, StepStatus, StepType, WorkUnit

SUCCESS_MARKERS = (
    "success criteria met",
    "all requirements satisfied",
    "criteria fulfilled",
)

FAILURE_MARKERS = (
    "criteria not met",
    "requirements not satisfied",
    "criteria failed",
)

PLACEHOLDER = re.compile(r"\{\{\s*([\w.]+)\s*\}\}")


def criteria_met(output: str) -> bool:
    """Keyword check of the response; no explicit verdict counts as met."""
    lowered = output.lower()
    if any(marker in lowered for marker in SUCCESS_MARKERS):
        return True
    if any(marker in lowered for marker in FAILURE_MARKERS):
        return False
    return True


def render_template(template: str, values: Dict[str, str]) -> str:
    """Replace ``{{name}}`` placeholders; unknown names are left as written."""
    return PLACEHOLDER.sub(lambda m: values.get(m.group(1), m.group(0)), template)


def template_values(
    unit: WorkUnit,
    options: CustomOptions,
    memory: Optional[IterationMemory],
    attempt: int,
) -> Dict[str, str]:
    values = dict(options.variables)
    values.update({
        "unit": json.dumps(unit.model_dump(exclude_none=True), indent=2),
        "unit.id": unit.id,
        "unit.title": unit.title,
        "unit.description": unit.description,
        "unit.category": unit.category,
        "unit.status": unit.status,
        "loopCount": str(attempt),
        "previousFeedback": "",
        "previousAttempts": "0",
    })
    if memory is not None:
        values["previousFeedback"] = "\n".join(
            f"{issue.summary}{f' ({issue.location})' if issue.location else ''}"
            for issue in memory.previous_issues
        )
        values["previousAttempts"] = str(memory.iteration_count)
    return values


class CustomStep(PipelineStep):
    step_type = StepType.CUSTOM

    def build_prompt(
        self,
        unit: WorkUnit,
        options: CustomOptions,
        memory: Optional[IterationMemory] = None,
        attempt: int = 1,
    ) -> str:
        prompt = render_template(options.prompt, template_values(unit, options, memory, attempt))

        if options.success_criteria:
            prompt += (
                f"\n\nSuccess Criteria:\n{options.success_criteria}\n\n"
                "Please provide your response and indicate if the success criteria have been met.\n"
            )

        if options.loop_until_success and attempt > 1:
            prompt += (
                f"\nThis is attempt {attempt} of {options.max_loops}.\n"
                "Previous attempts did not fully meet the success criteria.\n"
                "Please address any remaining issues.\n"
            )
        return prompt

    def parse_output(self, output: str, options: CustomOptions) -> ParsedStepOutput:
        parsed = super().parse_output(output, options)
        met = criteria_met(output)
        parsed.status = StepStatus.PASSED if met else StepStatus.FAILED
        parsed.metadata["success_criteria_met"] = met
        return parsed

    def parse_data(self, data: Dict[str, Any], options: CustomOptions) -> ParsedStepOutput:
        metadata = {key: value for key, value in data.items() if key != "issues"}
        return ParsedStepOutput(
            issues=findings_to_issues(list_field(data, "issues")),
            metadata=metadata,
        )

    def should_retry(self, parsed: ParsedStepOutput, options: CustomOptions, attempt: int) -> bool:
        return (
            options.loop_until_success
            and parsed.status == StepStatus.FAILED
            and attempt < options.max_loops
        )
