"""Pipeline step runner.

Builds the step prompt, drives it through the provider router, and turns the
final text into a PipelineStepResult with deduplicated issues.
"""

import logging
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from .memory import PipelineMemory
from .models import (
    IterationMemory,
    PipelineStepConfig,
    PipelineStepResult,
    StepStatus,
    WorkUnit,
)
from .steps import ParsedStepOutput, get_step
from ..errors.exceptions import AgentExecutionError, ExecutionCancelledError
from ..errors.translator import ErrorCategory, ErrorTranslator, classify_text
from ..llm.base import CancellationHandle, ExecutionRequest
from ..llm.provider_router import ProviderRouter
from ..scheduling.resume_scheduler import QUOTA_CATEGORIES, ResumeScheduler
from ..utils.rich_logging import get_context_logger

logger = logging.getLogger(__name__)

# Step model "different" swaps the unit's model for another tier
ALTERNATE_MODELS = {
    "opus": "sonnet",
    "sonnet": "opus",
    "haiku": "sonnet",
}
FALLBACK_ALTERNATE = "opus"


def resolve_step_model(step_config: PipelineStepConfig, unit: WorkUnit, default_model: str) -> str:
    """Explicit model id, or ``same``/``different`` relative to the unit's model."""
    unit_model = unit.model or default_model
    if step_config.model is None or step_config.model == "same":
        return unit_model
    if step_config.model == "different":
        return ALTERNATE_MODELS.get(unit_model, FALLBACK_ALTERNATE)
    return step_config.model


class PipelineStepRunner:
    """Runs one configured step against one work unit."""

    def __init__(
        self,
        router: ProviderRouter,
        memory: Optional[PipelineMemory] = None,
        default_model: str = "sonnet",
        working_dir: Optional[Path] = None,
        system_prompt: Optional[str] = None,
        scheduler: Optional[ResumeScheduler] = None,
    ):
        self.router = router
        self.memory = memory
        self.default_model = default_model
        self.working_dir = Path(working_dir) if working_dir else Path.cwd()
        self.system_prompt = system_prompt
        self.scheduler = scheduler
        self.translator = ErrorTranslator()

    def _iteration_memory(self, step_config: PipelineStepConfig, unit: WorkUnit) -> Optional[IterationMemory]:
        if step_config.memory is not None:
            return step_config.memory
        if step_config.memory_enabled and self.memory is not None:
            return self.memory.get_memory_for_next_iteration(step_config.id, unit.id)
        return None

    async def execute(
        self,
        unit: WorkUnit,
        step_config: PipelineStepConfig,
        cancellation: Optional[CancellationHandle] = None,
        on_progress: Optional[Callable[[str], None]] = None,
    ) -> PipelineStepResult:
        """Run the step to a result.

        Mechanism failures become a ``status: error`` result. Cancellation is
        re-raised as ExecutionCancelledError so callers can tell it apart.
        """
        cancellation = cancellation or CancellationHandle()
        step = get_step(step_config.type)
        options = step_config.parsed_options()
        model = resolve_step_model(step_config, unit, self.default_model)
        progress = on_progress or (lambda message: None)
        log = get_context_logger(__name__)

        if self.scheduler is not None and not self.scheduler.is_run_permitted(unit.id):
            return self._paused_result(unit, step_config, log, progress)

        log.step_started(unit.id, step_config.name, unit.title)
        progress(f"Starting {step_config.name}...")
        started = time.monotonic()

        attempt = 0
        output = ""
        parsed = ParsedStepOutput()
        try:
            while True:
                attempt += 1
                if cancellation.cancelled:
                    raise ExecutionCancelledError()

                memory = self._iteration_memory(step_config, unit)
                prompt = step.build_prompt(unit, options, memory, attempt)
                request = ExecutionRequest(
                    prompt=prompt,
                    model=model,
                    working_dir=str(self.working_dir),
                    system_prompt=self.system_prompt,
                    cancellation=cancellation,
                )
                output = await self.router.query_text(request)
                if cancellation.cancelled:
                    raise ExecutionCancelledError()

                parsed = step.parse_output(output, options)
                self._raise_on_quota_text(output, parsed)
                self._suppress_seen(parsed, memory)

                if step_config.memory_enabled and self.memory is not None:
                    self.memory.store_feedback(
                        step_config.id,
                        unit.id,
                        parsed.issues,
                        summary=str(parsed.metadata.get("summary") or output),
                    )

                if not step.should_retry(parsed, options, attempt):
                    break
                log.info(f"Attempt {attempt} did not meet success criteria, retrying")
                progress(f"{step_config.name} attempt {attempt} did not succeed, retrying")

        except ExecutionCancelledError:
            log.warning("Step cancelled")
            progress(f"{step_config.name} cancelled")
            log.clear_context()
            raise
        except AgentExecutionError as e:
            friendly = self.translator.translate(e)
            log.step_failed(str(e))
            progress(f"{step_config.name} failed: {e}")
            metadata = {"error": str(e), "error_category": friendly.category.value}
            if self.scheduler is not None and self.scheduler.pause_on_error(unit.id, e):
                metadata["resume_at"] = self.scheduler.get(unit.id).resume_at.isoformat()
            return PipelineStepResult(
                status=StepStatus.ERROR,
                output=str(e),
                metadata=metadata,
                iterations=attempt,
            )

        result = PipelineStepResult(
            status=parsed.status,
            output=output,
            issues=parsed.issues,
            metadata=parsed.metadata,
            iterations=attempt,
        )
        log.step_completed(result.status.value, len(result.issues), time.monotonic() - started)
        progress(f"{step_config.name} {result.status.value}")
        return result

    def _paused_result(
        self, unit: WorkUnit, step_config: PipelineStepConfig, log, progress: Callable[[str], None]
    ) -> PipelineStepResult:
        entry = self.scheduler.get(unit.id)
        message = f"{unit.id} is paused until {entry.resume_at.isoformat()}: {entry.reason}"
        log.warning(f"Not starting {step_config.name}, {message}")
        progress(f"{step_config.name} paused")
        category = classify_text(entry.reason) or ErrorCategory.QUOTA_EXHAUSTED
        return PipelineStepResult(
            status=StepStatus.ERROR,
            output=message,
            metadata={
                "error": message,
                "error_category": category.value,
                "resume_at": entry.resume_at.isoformat(),
            },
            iterations=0,
        )

    def _raise_on_quota_text(self, output: str, parsed: ParsedStepOutput) -> None:
        """A reply with no structured result that reads as a quota or rate-limit notice is a failure."""
        if parsed.extracted:
            return
        if classify_text(output) in QUOTA_CATEGORIES:
            raise AgentExecutionError(output.strip())

    def _suppress_seen(self, parsed: ParsedStepOutput, memory: Optional[IterationMemory]) -> None:
        if memory is None or not memory.seen_hashes:
            return
        seen = set(memory.seen_hashes)
        fresh = [issue for issue in parsed.issues if issue.hash not in seen]
        suppressed = len(parsed.issues) - len(fresh)
        if suppressed:
            logger.info(f"Suppressed {suppressed} previously reported issues")
            parsed.metadata["suppressed_issues"] = suppressed
        parsed.issues = fresh

    def skip_step(self, step_id: str, unit_id: str) -> None:
        """Forget the step's iteration history for a unit."""
        if self.memory is not None:
            self.memory.clear(step_id, unit_id)
        logger.info(f"Skipped step {step_id} for {unit_id}")

    def clear_step_results(self, step_id: str, unit_id: str) -> None:
        if self.memory is not None:
            self.memory.clear(step_id, unit_id)
        logger.info(f"Cleared results of step {step_id} for {unit_id}")

    def memory_stats(self) -> Dict[str, Any]:
        return self.memory.stats() if self.memory is not None else {}
