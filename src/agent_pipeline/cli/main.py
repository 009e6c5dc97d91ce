"""Main CLI for agent pipeline."""

import asyncio
import json
from pathlib import Path

import click
import yaml
from rich.console import Console
from rich.table import Table

from ..core.config import load_config
from ..errors.exceptions import AgentExecutionError, ExecutionCancelledError
from ..errors.translator import ErrorTranslator
from ..llm.auth import AuthManager
from ..llm.base import CancellationHandle, ExecutionMode, ExecutionRequest
from ..llm.messages import AssistantMessage, ErrorMessage, ResultMessage
from ..llm.provider_router import ProviderRouter
from ..pipeline.executor import PipelineStepRunner
from ..pipeline.memory import PipelineMemory
from ..pipeline.models import PipelineStepConfig, StepStatus, StepType, WorkUnit
from ..scheduling.resume_scheduler import ResumeEvent, ResumeEventType, ResumeScheduler
from ..utils.rich_logging import setup_rich_logging


console = Console()
translator = ErrorTranslator()

STATUS_STYLES = {
    StepStatus.PASSED: "green",
    StepStatus.FAILED: "yellow",
    StepStatus.ERROR: "red",
}
SEVERITY_STYLES = {"high": "red", "medium": "yellow", "low": "dim"}


def _print_error(error: Exception) -> None:
    console.print(translator.format_for_cli(translator.translate(error)))


def _run(coro):
    """Run a coroutine; Ctrl+C cancels the shared handle first."""
    cancellation = CancellationHandle()

    async def runner():
        try:
            return await coro(cancellation)
        except asyncio.CancelledError:
            cancellation.cancel("interrupted")
            raise

    try:
        return asyncio.run(runner())
    except KeyboardInterrupt:
        cancellation.cancel("interrupted")
        console.print("\n[yellow]Interrupted[/]")
        raise SystemExit(130)


async def _wait_for_resume(scheduler: ResumeScheduler, unit_key: str, cancellation: CancellationHandle) -> None:
    """Block until the unit leaves the paused states or the handle fires."""
    released = asyncio.Event()

    def on_event(event: ResumeEvent) -> None:
        if event.unit_key == unit_key and event.type in (ResumeEventType.RESUMED, ResumeEventType.CANCELLED):
            released.set()

    unsubscribe = scheduler.subscribe(on_event)
    released_task = asyncio.create_task(released.wait())
    cancel_task = asyncio.create_task(cancellation.wait())
    try:
        done, _ = await asyncio.wait([released_task, cancel_task], return_when=asyncio.FIRST_COMPLETED)
    finally:
        unsubscribe()
        released_task.cancel()
        cancel_task.cancel()
    if cancel_task in done:
        raise ExecutionCancelledError()


@click.group()
@click.option("--config", "-c", "config_path", default="agent-pipeline.yaml", help="Config file")
@click.option("--log-level", default="WARNING", help="Logging level")
@click.pass_context
def cli(ctx, config_path, log_level):
    """Agent Pipeline - route prompts to agent backends and run analysis steps."""
    ctx.ensure_object(dict)
    config = load_config(Path(config_path))
    ctx.obj["config"] = config
    setup_rich_logging(log_level=log_level, logs_dir=config.logs_dir)


@cli.command()
@click.argument("prompt")
@click.option("--mode", type=click.Choice([m.value for m in ExecutionMode]), help="Force execution mode")
@click.option("--model", "-m", help="Model id or alias")
@click.option("--system-prompt", "-s", help="System prompt")
@click.option("--max-turns", type=int, help="Turn limit")
@click.pass_context
def query(ctx, prompt, mode, model, system_prompt, max_turns):
    """Send a prompt and stream the response."""
    config = ctx.obj["config"]
    router = ProviderRouter.from_config(config)

    async def stream(cancellation):
        request = ExecutionRequest(
            prompt=prompt,
            model=model,
            working_dir=str(config.workspace),
            system_prompt=system_prompt,
            max_turns=max_turns,
            cancellation=cancellation,
            mode=ExecutionMode(mode) if mode else None,
        )
        async for message in router.query(request):
            if isinstance(message, AssistantMessage):
                console.print(message.text, end="", markup=False, highlight=False)
            elif isinstance(message, ResultMessage):
                console.print()
                style = "green" if message.is_success else "red"
                console.print(f"[{style}]{message.subtype}[/]")
                if message.total_cost_usd is not None:
                    console.print(f"[dim]Cost: ${message.total_cost_usd:.4f}[/]")
            elif isinstance(message, ErrorMessage):
                console.print()
                console.print(translator.format_for_cli(translator.translate(message.error)))
                raise SystemExit(1)

    try:
        _run(stream)
    except ExecutionCancelledError as e:
        console.print(f"[yellow]{e}[/]")
        raise SystemExit(130)
    except AgentExecutionError as e:
        _print_error(e)
        raise SystemExit(1)


def _load_options(options_json, options_file):
    if options_file:
        with open(options_file) as f:
            return yaml.safe_load(f) or {}
    if options_json:
        return json.loads(options_json)
    return {}


@cli.command()
@click.argument("step_type", type=click.Choice([t.value for t in StepType]))
@click.option("--unit-id", required=True, help="Work unit id")
@click.option("--title", default="", help="Work unit title")
@click.option("--description", default="", help="Work unit description")
@click.option("--category", default="", help="Work unit category")
@click.option("--step-id", help="Step id (defaults to the step type)")
@click.option("--model", "-m", help="Model id, 'same' or 'different'")
@click.option("--options", "options_json", help="Step options as JSON")
@click.option("--options-file", type=click.Path(exists=True), help="Step options as YAML")
@click.option("--memory/--no-memory", default=False, help="Use iteration memory")
@click.option("--json", "as_json", is_flag=True, help="Print the result document as JSON")
@click.option("--wait-for-quota", is_flag=True, help="On quota exhaustion, wait for the reset and run again")
@click.pass_context
def step(ctx, step_type, unit_id, title, description, category, step_id, model,
         options_json, options_file, memory, as_json, wait_for_quota):
    """Run one pipeline step against a work unit."""
    config = ctx.obj["config"]
    options = _load_options(options_json, options_file)
    if step_type == StepType.REVIEW.value:
        options.setdefault("max_issues", config.pipeline.max_issues)
    step_config = PipelineStepConfig(
        id=step_id or step_type,
        type=StepType(step_type),
        model=model,
        options=options,
        memory_enabled=memory,
    )
    unit = WorkUnit(id=unit_id, title=title, description=description, category=category)

    pipeline_memory = PipelineMemory(config.pipeline.memory_dir)
    pipeline_memory.load()
    pipeline_memory.clear_old(config.pipeline.memory_max_age_days)

    router = ProviderRouter.from_config(config)

    async def execute(cancellation):
        scheduler = ResumeScheduler.from_config(config) if wait_for_quota else None
        runner = PipelineStepRunner(
            router,
            memory=pipeline_memory,
            default_model=config.cli.default_model,
            working_dir=config.workspace,
            scheduler=scheduler,
        )
        try:
            while True:
                result = await runner.execute(
                    unit,
                    step_config,
                    cancellation,
                    on_progress=lambda message: console.print(f"[dim]{message}[/]"),
                )
                if scheduler is None or scheduler.is_run_permitted(unit.id):
                    return result
                resume_at = scheduler.get(unit.id).resume_at
                console.print(f"[yellow]Quota exhausted, waiting until {resume_at.isoformat()}[/]")
                await _wait_for_resume(scheduler, unit.id, cancellation)
        finally:
            if scheduler is not None:
                await scheduler.shutdown()

    try:
        result = _run(execute)
    except ExecutionCancelledError as e:
        console.print(f"[yellow]{e}[/]")
        raise SystemExit(130)

    if as_json:
        console.print_json(json.dumps(result.to_document()))
    else:
        style = STATUS_STYLES[result.status]
        console.print(f"\n[bold {style}]{step_config.name}: {result.status.value}[/]")
        summary = result.metadata.get("summary")
        if summary:
            console.print(summary)
        if result.issues:
            table = Table()
            table.add_column("Severity")
            table.add_column("Summary")
            table.add_column("Location")
            table.add_column("Hash", style="dim")
            for issue in result.issues:
                sev = issue.severity.value
                table.add_row(f"[{SEVERITY_STYLES[sev]}]{sev}[/]", issue.summary, issue.location or "", issue.hash)
            console.print(table)
        if result.status == StepStatus.ERROR:
            console.print(translator.format_for_cli(translator.translate(result.output)))

    if result.status != StepStatus.PASSED:
        raise SystemExit(1)


@cli.command("auth-status")
@click.option("--refresh", is_flag=True, help="Bypass the status cache")
@click.pass_context
def auth_status(ctx, refresh):
    """Show which execution modes are available."""
    config = ctx.obj["config"]
    manager = AuthManager(
        configured_mode=config.execution.mode,
        api_key=config.api.api_key,
        cli_executable=config.cli.executable,
        cache_ttl=config.execution.auth_cache_ttl,
        command_timeout=config.execution.auth_lookup_timeout,
        verify_cli_login=config.execution.verify_cli_login,
    )
    status = asyncio.run(manager.get_status(force_refresh=refresh))

    table = Table(title="Authentication")
    table.add_column("Check")
    table.add_column("Result")
    table.add_row("Configured mode", status.configured_mode)
    table.add_row("API key configured", "[green]yes[/]" if status.api_key.configured else "[red]no[/]")
    table.add_row("API key format valid", "[green]yes[/]" if status.api_key.valid else "[red]no[/]")
    table.add_row("CLI installed", "[green]yes[/]" if status.cli.installed else "[red]no[/]")
    if status.cli.path:
        table.add_row("CLI path", status.cli.path)
    if status.cli.version:
        table.add_row("CLI version", status.cli.version)
    table.add_row("Resolved mode", status.mode.value if status.mode else "[red]none[/]")
    console.print(table)

    if status.error:
        console.print(translator.format_for_cli(translator.translate(status.error)))
    if not status.authenticated:
        raise SystemExit(1)


@cli.command("memory-stats")
@click.pass_context
def memory_stats(ctx):
    """Show persisted iteration memory statistics."""
    config = ctx.obj["config"]
    if config.pipeline.memory_dir is None:
        console.print("[yellow]pipeline.memory_dir is not configured[/]")
        return
    memory = PipelineMemory(config.pipeline.memory_dir)
    memory.load()

    table = Table(title="Iteration memory")
    table.add_column("Metric")
    table.add_column("Value")
    for key, value in memory.stats().items():
        table.add_row(key.replace("_", " "), str(value if value is not None else "-"))
    console.print(table)


@cli.command("clear-memory")
@click.option("--unit-id", required=True, help="Work unit id")
@click.option("--step-id", help="Only this step; defaults to every step of the unit")
@click.pass_context
def clear_memory(ctx, unit_id, step_id):
    """Forget iteration memory for a work unit."""
    config = ctx.obj["config"]
    memory = PipelineMemory(config.pipeline.memory_dir)
    memory.load()
    if step_id:
        memory.clear(step_id, unit_id)
    else:
        memory.clear_unit(unit_id)
    console.print(f"[green]✓ Cleared memory for {unit_id}[/]")


if __name__ == "__main__":
    cli()
