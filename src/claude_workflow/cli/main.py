"""Command line interface for claude-workflow."""

import signal
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Optional

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from ..core.ci_models import CIProgressEvent
from ..core.clock import CancelToken
from ..core.config import DEFAULT_CONFIG_PATH, WorkflowConfig, load_config
from ..core.errors import PhaseFailedError, WorkflowCancelledError, WorkflowRuntimeError
from ..core.models import Phase, PhaseStatus, PRSplitResult, WORK_PHASES, WorkflowState
from ..core.orchestrator import Orchestrator, default_confirm_func
from ..llm.base import AgentProgressEvent
from ..utils.error_handling import safe_call
from ..utils.rich_logging import setup_rich_logging
from ..utils.subprocess_utils import check_command_exists


console = Console()

STATUS_STYLES = {
    PhaseStatus.PENDING.value: "dim",
    PhaseStatus.IN_PROGRESS.value: "yellow",
    PhaseStatus.COMPLETED.value: "green",
    PhaseStatus.SKIPPED.value: "dim",
    PhaseStatus.FAILED.value: "red",
}

# Exit status after Ctrl+C, matching the shell's 128 + SIGINT
EXIT_CANCELLED = 130

SKIP_TO_CHOICES = [phase.value for phase in WORK_PHASES]


@click.group()
@click.option("--base-dir", "-d", type=click.Path(path_type=Path), default=None,
              help="Workflow state directory (overrides config)")
@click.option("--config", "-c", "config_path", type=click.Path(path_type=Path),
              default=DEFAULT_CONFIG_PATH, show_default=True, help="Config file")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def cli(ctx, base_dir, config_path, verbose):
    """Claude Workflow - plan, implement, refactor and split PRs with Claude."""
    ctx.ensure_object(dict)
    config = load_config(config_path)
    if base_dir is not None:
        config = config.model_copy(update={"base_dir": base_dir})
    ctx.obj["config"] = config
    ctx.obj["verbose"] = verbose


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------


def _print_agent_progress(event: AgentProgressEvent) -> None:
    if event.type == "tool_use":
        detail = f": {escape(event.summary)}" if event.summary else ""
        console.print(f"[dim]  → {escape(event.tool_name or 'tool')}{detail}[/]")
    elif event.type == "tool_result" and event.is_error:
        console.print("[dim red]  ✗ tool error[/]")


def _print_ci_progress(event: CIProgressEvent) -> None:
    if event.type in ("waiting", "retry"):
        console.print(f"[dim]  CI: {escape(event.message)}[/]")


def _make_orchestrator(ctx, workflow: Optional[str] = None) -> Orchestrator:
    config: WorkflowConfig = ctx.obj["config"]
    if ctx.obj["verbose"]:
        log_level = "DEBUG"
    else:
        log_level = "INFO" if workflow else "WARNING"
    setup_rich_logging(
        workflow or "claude-workflow",
        config.base_dir,
        log_level=log_level,
        use_file=workflow is not None,
    )
    return Orchestrator(
        config=config,
        confirm_func=lambda plan: default_confirm_func(plan, console),
        on_agent_progress=_print_agent_progress,
        on_ci_progress=_print_ci_progress,
    )


def _fail(message: str) -> None:
    console.print(f"[red]Error: {escape(message)}[/]")
    raise SystemExit(1)


def _require_tools(config: WorkflowConfig) -> None:
    for executable in (config.claude_path, config.gh_path, "git"):
        if not check_command_exists(executable):
            _fail(f"required executable not found: {executable}")


@contextmanager
def _interruptible():
    """Turn the first Ctrl+C into a cancel request; a second one aborts."""
    token = CancelToken()

    def handle_sigint(signum, frame):
        if token.cancelled:
            raise KeyboardInterrupt
        console.print("\n[yellow]Cancelling... (press Ctrl+C again to force)[/]")
        token.cancel()

    previous = signal.signal(signal.SIGINT, handle_sigint)
    try:
        yield token
    finally:
        signal.signal(signal.SIGINT, previous)


def _run_workflow(name: str, orchestrator: Orchestrator, run: Callable[[CancelToken], WorkflowState]) -> None:
    with _interruptible() as token:
        try:
            state = run(token)
        except PhaseFailedError as e:
            console.print(f"[red]Error: {escape(str(e))}[/]")
            if e.recoverable:
                console.print(f"[dim]Fix the problem, then run: claude-workflow resume {name}[/]")
            raise SystemExit(1)
        except WorkflowCancelledError:
            console.print(f"[yellow]Workflow cancelled. Resume with: claude-workflow resume {name}[/]")
            raise SystemExit(EXIT_CANCELLED)
        except WorkflowRuntimeError as e:
            _fail(str(e))

    console.print(f"[bold green]✓ Workflow {name} completed[/]")
    if state.pr_number:
        console.print(f"  PR: #{state.pr_number}")
    if state.phase(Phase.PR_SPLIT).status == PhaseStatus.COMPLETED:
        split = safe_call(
            orchestrator.store.load_phase_output, name, Phase.PR_SPLIT, PRSplitResult,
            error_message="Failed to load PR split result",
        )
        if split is not None:
            console.print(f"  Parent PR: #{split.parent_pr.number} ({split.parent_pr.url})")
            for child in split.child_prs:
                console.print(f"  Child PR: #{child.number} {escape(child.title)}")


# ----------------------------------------------------------------------
# Commands
# ----------------------------------------------------------------------


@cli.command()
@click.argument("name")
@click.argument("description")
@click.option("--type", "-t", "workflow_type", type=click.Choice(["feature", "fix"]),
              default="feature", show_default=True, help="Workflow type")
@click.option("--skip-to", type=click.Choice(SKIP_TO_CHOICES, case_sensitive=False), default=None,
              help="Start at this phase instead of PLANNING")
@click.option("--with-plan", "plan_path", type=click.Path(exists=True, dir_okay=False, path_type=Path),
              default=None, help="Use an existing plan.json instead of planning")
@click.pass_context
def start(ctx, name, description, workflow_type, skip_to, plan_path):
    """Start a new workflow NAME described by DESCRIPTION."""
    _require_tools(ctx.obj["config"])
    orchestrator = _make_orchestrator(ctx, name)
    console.print(f"[bold]Starting {workflow_type} workflow: {escape(name)}[/]")
    _run_workflow(
        name, orchestrator,
        lambda token: orchestrator.start(
            name, description, workflow_type, cancel=token,
            skip_to=skip_to.upper() if skip_to else None, external_plan=plan_path,
        ),
    )


@cli.command()
@click.argument("name")
@click.option("--skip-to", type=click.Choice(SKIP_TO_CHOICES, case_sensitive=False), default=None,
              help="Resume at this phase")
@click.option("--force-backward", is_flag=True, help="Allow --skip-to an earlier phase")
@click.pass_context
def resume(ctx, name, skip_to, force_backward):
    """Resume an interrupted or failed workflow."""
    _require_tools(ctx.obj["config"])
    orchestrator = _make_orchestrator(ctx, name)
    console.print(f"[bold]Resuming workflow: {escape(name)}[/]")
    _run_workflow(
        name, orchestrator,
        lambda token: orchestrator.resume(
            name, cancel=token,
            skip_to=skip_to.upper() if skip_to else None, force_backward=force_backward,
        ),
    )


@cli.command()
@click.argument("name")
@click.pass_context
def status(ctx, name):
    """Show the state of a workflow."""
    orchestrator = _make_orchestrator(ctx)
    try:
        state = orchestrator.status(name)
    except WorkflowRuntimeError as e:
        _fail(str(e))

    console.print(f"[bold]{escape(state.name)}[/] ({state.type}): {escape(state.description)}")
    console.print(f"Current phase: [bold]{state.current_phase}[/]")
    if state.worktree_path:
        console.print(f"Worktree: {state.worktree_path}")
    if state.pr_number:
        console.print(f"PR: #{state.pr_number}")
    if state.external_plan_used:
        console.print("Plan: external")
    if state.skipped_phases:
        console.print(f"Skipped: {', '.join(state.skipped_phases)}")

    table = Table()
    table.add_column("Phase")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Feedback", justify="right")

    for phase in WORK_PHASES:
        phase_state = state.phases.get(phase.value)
        if phase_state is None:
            continue
        style = STATUS_STYLES.get(phase_state.status, "")
        table.add_row(
            phase.value,
            f"[{style}]{phase_state.status}[/]" if style else phase_state.status,
            str(phase_state.attempts),
            str(len(phase_state.feedback)),
        )
    console.print(table)

    if state.error is not None:
        hint = "recoverable" if state.error.recoverable else "not recoverable"
        console.print(
            f"[red]Error in {state.error.phase} ({state.error.failure_type}, {hint}): "
            f"{escape(state.error.message)}[/]"
        )


@cli.command(name="list")
@click.pass_context
def list_workflows(ctx):
    """List all workflows."""
    orchestrator = _make_orchestrator(ctx)
    workflows = orchestrator.list()
    if not workflows:
        console.print("[dim]No workflows found[/]")
        return

    table = Table()
    table.add_column("Name")
    table.add_column("Type")
    table.add_column("Phase")
    table.add_column("Status")
    table.add_column("Updated")

    for info in workflows:
        style = STATUS_STYLES.get(info.status, "")
        table.add_row(
            info.name,
            info.type,
            info.current_phase,
            f"[{style}]{info.status}[/]" if style else info.status,
            info.updated_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


@cli.command()
@click.argument("name")
@click.option("--force", "-f", is_flag=True, help="Skip confirmation")
@click.pass_context
def delete(ctx, name, force):
    """Delete a workflow's state."""
    orchestrator = _make_orchestrator(ctx)
    if not force:
        click.confirm(f"Delete workflow {name}?", abort=True)
    try:
        orchestrator.delete(name)
    except WorkflowRuntimeError as e:
        _fail(str(e))
    console.print(f"[green]✓ Deleted workflow {escape(name)}[/]")


@cli.command()
@click.pass_context
def clean(ctx):
    """Delete all completed workflows."""
    orchestrator = _make_orchestrator(ctx)
    deleted = orchestrator.clean()
    if not deleted:
        console.print("[dim]No completed workflows to clean[/]")
        return
    for name in deleted:
        console.print(f"[green]✓ Deleted {escape(name)}[/]")
    console.print(f"Cleaned {len(deleted)} workflow(s)")


if __name__ == "__main__":
    cli()
