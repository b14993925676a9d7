"""Phase state machine driving a workflow from planning to merged-ready PRs.

Phases run in order::

    PLANNING -> CONFIRMATION -> IMPLEMENTATION -> REFACTORING -> [PR_SPLIT] -> COMPLETED

Every handler persists its own progress, so a crash at any point leaves a
state file that ``resume`` can pick up. Any phase can end in FAILED; the
recorded error says whether resuming makes sense.
"""

import logging
from pathlib import Path
from typing import Callable, List, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel
from rich.console import Console
from rich.markup import escape

from ..llm.base import AgentExecutor, AgentRequest, ProgressCallback
from ..llm.claude_cli_executor import ClaudeCLIExecutor
from ..llm.output_parser import OutputParser
from ..llm.schemas import (
    IMPLEMENTATION_SUMMARY_SCHEMA,
    PLAN_SCHEMA,
    PR_SPLIT_PLAN_SCHEMA,
    REFACTORING_SUMMARY_SCHEMA,
    Schema,
    schema_json,
)
from ..utils.error_handling import log_and_ignore, log_and_reraise, safe_call
from ..utils.rich_logging import WorkflowLogger
from ..utils.validators import validate_description, validate_workflow_name, validate_workflow_type
from ..workspace.gh_runner import GhRunner, GitHubClient
from ..workspace.git_runner import GitClient, GitRunner
from ..workspace.worktree_manager import WorktreeError, WorktreeManager
from .ci_models import (
    CheckCIOptions,
    CIFailureHistory,
    CIFailureHistoryEntry,
    CIProgressEvent,
    CIResult,
    FailureCategory,
)
from .ci_poller import CheckStatusSource, CIPoller
from .classifier import CIFailureClassifier
from .clock import CancelToken, Clock, RealClock
from .config import WorkflowConfig
from .errors import (
    AgentError,
    CIError,
    NonRecoverableError,
    ParseError,
    PhaseFailedError,
    PRSplitError,
    RollbackError,
    UserCancelledError,
    ValidationError,
    WorkflowCancelledError,
    WorkflowCompletedError,
    WorkflowNotFoundError,
    WorkflowRuntimeError,
)
from .models import (
    WORK_PHASES,
    CIHistoryRecord,
    FailureType,
    ImplementationSummary,
    Phase,
    PhaseState,
    PhaseStatus,
    PhaseTransition,
    Plan,
    PRMetrics,
    PRSplitResult,
    RefactoringSummary,
    WorkflowError,
    WorkflowInfo,
    WorkflowState,
    phase_slug,
)
from .pr_split import PRSplitManager
from .prompts import PromptGenerator
from .skip import load_external_plan, phase_order, phases_to_skip, validate_skip
from .state_store import StateStore

logger = logging.getLogger(__name__)

# WorkflowError.context key holding the CI failure text a resume feeds back
CI_FAILURE_CONTEXT_KEY = "ciFailure"
# Set when CI could not be checked; a resume polls CI again before calling the agent
CI_RECHECK_CONTEXT_KEY = "ciRecheck"

TERMINAL_PHASES = (Phase.COMPLETED, Phase.FAILED)
FIX_LOOP_PHASES = (Phase.IMPLEMENTATION, Phase.REFACTORING)

TRANSITION_SKIP = "skip"

ConfirmFunc = Callable[[Plan], Tuple[bool, str]]

M = TypeVar("M", bound=BaseModel)


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------


def is_recoverable_error(error: Optional[BaseException]) -> bool:
    """Whether resuming after ``error`` can reasonably succeed.

    Typed errors decide first; anything else is judged by its message.
    """
    if error is None:
        return False
    if isinstance(error, PhaseFailedError):
        return error.recoverable
    if isinstance(error, (ValidationError, UserCancelledError)):
        return False
    if isinstance(error, (AgentError, ParseError, CIError, WorkflowCancelledError)):
        return True

    message = str(error).lower()
    if "timeout" in message:
        return True
    if "claude execution failed" in message:
        return True
    if "failed to parse" in message:
        return True
    if "invalid" in message:
        return False
    return True


def parse_diff_stat(output: str) -> PRMetrics:
    """PR size from ``git diff --stat`` output.

    The summary line (``N files changed, X insertions(+), ...``) gives the
    totals; every other line names one file.
    """
    metrics = PRMetrics()
    lines = [line for line in output.strip().splitlines() if line.strip()]
    if not lines:
        return metrics

    *file_lines, summary = lines

    parts = summary.split()
    if len(parts) >= 1 and parts[0].isdigit():
        metrics.files_changed = int(parts[0])
    if len(parts) >= 4 and parts[3].isdigit():
        metrics.lines_changed = int(parts[3])

    for line in file_lines:
        parts = line.split()
        if not parts:
            continue
        file_name = parts[0]
        if "(new)" in line:
            metrics.files_added.append(file_name)
        elif "(gone)" in line:
            metrics.files_deleted.append(file_name)
        else:
            metrics.files_modified.append(file_name)

    return metrics


def format_ci_errors(result: CIResult) -> str:
    """Failure text handed to the fix-CI prompt."""
    text = "CI checks failed with the following errors:\n\n"
    text += result.output
    text += "\n\nFailed jobs:\n"
    for job in result.failed_jobs:
        text += f"- {job}\n"
    if result.cancelled_jobs:
        text += "\nCancelled jobs:\n"
        for job in result.cancelled_jobs:
            text += f"- {job}\n"
    if result.classification is not None and result.classification.recommended_action:
        text += f"\nRecommended action: {result.classification.recommended_action}\n"
    return text


def load_ci_history(phase_state: PhaseState) -> CIFailureHistory:
    return CIFailureHistory(entries=[
        CIFailureHistoryEntry(
            failed_jobs=list(record.failed_jobs),
            cancelled_jobs=list(record.cancelled_jobs),
            category=FailureCategory(record.category),
            timestamp=record.timestamp,
        )
        for record in phase_state.ci_history
    ])


def dump_ci_history(history: CIFailureHistory) -> List[CIHistoryRecord]:
    return [
        CIHistoryRecord(
            failed_jobs=entry.failed_jobs,
            cancelled_jobs=entry.cancelled_jobs,
            category=FailureCategory(entry.category).value,
            timestamp=entry.timestamp,
        )
        for entry in history.entries
    ]


def default_confirm_func(plan: Plan, console: Optional[Console] = None) -> Tuple[bool, str]:
    """Show the plan summary and ask the operator to approve it.

    Returns:
        ``(True, "")`` on approval, ``(False, feedback)`` when the operator
        typed feedback instead.

    Raises:
        UserCancelledError: The operator answered no
    """
    console = console or Console()
    console.print()
    console.print(f"[bold cyan]Plan summary[/]\n{escape(plan.summary)}")
    if plan.complexity:
        console.print(f"[bold]Complexity:[/] {escape(plan.complexity)}")
    console.print(
        f"[bold]Estimated size:[/] {plan.estimated_total_lines} lines "
        f"across {plan.estimated_total_files} files"
    )
    for i, phase in enumerate(plan.phases, 1):
        console.print(f"  {i}. {escape(phase.name)}")
    console.print()

    while True:
        response = console.input(f"[bold]{escape('Approve this plan? [y/n/feedback]: ')}[/]").strip()

        if not response:
            console.print("[yellow]Please enter 'y' to approve, 'n' to cancel, or type your feedback.[/]")
            continue

        answer = response.lower()
        if answer in ("y", "yes"):
            return True, ""
        if answer in ("n", "no"):
            raise UserCancelledError()

        console.print("[green]Feedback received. Replanning with your suggestions...[/]")
        return False, response


# ----------------------------------------------------------------------
# Orchestrator
# ----------------------------------------------------------------------


class Orchestrator:
    """Runs workflows through their phases and keeps their state on disk."""

    def __init__(
        self,
        config: Optional[WorkflowConfig] = None,
        store: Optional[StateStore] = None,
        agent: Optional[AgentExecutor] = None,
        git: Optional[GitClient] = None,
        gh: Optional[GitHubClient] = None,
        checks: Optional[CheckStatusSource] = None,
        worktrees: Optional[WorktreeManager] = None,
        clock: Optional[Clock] = None,
        prompts: Optional[PromptGenerator] = None,
        parser: Optional[OutputParser] = None,
        confirm_func: Optional[ConfirmFunc] = None,
        on_agent_progress: Optional[ProgressCallback] = None,
        on_ci_progress: Optional[Callable[[CIProgressEvent], None]] = None,
    ):
        """
        Args:
            config: Workflow configuration (defaults + environment when omitted)
            store: State persistence (defaults to one under ``config.base_dir``)
            agent: Coding agent executor (defaults to the Claude CLI)
            git: Git capability (defaults to the git executable)
            gh: Pull request capability (defaults to the gh executable)
            checks: CI status source (defaults to ``gh`` when it is one)
            worktrees: Worktree manager for per-workflow workspaces
            clock: Time source for timestamps and CI waits
            confirm_func: Plan approval callback; see ``default_confirm_func``
            on_agent_progress: Display callback for streaming agent events
            on_ci_progress: Display callback for CI polling events
        """
        self.config = config or WorkflowConfig()
        self.clock = clock or RealClock()
        self.store = store or StateStore(self.config.base_dir, clock=self.clock)
        self.agent = agent or ClaudeCLIExecutor(executable=self.config.claude_path)
        self.git = git or GitRunner(timeout=self.config.timeouts.git_command)
        self.gh = gh or GhRunner(executable=self.config.gh_path, timeout=self.config.timeouts.gh_command)
        if checks is None:
            checks = self.gh if isinstance(self.gh, CheckStatusSource) else GhRunner(
                executable=self.config.gh_path, timeout=self.config.timeouts.gh_command,
            )
        self.worktrees = worktrees or WorktreeManager(self.config.base_dir, self.config.repo_dir)
        self.prompts = prompts or PromptGenerator()
        self.parser = parser or OutputParser()
        self.confirm_func = confirm_func or default_confirm_func
        self.on_agent_progress = on_agent_progress
        self.on_ci_progress = on_ci_progress

        ci = self.config.ci
        self.ci_poller = CIPoller(
            checks,
            self.clock,
            classifier=CIFailureClassifier(ci.persistent_failure_threshold),
            check_interval=ci.check_interval,
            initial_delay=ci.initial_delay,
            command_timeout=ci.command_timeout,
            progress_interval=ci.progress_interval,
        )

        self._handlers = {
            Phase.PLANNING.value: self._execute_planning,
            Phase.CONFIRMATION.value: self._execute_confirmation,
            Phase.IMPLEMENTATION.value: self._execute_implementation,
            Phase.REFACTORING.value: self._execute_refactoring,
            Phase.PR_SPLIT.value: self._execute_pr_split,
        }
        self._log: Optional[WorkflowLogger] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def start(
        self,
        name: str,
        description: str,
        workflow_type: str = "feature",
        cancel: Optional[CancelToken] = None,
        skip_to: Optional[str] = None,
        external_plan: Optional[Path] = None,
    ) -> WorkflowState:
        """Create workflow ``name`` and run it until it completes or fails.

        A previous FAILED workflow with the same name is replaced.

        Args:
            skip_to: Phase to start at instead of PLANNING
            external_plan: plan.json written outside the workflow. Without
                ``skip_to`` the run starts at CONFIRMATION.

        Raises:
            ValidationError: Invalid name, type, description or plan
            SkipNotAllowedError: ``skip_to`` is not reachable
            WorkflowExistsError: A non-failed workflow with this name exists
            WorkflowLockedError: Another process is running this workflow
            PhaseFailedError: A phase failed (already recorded in state)
            WorkflowCancelledError: ``cancel`` fired (already recorded in state)
        """
        validate_workflow_name(name)
        validate_workflow_type(workflow_type)
        validate_description(description)

        plan = load_external_plan(external_plan) if external_plan is not None else None
        if plan is not None and skip_to is None:
            skip_to = Phase.CONFIRMATION.value
        target = None
        if skip_to is not None:
            target = validate_skip(
                self.store.new_state(name, description, workflow_type),
                Phase.PLANNING,
                skip_to,
                plan_available=plan is not None,
            )

        with self.store.locked(name):
            if self.store.workflow_exists(name):
                existing = safe_call(
                    self.store.load_state, name,
                    error_message=f"Failed to load existing workflow {name}",
                )
                if existing is not None and existing.current_phase == Phase.FAILED:
                    logger.info(f"Replacing failed workflow {name}")
                    self.store.delete_workflow(name, keep_lock=True)

            state = self.store.init_state(name, description, workflow_type)
            if plan is not None:
                self.store.save_plan(name, plan)
                self.store.save_plan_markdown(name, plan.to_markdown())
                state.external_plan_used = True
            if target is not None and target != Phase.PLANNING:
                self._skip_to_phase(state, Phase.PLANNING, target)
            self.store.save_state(name, state)
            return self._run(state, cancel)

    def resume(
        self,
        name: str,
        cancel: Optional[CancelToken] = None,
        skip_to: Optional[str] = None,
        force_backward: bool = False,
    ) -> WorkflowState:
        """Continue workflow ``name`` from where it stopped, or from ``skip_to``.

        Raises:
            WorkflowNotFoundError: No such workflow
            WorkflowCompletedError: The workflow already completed
            NonRecoverableError: The recorded error cannot be resumed from
            SkipNotAllowedError: ``skip_to`` is not reachable
            WorkflowLockedError: Another process is running this workflow
            PhaseFailedError: A phase failed again
            WorkflowCancelledError: ``cancel`` fired
        """
        validate_workflow_name(name)
        if not self.store.workflow_exists(name):
            raise WorkflowNotFoundError(name)

        with self.store.locked(name):
            state = self.store.load_state(name)

            if state.current_phase == Phase.COMPLETED:
                raise WorkflowCompletedError(name)
            error = state.error
            if error is not None and not error.recoverable:
                raise NonRecoverableError(name, error.message)

            current = self._restore_phase(state) if state.current_phase == Phase.FAILED else Phase(state.current_phase)
            target = None
            if skip_to is not None:
                target = validate_skip(
                    state, current, skip_to, self.store.plan_exists(name), force_backward,
                )

            state.current_phase = current.value
            phase_state = self._current_phase_state(state)
            phase_state.status = PhaseStatus.IN_PROGRESS
            phase_state.resume_attempt = None
            phase_state.recheck_ci = False

            if target is not None and target != current:
                self._skip_to_phase(state, current, target)
                logger.info(f"Resuming {name} at {target.value}, skipped from {current.value}")
            else:
                self._prepare_resume(state, phase_state, error)

            state.error = None
            self.store.save_state(name, state)
            return self._run(state, cancel)

    def _prepare_resume(
        self,
        state: WorkflowState,
        phase_state: PhaseState,
        error: Optional[WorkflowError],
    ) -> None:
        """Decide where a CI fix loop picks up after a recorded CI failure."""
        if (
            error is None
            or error.failure_type != FailureType.CI
            or state.current_phase not in FIX_LOOP_PHASES
        ):
            logger.info(f"Resuming {state.name} at {state.current_phase}")
            return

        if error.context.get(CI_RECHECK_CONTEXT_KEY):
            phase_state.recheck_ci = True
            phase_state.resume_attempt = max(phase_state.attempts, 1)
            logger.info(f"Resuming {state.name} at {state.current_phase}, re-checking CI first")
            return

        ci_failure = error.context.get(CI_FAILURE_CONTEXT_KEY, "")
        if not ci_failure:
            logger.info(f"Resuming {state.name} at {state.current_phase}")
            return
        if not phase_state.feedback or phase_state.feedback[-1] != ci_failure:
            phase_state.feedback.append(ci_failure)
        phase_state.resume_attempt = 2
        logger.info(f"Resuming {state.name} at {state.current_phase} with the last CI failure")

    def _skip_to_phase(self, state: WorkflowState, current: Phase, target: Phase) -> None:
        """Move ``state`` from ``current`` to ``target`` without running the phases between."""
        skipped = phases_to_skip(current, target)
        for phase in skipped:
            phase_state = state.phase(phase)
            if phase_state.status != PhaseStatus.COMPLETED:
                phase_state.status = PhaseStatus.SKIPPED
            if phase not in state.skipped_phases:
                state.skipped_phases.append(phase)

        # Going back re-runs everything from the target on
        if phase_order(target) < phase_order(current):
            for phase in WORK_PHASES[phase_order(target):phase_order(current) + 1]:
                phase_state = state.phase(phase)
                phase_state.status = PhaseStatus.PENDING
                phase_state.attempts = 0
                phase_state.resume_attempt = None
                phase_state.recheck_ci = False
                phase_state.ci_history = []

        state.phase_history.append(PhaseTransition(
            from_phase=current,
            to_phase=target,
            timestamp=self.clock.now(),
            transition_type=TRANSITION_SKIP,
        ))
        state.current_phase = target.value
        state.phase(target).status = PhaseStatus.IN_PROGRESS
        if skipped:
            logger.info(f"{state.name}: skipped {', '.join(p.value for p in skipped)}")

    def status(self, name: str) -> WorkflowState:
        return self.store.load_state(name)

    def list(self) -> List[WorkflowInfo]:
        return self.store.list_workflows()

    def delete(self, name: str) -> None:
        """Delete a workflow's state. Refuses while another process runs it."""
        validate_workflow_name(name)
        if not self.store.workflow_dir(name).exists():
            raise WorkflowNotFoundError(name)
        with self.store.locked(name):
            self.store.delete_workflow(name)

    def clean(self) -> List[str]:
        """Delete every completed workflow and return their names."""
        deleted = []
        for info in self.store.list_workflows():
            if info.status != "completed":
                continue
            try:
                self.delete(info.name)
            except WorkflowRuntimeError as e:
                logger.warning(f"Failed to delete completed workflow {info.name}: {e}")
                continue
            deleted.append(info.name)
        return deleted

    # ------------------------------------------------------------------
    # Run loop and transitions
    # ------------------------------------------------------------------

    def _run(self, state: WorkflowState, cancel: Optional[CancelToken]) -> WorkflowState:
        self._log = WorkflowLogger(logger, state.name)
        self._log.info(f"Running {state.type} workflow: {state.description[:80]}")

        while state.current_phase not in TERMINAL_PHASES:
            handler = self._handlers[state.current_phase]
            self._log.phase_change(state.current_phase)
            try:
                if cancel is not None:
                    cancel.raise_if_cancelled()
                handler(state, cancel)
            except PhaseFailedError:
                raise
            except WorkflowCancelledError as e:
                self._record_failure(state, e, FailureType.EXECUTION)
                log_and_reraise(e, "Workflow interrupted", logger_instance=logger, level=logging.WARNING)
            except Exception as e:
                self.fail_workflow(state, e)

        if state.current_phase == Phase.COMPLETED:
            self._log.workflow_completed(self.clock.since(state.created_at))
        return state

    def transition_phase(self, state: WorkflowState, next_phase: Phase) -> None:
        """Complete the current phase and enter ``next_phase``, persisting both."""
        current = state.phase(state.current_phase)
        current.status = PhaseStatus.COMPLETED
        current.completed_at = self.clock.now()
        current.resume_attempt = None

        state.phase_history.append(PhaseTransition(
            from_phase=state.current_phase,
            to_phase=next_phase,
            timestamp=self.clock.now(),
        ))
        state.current_phase = Phase(next_phase).value
        if next_phase not in TERMINAL_PHASES:
            state.phase(next_phase).status = PhaseStatus.IN_PROGRESS

        self.store.save_state(state.name, state)
        logger.debug(f"{state.name}: transitioned to {state.current_phase}")

    def fail_workflow(
        self,
        state: WorkflowState,
        error: BaseException,
        failure_type: FailureType = FailureType.EXECUTION,
        message: str = "",
        ci_failure: str = "",
        recheck_ci: bool = False,
    ) -> None:
        """Record ``error`` as the workflow's failure, persist, and raise.

        Args:
            message: Context prefixed to the error text
            ci_failure: CI failure text saved for a CI-aware resume
            recheck_ci: CI could not be checked; a resume polls it again first

        Raises:
            PhaseFailedError: Always, chained to ``error``
        """
        phase = state.current_phase
        recorded = self._record_failure(state, error, failure_type, message, ci_failure, recheck_ci)
        raise PhaseFailedError(
            phase, recorded.message, recorded.recoverable, recorded.failure_type, cause=error,
        ) from error

    def _record_failure(
        self,
        state: WorkflowState,
        error: BaseException,
        failure_type: FailureType,
        message: str = "",
        ci_failure: str = "",
        recheck_ci: bool = False,
    ) -> WorkflowError:
        text = f"{message}: {error}" if message else str(error)
        context = {}
        if failure_type == FailureType.CI:
            if ci_failure:
                context[CI_FAILURE_CONTEXT_KEY] = ci_failure
            if recheck_ci:
                context[CI_RECHECK_CONTEXT_KEY] = "true"

        recorded = WorkflowError(
            message=text,
            phase=state.current_phase,
            timestamp=self.clock.now(),
            recoverable=is_recoverable_error(error),
            failure_type=failure_type,
            context=context,
        )
        if state.current_phase not in TERMINAL_PHASES:
            state.phase(state.current_phase).status = PhaseStatus.FAILED
        state.error = recorded
        state.current_phase = Phase.FAILED.value
        self.store.save_state(state.name, state)

        if self._log is not None:
            self._log.workflow_failed(text, recorded.recoverable)
        return recorded

    @staticmethod
    def _restore_phase(state: WorkflowState) -> Phase:
        if state.error is not None and state.error.phase not in TERMINAL_PHASES:
            return Phase(state.error.phase)
        for phase in WORK_PHASES:
            status = state.phase(phase).status
            if status in (PhaseStatus.FAILED, PhaseStatus.IN_PROGRESS):
                return phase
        return Phase.PLANNING

    @staticmethod
    def _current_phase_state(state: WorkflowState) -> PhaseState:
        return state.phase(state.current_phase)

    def _begin_phase(self, state: WorkflowState, count_attempt: bool = True) -> PhaseState:
        phase_state = self._current_phase_state(state)
        phase_state.status = PhaseStatus.IN_PROGRESS
        phase_state.started_at = self.clock.now()
        if count_attempt:
            phase_state.attempts += 1
        self.store.save_state(state.name, state)
        return phase_state

    # ------------------------------------------------------------------
    # Agent, parsing and CI plumbing
    # ------------------------------------------------------------------

    def _invoke_agent(
        self,
        state: WorkflowState,
        phase: Phase,
        prompt: str,
        attempt: int,
        schema: Schema,
        working_dir: Optional[Path],
        cancel: Optional[CancelToken],
        continue_session: bool = False,
    ) -> str:
        """Run the agent for one attempt of ``phase``.

        With ``continue_session`` (and ``reuse_sessions`` configured) the
        agent picks up the session recorded for the phase, so a fix attempt
        keeps the context of the attempt before it.
        """
        phase_state = state.phase(phase)
        session_id = None
        if continue_session and self.config.reuse_sessions:
            session_id = phase_state.session_id

        self.store.save_prompt(state.name, phase, attempt, prompt)
        request = AgentRequest(
            prompt=prompt,
            json_schema=schema_json(schema),
            working_dir=working_dir,
            timeout=self.config.timeouts.for_phase(phase),
            skip_permissions=self.config.dangerously_skip_permissions,
            session_id=session_id,
            cancel=cancel,
        )
        try:
            result = self.agent.execute_streaming(request, self.on_agent_progress)
        except AgentError as e:
            self.fail_workflow(state, e, message=f"failed to execute {phase_slug(phase)}")
        logger.info(f"Agent finished {phase_slug(phase)} attempt {attempt} in {result.duration:.1f}s")

        if result.session_id:
            self._record_session(phase_state, result.session_id, reused=session_id is not None)
            self.store.save_state(state.name, state)
        return result.output

    def _record_session(self, phase_state: PhaseState, session_id: str, reused: bool) -> None:
        if reused and session_id == phase_state.session_id:
            phase_state.session_reuse_count += 1
            logger.debug(f"Continued agent session {session_id} ({phase_state.session_reuse_count} reuses)")
            return
        phase_state.session_id = session_id
        phase_state.session_created_at = self.clock.now()
        phase_state.session_reuse_count = 0
        logger.debug(f"New agent session {session_id}")

    def _parse_output(self, state: WorkflowState, phase: Phase, output: str, parse):
        try:
            return parse(self.parser.extract_json(output))
        except ParseError as e:
            path = safe_call(
                self.store.save_raw_output, state.name, phase, output,
                error_message="Failed to save raw output",
            )
            if path is not None:
                logger.warning(f"Raw output saved to: {path}")
            self.fail_workflow(state, e)

    def _worktree(self, state: WorkflowState) -> Optional[Path]:
        return Path(state.worktree_path) if state.worktree_path else None

    def _wait_for_ci(
        self,
        state: WorkflowState,
        pr_number: int,
        cancel: Optional[CancelToken],
        phase_state: Optional[PhaseState] = None,
        skip_e2e: bool = False,
    ) -> CIResult:
        """Wait for CI on ``pr_number``.

        When ``phase_state`` is given, cancelled-only runs are classified
        against its persisted failure history, which is updated in place
        however the wait ends.
        """
        options = CheckCIOptions(skip_e2e=skip_e2e, e2e_pattern=self.config.ci.e2e_pattern)
        history = load_ci_history(phase_state) if phase_state is not None else None
        try:
            return self.ci_poller.wait_for_ci(
                pr_number,
                cwd=self._worktree(state),
                timeout=self.config.ci.timeout,
                options=options,
                on_progress=self._report_ci_progress,
                cancel=cancel,
                history=history,
            )
        finally:
            if phase_state is not None:
                phase_state.ci_history = dump_ci_history(history)

    def _report_ci_progress(self, event: CIProgressEvent) -> None:
        if self._log is not None and event.type == "status":
            self._log.ci_progress(
                event.message, event.jobs_passed, event.jobs_failed, event.jobs_pending,
            )
        if self.on_ci_progress is not None:
            self.on_ci_progress(event)

    # ------------------------------------------------------------------
    # Phase handlers
    # ------------------------------------------------------------------

    def _execute_planning(self, state: WorkflowState, cancel: Optional[CancelToken]) -> None:
        phase_state = self._begin_phase(state)

        prompt = self.prompts.planning(state.type, state.description, phase_state.feedback)
        output = self._invoke_agent(
            state, Phase.PLANNING, prompt, phase_state.attempts, PLAN_SCHEMA,
            self.config.repo_dir, cancel, continue_session=bool(phase_state.feedback),
        )
        plan = self._parse_output(state, Phase.PLANNING, output, self.parser.parse_plan)

        self.store.save_plan(state.name, plan)
        self.store.save_plan_markdown(state.name, plan.to_markdown())
        self.store.save_phase_output(state.name, Phase.PLANNING, plan)

        self.transition_phase(state, Phase.CONFIRMATION)

    def _execute_confirmation(self, state: WorkflowState, cancel: Optional[CancelToken]) -> None:
        self._begin_phase(state)
        plan = self.store.load_plan(state.name)

        try:
            approved, feedback = self.confirm_func(plan)
        except UserCancelledError as e:
            self.fail_workflow(state, e)

        if approved:
            self.transition_phase(state, Phase.IMPLEMENTATION)
            return

        planning = state.phase(Phase.PLANNING)
        if feedback:
            planning.feedback.append(feedback)
        planning.status = PhaseStatus.PENDING
        logger.info(f"Plan rejected with feedback, replanning {state.name}")
        self.transition_phase(state, Phase.PLANNING)

    def _execute_implementation(self, state: WorkflowState, cancel: Optional[CancelToken]) -> None:
        if not state.worktree_path:
            try:
                path = self.worktrees.create_worktree(state.name)
            except WorktreeError as e:
                self.fail_workflow(state, e, message="failed to create worktree")
            state.worktree_path = str(path)
            self.store.save_state(state.name, state)

        plan = self.store.load_plan(state.name)

        def record_pr(summary) -> None:
            if summary.pr_number <= 0:
                self.fail_workflow(state, WorkflowRuntimeError(
                    "implementation did not create a PR: prNumber is missing or zero in output"
                ))
            state.pr_number = summary.pr_number
            self.store.save_state(state.name, state)

        self._run_fix_loop(
            state,
            Phase.IMPLEMENTATION,
            lambda: self.prompts.implementation(plan),
            IMPLEMENTATION_SUMMARY_SCHEMA,
            self.parser.parse_implementation_summary,
            ImplementationSummary,
            cancel,
            on_summary=record_pr,
        )
        self.transition_phase(state, Phase.REFACTORING)

    def _execute_refactoring(self, state: WorkflowState, cancel: Optional[CancelToken]) -> None:
        if not state.pr_number:
            self.fail_workflow(state, WorkflowRuntimeError("no PR number recorded by the implementation phase"))

        plan = self.store.load_plan(state.name)
        self._run_fix_loop(
            state,
            Phase.REFACTORING,
            lambda: self.prompts.refactoring(plan),
            REFACTORING_SUMMARY_SCHEMA,
            self.parser.parse_refactoring_summary,
            RefactoringSummary,
            cancel,
        )

        diff = self.git.diff_stat(self.config.remote_main, cwd=self._worktree(state))
        metrics = parse_diff_stat(diff)
        limits = self.config.limits
        split_required = metrics.lines_changed > limits.max_lines or metrics.files_changed > limits.max_files

        split_state = state.phase(Phase.PR_SPLIT)
        split_state.metrics = metrics
        split_state.required = split_required

        if split_required:
            logger.info(
                f"PR is large ({metrics.lines_changed} lines, {metrics.files_changed} files), splitting"
            )
            self.transition_phase(state, Phase.PR_SPLIT)
        else:
            split_state.status = PhaseStatus.SKIPPED
            self.transition_phase(state, Phase.COMPLETED)

    def _run_fix_loop(
        self,
        state: WorkflowState,
        phase: Phase,
        first_prompt: Callable[[], str],
        schema: Schema,
        parse,
        summary_type: Type[M],
        cancel: Optional[CancelToken],
        on_summary: Optional[Callable] = None,
    ) -> M:
        """Run the agent, then CI, feeding CI failures back until CI passes.

        An interrupted loop picks up at its persisted attempt, using the last
        recorded feedback as the failure to fix. A resume may instead set
        ``resume_attempt``, and ``recheck_ci`` to poll CI for the existing PR
        before the agent runs again.
        """
        phase_state = self._current_phase_state(state)
        start = phase_state.resume_attempt or max(phase_state.attempts, 1)
        recheck = phase_state.recheck_ci
        last_error = phase_state.feedback[-1] if start > 1 and phase_state.feedback else ""
        phase_state.resume_attempt = None
        phase_state.recheck_ci = False
        phase_state.status = PhaseStatus.IN_PROGRESS
        phase_state.started_at = self.clock.now()

        max_attempts = self.config.limits.max_fix_attempts

        for attempt in range(start, max_attempts + 1):
            phase_state.attempts = attempt
            self.store.save_state(state.name, state)

            summary = None
            if recheck:
                recheck = False
                summary = self._previous_summary(state, phase, summary_type)

            if summary is None:
                if attempt > 1 and last_error:
                    self._log.attempt(attempt, max_attempts, "CI errors")
                    prompt = self.prompts.fix_ci(last_error)
                else:
                    prompt = first_prompt()

                output = self._invoke_agent(
                    state, phase, prompt, attempt, schema, self._worktree(state), cancel,
                    continue_session=bool(attempt > 1 and last_error),
                )
                summary = self._parse_output(state, phase, output, parse)
                self.store.save_phase_output(state.name, phase, summary)
                if on_summary is not None:
                    on_summary(summary)

            try:
                result = self._wait_for_ci(state, state.pr_number, cancel, phase_state=phase_state)
            except CIError as e:
                self.fail_workflow(
                    state, e, FailureType.CI, message="failed to check CI",
                    ci_failure=last_error, recheck_ci=True,
                )

            if result.passed:
                logger.info(f"CI passed for PR #{state.pr_number}")
                return summary

            last_error = format_ci_errors(result)
            phase_state.feedback.append(last_error)
            self.store.save_state(state.name, state)
            logger.warning(f"CI failed for PR #{state.pr_number}: {', '.join(result.failed_jobs + result.cancelled_jobs)}")

            if result.classification is not None and result.classification.category == FailureCategory.PERSISTENT:
                self.fail_workflow(
                    state,
                    CIError(
                        "CI failure is persistent: "
                        f"{', '.join(result.failed_jobs + result.cancelled_jobs)}"
                    ),
                    FailureType.CI,
                    ci_failure=last_error,
                )

        self.fail_workflow(
            state,
            WorkflowRuntimeError(f"exceeded maximum fix attempts ({max_attempts})"),
            FailureType.CI,
            ci_failure=last_error,
        )

    def _previous_summary(self, state: WorkflowState, phase: Phase, summary_type: Type[M]) -> Optional[M]:
        """The saved summary of the last agent run, if CI can be re-checked against it."""
        if not state.pr_number:
            return None
        summary = safe_call(
            self.store.load_phase_output, state.name, phase, summary_type,
            error_message=f"Failed to load {phase_slug(phase)} output",
        )
        if summary is not None:
            logger.info(f"Re-checking CI for PR #{state.pr_number} before running the agent")
        return summary

    def _execute_pr_split(self, state: WorkflowState, cancel: Optional[CancelToken]) -> None:
        phase_state = self._begin_phase(state, count_attempt=False)
        if phase_state.metrics is None:
            self.fail_workflow(state, WorkflowRuntimeError("PR metrics not available"))

        worktree = self._worktree(state)
        source_branch = WorktreeManager.branch_name(state.name)
        # An interrupted split can leave the worktree on one of its branches
        checked_out = self.git.current_branch(cwd=worktree)
        if checked_out != source_branch:
            logger.warning(f"Worktree is on {checked_out}, switching back to {source_branch}")
            self.git.checkout_branch(source_branch, cwd=worktree)
        manager = PRSplitManager(self.git, self.gh, working_dir=worktree)
        max_attempts = self.config.limits.max_fix_attempts

        for attempt in range(1, max_attempts + 1):
            phase_state.attempts = attempt
            self.store.save_state(state.name, state)
            if attempt > 1:
                self._log.attempt(attempt, max_attempts, "PR split errors")

            commits = self.git.commits_since(self.config.remote_main, cwd=worktree)
            prompt = self.prompts.pr_split(
                phase_state.metrics, commits, phase_state.feedback if attempt > 1 else None,
            )
            output = self._invoke_agent(
                state, Phase.PR_SPLIT, prompt, attempt, PR_SPLIT_PLAN_SCHEMA, worktree, cancel,
                continue_session=attempt > 1,
            )
            plan = self._parse_output(state, Phase.PR_SPLIT, output, self.parser.parse_pr_split_plan)

            split_result = PRSplitResult()
            try:
                manager.execute_split(plan, source_branch, self.config.main_branch, result=split_result)
                failure = self._check_child_prs(state, split_result, cancel)
            except PRSplitError as e:
                failure = f"PR split failed: {e}"
            except CIError as e:
                self._rollback(manager, split_result, source_branch)
                self.fail_workflow(state, e)
            except BaseException:
                self._rollback(manager, split_result, source_branch)
                raise

            if failure is None:
                self.store.save_phase_output(state.name, Phase.PR_SPLIT, split_result)
                logger.info(
                    f"Split into parent PR #{split_result.parent_pr.number} and "
                    f"{len(split_result.child_prs)} child PRs"
                )
                self.transition_phase(state, Phase.COMPLETED)
                return

            logger.warning(f"PR split attempt {attempt} failed, rolling back: {failure.splitlines()[0]}")
            self._rollback(manager, split_result, source_branch)
            phase_state.feedback.append(failure)
            self.store.save_state(state.name, state)

        self.fail_workflow(state, WorkflowRuntimeError(f"exceeded maximum fix attempts ({max_attempts})"))

    def _check_child_prs(
        self,
        state: WorkflowState,
        split_result: PRSplitResult,
        cancel: Optional[CancelToken],
    ) -> Optional[str]:
        """Wait for CI on each child in order; the failure text of the first failing child.

        Raises:
            CIError: CI could not be checked for a child
        """
        children = split_result.child_prs
        for i, child in enumerate(children):
            is_last = i == len(children) - 1
            logger.info(f"Checking child PR #{child.number}: {child.title}")
            try:
                result = self._wait_for_ci(state, child.number, cancel, skip_e2e=not is_last)
            except CIError as e:
                raise CIError(f"failed to check CI on child PR #{child.number}: {e}") from e
            if not result.passed:
                return f"Child PR #{child.number} ({child.title}) failed CI.\n\n{format_ci_errors(result)}"
        return None

    @staticmethod
    def _rollback(manager: PRSplitManager, split_result: PRSplitResult, return_branch: str) -> None:
        try:
            manager.rollback(split_result, return_branch=return_branch)
        except RollbackError as e:
            log_and_ignore(e, "PR split rollback incomplete", logger_instance=logger)
