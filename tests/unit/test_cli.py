"""Tests for the claude-workflow CLI."""

import json
import logging
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from claude_workflow.cli.main import EXIT_CANCELLED, cli
from claude_workflow.core.errors import (
    PhaseFailedError,
    SkipNotAllowedError,
    WorkflowCancelledError,
    WorkflowLockedError,
)
from claude_workflow.core.models import FailureType, Phase, PhaseStatus, PRInfo, PRSplitResult
from claude_workflow.core.state_store import StateStore
from claude_workflow.utils.rich_logging import PACKAGE_LOGGER

from .conftest import EXTERNAL_PLAN


# ── fixtures ──────────────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def _reset_logging():
    yield
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    for handler in package_logger.handlers[:]:
        handler.close()
        package_logger.removeHandler(handler)
    package_logger.setLevel(logging.NOTSET)


@pytest.fixture
def base_dir(tmp_path):
    return tmp_path / "workflow"


@pytest.fixture
def invoke(base_dir, tmp_path):
    runner = CliRunner()

    def _invoke(*args, **kwargs):
        return runner.invoke(
            cli,
            ["--base-dir", str(base_dir), "--config", str(tmp_path / "none.yaml"), *args],
            **kwargs,
        )

    return _invoke


@pytest.fixture
def tools_present():
    with patch("claude_workflow.cli.main.check_command_exists", return_value=True) as mock:
        yield mock


@pytest.fixture
def mock_orchestrator():
    with patch("claude_workflow.cli.main.Orchestrator") as cls:
        yield cls.return_value


def _completed_state(base_dir, split=False):
    store = StateStore(base_dir)
    state = store.init_state("widget", "Add a widget endpoint", "feature")
    state.current_phase = Phase.COMPLETED.value
    state.pr_number = 42
    if split:
        state.phase(Phase.PR_SPLIT).status = PhaseStatus.COMPLETED
        store.save_phase_output("widget", Phase.PR_SPLIT, PRSplitResult(
            parent_pr=PRInfo(number=100, url="https://github.com/o/r/pull/100"),
            child_prs=[PRInfo(number=101, title="Widget model")],
        ))
    store.save_state("widget", state)
    return state


# ── start / resume ────────────────────────────────────────────────────────────


class TestStart:
    def test_requires_tools(self, invoke, mock_orchestrator):
        with patch("claude_workflow.cli.main.check_command_exists", return_value=False):
            result = invoke("start", "widget", "Add a widget endpoint")

        assert result.exit_code == 1
        assert "required executable not found: claude" in result.output
        mock_orchestrator.start.assert_not_called()

    def test_success(self, invoke, base_dir, tools_present, mock_orchestrator):
        mock_orchestrator.start.return_value = _completed_state(base_dir)

        result = invoke("start", "widget", "Add a widget endpoint", "--type", "fix")

        assert result.exit_code == 0, result.output
        assert "Workflow widget completed" in result.output
        assert "PR: #42" in result.output
        args, kwargs = mock_orchestrator.start.call_args
        assert args == ("widget", "Add a widget endpoint", "fix")
        assert kwargs["cancel"] is not None

    def test_success_with_split(self, invoke, base_dir, tools_present, mock_orchestrator):
        mock_orchestrator.start.return_value = _completed_state(base_dir, split=True)
        mock_orchestrator.store = StateStore(base_dir)

        result = invoke("start", "widget", "Add a widget endpoint")

        assert result.exit_code == 0, result.output
        assert "Parent PR: #100" in result.output
        assert "Child PR: #101 Widget model" in result.output

    def test_invalid_type(self, invoke, tools_present, mock_orchestrator):
        result = invoke("start", "widget", "desc", "--type", "chore")
        assert result.exit_code == 2

    def test_phase_failure_suggests_resume(self, invoke, tools_present, mock_orchestrator):
        mock_orchestrator.start.side_effect = PhaseFailedError(
            Phase.IMPLEMENTATION.value, "exceeded maximum fix attempts (10)", True, FailureType.CI,
        )

        result = invoke("start", "widget", "Add a widget endpoint")

        assert result.exit_code == 1
        assert "Error: IMPLEMENTATION failed: exceeded maximum fix attempts (10)" in result.output
        assert "claude-workflow resume widget" in result.output

    def test_non_recoverable_failure_has_no_hint(self, invoke, tools_present, mock_orchestrator):
        mock_orchestrator.start.side_effect = PhaseFailedError(
            Phase.CONFIRMATION.value, "workflow cancelled by user", False, FailureType.EXECUTION,
        )

        result = invoke("start", "widget", "Add a widget endpoint")

        assert result.exit_code == 1
        assert "resume" not in result.output

    def test_cancelled(self, invoke, tools_present, mock_orchestrator):
        mock_orchestrator.start.side_effect = WorkflowCancelledError()

        result = invoke("start", "widget", "Add a widget endpoint")

        assert result.exit_code == EXIT_CANCELLED
        assert "Workflow cancelled" in result.output

    def test_other_runtime_error(self, invoke, tools_present, mock_orchestrator):
        mock_orchestrator.start.side_effect = WorkflowLockedError("widget")

        result = invoke("start", "widget", "Add a widget endpoint")

        assert result.exit_code == 1
        assert "Error: workflow is locked by another process: widget" in result.output

    def test_skip_to_with_plan(self, invoke, base_dir, tmp_path, tools_present, mock_orchestrator):
        plan_path = tmp_path / "plan.json"
        plan_path.write_text(json.dumps(EXTERNAL_PLAN))
        mock_orchestrator.start.return_value = _completed_state(base_dir)

        result = invoke("start", "widget", "Add a widget endpoint",
                        "--skip-to", "confirmation", "--with-plan", str(plan_path))

        assert result.exit_code == 0, result.output
        kwargs = mock_orchestrator.start.call_args.kwargs
        assert kwargs["skip_to"] == "CONFIRMATION"
        assert kwargs["external_plan"] == plan_path

    def test_missing_plan_file(self, invoke, tmp_path, tools_present, mock_orchestrator):
        result = invoke("start", "widget", "desc", "--with-plan", str(tmp_path / "nope.json"))
        assert result.exit_code == 2
        mock_orchestrator.start.assert_not_called()

    def test_unknown_skip_target(self, invoke, tools_present, mock_orchestrator):
        result = invoke("start", "widget", "desc", "--skip-to", "completed")
        assert result.exit_code == 2

    def test_skip_refused(self, invoke, tools_present, mock_orchestrator):
        mock_orchestrator.start.side_effect = SkipNotAllowedError(
            "cannot skip to IMPLEMENTATION: missing prerequisites:\n  - implementation phase not completed"
        )

        result = invoke("start", "widget", "desc", "--skip-to", "IMPLEMENTATION")

        assert result.exit_code == 1
        assert "cannot skip to IMPLEMENTATION" in result.output


class TestResume:
    def test_resume(self, invoke, base_dir, tools_present, mock_orchestrator):
        mock_orchestrator.resume.return_value = _completed_state(base_dir)

        result = invoke("resume", "widget")

        assert result.exit_code == 0, result.output
        assert "Resuming workflow: widget" in result.output
        assert mock_orchestrator.resume.call_args.args == ("widget",)
        assert mock_orchestrator.resume.call_args.kwargs["skip_to"] is None
        assert mock_orchestrator.resume.call_args.kwargs["force_backward"] is False

    def test_resume_skip_backward(self, invoke, base_dir, tools_present, mock_orchestrator):
        mock_orchestrator.resume.return_value = _completed_state(base_dir)

        result = invoke("resume", "widget", "--skip-to", "planning", "--force-backward")

        assert result.exit_code == 0, result.output
        kwargs = mock_orchestrator.resume.call_args.kwargs
        assert kwargs["skip_to"] == "PLANNING"
        assert kwargs["force_backward"] is True


# ── management commands ───────────────────────────────────────────────────────


class TestStatus:
    def test_shows_phases(self, invoke, base_dir):
        store = StateStore(base_dir)
        state = store.init_state("widget", "Add a widget endpoint", "feature")
        state.phase(Phase.PLANNING).attempts = 2
        store.save_state("widget", state)

        result = invoke("status", "widget")

        assert result.exit_code == 0, result.output
        assert "widget" in result.output
        assert "Current phase: PLANNING" in result.output
        assert "in_progress" in result.output
        assert "PR_SPLIT" in result.output

    def test_shows_skip_history(self, invoke, base_dir):
        store = StateStore(base_dir)
        state = store.init_state("widget", "Add a widget endpoint", "feature")
        state.external_plan_used = True
        state.skipped_phases = [Phase.PLANNING, Phase.CONFIRMATION]
        store.save_state("widget", state)

        result = invoke("status", "widget")

        assert result.exit_code == 0, result.output
        assert "Plan: external" in result.output
        assert "Skipped: PLANNING, CONFIRMATION" in result.output

    def test_missing_workflow(self, invoke):
        result = invoke("status", "ghost")
        assert result.exit_code == 1
        assert "Error: workflow not found: ghost" in result.output


class TestList:
    def test_empty(self, invoke):
        result = invoke("list")
        assert result.exit_code == 0
        assert "No workflows found" in result.output

    def test_lists_workflows(self, invoke, base_dir):
        _completed_state(base_dir)
        StateStore(base_dir).init_state("gadget", "Add a gadget", "fix")

        result = invoke("list")

        assert result.exit_code == 0, result.output
        assert "widget" in result.output
        assert "gadget" in result.output
        assert "completed" in result.output


class TestDeleteAndClean:
    def test_delete_force(self, invoke, base_dir):
        StateStore(base_dir).init_state("gadget", "Add a gadget", "fix")

        result = invoke("delete", "gadget", "--force")

        assert result.exit_code == 0, result.output
        assert not (base_dir / "gadget").exists()

    def test_delete_asks_for_confirmation(self, invoke, base_dir):
        StateStore(base_dir).init_state("gadget", "Add a gadget", "fix")

        result = invoke("delete", "gadget", input="n\n")

        assert result.exit_code == 1
        assert (base_dir / "gadget").exists()

    def test_delete_missing(self, invoke):
        result = invoke("delete", "ghost", "-f")
        assert result.exit_code == 1
        assert "workflow not found" in result.output

    def test_clean(self, invoke, base_dir):
        _completed_state(base_dir)
        StateStore(base_dir).init_state("gadget", "Add a gadget", "fix")

        result = invoke("clean")

        assert result.exit_code == 0, result.output
        assert "Cleaned 1 workflow(s)" in result.output
        assert not (base_dir / "widget").exists()
        assert (base_dir / "gadget").exists()

    def test_clean_nothing(self, invoke):
        result = invoke("clean")
        assert "No completed workflows to clean" in result.output
