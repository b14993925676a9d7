"""Tests for skip-to-phase validation and external plans."""

import json

import pytest

from claude_workflow.core.errors import InvalidPhaseError, InvalidPlanError, SkipNotAllowedError
from claude_workflow.core.models import Phase, PhaseStatus
from claude_workflow.core.skip import (
    load_external_plan,
    missing_prerequisites,
    phase_order,
    phases_to_skip,
    validate_skip,
)

from .conftest import EXTERNAL_PLAN


@pytest.fixture
def state(store):
    return store.new_state("widget", "Add a widget endpoint", "feature")


def _complete(state, *phases):
    for phase in phases:
        state.phase(phase).status = PhaseStatus.COMPLETED


class TestPhaseOrder:
    def test_work_phases_in_run_order(self):
        orders = [phase_order(p) for p in ("PLANNING", "CONFIRMATION", "IMPLEMENTATION", "REFACTORING", "PR_SPLIT")]
        assert orders == sorted(orders)

    def test_completed_after_every_work_phase(self):
        assert phase_order(Phase.COMPLETED) > phase_order(Phase.PR_SPLIT)

    def test_failed(self):
        assert phase_order(Phase.FAILED) == -1

    def test_unknown_phase(self):
        with pytest.raises(InvalidPhaseError):
            phase_order("DEPLOYING")


class TestValidateSkip:
    def test_confirmation_with_plan(self, state):
        assert validate_skip(state, "PLANNING", "CONFIRMATION", plan_available=True) == Phase.CONFIRMATION

    def test_confirmation_without_plan(self, state):
        with pytest.raises(SkipNotAllowedError, match="plan.json not found"):
            validate_skip(state, "PLANNING", "CONFIRMATION", plan_available=False)

    def test_implementation_needs_approval(self, state):
        with pytest.raises(SkipNotAllowedError, match="plan must be approved first"):
            validate_skip(state, "PLANNING", "IMPLEMENTATION", plan_available=True)

    def test_implementation_after_confirmation(self, state):
        _complete(state, Phase.PLANNING, Phase.CONFIRMATION)
        assert validate_skip(state, "IMPLEMENTATION", "IMPLEMENTATION", plan_available=True) == Phase.IMPLEMENTATION

    def test_pr_split_lists_every_missing_prerequisite(self, state):
        with pytest.raises(SkipNotAllowedError) as exc:
            validate_skip(state, "PLANNING", "PR_SPLIT", plan_available=False)
        message = str(exc.value)
        assert message.startswith("cannot skip to PR_SPLIT: missing prerequisites:")
        assert message.count("\n  - ") == 4

    def test_pr_split_needs_refactoring(self, state):
        _complete(state, Phase.PLANNING, Phase.CONFIRMATION, Phase.IMPLEMENTATION)
        assert missing_prerequisites(state, Phase.PR_SPLIT, plan_available=True) == [
            "refactoring phase not completed (PR must be created first)"
        ]

    @pytest.mark.parametrize("target, reason", [
        ("COMPLETED", "must complete naturally"),
        ("FAILED", "error state"),
    ])
    def test_terminal_phases_refused(self, state, target, reason):
        with pytest.raises(SkipNotAllowedError, match=reason):
            validate_skip(state, "PLANNING", target, plan_available=True)

    def test_backward_needs_force(self, state):
        _complete(state, Phase.PLANNING, Phase.CONFIRMATION)
        with pytest.raises(SkipNotAllowedError, match="--force-backward"):
            validate_skip(state, "IMPLEMENTATION", "PLANNING", plan_available=True)
        assert validate_skip(state, "IMPLEMENTATION", "PLANNING", plan_available=True,
                             force_backward=True) == Phase.PLANNING

    def test_unknown_target(self, state):
        with pytest.raises(InvalidPhaseError):
            validate_skip(state, "PLANNING", "SHIPPING", plan_available=True)


class TestPhasesToSkip:
    def test_forward_includes_phase_being_left(self):
        assert phases_to_skip("PLANNING", "IMPLEMENTATION") == [Phase.PLANNING, Phase.CONFIRMATION]

    def test_same_phase(self):
        assert phases_to_skip("REFACTORING", "REFACTORING") == []

    def test_backward(self):
        assert phases_to_skip("PR_SPLIT", "PLANNING") == []

    def test_from_failed(self):
        assert phases_to_skip("FAILED", "IMPLEMENTATION") == []


class TestLoadExternalPlan:
    def _write(self, tmp_path, data):
        path = tmp_path / "plan.json"
        path.write_text(data if isinstance(data, str) else json.dumps(data))
        return path

    def test_valid_plan(self, tmp_path):
        plan = load_external_plan(self._write(tmp_path, EXTERNAL_PLAN))
        assert plan.summary == "Add a widget endpoint"
        assert plan.work_streams[0].name == "api"

    def test_missing_file(self, tmp_path):
        with pytest.raises(InvalidPlanError, match="failed to read plan file"):
            load_external_plan(tmp_path / "nope.json")

    def test_invalid_json(self, tmp_path):
        with pytest.raises(InvalidPlanError, match="invalid plan JSON"):
            load_external_plan(self._write(tmp_path, "{not json"))

    def test_wrong_shape(self, tmp_path):
        with pytest.raises(InvalidPlanError, match="invalid plan in"):
            load_external_plan(self._write(tmp_path, {"summary": ["not", "a", "string"]}))

    @pytest.mark.parametrize("field, reason", [
        ("summary", "summary is required"),
        ("phases", "at least one phase"),
        ("workStreams", "at least one work stream"),
    ])
    def test_required_fields(self, tmp_path, field, reason):
        data = dict(EXTERNAL_PLAN)
        data[field] = "  " if field == "summary" else []
        with pytest.raises(InvalidPlanError, match=reason):
            load_external_plan(self._write(tmp_path, data))
