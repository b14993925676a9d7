"""Skip-to-phase validation and external plans.

A workflow can be started or resumed at a later phase when the artifacts
that phase depends on already exist. Backward skips re-run phases and need
an explicit override.
"""

import json
import logging
from pathlib import Path
from typing import Dict, List, Tuple

from pydantic import ValidationError as PydanticValidationError

from .errors import InvalidPlanError, SkipNotAllowedError
from .models import WORK_PHASES, Phase, PhaseStatus, Plan, WorkflowState, to_phase

logger = logging.getLogger(__name__)

ARTIFACT_PLAN = "plan"
ARTIFACT_APPROVAL = "approval"
ARTIFACT_IMPLEMENTATION = "implementation"
ARTIFACT_PR = "pr"

PHASE_PREREQUISITES: Dict[Phase, Tuple[str, ...]] = {
    Phase.PLANNING: (),
    Phase.CONFIRMATION: (ARTIFACT_PLAN,),
    Phase.IMPLEMENTATION: (ARTIFACT_PLAN, ARTIFACT_APPROVAL),
    Phase.REFACTORING: (ARTIFACT_PLAN, ARTIFACT_APPROVAL, ARTIFACT_IMPLEMENTATION),
    Phase.PR_SPLIT: (ARTIFACT_PLAN, ARTIFACT_APPROVAL, ARTIFACT_IMPLEMENTATION, ARTIFACT_PR),
}

# Phase whose completion provides each artifact, with the message shown when it has not
_COMPLETED_BY = {
    ARTIFACT_APPROVAL: (Phase.CONFIRMATION, "confirmation phase not completed (the plan must be approved first)"),
    ARTIFACT_IMPLEMENTATION: (Phase.IMPLEMENTATION, "implementation phase not completed"),
    ARTIFACT_PR: (Phase.REFACTORING, "refactoring phase not completed (PR must be created first)"),
}


def phase_order(phase: str) -> int:
    """Position of ``phase`` in the run order; -1 for FAILED."""
    phase = to_phase(phase)
    if phase == Phase.COMPLETED:
        return len(WORK_PHASES)
    if phase == Phase.FAILED:
        return -1
    return WORK_PHASES.index(phase)


def missing_prerequisites(state: WorkflowState, target: Phase, plan_available: bool) -> List[str]:
    missing = []
    for artifact in PHASE_PREREQUISITES[target]:
        if artifact == ARTIFACT_PLAN:
            if not plan_available:
                missing.append("plan.json not found (use --with-plan to provide an external plan)")
            continue
        phase, reason = _COMPLETED_BY[artifact]
        if state.phase(phase).status != PhaseStatus.COMPLETED:
            missing.append(reason)
    return missing


def validate_skip(
    state: WorkflowState,
    current: str,
    target: str,
    plan_available: bool,
    force_backward: bool = False,
) -> Phase:
    """Check that ``state`` can move from ``current`` straight to ``target``.

    Args:
        state: The workflow being started or resumed
        current: The phase the workflow would otherwise run next
        target: The requested phase
        plan_available: plan.json exists or an external plan was given
        force_backward: Allow a target earlier than ``current``

    Returns:
        The target as a ``Phase``

    Raises:
        InvalidPhaseError: ``target`` is not a phase name
        SkipNotAllowedError: The skip is not allowed; the message lists why
    """
    target = to_phase(target)
    current = to_phase(current)
    if target == Phase.COMPLETED:
        raise SkipNotAllowedError("cannot skip to COMPLETED phase: workflow must complete naturally")
    if target == Phase.FAILED:
        raise SkipNotAllowedError("cannot skip to FAILED phase: this is an error state")

    if phase_order(target) < phase_order(current) and not force_backward:
        raise SkipNotAllowedError(
            f"cannot skip backward from {current.value} to {target.value} "
            "(use --force-backward to override)"
        )

    missing = missing_prerequisites(state, target, plan_available)
    if missing:
        raise SkipNotAllowedError(
            f"cannot skip to {target.value}: missing prerequisites:\n  - " + "\n  - ".join(missing)
        )
    return target


def phases_to_skip(current: str, target: str) -> List[Phase]:
    """Phases that will not run when jumping forward from ``current`` to ``target``.

    ``current`` itself is included since it is left without running. A
    backward or no-op jump skips nothing.
    """
    start, end = phase_order(current), phase_order(target)
    if start < 0 or end <= start:
        return []
    return [phase for phase in WORK_PHASES if start <= WORK_PHASES.index(phase) < end]


def load_external_plan(path: Path) -> Plan:
    """Read a plan written outside the workflow, e.g. by hand.

    Raises:
        InvalidPlanError: Unreadable file, invalid JSON, or a plan without
            summary, phases or work streams
    """
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise InvalidPlanError(f"failed to read plan file {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise InvalidPlanError(f"invalid plan JSON in {path}: {e}") from e

    try:
        plan = Plan.model_validate(data)
    except PydanticValidationError as e:
        raise InvalidPlanError(f"invalid plan in {path}: {e}") from e

    if not plan.summary.strip():
        raise InvalidPlanError("invalid plan: summary is required")
    if not plan.phases:
        raise InvalidPlanError("invalid plan: at least one phase is required")
    if not plan.work_streams:
        raise InvalidPlanError("invalid plan: at least one work stream is required")

    logger.info(f"Loaded external plan from {path}")
    return plan
