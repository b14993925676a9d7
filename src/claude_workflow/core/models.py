"""Persisted workflow models.

Everything here is written to disk as camelCase JSON so state files stay
readable by hand and compatible across versions.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .errors import InvalidPhaseError

STATE_VERSION = "1.0"


class Phase(str, Enum):
    PLANNING = "PLANNING"
    CONFIRMATION = "CONFIRMATION"
    IMPLEMENTATION = "IMPLEMENTATION"
    REFACTORING = "REFACTORING"
    PR_SPLIT = "PR_SPLIT"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


# Phases that carry a PhaseState entry, in execution order
WORK_PHASES = (
    Phase.PLANNING,
    Phase.CONFIRMATION,
    Phase.IMPLEMENTATION,
    Phase.REFACTORING,
    Phase.PR_SPLIT,
)


def to_phase(phase: str) -> Phase:
    try:
        return Phase(phase)
    except ValueError:
        raise InvalidPhaseError(f"invalid phase: {phase}") from None


def phase_slug(phase: str) -> str:
    """Lowercase file-name form of a phase (``PR_SPLIT`` -> ``pr_split``)."""
    return to_phase(phase).value.lower()


class PhaseStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


class WorkflowType(str, Enum):
    FEATURE = "feature"
    FIX = "fix"


class FailureType(str, Enum):
    EXECUTION = "execution"
    CI = "ci"


class CamelModel(BaseModel):
    """Base for persisted models: camelCase on disk, snake_case in code."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=True,
    )


class PRMetrics(CamelModel):
    lines_changed: int = 0
    files_changed: int = 0
    files_added: List[str] = Field(default_factory=list)
    files_modified: List[str] = Field(default_factory=list)
    files_deleted: List[str] = Field(default_factory=list)


class CIHistoryRecord(CamelModel):
    """One classified cancelled-only CI run, kept across resumes."""
    failed_jobs: List[str] = Field(default_factory=list)
    cancelled_jobs: List[str] = Field(default_factory=list)
    category: str
    timestamp: datetime


class PhaseState(CamelModel):
    status: PhaseStatus = PhaseStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    attempts: int = 0
    feedback: List[str] = Field(default_factory=list)
    required: Optional[bool] = None
    metrics: Optional[PRMetrics] = None
    # Fix-loop attempt a CI-aware resume asks the phase handler to start at
    resume_attempt: Optional[int] = None
    # Poll CI for the existing PR before calling the agent again
    recheck_ci: bool = False
    ci_history: List[CIHistoryRecord] = Field(default_factory=list)
    session_id: Optional[str] = None
    session_created_at: Optional[datetime] = None
    session_reuse_count: int = 0


class PhaseTransition(CamelModel):
    from_phase: Phase
    to_phase: Phase
    timestamp: datetime
    transition_type: str = "normal"  # "normal" or "skip"


class WorkflowError(CamelModel):
    message: str
    phase: Phase
    timestamp: datetime
    recoverable: bool
    failure_type: FailureType = FailureType.EXECUTION
    context: Dict[str, str] = Field(default_factory=dict)


class WorkflowState(CamelModel):
    version: str = STATE_VERSION
    name: str
    type: WorkflowType
    description: str
    current_phase: Phase
    created_at: datetime
    updated_at: datetime
    phases: Dict[str, PhaseState] = Field(default_factory=dict)
    error: Optional[WorkflowError] = None
    worktree_path: Optional[str] = None
    pr_number: Optional[int] = None
    external_plan_used: bool = False
    skipped_phases: List[Phase] = Field(default_factory=list)
    phase_history: List[PhaseTransition] = Field(default_factory=list)

    @field_validator("phases")
    @classmethod
    def validate_phase_keys(cls, v: Dict[str, PhaseState]) -> Dict[str, PhaseState]:
        for key in v:
            to_phase(key)
        return v

    def phase(self, phase: str) -> PhaseState:
        """PhaseState for ``phase``, created on demand."""
        key = to_phase(phase).value
        if key not in self.phases:
            self.phases[key] = PhaseState()
        return self.phases[key]


class WorkflowInfo(CamelModel):
    name: str
    type: WorkflowType
    current_phase: Phase
    created_at: datetime
    updated_at: datetime
    status: str


# Agent output artifacts


class Architecture(CamelModel):
    overview: str = ""
    components: List[str] = Field(default_factory=list)


class PlanPhase(CamelModel):
    name: str
    description: str = ""
    estimated_files: int = 0
    estimated_lines: int = 0


class WorkStream(CamelModel):
    name: str
    tasks: List[str] = Field(default_factory=list)
    depends_on: List[str] = Field(default_factory=list)


class Plan(CamelModel):
    summary: str
    context_type: str = ""
    architecture: Architecture = Field(default_factory=Architecture)
    phases: List[PlanPhase] = Field(default_factory=list)
    work_streams: List[WorkStream] = Field(default_factory=list)
    risks: List[str] = Field(default_factory=list)
    complexity: str = ""
    estimated_total_lines: int = 0
    estimated_total_files: int = 0

    def to_markdown(self) -> str:
        """Human-readable rendering saved next to plan.json."""
        lines = ["# Implementation Plan", "", "## Summary", "", self.summary, ""]
        if self.context_type:
            lines += [f"**Context:** {self.context_type}", ""]
        if self.complexity:
            lines += [f"**Complexity:** {self.complexity}", ""]
        lines += [
            f"**Estimated size:** {self.estimated_total_lines} lines "
            f"across {self.estimated_total_files} files",
            "",
        ]

        if self.architecture.overview or self.architecture.components:
            lines += ["## Architecture", ""]
            if self.architecture.overview:
                lines += [self.architecture.overview, ""]
            for component in self.architecture.components:
                lines.append(f"- {component}")
            if self.architecture.components:
                lines.append("")

        if self.phases:
            lines += ["## Phases", ""]
            for i, phase in enumerate(self.phases, 1):
                lines.append(f"### {i}. {phase.name}")
                lines.append("")
                if phase.description:
                    lines += [phase.description, ""]
                lines += [
                    f"Estimated: {phase.estimated_lines} lines, {phase.estimated_files} files",
                    "",
                ]

        if self.work_streams:
            lines += ["## Work Streams", ""]
            for stream in self.work_streams:
                header = f"### {stream.name}"
                if stream.depends_on:
                    header += f" (depends on: {', '.join(stream.depends_on)})"
                lines += [header, ""]
                for task in stream.tasks:
                    lines.append(f"- [ ] {task}")
                lines.append("")

        if self.risks:
            lines += ["## Risks", ""]
            for risk in self.risks:
                lines.append(f"- {risk}")
            lines.append("")

        return "\n".join(lines)


class ImplementationSummary(CamelModel):
    files_changed: List[str] = Field(default_factory=list)
    lines_added: int = 0
    lines_removed: int = 0
    tests_added: int = 0
    pr_number: int = 0
    pr_url: str = ""
    summary: str
    next_steps: List[str] = Field(default_factory=list)


class RefactoringSummary(CamelModel):
    files_changed: List[str] = Field(default_factory=list)
    improvements_made: List[str] = Field(default_factory=list)
    summary: str


class SplitStrategy(str, Enum):
    BY_COMMITS = "commits"
    BY_FILES = "files"


class ChildPRPlan(CamelModel):
    title: str
    description: str = ""
    commits: List[str] = Field(default_factory=list)
    files: List[str] = Field(default_factory=list)


class PRSplitPlan(CamelModel):
    strategy: SplitStrategy = SplitStrategy.BY_COMMITS
    parent_title: str
    parent_description: str = ""
    child_prs: List[ChildPRPlan] = Field(default_factory=list, alias="childPRs")
    summary: str = ""


class PRInfo(CamelModel):
    number: int = 0
    url: str = ""
    title: str = ""
    description: str = ""


class PRSplitResult(CamelModel):
    parent_pr: PRInfo = Field(default_factory=PRInfo, alias="parentPR")
    child_prs: List[PRInfo] = Field(default_factory=list, alias="childPRs")
    branch_names: List[str] = Field(default_factory=list)
    summary: str = ""
