"""CI status and failure classification data types."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import FrozenSet, List, Optional

DEFAULT_E2E_PATTERN = "e2e|E2E|integration|Integration"


class CIStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    PENDING = "pending"


class FailureCategory(str, Enum):
    INFRASTRUCTURE = "infrastructure"
    CODE_RELATED = "code_related"
    MIXED = "mixed"
    PERSISTENT = "persistent"


@dataclass
class CIJob:
    """One check as reported by the status source."""
    name: str
    state: str
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    link: str = ""

    @property
    def duration(self) -> Optional[float]:
        """Run time in seconds, or None when timing data is incomplete."""
        if self.started_at is None or self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()


@dataclass
class CIFailureReason:
    job: str
    conclusion: str
    category: FailureCategory
    explanation: str
    duration: Optional[float] = None


@dataclass
class ClassifiedFailure:
    category: FailureCategory
    reasons: List[CIFailureReason] = field(default_factory=list)
    recommended_action: str = ""


@dataclass
class CIResult:
    passed: bool
    status: CIStatus
    failed_jobs: List[str] = field(default_factory=list)
    cancelled_jobs: List[str] = field(default_factory=list)
    output: str = ""
    jobs: List[CIJob] = field(default_factory=list)
    classification: Optional[ClassifiedFailure] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (CIStatus.SUCCESS, CIStatus.FAILURE)

    @property
    def cancelled_only(self) -> bool:
        """Only cancellations, no genuine job failures."""
        return bool(self.cancelled_jobs) and not self.failed_jobs


@dataclass
class CIFailureHistoryEntry:
    failed_jobs: List[str]
    cancelled_jobs: List[str]
    category: FailureCategory
    timestamp: datetime

    @property
    def job_set(self) -> FrozenSet[str]:
        return frozenset(self.failed_jobs) | frozenset(self.cancelled_jobs)


@dataclass
class CIFailureHistory:
    entries: List[CIFailureHistoryEntry] = field(default_factory=list)

    def add(self, entry: CIFailureHistoryEntry) -> None:
        self.entries.append(entry)

    def is_persistent_failure(self, threshold: int) -> bool:
        """True if the last ``threshold`` entries failed on the exact same set of jobs."""
        if threshold < 1 or len(self.entries) < threshold:
            return False
        recent = self.entries[-threshold:]
        first = recent[0].job_set
        return all(entry.job_set == first for entry in recent[1:])


@dataclass
class CheckCIOptions:
    skip_e2e: bool = False
    e2e_pattern: str = DEFAULT_E2E_PATTERN


@dataclass
class CIProgressEvent:
    type: str  # "checking", "waiting", "status", "retry"
    elapsed: float
    message: str
    jobs_passed: int = 0
    jobs_failed: int = 0
    jobs_pending: int = 0
    retry_attempt: int = 0
    next_check_in: float = 0.0
