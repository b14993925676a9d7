"""CI failure classification.

Decides whether a failing CI run points at the code (ask the agent to fix
it) or at the CI infrastructure (rerun without changes). Pure: no I/O.
"""

import logging
from typing import Dict, Optional

from .ci_models import (
    CIFailureHistory,
    CIFailureReason,
    CIJob,
    CIResult,
    ClassifiedFailure,
    FailureCategory,
)

logger = logging.getLogger(__name__)

# Jobs cancelled this quickly never did real work: superseded run or lost runner
INFRASTRUCTURE_DURATION_THRESHOLD = 30.0

# Jobs cancelled after this long most likely hit a job timeout
TIMEOUT_DURATION_THRESHOLD = 5 * 60.0

DEFAULT_PERSISTENT_FAILURE_THRESHOLD = 3

TIMEOUT_PRONE_KEYWORDS = ("test", "build", "lint", "check", "e2e", "integration")

RECOMMENDED_ACTIONS: Dict[FailureCategory, str] = {
    FailureCategory.INFRASTRUCTURE: "Auto-retry CI - no code changes needed",
    FailureCategory.CODE_RELATED: "Analyze failures and fix code issues",
    FailureCategory.MIXED: "Fix code issues first, then retry for infrastructure issues",
    FailureCategory.PERSISTENT: (
        "Stop retrying - same failure pattern has occurred multiple times. "
        "Manual investigation required."
    ),
}


class CIFailureClassifier:
    """Maps a CI result (plus history) to a failure category."""

    def __init__(self, persistent_threshold: int = DEFAULT_PERSISTENT_FAILURE_THRESHOLD):
        self.persistent_threshold = persistent_threshold

    def classify(
        self,
        result: CIResult,
        history: Optional[CIFailureHistory] = None,
    ) -> ClassifiedFailure:
        jobs_by_name = {job.name: job for job in result.jobs}
        reasons = []

        for name in result.failed_jobs:
            job = jobs_by_name.get(name)
            reasons.append(CIFailureReason(
                job=name,
                conclusion=job.state.upper() if job else "FAILURE",
                category=FailureCategory.CODE_RELATED,
                explanation="Job failed with errors - requires code fix",
                duration=job.duration if job else None,
            ))

        for name in result.cancelled_jobs:
            reasons.append(self.classify_cancelled_job(name, jobs_by_name.get(name)))

        category = self._overall_category(reasons, history)
        logger.debug(
            f"Classified CI result: {category.value} "
            f"({len(result.failed_jobs)} failed, {len(result.cancelled_jobs)} cancelled)"
        )
        return ClassifiedFailure(
            category=category,
            reasons=reasons,
            recommended_action=RECOMMENDED_ACTIONS[category],
        )

    def classify_cancelled_job(self, name: str, job: Optional[CIJob]) -> CIFailureReason:
        """Guess why a job was cancelled from how long it ran."""
        duration = job.duration if job else None

        if duration is None:
            return CIFailureReason(
                job=name,
                conclusion="CANCELLED",
                category=FailureCategory.INFRASTRUCTURE,
                explanation=(
                    "Job was cancelled (no timing data available - "
                    "assuming infrastructure issue)"
                ),
            )

        if duration < INFRASTRUCTURE_DURATION_THRESHOLD:
            category = FailureCategory.INFRASTRUCTURE
            explanation = (
                "Job cancelled within 30 seconds of start - "
                "likely workflow superseded or runner issue"
            )
        elif duration >= TIMEOUT_DURATION_THRESHOLD:
            category = FailureCategory.CODE_RELATED
            explanation = (
                "Job ran for extended period before cancellation - "
                "likely timeout, infinite loop, or resource exhaustion"
            )
        elif job_name_suggests_timeout(name):
            category = FailureCategory.CODE_RELATED
            explanation = "Job name suggests test/build that may have timed out"
        else:
            category = FailureCategory.INFRASTRUCTURE
            explanation = (
                "Job was cancelled - likely infrastructure issue "
                "(workflow concurrency, manual cancellation)"
            )

        return CIFailureReason(
            job=name,
            conclusion="CANCELLED",
            category=category,
            explanation=explanation,
            duration=duration,
        )

    def _overall_category(self, reasons, history: Optional[CIFailureHistory]) -> FailureCategory:
        if history is not None and history.is_persistent_failure(self.persistent_threshold):
            return FailureCategory.PERSISTENT

        categories = {reason.category for reason in reasons}
        has_infra = FailureCategory.INFRASTRUCTURE in categories
        has_code = FailureCategory.CODE_RELATED in categories
        if has_infra and has_code:
            return FailureCategory.MIXED
        if has_infra:
            return FailureCategory.INFRASTRUCTURE
        # Code-related is also the safe default when nothing could be classified
        return FailureCategory.CODE_RELATED


def job_name_suggests_timeout(name: str) -> bool:
    lower = name.lower()
    return any(keyword in lower for keyword in TIMEOUT_PRONE_KEYWORDS)
