"""CI status polling.

Waits for a pull request's checks to reach a terminal state. All waiting
goes through the injected Clock, so a cancel unblocks the poller
immediately and tests never sleep.
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from .ci_models import (
    CheckCIOptions,
    CIFailureHistory,
    CIFailureHistoryEntry,
    CIJob,
    CIProgressEvent,
    CIResult,
    CIStatus,
)
from .classifier import CIFailureClassifier
from .clock import CancelToken, Clock, WaitOutcome
from .errors import CICheckTimeoutError, CITimeoutError, WorkflowCancelledError

logger = logging.getLogger(__name__)

DEFAULT_CHECK_INTERVAL = 30.0
DEFAULT_INITIAL_DELAY = 60.0
DEFAULT_COMMAND_TIMEOUT = 120.0
DEFAULT_CI_TIMEOUT = 30 * 60.0
DEFAULT_PROGRESS_INTERVAL = 5.0

CHECK_MAX_RETRIES = 3
CHECK_RETRY_BACKOFF = 5.0

_SUCCESS_STATES = frozenset({"success", "pass", "skipped", "skipping", "neutral"})
_FAILURE_STATES = frozenset({
    "failure", "fail", "error", "timed_out", "startup_failure", "action_required",
})
_CANCELLED_STATES = frozenset({"cancelled", "canceled", "cancel"})

ProgressCallback = Callable[[CIProgressEvent], None]


class CheckStatusSource(ABC):
    """Where CI job states come from (``gh pr checks`` in production)."""

    @abstractmethod
    def fetch_checks(
        self,
        pr_number: int,
        cwd: Optional[Path] = None,
        timeout: Optional[float] = None,
    ) -> List[CIJob]:
        """Current jobs for the PR.

        Raises:
            CICheckTimeoutError: The status command exceeded ``timeout``
            CICommandError: The status command failed for any other reason
        """

    @abstractmethod
    def rerun_failed(self, pr_number: int, cwd: Optional[Path] = None) -> None:
        """Re-run the failed/cancelled jobs of the PR's latest run."""


def normalize_state(state: str) -> str:
    """Collapse a raw check state into success/failure/cancelled/pending."""
    lowered = (state or "").strip().lower()
    if lowered in _SUCCESS_STATES:
        return "success"
    if lowered in _FAILURE_STATES:
        return "failure"
    if lowered in _CANCELLED_STATES:
        return "cancelled"
    return "pending"


def parse_ci_output(jobs: List[CIJob]) -> Tuple[CIStatus, List[str], List[str]]:
    """Derive (status, failed job names, cancelled job names) from job states.

    Failure wins over pending; an empty job list is pending because checks
    may not have been registered yet.
    """
    failed, cancelled = [], []
    any_pending = not jobs

    for job in jobs:
        normalized = normalize_state(job.state)
        if normalized == "failure":
            failed.append(job.name)
        elif normalized == "cancelled":
            cancelled.append(job.name)
        elif normalized == "pending":
            any_pending = True

    if failed or cancelled:
        return CIStatus.FAILURE, failed, cancelled
    if any_pending:
        return CIStatus.PENDING, failed, cancelled
    return CIStatus.SUCCESS, failed, cancelled


def count_job_statuses(jobs: List[CIJob]) -> Tuple[int, int, int]:
    """Count (passed, failed, pending); cancelled jobs count as failed."""
    passed = failed = pending = 0
    for job in jobs:
        normalized = normalize_state(job.state)
        if normalized == "success":
            passed += 1
        elif normalized in ("failure", "cancelled"):
            failed += 1
        else:
            pending += 1
    return passed, failed, pending


def build_result(jobs: List[CIJob]) -> CIResult:
    status, failed, cancelled = parse_ci_output(jobs)
    return CIResult(
        passed=status == CIStatus.SUCCESS,
        status=status,
        failed_jobs=failed,
        cancelled_jobs=cancelled,
        output=json.dumps([_job_payload(job) for job in jobs], indent=2),
        jobs=list(jobs),
    )


def _job_payload(job: CIJob) -> dict:
    payload = {"name": job.name, "state": job.state}
    if job.started_at:
        payload["startedAt"] = job.started_at.isoformat()
    if job.completed_at:
        payload["completedAt"] = job.completed_at.isoformat()
    return payload


def filter_e2e_failures(result: CIResult, pattern: str) -> CIResult:
    """Drop failures whose job name matches ``pattern`` from the pass/fail verdict.

    The raw output is left untouched so the failures stay visible.
    """
    if result.passed:
        return result

    try:
        e2e_regex = re.compile(pattern)
    except re.error as e:
        logger.warning(f"Invalid e2e pattern {pattern!r}, not filtering: {e}")
        return result

    failed = [job for job in result.failed_jobs if not e2e_regex.search(job)]
    cancelled = [job for job in result.cancelled_jobs if not e2e_regex.search(job)]
    passed = not failed and not cancelled
    return CIResult(
        passed=passed,
        status=CIStatus.SUCCESS if passed else result.status,
        failed_jobs=failed,
        cancelled_jobs=cancelled,
        output=result.output,
        jobs=result.jobs,
        classification=result.classification,
    )


class CIPoller:
    """Polls a CheckStatusSource until CI is terminal, the ceiling passes, or cancel fires."""

    def __init__(
        self,
        source: CheckStatusSource,
        clock: Clock,
        classifier: Optional[CIFailureClassifier] = None,
        check_interval: float = DEFAULT_CHECK_INTERVAL,
        initial_delay: float = DEFAULT_INITIAL_DELAY,
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
        progress_interval: float = DEFAULT_PROGRESS_INTERVAL,
    ):
        self.source = source
        self.clock = clock
        self.classifier = classifier or CIFailureClassifier()
        self.check_interval = check_interval
        self.initial_delay = initial_delay
        self.command_timeout = command_timeout
        self.progress_interval = progress_interval

    def check_ci(
        self,
        pr_number: int,
        cwd: Optional[Path] = None,
        cancel: Optional[CancelToken] = None,
    ) -> CIResult:
        """Fetch CI status once, retrying command timeouts with linear back-off."""
        last_error: Optional[CICheckTimeoutError] = None

        for attempt in range(CHECK_MAX_RETRIES):
            if attempt > 0:
                backoff = attempt * CHECK_RETRY_BACKOFF
                if self.clock.wait(backoff, cancel) == WaitOutcome.CANCELLED:
                    raise WorkflowCancelledError("CI check cancelled")
            elif cancel is not None:
                cancel.raise_if_cancelled()

            try:
                jobs = self.source.fetch_checks(pr_number, cwd=cwd, timeout=self.command_timeout)
                return build_result(jobs)
            except CICheckTimeoutError as e:
                last_error = e
                logger.warning(
                    f"CI status command timed out for PR #{pr_number} "
                    f"(attempt {attempt + 1}/{CHECK_MAX_RETRIES})"
                )

        raise CICheckTimeoutError(
            f"CI check command timed out after {CHECK_MAX_RETRIES} retries: {last_error}"
        )

    def wait_for_ci(
        self,
        pr_number: int,
        cwd: Optional[Path] = None,
        timeout: Optional[float] = None,
        options: Optional[CheckCIOptions] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancelToken] = None,
        history: Optional[CIFailureHistory] = None,
    ) -> CIResult:
        """Wait for CI on ``pr_number`` to finish.

        A result with only cancelled jobs is classified, recorded in
        ``history``, and the cancelled jobs are re-run exactly once before
        the result is handed back as a failure.

        Raises:
            WorkflowCancelledError: ``cancel`` fired
            CITimeoutError: CI was still pending when ``timeout`` elapsed
            CIError: The status command failed with a non-timeout error
        """
        timeout = timeout or DEFAULT_CI_TIMEOUT
        options = options or CheckCIOptions()
        start = self.clock.now()
        emit = on_progress or (lambda event: None)

        result = self._poll_until_terminal(pr_number, cwd, timeout, start, emit, cancel)

        if result.cancelled_only:
            self._record_cancelled(result, history)
            logger.info(
                f"PR #{pr_number} has only cancelled jobs "
                f"({', '.join(result.cancelled_jobs)}), re-running once"
            )
            self.source.rerun_failed(pr_number, cwd=cwd)
            result = self._poll_until_terminal(pr_number, cwd, timeout, start, emit, cancel)
            if result.cancelled_only:
                self._record_cancelled(result, history)

        if options.skip_e2e:
            result = filter_e2e_failures(result, options.e2e_pattern)
        return result

    def _record_cancelled(self, result: CIResult, history: Optional[CIFailureHistory]) -> None:
        classified = self.classifier.classify(result, history)
        if history is not None:
            history.add(CIFailureHistoryEntry(
                failed_jobs=list(result.failed_jobs),
                cancelled_jobs=list(result.cancelled_jobs),
                category=classified.category,
                timestamp=self.clock.now(),
            ))
            # Re-classify so the entry just added counts towards persistence
            classified = self.classifier.classify(result, history)
        result.classification = classified

    def _poll_until_terminal(
        self,
        pr_number: int,
        cwd: Optional[Path],
        timeout: float,
        start: datetime,
        emit: ProgressCallback,
        cancel: Optional[CancelToken],
    ) -> CIResult:
        emit(CIProgressEvent(
            type="checking", elapsed=self.clock.since(start), message="Checking CI status",
        ))
        try:
            result = self.check_ci(pr_number, cwd, cancel)
        except CICheckTimeoutError:
            result = None
        else:
            self._emit_status(result, start, emit)
            if result.is_terminal:
                return result

        self._wait_initial_delay(timeout, start, emit, cancel)

        retries = 0
        while True:
            self._wait_slice(self.check_interval, timeout, start, cancel)

            emit(CIProgressEvent(
                type="checking", elapsed=self.clock.since(start), message="Checking CI status",
            ))
            try:
                result = self.check_ci(pr_number, cwd, cancel)
            except CICheckTimeoutError:
                retries += 1
                emit(CIProgressEvent(
                    type="retry",
                    elapsed=self.clock.since(start),
                    message="Command timeout, retrying",
                    retry_attempt=retries,
                    next_check_in=self.check_interval,
                ))
                continue

            self._emit_status(result, start, emit)
            if result.is_terminal:
                return result

    def _emit_status(self, result: CIResult, start: datetime, emit: ProgressCallback) -> None:
        passed, failed, pending = count_job_statuses(result.jobs)
        emit(CIProgressEvent(
            type="status",
            elapsed=self.clock.since(start),
            message=f"CI status: {result.status.value}",
            jobs_passed=passed,
            jobs_failed=failed,
            jobs_pending=pending,
            next_check_in=self.check_interval,
        ))

    def _wait_initial_delay(
        self,
        timeout: float,
        start: datetime,
        emit: ProgressCallback,
        cancel: Optional[CancelToken],
    ) -> None:
        remaining = self.initial_delay
        while remaining > 0:
            step = min(self.progress_interval, remaining)
            self._wait_slice(step, timeout, start, cancel)
            remaining -= step
            emit(CIProgressEvent(
                type="waiting",
                elapsed=self.clock.since(start),
                message="Waiting for CI jobs to complete",
                next_check_in=max(0.0, remaining),
            ))

    def _wait_slice(
        self,
        seconds: float,
        timeout: float,
        start: datetime,
        cancel: Optional[CancelToken],
    ) -> None:
        """Wait up to ``seconds``, never past the ceiling, honouring cancel."""
        left = timeout - self.clock.since(start)
        if left <= 0:
            raise CITimeoutError(f"CI check timeout after {_format_seconds(timeout)}")

        if self.clock.wait(min(seconds, left), cancel) == WaitOutcome.CANCELLED:
            raise WorkflowCancelledError("CI wait cancelled")

        if self.clock.since(start) >= timeout:
            raise CITimeoutError(f"CI check timeout after {_format_seconds(timeout)}")


def _format_seconds(seconds: float) -> str:
    minutes, secs = divmod(int(seconds), 60)
    if minutes and secs:
        return f"{minutes}m{secs}s"
    if minutes:
        return f"{minutes}m"
    return f"{secs}s"
