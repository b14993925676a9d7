"""GitHub operations through the gh CLI."""

import json
import logging
import re
import subprocess
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from ..core.ci_models import CIJob
from ..core.ci_poller import CheckStatusSource
from ..core.errors import CICheckTimeoutError, CICommandError
from ..utils.subprocess_utils import SubprocessError, run_command

logger = logging.getLogger(__name__)

DEFAULT_GH_TIMEOUT = 120.0

CHECK_FIELDS = "name,state,startedAt,completedAt,link"

# gh pr checks exits 8 while checks are still pending
_EXIT_CHECKS_PENDING = 8

_PR_URL_RE = re.compile(r"/pull/(\d+)")
_RUN_ID_RE = re.compile(r"/actions/runs/(\d+)")


class GitHubError(Exception):
    """A gh command failed."""


def extract_pr_number(url: str) -> int:
    """PR number from a pull request URL (``.../pull/123``)."""
    match = _PR_URL_RE.search(url or "")
    if not match:
        raise GitHubError(f"could not extract PR number from {url!r}")
    return int(match.group(1))


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    # gh reports 0001-01-01T00:00:00Z for jobs that have not started
    if not value or value.startswith("0001-"):
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def parse_checks_json(output: str) -> List[CIJob]:
    """Parse ``gh pr checks --json`` output into CIJob records."""
    if not output.strip():
        return []
    try:
        data = json.loads(output)
    except json.JSONDecodeError as e:
        raise CICommandError(f"failed to parse gh pr checks output: {e}") from e

    return [
        CIJob(
            name=item.get("name", ""),
            state=item.get("state", ""),
            started_at=_parse_timestamp(item.get("startedAt")),
            completed_at=_parse_timestamp(item.get("completedAt")),
            link=item.get("link", ""),
        )
        for item in data
    ]


class GitHubClient(ABC):
    """Narrow pull request capability interface."""

    @abstractmethod
    def pr_create(self, title: str, body: str, head: str, base: str = "",
                  cwd: Optional[Path] = None) -> str:
        """Open a PR and return its URL."""

    @abstractmethod
    def pr_edit(self, number: int, body: str, cwd: Optional[Path] = None) -> None: ...

    @abstractmethod
    def pr_close(self, number: int, cwd: Optional[Path] = None) -> None: ...


class GhRunner(GitHubClient, CheckStatusSource):
    """GitHubClient and CheckStatusSource backed by the gh executable."""

    def __init__(self, executable: str = "gh", timeout: float = DEFAULT_GH_TIMEOUT):
        self.executable = executable
        self.timeout = timeout

    def _run(self, args: List[str], cwd: Optional[Path], timeout: Optional[float] = None) -> str:
        try:
            result = run_command([self.executable] + args, cwd=cwd, timeout=timeout or self.timeout)
        except SubprocessError as e:
            raise GitHubError(f"gh {' '.join(args[:2])} failed: {e.stderr.strip() or e}") from e
        except subprocess.TimeoutExpired as e:
            raise GitHubError(f"gh {' '.join(args[:2])} timed out") from e
        return result.stdout

    def pr_create(self, title: str, body: str, head: str, base: str = "",
                  cwd: Optional[Path] = None) -> str:
        if not title:
            raise GitHubError("title cannot be empty")
        if not head:
            raise GitHubError("head branch cannot be empty")
        args = ["pr", "create", "--title", title, "--body", body, "--head", head]
        if base:
            args += ["--base", base]
        return self._run(args, cwd).strip()

    def pr_edit(self, number: int, body: str, cwd: Optional[Path] = None) -> None:
        if number <= 0:
            raise GitHubError(f"PR number must be positive, got {number}")
        self._run(["pr", "edit", str(number), "--body", body], cwd)

    def pr_close(self, number: int, cwd: Optional[Path] = None) -> None:
        if number <= 0:
            raise GitHubError(f"PR number must be positive, got {number}")
        self._run(["pr", "close", str(number)], cwd)

    def fetch_checks(
        self,
        pr_number: int,
        cwd: Optional[Path] = None,
        timeout: Optional[float] = None,
    ) -> List[CIJob]:
        cmd = [self.executable, "pr", "checks"]
        if pr_number > 0:
            cmd.append(str(pr_number))
        cmd += ["--json", CHECK_FIELDS]

        try:
            result = run_command(cmd, cwd=cwd, check=False, timeout=timeout or self.timeout)
        except subprocess.TimeoutExpired as e:
            raise CICheckTimeoutError("CI check command timed out") from e
        except FileNotFoundError as e:
            raise CICommandError("gh CLI not found: is it installed?") from e

        if result.returncode == 0:
            return parse_checks_json(result.stdout)

        # Non-zero with output still carries the job list (failed or pending checks)
        if result.returncode in (1, _EXIT_CHECKS_PENDING) and result.stdout.strip():
            return parse_checks_json(result.stdout)

        if result.returncode == 127:
            raise CICommandError("gh CLI not found: is it installed?")

        stderr = result.stderr.strip()
        if "no checks reported" in stderr:
            return []
        raise CICommandError(
            f"failed to check CI status (exit {result.returncode}): {stderr}"
        )

    def rerun_failed(self, pr_number: int, cwd: Optional[Path] = None) -> None:
        jobs = self.fetch_checks(pr_number, cwd=cwd)
        run_ids = []
        for job in jobs:
            match = _RUN_ID_RE.search(job.link)
            if match and match.group(1) not in run_ids:
                run_ids.append(match.group(1))

        if not run_ids:
            raise CICommandError(f"no workflow runs found for PR {pr_number}")

        for run_id in run_ids:
            logger.info(f"Re-running failed jobs of run {run_id} (PR #{pr_number})")
            try:
                self._run(["run", "rerun", run_id, "--failed"], cwd)
            except GitHubError as e:
                raise CICommandError(f"failed to rerun workflow run {run_id}: {e}") from e
