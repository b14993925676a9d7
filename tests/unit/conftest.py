"""Shared fakes and fixtures for unit tests."""

import json
from datetime import timedelta
from typing import Dict, List, Optional
from unittest.mock import MagicMock

import pytest

from claude_workflow.core.ci_models import CIJob
from claude_workflow.core.ci_poller import CheckStatusSource
from claude_workflow.core.clock import FakeClock
from claude_workflow.core.config import CIConfig, LimitsConfig, WorkflowConfig
from claude_workflow.core.state_store import StateStore
from claude_workflow.llm.base import AgentExecutor, AgentRequest, AgentResult
from claude_workflow.workspace.gh_runner import GitHubClient
from claude_workflow.workspace.git_runner import Commit, GitClient
from claude_workflow.workspace.worktree_manager import WorktreeManager


# ---------------------------------------------------------------------------
# Canned agent output
# ---------------------------------------------------------------------------

PLAN_OUTPUT = json.dumps({
    "summary": "Add a widget endpoint",
    "contextType": "feature",
    "architecture": {"overview": "New handler", "components": ["api"]},
    "phases": [{"name": "Core", "description": "Handler and tests", "estimatedFiles": 2, "estimatedLines": 80}],
    "risks": ["none"],
    "complexity": "small",
    "estimatedTotalLines": 80,
    "estimatedTotalFiles": 2,
})


# A hand-written plan handed to start(external_plan=...)
EXTERNAL_PLAN = {
    "summary": "Add a widget endpoint",
    "phases": [{"name": "Core", "description": "Handler and tests"}],
    "workStreams": [{"name": "api", "tasks": ["Add handler", "Add tests"]}],
}


def implementation_output(pr_number: int = 42) -> str:
    return json.dumps({
        "summary": "Implemented the widget endpoint",
        "filesChanged": ["api/widget.py"],
        "linesAdded": 80,
        "prNumber": pr_number,
        "prUrl": f"https://github.com/org/repo/pull/{pr_number}",
    })


REFACTORING_OUTPUT = json.dumps({
    "summary": "Extracted a helper",
    "improvementsMade": ["smaller functions"],
})

SPLIT_PLAN_OUTPUT = json.dumps({
    "strategy": "commits",
    "parentTitle": "Widget endpoint",
    "parentDescription": "Adds the widget endpoint in two steps",
    "childPRs": [
        {"title": "Widget model", "description": "Model only", "commits": ["aaa111"]},
        {"title": "Widget handler", "description": "Handler", "commits": ["bbb222"]},
    ],
    "summary": "Split by layer",
})

SMALL_DIFF_STAT = (
    " api/widget.py | 70 ++++++++++\n"
    " tests/test_widget.py | 10 ++\n"
    " 2 files changed, 80 insertions(+)\n"
)

LARGE_DIFF_STAT = (
    " api/widget.py (new) | 150 ++++++++++\n"
    " api/old.py (gone) | 20 --\n"
    " 12 files changed, 180 insertions(+), 20 deletions(-)\n"
)


# ---------------------------------------------------------------------------
# Job helpers
# ---------------------------------------------------------------------------

def make_job(name: str, state: str, duration: Optional[float] = None, link: str = "") -> CIJob:
    job = CIJob(name=name, state=state, link=link)
    if duration is not None:
        clock = FakeClock()
        job.started_at = clock.now()
        job.completed_at = clock.now() + timedelta(seconds=duration)
    return job


def passing_jobs() -> List[CIJob]:
    return [make_job("unit-tests", "SUCCESS"), make_job("lint", "SUCCESS")]


def failing_jobs(*names: str) -> List[CIJob]:
    return [make_job(name, "FAILURE") for name in names] + [make_job("lint", "SUCCESS")]


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeGit(GitClient):
    """In-memory GitClient that records every call.

    ``fail_on`` maps a method name to the exception that method raises.
    """

    def __init__(self, diff_stat: str = SMALL_DIFF_STAT, commits: Optional[List[Commit]] = None,
                 branch: str = "workflow/widget"):
        self.diff_stat_output = diff_stat
        self.commits = commits if commits is not None else [
            Commit(hash="aaa111", subject="Add widget model"),
            Commit(hash="bbb222", subject="Add widget handler"),
        ]
        self.branch = branch
        self.calls: List[tuple] = []
        self.fail_on: Dict[str, Exception] = {}

    def _record(self, method: str, *args) -> None:
        self.calls.append((method,) + args)
        if method in self.fail_on:
            raise self.fail_on[method]

    def called(self, method: str) -> List[tuple]:
        return [call[1:] for call in self.calls if call[0] == method]

    def create_branch(self, name, base, cwd=None):
        self._record("create_branch", name, base)

    def checkout_branch(self, name, cwd=None):
        self._record("checkout_branch", name)

    def delete_branch(self, name, force=False, cwd=None):
        self._record("delete_branch", name, force)

    def delete_remote_branch(self, name, cwd=None):
        self._record("delete_remote_branch", name)

    def commit_empty(self, message, cwd=None):
        self._record("commit_empty", message)

    def cherry_pick(self, commit, cwd=None):
        self._record("cherry_pick", commit)

    def checkout_files(self, source, files, cwd=None):
        self._record("checkout_files", source, list(files))

    def commit_all(self, message, cwd=None):
        self._record("commit_all", message)

    def push(self, branch, cwd=None):
        self._record("push", branch)

    def current_branch(self, cwd=None):
        self._record("current_branch")
        return self.branch

    def commits_since(self, base, cwd=None):
        self._record("commits_since", base)
        return list(self.commits)

    def diff_stat(self, base, cwd=None):
        self._record("diff_stat", base)
        return self.diff_stat_output


class FakeGh(GitHubClient, CheckStatusSource):
    """In-memory GitHubClient and CheckStatusSource.

    PR numbers are handed out from ``next_number``. ``checks`` maps a PR
    number to a list of job lists returned by successive ``fetch_checks``
    calls (the last one repeats); PRs without an entry pass.
    """

    def __init__(self, next_number: int = 100):
        self.next_number = next_number
        self.created: List[dict] = []
        self.edited: List[tuple] = []
        self.closed: List[int] = []
        self.reruns: List[int] = []
        self.checks: Dict[int, List[List[CIJob]]] = {}
        self.fetches: Dict[int, int] = {}
        self.fail_on: Dict[str, Exception] = {}

    def pr_create(self, title, body, head, base="", cwd=None):
        if "pr_create" in self.fail_on:
            raise self.fail_on["pr_create"]
        number = self.next_number
        self.next_number += 1
        self.created.append({"number": number, "title": title, "head": head, "base": base})
        return f"https://github.com/org/repo/pull/{number}"

    def pr_edit(self, number, body, cwd=None):
        self.edited.append((number, body))

    def pr_close(self, number, cwd=None):
        if "pr_close" in self.fail_on:
            raise self.fail_on["pr_close"]
        self.closed.append(number)

    def fetch_checks(self, pr_number, cwd=None, timeout=None):
        count = self.fetches.get(pr_number, 0)
        self.fetches[pr_number] = count + 1
        sequence = self.checks.get(pr_number)
        if not sequence:
            return passing_jobs()
        return list(sequence[min(count, len(sequence) - 1)])

    def rerun_failed(self, pr_number, cwd=None):
        self.reruns.append(pr_number)


class FakeAgent(AgentExecutor):
    """Returns queued outputs in order; a queued exception is raised instead."""

    def __init__(self, outputs=None, session_id=None):
        self.outputs = list(outputs or [])
        self.session_id = session_id
        self.requests: List[AgentRequest] = []

    def execute(self, request):
        return self.execute_streaming(request)

    def execute_streaming(self, request, on_progress=None):
        self.requests.append(request)
        if not self.outputs:
            raise AssertionError("FakeAgent ran out of outputs")
        output = self.outputs.pop(0)
        if isinstance(output, BaseException):
            raise output
        return AgentResult(output=output, exit_code=0, duration=1.0, session_id=self.session_id)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path, clock):
    return StateStore(tmp_path / "workflow", clock=clock)


@pytest.fixture
def config(tmp_path):
    return WorkflowConfig(
        base_dir=tmp_path / "workflow",
        ci=CIConfig(initial_delay=0, check_interval=1, progress_interval=1, timeout=600),
        limits=LimitsConfig(max_fix_attempts=3),
    )


@pytest.fixture
def worktrees(tmp_path):
    manager = MagicMock(spec=WorktreeManager)
    manager.create_worktree.return_value = tmp_path / "worktrees" / "widget"
    return manager
