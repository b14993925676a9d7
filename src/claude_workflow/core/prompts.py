"""Prompt rendering for each workflow phase.

Templates are plain strings rendered with ``str.format``. Literal braces in
the templates are doubled.
"""

import logging
from typing import List, Optional, Sequence

from ..workspace.git_runner import Commit
from .models import Plan, PRMetrics

logger = logging.getLogger(__name__)

# Commits beyond this are summarized as a count to keep split prompts bounded
MAX_COMMITS_IN_PROMPT = 200

_PLANNING_TEMPLATE = """You are planning a {type} for an existing codebase.

## Request

{description}
{feedback_section}
## Instructions

1. Explore the repository to understand the relevant code, conventions and tests.
2. Decide on the architecture of the change and list the components it touches.
3. Break the work into ordered phases with realistic file and line estimates.
4. Group the tasks into work streams and record dependencies between them.
5. List the risks you see and rate the overall complexity (small, medium or large).

Do not modify any files during planning.

Respond with a single JSON object that matches the provided schema. The
"summary" field is required.
"""

_FEEDBACK_SECTION_TEMPLATE = """
## Feedback on previous plans

Revise the plan to address every point below:

{items}
"""

_IMPLEMENTATION_TEMPLATE = """Implement the following approved plan.

{plan}

## Instructions

1. Work only inside the current working directory; it is a dedicated git worktree.
2. Follow the existing code style and add tests for new behaviour.
3. Run the test suite and linters locally and fix anything that fails.
4. Commit your changes with descriptive messages and push the branch.
5. Open a pull request with `gh pr create` describing the change.

Respond with a single JSON object that matches the provided schema. Include
the pull request number in "prNumber" and its URL in "prUrl". The "summary"
field is required.
"""

_REFACTORING_TEMPLATE = """The implementation of the plan below is complete and its pull request passes CI.

{plan}

## Instructions

1. Review the changes on this branch against the main branch.
2. Remove duplication, dead code and unclear naming introduced by the change.
3. Keep behaviour identical; the existing tests must keep passing.
4. Commit and push the refactoring to the same pull request branch.

Respond with a single JSON object that matches the provided schema, listing
every improvement in "improvementsMade". The "summary" field is required.
"""

_PR_SPLIT_TEMPLATE = """The pull request on this branch is too large to review comfortably.

## Size

- Lines changed: {lines_changed}
- Files changed: {files_changed}
- Files added: {files_added}
- Files modified: {files_modified}
- Files deleted: {files_deleted}

## Commits since main

{commits}
{feedback_section}
## Instructions

Propose a split into a parent PR plus an ordered chain of child PRs, each
small enough to review on its own. Each child builds on the previous one.

- Use strategy "commits" when the commits already form coherent slices, and
  list the full commit hashes of each child in order.
- Otherwise use strategy "files" and list the files for each child.

Do not create branches or pull requests yourself.

Respond with a single JSON object that matches the provided schema. The
"summary" field is required.
"""

_FIX_CI_TEMPLATE = """CI failed on the pull request for this branch.

{failures}

## Instructions

1. Inspect the failing jobs (for example with `gh pr checks` and `gh run view --log-failed`).
2. Fix the underlying problems in the code or tests; do not disable or skip tests.
3. Run the affected checks locally where possible.
4. Commit and push the fixes to the same branch.

Respond with a single JSON object that matches the provided schema. Keep
the same pull request number in "prNumber". The "summary" field is required.
"""


def _bullets(items: Sequence[str], empty: str = "(none)") -> str:
    if not items:
        return empty
    return "\n".join(f"- {item}" for item in items)


def _feedback_section(feedback: Optional[Sequence[str]]) -> str:
    if not feedback:
        return ""
    return _FEEDBACK_SECTION_TEMPLATE.format(items=_bullets(feedback))


class PromptGenerator:
    """Renders the prompt for each phase."""

    def planning(self, workflow_type: str, description: str,
                 feedback: Optional[List[str]] = None) -> str:
        if not description:
            raise ValueError("description cannot be empty")
        return _PLANNING_TEMPLATE.format(
            type=workflow_type,
            description=description,
            feedback_section=_feedback_section(feedback),
        )

    def implementation(self, plan: Plan) -> str:
        if plan is None:
            raise ValueError("plan cannot be None")
        return _IMPLEMENTATION_TEMPLATE.format(plan=plan.to_markdown())

    def refactoring(self, plan: Plan) -> str:
        if plan is None:
            raise ValueError("plan cannot be None")
        return _REFACTORING_TEMPLATE.format(plan=plan.to_markdown())

    def pr_split(self, metrics: PRMetrics, commits: List[Commit],
                 feedback: Optional[List[str]] = None) -> str:
        """Prompt asking for a PRSplitPlan.

        ``feedback`` carries the failure text of earlier split attempts.
        """
        if metrics is None:
            raise ValueError("metrics cannot be None")

        shown = commits[:MAX_COMMITS_IN_PROMPT]
        commit_lines = _bullets([f"{c.hash} {c.subject}" for c in shown])
        if len(commits) > len(shown):
            commit_lines += f"\n- ... and {len(commits) - len(shown)} more"

        return _PR_SPLIT_TEMPLATE.format(
            lines_changed=metrics.lines_changed,
            files_changed=metrics.files_changed,
            files_added=", ".join(metrics.files_added) or "(none)",
            files_modified=", ".join(metrics.files_modified) or "(none)",
            files_deleted=", ".join(metrics.files_deleted) or "(none)",
            commits=commit_lines,
            feedback_section=_feedback_section(feedback),
        )

    def fix_ci(self, failures: str) -> str:
        if not failures or not failures.strip():
            raise ValueError("failures cannot be empty")
        return _FIX_CI_TEMPLATE.format(failures=failures.strip())
