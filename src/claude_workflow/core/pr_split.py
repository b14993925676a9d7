"""Splitting an oversized change into a parent PR and a chain of child PRs.

The parent branch is anchored by an empty commit on top of main. Each child
branch builds on the previous one, so reviewers see one slice per PR.
Nothing here undoes itself on failure: callers run ``rollback`` with the
partial result, which is why every branch name is recorded up front.
"""

import logging
from pathlib import Path
from typing import Optional

from ..workspace.gh_runner import GitHubClient, extract_pr_number
from ..workspace.git_runner import GitClient
from .errors import PRSplitError, RollbackError
from .models import PRInfo, PRSplitPlan, PRSplitResult, SplitStrategy

logger = logging.getLogger(__name__)


def parent_branch_name(source_branch: str) -> str:
    return f"split/{source_branch}/parent"


def child_branch_name(source_branch: str, index: int) -> str:
    """Branch for the ``index``-th child, counting from 1."""
    return f"split/{source_branch}/child-{index}"


class PRSplitManager:
    """Materializes a PRSplitPlan as branches and pull requests."""

    def __init__(self, git: GitClient, gh: GitHubClient, working_dir: Optional[Path] = None):
        self.git = git
        self.gh = gh
        self.working_dir = working_dir

    def execute_split(
        self,
        plan: Optional[PRSplitPlan],
        source_branch: str,
        main_branch: str,
        result: Optional[PRSplitResult] = None,
    ) -> PRSplitResult:
        """Create the parent/child branches and PRs described by ``plan``.

        ``result`` is filled in as work progresses; pass your own instance to
        keep hold of partial progress when this raises.

        Raises:
            PRSplitError: On an invalid plan (before any side effect) or on the
                first failing git/PR step. Nothing is rolled back here.
        """
        self._validate(plan, source_branch, main_branch)
        cwd = self.working_dir
        result = result if result is not None else PRSplitResult()
        result.summary = plan.summary

        parent_branch = parent_branch_name(source_branch)
        child_branches = [
            child_branch_name(source_branch, i) for i in range(1, len(plan.child_prs) + 1)
        ]
        result.branch_names = [parent_branch] + child_branches

        logger.info(
            f"Splitting {source_branch} into {len(child_branches)} child PRs "
            f"(strategy: {plan.strategy})"
        )

        # Parent branch anchored by an empty commit
        self._step(
            "failed to create parent branch",
            self.git.create_branch, parent_branch, main_branch, cwd=cwd,
        )
        self._step("failed to checkout parent branch", self.git.checkout_branch, parent_branch, cwd=cwd)
        self._step(
            "failed to create parent commit",
            self.git.commit_empty, f"Parent PR for split: {plan.parent_title}", cwd=cwd,
        )
        self._step("failed to push parent branch", self.git.push, parent_branch, cwd=cwd)

        # Child branches, each on top of the previous one
        previous = parent_branch
        for i, (child, branch) in enumerate(zip(plan.child_prs, child_branches), 1):
            self._step(
                f"failed to create child branch {i}",
                self.git.create_branch, branch, previous, cwd=cwd,
            )
            self._step(f"failed to checkout child branch {i}", self.git.checkout_branch, branch, cwd=cwd)
            try:
                self._apply_child_changes(plan.strategy, child, source_branch)
            except Exception as e:
                raise PRSplitError(f"failed to apply changes for child {i}: {e}") from e
            self._step(f"failed to push child branch {i}", self.git.push, branch, cwd=cwd)
            previous = branch

        # Pull requests
        parent_url = self._step(
            "failed to create parent PR",
            self.gh.pr_create, plan.parent_title, plan.parent_description, parent_branch, main_branch,
            cwd=cwd,
        )
        result.parent_pr = PRInfo(
            number=self._pr_number(parent_url, "parent PR"),
            url=parent_url,
            title=plan.parent_title,
            description=plan.parent_description,
        )

        base = parent_branch
        for i, (child, branch) in enumerate(zip(plan.child_prs, child_branches), 1):
            url = self._step(
                f"failed to create child PR {i}",
                self.gh.pr_create, child.title, child.description, branch, base, cwd=cwd,
            )
            result.child_prs.append(PRInfo(
                number=self._pr_number(url, f"child PR {i}"),
                url=url,
                title=child.title,
                description=child.description,
            ))
            base = branch

        body = plan.parent_description + "\n\n## Child PRs\n\n" + "".join(
            f"- #{pr.number} - {pr.title}\n" for pr in result.child_prs
        )
        self._step("failed to update parent PR description", self.gh.pr_edit,
                   result.parent_pr.number, body, cwd=cwd)

        logger.info(
            f"Created parent PR #{result.parent_pr.number} with "
            f"{len(result.child_prs)} child PRs"
        )
        return result

    def rollback(self, result: Optional[PRSplitResult], return_branch: Optional[str] = None) -> None:
        """Close every PR and delete every branch recorded in ``result``.

        ``return_branch`` is checked out before local branches are deleted,
        since git refuses to delete the branch that is checked out.

        Keeps going past individual failures.

        Raises:
            RollbackError: Listing every failure, if any occurred
        """
        if result is None:
            return

        cwd = self.working_dir
        errors = []

        for pr in reversed(result.child_prs):
            if pr.number <= 0:
                continue
            try:
                self.gh.pr_close(pr.number, cwd=cwd)
            except Exception as e:
                errors.append(f"failed to close child PR #{pr.number}: {e}")

        if result.parent_pr.number > 0:
            try:
                self.gh.pr_close(result.parent_pr.number, cwd=cwd)
            except Exception as e:
                errors.append(f"failed to close parent PR #{result.parent_pr.number}: {e}")

        for branch in reversed(result.branch_names):
            try:
                self.git.delete_remote_branch(branch, cwd=cwd)
            except Exception as e:
                errors.append(f"failed to delete remote branch {branch}: {e}")

        if return_branch and result.branch_names:
            try:
                self.git.checkout_branch(return_branch, cwd=cwd)
            except Exception as e:
                errors.append(f"failed to checkout {return_branch}: {e}")

        for branch in reversed(result.branch_names):
            try:
                self.git.delete_branch(branch, force=True, cwd=cwd)
            except Exception as e:
                errors.append(f"failed to delete local branch {branch}: {e}")

        if errors:
            logger.warning(f"Rollback finished with {len(errors)} errors")
            raise RollbackError(errors)
        logger.info("Rollback complete")

    @staticmethod
    def _validate(plan: Optional[PRSplitPlan], source_branch: str, main_branch: str) -> None:
        if plan is None:
            raise PRSplitError("split plan is required")
        if not plan.child_prs:
            raise PRSplitError("split plan must have at least one child PR")
        if not source_branch:
            raise PRSplitError("source branch cannot be empty")
        if not main_branch:
            raise PRSplitError("main branch cannot be empty")

    def _apply_child_changes(self, strategy: str, child, source_branch: str) -> None:
        cwd = self.working_dir
        if strategy == SplitStrategy.BY_COMMITS:
            for commit in child.commits:
                self.git.cherry_pick(commit, cwd=cwd)
        elif strategy == SplitStrategy.BY_FILES:
            self.git.checkout_files(source_branch, child.files, cwd=cwd)
            self.git.commit_all(child.title, cwd=cwd)
        else:
            raise PRSplitError(f"unknown split strategy: {strategy}")

    @staticmethod
    def _step(message: str, func, *args, **kwargs):
        try:
            return func(*args, **kwargs)
        except Exception as e:
            raise PRSplitError(f"{message}: {e}") from e

    @staticmethod
    def _pr_number(url: str, what: str) -> int:
        try:
            return extract_pr_number(url)
        except Exception as e:
            raise PRSplitError(f"failed to extract {what} number: {e}") from e
