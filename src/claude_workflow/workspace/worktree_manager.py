"""Git worktree manager for isolated workflow workspaces.

Each workflow gets its own worktree on a dedicated ``workflow/<name>``
branch so the agent never touches the operator's working directory.
"""

import logging
import subprocess
from pathlib import Path
from typing import Optional

from ..utils.subprocess_utils import SubprocessError, run_git_command
from ..utils.validators import validate_workflow_name

logger = logging.getLogger(__name__)

WORKTREES_DIRNAME = "worktrees"
BRANCH_PREFIX = "workflow/"
WORKTREE_GIT_TIMEOUT = 60


class WorktreeError(Exception):
    """Worktree creation or removal failed."""


class WorktreeManager:
    """Creates and removes per-workflow worktrees next to the state directory."""

    def __init__(self, base_dir: Path, repo_dir: Optional[Path] = None):
        """
        Args:
            base_dir: Workflow state directory (worktrees go in its sibling ``worktrees/``)
            repo_dir: Repository the worktrees belong to (defaults to the current directory)
        """
        self.base_dir = Path(base_dir)
        self.repo_dir = Path(repo_dir) if repo_dir else Path.cwd()

    def worktree_path(self, name: str) -> Path:
        return (self.base_dir / ".." / WORKTREES_DIRNAME / name).resolve()

    @staticmethod
    def branch_name(name: str) -> str:
        return f"{BRANCH_PREFIX}{name}"

    def worktree_exists(self, path: Path) -> bool:
        path = Path(path)
        return path.is_dir() and (path / ".git").exists()

    def create_worktree(self, name: str) -> Path:
        """Create (or reuse) the worktree for workflow ``name``.

        Raises:
            WorktreeError: If git refuses to create the worktree
        """
        validate_workflow_name(name)
        path = self.worktree_path(name)

        if self.worktree_exists(path):
            logger.info(f"Reusing existing worktree: {path}")
            return path

        path.parent.mkdir(parents=True, exist_ok=True)
        branch = self.branch_name(name)

        try:
            run_git_command(
                ["worktree", "add", str(path), "-b", branch],
                cwd=self.repo_dir,
                timeout=WORKTREE_GIT_TIMEOUT,
            )
        except SubprocessError as e:
            if "already exists" in e.stderr:
                raise WorktreeError(f"branch {branch} already exists") from e
            raise WorktreeError(f"failed to create worktree: {e.stderr.strip()}") from e
        except subprocess.TimeoutExpired as e:
            raise WorktreeError(f"timed out creating worktree at {path}") from e

        logger.info(f"Created worktree: {path} (branch: {branch})")
        return path

    def remove_worktree(self, path: Path, force: bool = False) -> None:
        """Remove a worktree; a missing worktree is a no-op."""
        path = Path(path)
        if not self.worktree_exists(path):
            return

        args = ["worktree", "remove", str(path)]
        if force:
            args.append("--force")
        try:
            run_git_command(args, cwd=self.repo_dir, timeout=WORKTREE_GIT_TIMEOUT)
        except SubprocessError as e:
            raise WorktreeError(f"failed to remove worktree: {e.stderr.strip()}") from e
        logger.info(f"Removed worktree: {path}")
