"""Git, GitHub and worktree access."""

from .gh_runner import GhRunner, GitHubClient, GitHubError
from .git_runner import Commit, GitClient, GitError, GitRunner
from .worktree_manager import WorktreeError, WorktreeManager

__all__ = [
    "Commit",
    "GhRunner",
    "GitClient",
    "GitError",
    "GitHubClient",
    "GitHubError",
    "GitRunner",
    "WorktreeError",
    "WorktreeManager",
]
