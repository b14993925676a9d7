"""git operations used by the orchestrator and the PR split manager."""

import logging
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from ..utils.subprocess_utils import DEFAULT_GIT_TIMEOUT, SubprocessError, run_git_command
from ..utils.validators import validate_branch_name

logger = logging.getLogger(__name__)


class GitError(Exception):
    """A git command failed or timed out."""


@dataclass
class Commit:
    hash: str
    subject: str


class GitClient(ABC):
    """Narrow git capability interface; every call runs in ``cwd``."""

    @abstractmethod
    def create_branch(self, name: str, base: str, cwd: Optional[Path] = None) -> None: ...

    @abstractmethod
    def checkout_branch(self, name: str, cwd: Optional[Path] = None) -> None: ...

    @abstractmethod
    def delete_branch(self, name: str, force: bool = False, cwd: Optional[Path] = None) -> None: ...

    @abstractmethod
    def delete_remote_branch(self, name: str, cwd: Optional[Path] = None) -> None: ...

    @abstractmethod
    def commit_empty(self, message: str, cwd: Optional[Path] = None) -> None: ...

    @abstractmethod
    def cherry_pick(self, commit: str, cwd: Optional[Path] = None) -> None: ...

    @abstractmethod
    def checkout_files(self, source: str, files: List[str], cwd: Optional[Path] = None) -> None: ...

    @abstractmethod
    def commit_all(self, message: str, cwd: Optional[Path] = None) -> None: ...

    @abstractmethod
    def push(self, branch: str, cwd: Optional[Path] = None) -> None: ...

    @abstractmethod
    def current_branch(self, cwd: Optional[Path] = None) -> str: ...

    @abstractmethod
    def commits_since(self, base: str, cwd: Optional[Path] = None) -> List[Commit]: ...

    @abstractmethod
    def diff_stat(self, base: str, cwd: Optional[Path] = None) -> str: ...


class GitRunner(GitClient):
    """GitClient backed by the git executable."""

    def __init__(self, timeout: float = DEFAULT_GIT_TIMEOUT):
        self.timeout = timeout

    def _run(self, args: List[str], cwd: Optional[Path]) -> str:
        try:
            result = run_git_command(args, cwd=cwd, timeout=self.timeout)
        except SubprocessError as e:
            raise GitError(f"git {args[0]} failed: {e.stderr.strip() or e}") from e
        except subprocess.TimeoutExpired as e:
            raise GitError(f"git {args[0]} timed out after {self.timeout}s") from e
        return result.stdout

    def create_branch(self, name: str, base: str, cwd: Optional[Path] = None) -> None:
        validate_branch_name(name)
        if not base:
            raise GitError("base branch cannot be empty")
        self._run(["branch", name, base], cwd)

    def checkout_branch(self, name: str, cwd: Optional[Path] = None) -> None:
        self._run(["checkout", name], cwd)

    def delete_branch(self, name: str, force: bool = False, cwd: Optional[Path] = None) -> None:
        self._run(["branch", "-D" if force else "-d", name], cwd)

    def delete_remote_branch(self, name: str, cwd: Optional[Path] = None) -> None:
        self._run(["push", "origin", "--delete", name], cwd)

    def commit_empty(self, message: str, cwd: Optional[Path] = None) -> None:
        self._run(["commit", "--allow-empty", "-m", message], cwd)

    def cherry_pick(self, commit: str, cwd: Optional[Path] = None) -> None:
        try:
            self._run(["cherry-pick", commit], cwd)
        except GitError:
            # Leave the working tree clean for rollback
            run_git_command(["cherry-pick", "--abort"], cwd=cwd, check=False, timeout=self.timeout)
            raise

    def checkout_files(self, source: str, files: List[str], cwd: Optional[Path] = None) -> None:
        if not files:
            raise GitError("no files to check out")
        self._run(["checkout", source, "--"] + list(files), cwd)

    def commit_all(self, message: str, cwd: Optional[Path] = None) -> None:
        self._run(["add", "-A"], cwd)
        self._run(["commit", "-m", message], cwd)

    def push(self, branch: str, cwd: Optional[Path] = None) -> None:
        self._run(["push", "-u", "origin", branch], cwd)

    def current_branch(self, cwd: Optional[Path] = None) -> str:
        return self._run(["rev-parse", "--abbrev-ref", "HEAD"], cwd).strip()

    def commits_since(self, base: str, cwd: Optional[Path] = None) -> List[Commit]:
        output = self._run(["log", f"{base}..HEAD", "--format=%H|%s", "--reverse"], cwd)
        commits = []
        for line in output.splitlines():
            line = line.strip()
            if not line:
                continue
            commit_hash, _, subject = line.partition("|")
            commits.append(Commit(hash=commit_hash, subject=subject))
        return commits

    def diff_stat(self, base: str, cwd: Optional[Path] = None) -> str:
        return self._run(["diff", "--stat", base], cwd)
