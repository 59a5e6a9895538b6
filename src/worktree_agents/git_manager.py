"""Git operations for the orchestrator.

Every call runs the git binary in an explicit directory; nothing here depends
on the process working directory.
"""

import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .errors import GitCommandError


@dataclass
class GitStatus:
    """Working-tree status of one checkout."""
    branch: Optional[str]
    has_changes: bool
    staged_files: list[str]
    modified_files: list[str]
    untracked_files: list[str]

    @property
    def tracked_changes(self) -> list[str]:
        return sorted(set(self.staged_files) | set(self.modified_files))

    @property
    def all_changes(self) -> list[str]:
        return sorted(set(self.staged_files) | set(self.modified_files) | set(self.untracked_files))


class GitManager:
    """Runs git commands against one checkout."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def _run(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        """Run a git command.

        With check=True a non-zero exit raises GitCommandError carrying the
        command, exit code and stderr.
        """
        try:
            result = subprocess.run(
                ["git", *args],
                cwd=self.path,
                capture_output=True,
                text=True,
                check=False
            )
        except FileNotFoundError as e:
            # Missing cwd or missing git binary
            raise GitCommandError(args, None, str(e), cwd=self.path) from e
        if check and result.returncode != 0:
            raise GitCommandError(args, result.returncode, result.stderr or result.stdout, cwd=self.path)
        return result

    def run(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        return self._run(*args, check=check)

    def output(self, *args: str) -> str:
        """Run a git command and return its stripped stdout."""
        return self._run(*args).stdout.strip()

    def current_branch(self) -> Optional[str]:
        """Branch checked out here, or None when HEAD is detached."""
        result = self._run("symbolic-ref", "--quiet", "--short", "HEAD", check=False)
        branch = result.stdout.strip()
        return branch or None

    def has_commits(self) -> bool:
        result = self._run("rev-parse", "--verify", "--quiet", "HEAD^{commit}", check=False)
        return result.returncode == 0

    def branch_exists(self, branch: str) -> bool:
        """Check if a local branch exists."""
        result = self._run("rev-parse", "--verify", "--quiet", f"refs/heads/{branch}", check=False)
        return result.returncode == 0

    def list_branches(self) -> list[str]:
        result = self._run("for-each-ref", "--format=%(refname:short)", "refs/heads/", check=False)
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def rev_parse(self, ref: str) -> Optional[str]:
        result = self._run("rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}", check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip()

    def get_status(self, include_untracked: bool = True) -> GitStatus:
        """Get current git status."""
        args = ["status", "--porcelain"]
        if not include_untracked:
            args.append("--untracked-files=no")
        status_result = self._run(*args)
        lines = status_result.stdout.splitlines()

        staged = []
        modified = []
        untracked = []

        for line in lines:
            if not line:
                continue
            status_code = line[:2]
            filename = line[3:]

            if status_code == "??":
                untracked.append(filename)
                continue
            if status_code[0] in "MADRCU":
                staged.append(filename)
            if status_code[1] in "MDU":
                modified.append(filename)

        return GitStatus(
            branch=self.current_branch(),
            has_changes=bool(staged or modified or untracked),
            staged_files=staged,
            modified_files=modified,
            untracked_files=untracked,
        )

    def checkout(self, branch: str) -> None:
        self._run("checkout", "--quiet", branch)

    def conflicted_files(self) -> list[str]:
        """Files with unresolved conflicts in the current operation."""
        result = self._run("diff", "--name-only", "--diff-filter=U", check=False)
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def has_staged_changes(self) -> bool:
        result = self._run("diff", "--cached", "--quiet", check=False)
        return result.returncode != 0

    def delete_branch(self, branch: str) -> bool:
        """Force-delete a local branch. Returns False when it did not exist."""
        if not self.branch_exists(branch):
            return False
        self._run("branch", "-D", branch)
        return True

    def commit(self, message: str) -> str:
        """Create a commit from the index and return its hash."""
        self._run("commit", "--quiet", "-m", message)
        return self.output("rev-parse", "HEAD")
