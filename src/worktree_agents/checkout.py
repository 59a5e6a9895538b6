"""Isolated checkouts (git worktrees) and their branches."""

import shutil
from pathlib import Path
from typing import Optional

from .errors import BranchExists, DirtyCheckout, GitCommandError, PathExists, PreconditionNotMet
from .git_manager import GitManager


class CheckoutController:
    """Creates and removes agent worktrees.

    All git commands run against the main repository root; a worktree path is
    only used as the target of worktree commands and for status checks.
    """

    def __init__(self, root: Path):
        self.root = Path(root)
        self.git = GitManager(self.root)

    def branch_exists(self, branch: str) -> bool:
        return self.git.branch_exists(branch)

    def exists(self, path: Path) -> bool:
        return Path(path).exists()

    def create(self, branch: str, base: str, path: Path) -> Path:
        """Create `branch` from `base` and check it out at `path`.

        Raises:
            BranchExists: If `branch` already exists locally.
            PathExists: If `path` already exists.
            PreconditionNotMet: If `base` does not resolve to a commit.
        """
        path = Path(path)
        if self.git.branch_exists(branch):
            raise BranchExists(branch)
        if path.exists():
            raise PathExists(path)
        if self.git.rev_parse(base) is None:
            raise PreconditionNotMet(f"Base branch does not exist: {base}")

        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self.git.run("worktree", "add", "--quiet", "-b", branch, str(path), base)
        except GitCommandError as e:
            if "already exists" in e.stderr and self.git.branch_exists(branch):
                raise BranchExists(branch) from e
            raise
        return path

    def changed_files(self, path: Path) -> list[str]:
        """Uncommitted changes in a worktree, untracked files included."""
        path = Path(path)
        # Without its .git file a leftover directory would report the
        # enclosing repository's status instead of its own.
        if not (path / ".git").exists():
            return []
        return GitManager(path).get_status().all_changes

    def is_dirty(self, path: Path) -> bool:
        return bool(self.changed_files(path))

    def remove_checkout(self, path: Path, force: bool = False) -> bool:
        """Remove a worktree. Returns False if it was already absent.

        Raises:
            DirtyCheckout: If the worktree has uncommitted changes and not force.
        """
        path = Path(path)
        if not path.exists():
            # Drop metadata of worktrees deleted behind git's back
            self.git.run("worktree", "prune", check=False)
            return False

        if not force:
            changed = self.changed_files(path)
            if changed:
                raise DirtyCheckout(path, "remove checkout", changed)

        args = ["worktree", "remove"]
        if force:
            args.append("--force")
        args.append(str(path))
        result = self.git.run(*args, check=False)
        if result.returncode != 0:
            if not force:
                raise GitCommandError(args, result.returncode, result.stderr, cwd=self.root)
            # Not a registered worktree (or locked): delete the directory itself
            shutil.rmtree(path)
            self.git.run("worktree", "prune", check=False)
        return True

    def delete_branch(self, branch: str) -> bool:
        """Delete a local branch. Returns False if it was already absent."""
        return self.git.delete_branch(branch)

    def remove(self, path: Path, branch: Optional[str] = None, force: bool = False) -> None:
        """Remove the worktree, then the branch.

        Idempotent: an already-absent worktree or branch is not an error.
        """
        self.remove_checkout(path, force=force)
        if branch:
            self.delete_branch(branch)
