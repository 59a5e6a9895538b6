"""Repository location and default-branch resolution.

Callers may run from anywhere inside the repository, including from inside an
agent's own worktree. Everything the engine stores is addressed relative to
the main checkout, so resolution always lands on the shared repository root.
"""

import os
from pathlib import Path
from typing import Optional

from .errors import GitCommandError, NoDefaultBranch, NotARepository
from .git_manager import GitManager

CONVENTIONAL_BRANCHES = ("main", "master")


def resolve_root(cwd: Optional[Path] = None) -> Path:
    """Find the main repository root for `cwd`.

    Uses the git common directory, which is shared by every worktree, so a
    call made from inside `.worktrees/<id>` resolves to the repository that
    owns it rather than to the worktree itself.

    Raises:
        NotARepository: If `cwd` is not inside a git repository.
    """
    start = Path(cwd) if cwd is not None else Path(os.getcwd())
    if not start.is_dir():
        raise NotARepository(start, "directory does not exist")

    git = GitManager(start)
    try:
        result = git.run("rev-parse", "--git-common-dir", check=False)
    except GitCommandError as e:
        raise NotARepository(start, e.stderr) from e
    if result.returncode != 0:
        raise NotARepository(start, result.stderr.strip())

    common_dir = Path(result.stdout.strip())
    if not common_dir.is_absolute():
        common_dir = start / common_dir
    common_dir = common_dir.resolve()

    if common_dir.name == ".git":
        return common_dir.parent

    # Separate git dir (--separate-git-dir / GIT_DIR): ask for the work tree.
    toplevel = git.run("rev-parse", "--show-toplevel", check=False)
    if toplevel.returncode != 0 or not toplevel.stdout.strip():
        raise NotARepository(start, "repository has no working tree")
    return Path(toplevel.stdout.strip()).resolve()


def resolve_default_branch(root: Path, preferred: Optional[str] = None) -> str:
    """Pick the branch agents are based on and merged into by default.

    Order: a configured preference that exists locally, then `main`, then
    `master`, then whatever the primary checkout has checked out, then the
    first local branch.

    Raises:
        NoDefaultBranch: If the repository has no history at all.
    """
    git = GitManager(root)

    if preferred and git.branch_exists(preferred):
        return preferred

    for name in CONVENTIONAL_BRANCHES:
        if git.branch_exists(name):
            return name

    if git.has_commits():
        current = git.current_branch()
        if current:
            return current

    # Detached HEAD: fall back to the first local branch.
    branches = git.list_branches()
    if branches:
        return branches[0]

    raise NoDefaultBranch(root)


def current_branch(root: Path) -> Optional[str]:
    """Branch checked out in the primary checkout, or None when detached."""
    return GitManager(root).current_branch()
