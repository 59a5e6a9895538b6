"""Integration of agent branches back into a target branch.

All commands run from the repository root (or, for rebase, the agent's own
worktree), never from the caller's working directory. A conflict always
aborts the in-progress git operation so the target branch and the agent's
branch are left exactly as they were.
"""

from pathlib import Path
from typing import Optional

from rich.console import Console

from .checkout import CheckoutController
from .errors import DirtyCheckout, GitCommandError, MergeConflict, PreconditionNotMet
from .git_manager import GitManager
from .models import Agent, AgentStatus, FINISHED_STATUSES, MergeOutcome, MergeStrategy

console = Console(stderr=True)


def _mentions_conflict(result) -> bool:
    text = f"{result.stdout}\n{result.stderr}"
    return "CONFLICT" in text or "conflict" in text


class MergeEngine:
    """Applies merge, rebase or squash strategies for one repository."""

    def __init__(self, root: Path, checkout: Optional[CheckoutController] = None):
        self.root = Path(root)
        self.git = GitManager(self.root)
        self.checkout = checkout or CheckoutController(self.root)

    def check_preconditions(self, agent: Agent, target: str, force: bool = False) -> None:
        """Validate everything a merge needs before touching git.

        Raises:
            PreconditionNotMet: Wrong status, or a branch is missing.
            DirtyCheckout: The main checkout has tracked changes, or the
                agent's worktree has uncommitted changes and not force.
        """
        if agent.status not in FINISHED_STATUSES:
            if not (force and agent.can_transition(AgentStatus.MERGED, force=True)):
                hint = " (use --force to merge anyway)" if agent.status == AgentStatus.RUNNING else ""
                raise PreconditionNotMet(
                    f"Cannot merge agent {agent.id}: status is {agent.status.value}{hint}",
                    agent_id=agent.id,
                )

        if not self.git.branch_exists(agent.branch):
            raise PreconditionNotMet(f"Cannot merge agent {agent.id}: branch {agent.branch} does not exist", agent_id=agent.id)
        if not self.git.branch_exists(target):
            raise PreconditionNotMet(f"Cannot merge agent {agent.id}: target branch {target} does not exist", agent_id=agent.id)
        if target == agent.branch:
            raise PreconditionNotMet(f"Cannot merge agent {agent.id} into its own branch", agent_id=agent.id)

        root_changes = self.git.get_status(include_untracked=False).tracked_changes
        if root_changes:
            raise DirtyCheckout(self.root, f"merge agent {agent.id}", root_changes)

        if not force:
            worktree_changes = self.checkout.changed_files(agent.worktree_path)
            if worktree_changes:
                raise DirtyCheckout(agent.worktree_path, f"merge agent {agent.id}", worktree_changes)

    def merge(
        self,
        agent: Agent,
        strategy: MergeStrategy = MergeStrategy.MERGE,
        target: Optional[str] = None,
        force: bool = False,
        message: Optional[str] = None
    ) -> MergeOutcome:
        """Integrate the agent's branch into `target` (default: its base branch).

        Returns:
            MergeOutcome with success=False on conflict. Other git failures
            raise GitCommandError.
        """
        target = target or agent.base_branch
        self.check_preconditions(agent, target, force=force)

        previous = self.git.current_branch()
        try:
            if strategy == MergeStrategy.REBASE:
                text = self._rebase(agent, target)
            elif strategy == MergeStrategy.SQUASH:
                text = self._squash(agent, target, message or agent.task)
            else:
                text = self._merge(agent, target)
        except MergeConflict as e:
            return MergeOutcome(
                success=False,
                message=f"{e}. Resolve the conflicts on {agent.branch}, then merge again.",
                strategy=strategy,
                target=target,
                conflicts=e.files,
            )
        finally:
            self._restore(previous, target)

        return MergeOutcome(
            success=True,
            message=text,
            strategy=strategy,
            target=target,
            merged_ref=self.git.rev_parse(target),
        )

    def _restore(self, previous: Optional[str], target: str) -> None:
        """Put the main checkout back on the branch it had before."""
        if not previous or previous == target or self.git.current_branch() == previous:
            return
        result = self.git.run("checkout", "--quiet", previous, check=False)
        if result.returncode != 0:
            console.print(f"Warning: could not switch back to {previous}: {result.stderr.strip()}", style="yellow", markup=False)

    def _merge(self, agent: Agent, target: str) -> str:
        self.git.checkout(target)
        result = self.git.run("merge", "--no-edit", agent.branch, check=False)
        if result.returncode != 0:
            conflicts = self.git.conflicted_files()
            if conflicts or _mentions_conflict(result):
                self.git.run("merge", "--abort", check=False)
                raise MergeConflict(agent.branch, target, conflicts)
            raise GitCommandError(["merge", "--no-edit", agent.branch], result.returncode, result.stderr, cwd=self.root)
        if "Already up to date" in result.stdout:
            return f"{target} already contains {agent.branch}"
        return f"Successfully merged {agent.branch} into {target}"

    def _rebase(self, agent: Agent, target: str) -> str:
        worktree = Path(agent.worktree_path)
        if (worktree / ".git").exists():
            # The branch is checked out in the worktree, so rebase it there
            where = GitManager(worktree)
            args = ["rebase", "--autostash", target]
        else:
            # Forget the deleted worktree so git lets the root check the branch out
            self.git.run("worktree", "prune", check=False)
            where = self.git
            args = ["rebase", target, agent.branch]

        result = where.run(*args, check=False)
        if result.returncode != 0:
            conflicts = where.conflicted_files()
            if conflicts or _mentions_conflict(result):
                where.run("rebase", "--abort", check=False)
                raise MergeConflict(agent.branch, target, conflicts)
            where.run("rebase", "--abort", check=False)
            raise GitCommandError(args, result.returncode, result.stderr, cwd=where.path)

        self.git.checkout(target)
        self.git.run("merge", "--ff-only", agent.branch)
        return f"Successfully rebased and merged {agent.branch} into {target}"

    def _squash(self, agent: Agent, target: str, message: str) -> str:
        self.git.checkout(target)
        result = self.git.run("merge", "--squash", agent.branch, check=False)
        if result.returncode != 0:
            conflicts = self.git.conflicted_files()
            self.git.run("reset", "--merge", check=False)
            if conflicts or _mentions_conflict(result):
                raise MergeConflict(agent.branch, target, conflicts)
            raise GitCommandError(["merge", "--squash", agent.branch], result.returncode, result.stderr, cwd=self.root)

        if not self.git.has_staged_changes():
            return f"{target} already contains {agent.branch}; nothing to squash"
        self.git.commit(message)
        return f"Successfully squash-merged {agent.branch} into {target}"
