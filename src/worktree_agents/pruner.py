"""Decommissioning agents: removal of one agent and pruning of many."""

from typing import Callable, Iterable

from rich.console import Console

from .checkout import CheckoutController
from .errors import DirtyCheckout, OrchestratorError, PreconditionNotMet
from .models import (
    Agent, AgentStatus, AgentView, INACTIVE_STATUSES, PruneFailure, PruneFilter, PruneReport,
    RemovalReport,
)
from .protocols import SessionController
from .workspace import WorkspaceManager

console = Console(stderr=True)


class Remover:
    """Tears down an agent's window, worktree, branch and files.

    Without force every precondition is checked before anything is touched,
    so a refused removal leaves all state as it was. With force each step is
    attempted independently and failures are reported, not raised.
    """

    def __init__(self, workspace: WorkspaceManager, checkout: CheckoutController, sessions: SessionController):
        self.workspace = workspace
        self.checkout = checkout
        self.sessions = sessions

    def check(self, agent: Agent, force: bool = False) -> None:
        """Raise if the agent may not be removed.

        Raises:
            PreconditionNotMet: Agent is still running (or otherwise not
                removable) and not force.
            DirtyCheckout: Worktree has uncommitted changes and not force.
        """
        if force:
            if not agent.can_transition(AgentStatus.REMOVED, force=True):
                raise PreconditionNotMet(f"Agent {agent.id} is already removed", agent_id=agent.id)
            return

        if agent.status not in INACTIVE_STATUSES:
            raise PreconditionNotMet(
                f"Cannot remove agent {agent.id}: status is {agent.status.value} (use --force to remove anyway)",
                agent_id=agent.id,
            )
        changed = self.checkout.changed_files(agent.worktree_path)
        if changed:
            raise DirtyCheckout(agent.worktree_path, f"remove agent {agent.id}", changed)

    def remove(self, agent: Agent, force: bool = False) -> RemovalReport:
        """Remove everything the agent owns outside the registry.

        Returns:
            RemovalReport; `removed` is True when the worktree and branch are
            confirmed gone, or when forced.
        """
        self.check(agent, force=force)
        report = RemovalReport(agent_id=agent.id)

        try:
            self.sessions.kill(agent.tmux_session, agent.tmux_window)
        except Exception as e:
            message = f"could not kill window {agent.tmux_session}:{agent.tmux_window}: {e}"
            console.print(f"Warning: {message}", style="yellow", markup=False)
            if force:
                report.failures.append(message)

        if force:
            self._best_effort(report, "remove worktree", lambda: self.checkout.remove_checkout(agent.worktree_path, force=True))
            self._best_effort(report, "delete branch", lambda: self.checkout.delete_branch(agent.branch))
        else:
            self.checkout.remove_checkout(agent.worktree_path, force=False)
            self.checkout.delete_branch(agent.branch)

        for message in self.workspace.clear_agent_files(agent.id):
            console.print(f"Warning: {message}", style="yellow", markup=False)

        gone = not self.checkout.exists(agent.worktree_path) and not self.checkout.branch_exists(agent.branch)
        report.removed = gone or force
        return report

    @staticmethod
    def _best_effort(report: RemovalReport, step: str, action: Callable[[], object]) -> None:
        try:
            action()
        except Exception as e:
            report.failures.append(f"{step}: {e}")


def prune(
    views: Iterable[AgentView],
    prune_filter: PruneFilter,
    remove_one: Callable[[int], RemovalReport],
) -> PruneReport:
    """Remove every agent whose resolved status matches the filter.

    One agent's failure never stops the others; every failure is collected.

    Args:
        views: Agents with their freshly resolved status
        prune_filter: Which statuses to prune
        remove_one: Removes one agent by id (one registry transaction each)

    Returns:
        PruneReport listing removed agents and per-agent failures
    """
    report = PruneReport()
    for view in views:
        if not view.resolution.available or not prune_filter.matches(view.status):
            continue
        agent = view.agent
        try:
            removal = remove_one(agent.id)
        except OrchestratorError as e:
            report.failures.append(PruneFailure(agent_id=agent.id, message=str(e)))
            continue
        except Exception as e:
            report.failures.append(PruneFailure(agent_id=agent.id, message=f"{type(e).__name__}: {e}"))
            continue

        if removal.removed:
            report.removed.append(agent.model_copy(update={"status": view.status}))
        for failure in removal.failures:
            report.failures.append(PruneFailure(agent_id=agent.id, message=failure))
    return report
