"""Live status derivation.

An agent's stored status is only a cache. The truth is re-derived on every
read from the terminal-status artifact and tmux window liveness, so a crash
between a side effect and a registry write never leaves a stale answer.
"""

from typing import Iterable

from .models import Agent, AgentStatus, AgentView, FINISHED_STATUSES, StatusResolution
from .protocols import SessionController
from .workspace import WorkspaceManager

WINDOW_CLOSED_MESSAGE = "window closed unexpectedly"


class StatusResolver:
    """Derives each agent's current lifecycle state."""

    def __init__(self, workspace: WorkspaceManager, sessions: SessionController):
        self.workspace = workspace
        self.sessions = sessions

    def resolve(self, agent: Agent) -> StatusResolution:
        """Compute the agent's status right now.

        Never raises: a failure to inspect the artifact or tmux is reported
        in the resolution's `error` and the stored status is kept.
        """
        try:
            return self._resolve(agent)
        except Exception as e:
            return StatusResolution(
                agent_id=agent.id,
                status=agent.status,
                message=agent.status_message,
                completed_at=agent.completed_at,
                error=f"{type(e).__name__}: {e}",
            )

    def _resolve(self, agent: Agent) -> StatusResolution:
        # Anything past RUNNING is settled; the artifact can't move it back.
        if agent.status != AgentStatus.RUNNING:
            return StatusResolution(
                agent_id=agent.id,
                status=agent.status,
                message=agent.status_message,
                completed_at=agent.completed_at,
            )

        terminal = self.workspace.read_terminal_status(agent.id)
        if terminal is not None:
            completed_at = agent.completed_at or self.workspace.terminal_status_time(agent.id)
            return StatusResolution(
                agent_id=agent.id,
                status=terminal.status,
                message=terminal.message,
                completed_at=completed_at,
                changed=True,
            )

        if not self.sessions.window_exists(agent.tmux_session, agent.tmux_window):
            return StatusResolution(
                agent_id=agent.id,
                status=AgentStatus.FAILED,
                message=WINDOW_CLOSED_MESSAGE,
                completed_at=agent.completed_at,
                changed=True,
            )

        return StatusResolution(agent_id=agent.id, status=AgentStatus.RUNNING)

    def resolve_all(self, agents: Iterable[Agent]) -> list[AgentView]:
        """Resolve every agent independently."""
        return [AgentView(agent=agent, resolution=self.resolve(agent)) for agent in agents]


def apply_resolution(agent: Agent, resolution: StatusResolution) -> bool:
    """Record an observed transition on a registry record.

    Only RUNNING -> COMPLETED/FAILED is recorded here, and only while the
    record is still RUNNING. Returns True if the record changed.
    """
    if not resolution.changed or not resolution.available:
        return False
    if agent.status != AgentStatus.RUNNING or resolution.status not in FINISHED_STATUSES:
        return False
    agent.transition(resolution.status, message=resolution.message)
    if resolution.completed_at is not None:
        agent.completed_at = resolution.completed_at
    return True
