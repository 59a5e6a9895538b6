"""Data models for the worktree agent orchestrator.

Uses Pydantic for validation. The registry is stored as JSON, so every model
here round-trips through model_dump(mode="json") / model_validate.
"""

from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

from .errors import AgentNotFound, BranchExists, PathExists, PreconditionNotMet


class AgentStatus(str, Enum):
    """Lifecycle state of an agent."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    MERGED = "merged"
    REMOVED = "removed"


# Position in the forward-only lifecycle graph. COMPLETED and FAILED share a
# rank so neither can become the other.
_STATUS_RANK = {
    AgentStatus.RUNNING: 0,
    AgentStatus.COMPLETED: 1,
    AgentStatus.FAILED: 1,
    AgentStatus.MERGED: 2,
    AgentStatus.REMOVED: 3,
}

_ALLOWED_TRANSITIONS = {
    AgentStatus.RUNNING: {AgentStatus.COMPLETED, AgentStatus.FAILED, AgentStatus.REMOVED},
    AgentStatus.COMPLETED: {AgentStatus.MERGED, AgentStatus.REMOVED},
    AgentStatus.FAILED: {AgentStatus.MERGED, AgentStatus.REMOVED},
    AgentStatus.MERGED: {AgentStatus.REMOVED},
    AgentStatus.REMOVED: set(),
}

FINISHED_STATUSES = frozenset({AgentStatus.COMPLETED, AgentStatus.FAILED})
INACTIVE_STATUSES = frozenset({AgentStatus.COMPLETED, AgentStatus.FAILED, AgentStatus.MERGED})


class Provider(str, Enum):
    """AI coding CLI that runs inside an agent's window."""
    CLAUDE = "claude"
    CODEX = "codex"
    GEMINI = "gemini"
    DEEPAGENTS = "deepagents"
    AMP = "amp"
    OPENCODE = "opencode"


class MergeStrategy(str, Enum):
    """How an agent's branch is integrated into its target."""
    MERGE = "merge"
    REBASE = "rebase"
    SQUASH = "squash"


class Agent(BaseModel):
    """A unit of autonomous work bound to one branch, worktree and tmux window."""
    id: int = Field(..., description="Monotonically assigned identifier")
    task: str = Field(..., description="Free-text task given to the provider")
    branch: str
    base_branch: str = Field(..., description="Branch the agent was created from; default merge target")
    worktree_path: Path = Field(..., description="Absolute path of the isolated checkout")
    tmux_session: str
    tmux_window: str
    status: AgentStatus = Field(default=AgentStatus.RUNNING)
    status_message: Optional[str] = None
    provider: Provider = Field(default=Provider.CLAUDE)
    launched_at: datetime = Field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None

    def can_transition(self, to: AgentStatus, force: bool = False) -> bool:
        """Check whether moving to `to` is a legal lifecycle step.

        Force lets an agent skip ahead (e.g. RUNNING -> MERGED) but never
        move backwards or sideways.
        """
        if to in _ALLOWED_TRANSITIONS[self.status]:
            return True
        if force:
            return _STATUS_RANK[to] > _STATUS_RANK[self.status]
        return False

    def transition(self, to: AgentStatus, force: bool = False, message: Optional[str] = None) -> None:
        """Move the agent to a new status, raising if the move is illegal."""
        if not self.can_transition(to, force=force):
            raise PreconditionNotMet(
                f"Agent {self.id} cannot go from {self.status.value} to {to.value}",
                agent_id=self.id,
            )
        self.status = to
        if message is not None:
            self.status_message = message
        if to in FINISHED_STATUSES and self.completed_at is None:
            self.completed_at = datetime.now()


class Registry(BaseModel):
    """Durable mapping of agent id to agent record plus the id counter."""
    next_id: int = Field(default=1, ge=1)
    agents: list[Agent] = Field(default_factory=list)

    def allocate_id(self) -> int:
        """Return the counter value then advance it. Ids are never reused."""
        agent_id = self.next_id
        self.next_id += 1
        return agent_id

    def find(self, agent_id: int) -> Optional[Agent]:
        for agent in self.agents:
            if agent.id == agent_id:
                return agent
        return None

    def get(self, agent_id: int) -> Agent:
        agent = self.find(agent_id)
        if agent is None:
            raise AgentNotFound(agent_id)
        return agent

    def add(self, agent: Agent) -> None:
        """Append an agent, enforcing unique id, branch and worktree path."""
        if self.find(agent.id) is not None:
            raise PreconditionNotMet(f"Agent id {agent.id} already registered", agent_id=agent.id)
        for existing in self.agents:
            if existing.branch == agent.branch:
                raise BranchExists(agent.branch)
            if existing.worktree_path == agent.worktree_path:
                raise PathExists(agent.worktree_path)
        if agent.id >= self.next_id:
            self.next_id = agent.id + 1
        self.agents.append(agent)

    def remove(self, agent_id: int) -> Agent:
        agent = self.get(agent_id)
        self.agents = [a for a in self.agents if a.id != agent_id]
        return agent


class TerminalStatus(BaseModel):
    """Parsed content of an agent's terminal-status artifact."""
    status: AgentStatus
    summary: Optional[str] = None
    error: Optional[str] = None
    files_changed: list[str] = Field(default_factory=list)

    @property
    def message(self) -> Optional[str]:
        return self.error or self.summary


class StatusResolution(BaseModel):
    """Live view of one agent's status. Never persisted as-is."""
    agent_id: int
    status: AgentStatus
    message: Optional[str] = None
    completed_at: Optional[datetime] = None
    changed: bool = Field(default=False, description="Differs from the stored registry status")
    error: Optional[str] = Field(default=None, description="Set when the status could not be resolved")

    @property
    def available(self) -> bool:
        return self.error is None

    @property
    def display_status(self) -> str:
        return self.status.value if self.available else "unavailable"


class AgentView(BaseModel):
    """An agent record together with its freshly resolved status."""
    agent: Agent
    resolution: StatusResolution

    @property
    def status(self) -> AgentStatus:
        return self.resolution.status


class MergeOutcome(BaseModel):
    """Result of a merge attempt. Drives a status transition, never stored."""
    success: bool
    message: str
    strategy: MergeStrategy = MergeStrategy.MERGE
    target: Optional[str] = None
    merged_ref: Optional[str] = None
    conflicts: list[str] = Field(default_factory=list)


class DiffStats(BaseModel):
    additions: int = 0
    deletions: int = 0
    files_changed: int = 0


class DiffSummary(BaseModel):
    """Changes on an agent's branch relative to its base."""
    diff: str = ""
    files_changed: list[str] = Field(default_factory=list)
    stats: DiffStats = Field(default_factory=DiffStats)


class RemovalReport(BaseModel):
    """Outcome of removing one agent."""
    agent_id: int
    removed: bool = False
    failures: list[str] = Field(default_factory=list)


class PruneFilterKind(str, Enum):
    ALL = "all"
    INACTIVE = "inactive"
    STATUS = "status"


class PruneFilter(BaseModel):
    """Which agents a prune applies to."""
    kind: PruneFilterKind = PruneFilterKind.INACTIVE
    status: Optional[AgentStatus] = None

    @classmethod
    def all(cls) -> "PruneFilter":
        return cls(kind=PruneFilterKind.ALL)

    @classmethod
    def inactive(cls) -> "PruneFilter":
        return cls(kind=PruneFilterKind.INACTIVE)

    @classmethod
    def with_status(cls, status: AgentStatus) -> "PruneFilter":
        return cls(kind=PruneFilterKind.STATUS, status=status)

    def matches(self, status: AgentStatus) -> bool:
        if self.kind == PruneFilterKind.ALL:
            return True
        if self.kind == PruneFilterKind.STATUS:
            return status == self.status
        return status in INACTIVE_STATUSES


class PruneFailure(BaseModel):
    agent_id: int
    message: str


class PruneReport(BaseModel):
    """Everything a prune removed, plus every per-agent failure."""
    removed: list[Agent] = Field(default_factory=list)
    failures: list[PruneFailure] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


class LaunchRequest(BaseModel):
    """Parameters for starting a new agent."""
    task: str = Field(..., min_length=1)
    branch: Optional[str] = None
    base: Optional[str] = None
    provider: Optional[Provider] = None
    provider_args: list[str] = Field(default_factory=list)
    force: bool = Field(default=False, description="Clear a stale, unregistered worktree left at the target path")


class OrchestratorConfig(BaseModel):
    """Configuration for the orchestrator.

    Defaults can be overridden per repository in .worktree-agents/config.json.
    """
    session_prefix: str = Field(default="wta", description="Prefix of the tmux session name")
    worktrees_dir: str = Field(default=".worktrees", description="Directory (relative to the root) holding agent worktrees")
    branch_prefix: str = Field(default="wta/", description="Prefix for generated branch names")
    default_provider: Provider = Field(default=Provider.CLAUDE)
    default_branch: Optional[str] = Field(
        default=None,
        description="Integration branch to prefer over main/master detection"
    )
    delete_merged_branches: bool = Field(
        default=True,
        description="Delete an agent's branch after it is merged (False keeps it for audit)"
    )
    output_lines: int = Field(default=100, ge=1, description="Default number of lines for output capture")
    dashboard_host: str = Field(default="127.0.0.1")
    dashboard_port: int = Field(default=3847)
