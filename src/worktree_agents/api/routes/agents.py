"""Agent endpoints: listing, details, diff, output, merge, PR and removal.

Handlers are plain `def` so the blocking git/tmux calls run in FastAPI's
threadpool instead of the event loop.
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Query, Request
from pydantic import BaseModel

from ...errors import SessionError
from ...models import AgentView, DiffSummary, MergeStrategy
from ...orchestrator import Orchestrator

router = APIRouter()


class AgentResponse(BaseModel):
    """Agent record with its live status."""
    id: int
    task: str
    status: str
    status_message: Optional[str] = None
    status_error: Optional[str] = None
    branch: str
    base_branch: str
    worktree_path: str
    tmux_session: str
    tmux_window: str
    provider: str
    launched_at: datetime
    completed_at: Optional[datetime] = None

    @classmethod
    def from_view(cls, view: AgentView) -> "AgentResponse":
        agent = view.agent
        resolution = view.resolution
        return cls(
            id=agent.id,
            task=agent.task,
            status=resolution.display_status,
            status_message=resolution.message,
            status_error=resolution.error,
            branch=agent.branch,
            base_branch=agent.base_branch,
            worktree_path=str(agent.worktree_path),
            tmux_session=agent.tmux_session,
            tmux_window=agent.tmux_window,
            provider=agent.provider.value,
            launched_at=agent.launched_at,
            completed_at=resolution.completed_at,
        )


class OutputResponse(BaseModel):
    output: str = ""
    available: bool = True


class MergeRequest(BaseModel):
    """Request body for the merge endpoint."""
    strategy: MergeStrategy = MergeStrategy.MERGE
    target: Optional[str] = None
    force: bool = False
    message: Optional[str] = None


class MergeResponse(BaseModel):
    success: bool
    message: str
    conflicts: list[str] = []
    merged_ref: Optional[str] = None


class PullRequestRequest(BaseModel):
    title: Optional[str] = None
    body: Optional[str] = None
    force: bool = False


class PullRequestResponse(BaseModel):
    url: str


class RemoveResponse(BaseModel):
    removed: bool
    failures: list[str] = []


def get_orchestrator(request: Request) -> Orchestrator:
    """Get the orchestrator from app state, discovering it on first use."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        orchestrator = Orchestrator.discover()
        request.app.state.orchestrator = orchestrator
    return orchestrator


@router.get("/agents", response_model=list[AgentResponse])
def list_agents(request: Request):
    """List all agents with live-resolved status."""
    return [AgentResponse.from_view(view) for view in get_orchestrator(request).list_agents()]


@router.get("/agents/{agent_id}", response_model=AgentResponse)
def get_agent(request: Request, agent_id: int):
    return AgentResponse.from_view(get_orchestrator(request).status(agent_id))


@router.get("/agents/{agent_id}/diff", response_model=DiffSummary)
def get_diff(request: Request, agent_id: int):
    """Committed changes on the agent's branch relative to its base."""
    return get_orchestrator(request).diff(agent_id)


@router.get("/agents/{agent_id}/output", response_model=OutputResponse)
def get_output(request: Request, agent_id: int, lines: Optional[int] = Query(default=None, ge=1, le=10000)):
    """Recent window output. A closed window is reported, not raised."""
    orchestrator = get_orchestrator(request)
    try:
        return OutputResponse(output=orchestrator.output(agent_id, lines))
    except SessionError:
        return OutputResponse(output="", available=False)


@router.post("/agents/{agent_id}/merge", response_model=MergeResponse)
def merge_agent(request: Request, agent_id: int, body: MergeRequest = MergeRequest()):
    """Merge the agent's branch. A conflict is a non-success result, not an error."""
    outcome = get_orchestrator(request).merge(
        agent_id,
        body.strategy,
        target=body.target,
        force=body.force,
        message=body.message,
    )
    return MergeResponse(
        success=outcome.success,
        message=outcome.message,
        conflicts=outcome.conflicts,
        merged_ref=outcome.merged_ref,
    )


@router.post("/agents/{agent_id}/pr", response_model=PullRequestResponse)
def create_pull_request(request: Request, agent_id: int, body: PullRequestRequest = PullRequestRequest()):
    url = get_orchestrator(request).create_pr(agent_id, title=body.title, body=body.body, force=body.force)
    return PullRequestResponse(url=url)


@router.delete("/agents/{agent_id}", response_model=RemoveResponse)
def remove_agent(request: Request, agent_id: int, force: bool = False):
    report = get_orchestrator(request).remove(agent_id, force=force)
    return RemoveResponse(removed=report.removed, failures=report.failures)
