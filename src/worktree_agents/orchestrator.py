"""Orchestration facade.

Single entry point for the CLI, the dashboard API and tests. Each mutating
operation is exactly one registry transaction: its git/tmux side effects run
inside the locked callback, before the registry is written, so the registry
never records a transition whose side effect did not happen.
"""

import shutil
import subprocess
from pathlib import Path
from typing import Optional

from rich.console import Console

from .checkout import CheckoutController
from .errors import BranchExists, ExternalCommandError, OrchestratorError, PreconditionNotMet
from .event_log import EventLog, EventType
from .git_manager import GitManager
from .merge import MergeEngine
from .models import (
    Agent, AgentStatus, AgentView, DiffStats, DiffSummary, FINISHED_STATUSES, LaunchRequest,
    MergeOutcome, MergeStrategy, OrchestratorConfig, PruneFilter, PruneReport, Registry, RemovalReport,
)
from .protocols import SessionController
from .providers import build_command, find_executable, wrap_with_status
from .pruner import Remover, prune
from .registry import RegistryStore
from .repository import resolve_default_branch, resolve_root
from .status import StatusResolver, apply_resolution
from .tmux import TmuxSessionController, window_name
from .workspace import WorkspaceManager

console = Console(stderr=True)

PR_TITLE_MAX_LEN = 72


class Orchestrator:
    """Coordinates registry, worktrees, tmux windows and merges for one repository."""

    def __init__(
        self,
        root: Path,
        sessions: Optional[SessionController] = None,
        config: Optional[OrchestratorConfig] = None
    ):
        """Initialize the orchestrator.

        Args:
            root: Resolved repository root (see resolve_root)
            sessions: tmux controller; a TmuxSessionController by default
            config: Configuration; loaded from .worktree-agents/config.json by default
        """
        self.root = Path(root).resolve()
        self.config = config or WorkspaceManager(self.root).load_config()
        self.workspace = WorkspaceManager(self.root, self.config.worktrees_dir)
        self.workspace.ensure_structure()

        self.registry = RegistryStore(self.workspace.state_file, self.workspace.lock_file)
        self.sessions = sessions or TmuxSessionController()
        self.git = GitManager(self.root)
        self.checkout = CheckoutController(self.root)
        self.merger = MergeEngine(self.root, self.checkout)
        self.resolver = StatusResolver(self.workspace, self.sessions)
        self.remover = Remover(self.workspace, self.checkout, self.sessions)
        self.events = EventLog(self.workspace.events_file)
        self.session_name = self.workspace.session_name(self.config.session_prefix)

    @classmethod
    def discover(cls, cwd: Optional[Path] = None, sessions: Optional[SessionController] = None) -> "Orchestrator":
        """Create an orchestrator for the repository containing `cwd`."""
        return cls(resolve_root(cwd), sessions=sessions)

    # =========================================================================
    # Launch
    # =========================================================================

    def launch(self, request: LaunchRequest) -> Agent:
        """Create a worktree and branch, start the provider, register the agent.

        The id counter advances even when the launch fails, so ids are never
        handed out twice. Everything else is rolled back on failure.
        """
        provider = request.provider or self.config.default_provider
        if find_executable(provider) is None:
            console.print(f"Warning: {provider.value} CLI not found on PATH; the agent will fail to start", style="yellow", markup=False)

        def op(registry: Registry):
            agent_id = registry.allocate_id()
            try:
                return self._launch_one(registry, agent_id, request, provider)
            except OrchestratorError as e:
                return e

        result = self.registry.with_lock(op)
        if isinstance(result, Exception):
            raise result
        return result

    def _launch_one(self, registry: Registry, agent_id: int, request: LaunchRequest, provider) -> Agent:
        branch = request.branch or f"{self.config.branch_prefix}{agent_id}"
        if any(a.branch == branch for a in registry.agents):
            raise BranchExists(branch)
        base = request.base or resolve_default_branch(self.root, self.config.default_branch)
        path = self.workspace.worktree_path(agent_id)
        window = window_name(agent_id)

        if request.force and path.exists() and not any(a.worktree_path == path for a in registry.agents):
            self.checkout.remove_checkout(path, force=True)
        self.checkout.create(branch, base, path)
        try:
            prompt_file = self.workspace.write_prompt(agent_id, request.task)
            status_file = self.workspace.status_path(agent_id)
            status_file.unlink(missing_ok=True)
            command = build_command(provider, path, prompt_file, status_file, request.provider_args)
            self.sessions.start(self.session_name, window, path, wrap_with_status(command, status_file))
        except Exception:
            self._rollback_launch(agent_id, branch, path, window)
            raise

        agent = Agent(
            id=agent_id,
            task=request.task,
            branch=branch,
            base_branch=base,
            worktree_path=path,
            tmux_session=self.session_name,
            tmux_window=window,
            provider=provider,
        )
        registry.add(agent)
        self.events.write(
            EventType.LAUNCHED, agent_id,
            branch=branch, base_branch=base, provider=provider.value, worktree_path=str(path)
        )
        return agent

    def _rollback_launch(self, agent_id: int, branch: str, path: Path, window: str) -> None:
        try:
            self.sessions.kill(self.session_name, window)
        except Exception as e:
            console.print(f"Warning: could not kill window {window}: {e}", style="yellow", markup=False)
        try:
            self.checkout.remove(path, branch, force=True)
        except Exception as e:
            console.print(f"Warning: could not clean up worktree {path}: {e}", style="yellow", markup=False)
        self.workspace.clear_agent_files(agent_id)

    # =========================================================================
    # Reads
    # =========================================================================

    def list_agents(self) -> list[AgentView]:
        """All agents with freshly resolved status. Does not take the lock to read."""
        views = self.resolver.resolve_all(self.registry.load().agents)
        self._record(views)
        return views

    def get_agent(self, agent_id: int) -> Agent:
        return self.registry.load().get(agent_id)

    def status(self, agent_id: int) -> AgentView:
        agent = self.get_agent(agent_id)
        view = AgentView(agent=agent, resolution=self.resolver.resolve(agent))
        self._record([view])
        return view

    def _record(self, views: list[AgentView]) -> None:
        """Persist newly observed RUNNING -> COMPLETED/FAILED transitions.

        Best effort: a failure here never fails the read, and a registry
        lock held by a writer skips recording instead of waiting for it.
        The next read observes the same transition again.
        """
        pending = {v.agent.id: v.resolution for v in views if v.resolution.changed and v.resolution.available}
        if not pending:
            return

        def op(registry: Registry) -> None:
            for agent_id, resolution in pending.items():
                agent = registry.find(agent_id)
                if agent is not None and apply_resolution(agent, resolution):
                    self.events.write(
                        EventType.STATUS_CHANGED, agent_id,
                        status=agent.status.value, message=agent.status_message
                    )

        try:
            self.registry.with_lock(op, blocking=False)
        except BlockingIOError:
            return
        except (OrchestratorError, OSError) as e:
            console.print(f"Warning: could not record status changes: {e}", style="yellow", markup=False)

    def output(self, agent_id: int, lines: Optional[int] = None) -> str:
        """Recent output of the agent's window.

        Raises:
            SessionNotFound: If the window is gone.
        """
        agent = self.get_agent(agent_id)
        return self.sessions.capture(agent.tmux_session, agent.tmux_window, lines or self.config.output_lines)

    def attach(self, agent_id: int) -> None:
        agent = self.get_agent(agent_id)
        self.sessions.attach(agent.tmux_session, agent.tmux_window)

    def diff(self, agent_id: int) -> DiffSummary:
        """Committed changes on the agent's branch since it left its base."""
        agent = self.get_agent(agent_id)
        if not self.git.branch_exists(agent.branch) or not self.git.branch_exists(agent.base_branch):
            return DiffSummary()

        diff_range = f"{agent.base_branch}...{agent.branch}"
        diff_text = self.git.run("diff", diff_range).stdout
        numstat = self.git.run("diff", "--numstat", diff_range).stdout

        files = []
        stats = DiffStats()
        for line in numstat.splitlines():
            parts = line.split("\t", 2)
            if len(parts) != 3:
                continue
            added, deleted, filename = parts
            files.append(filename)
            # Binary files report "-"
            stats.additions += int(added) if added.isdigit() else 0
            stats.deletions += int(deleted) if deleted.isdigit() else 0
        stats.files_changed = len(files)
        return DiffSummary(diff=diff_text, files_changed=files, stats=stats)

    def recent_events(self, limit: int = 50, agent_id: Optional[int] = None) -> list[dict]:
        return self.events.read(limit=limit, agent_id=agent_id)

    # =========================================================================
    # Merge / PR
    # =========================================================================

    def merge(
        self,
        agent_id: int,
        strategy: MergeStrategy = MergeStrategy.MERGE,
        target: Optional[str] = None,
        force: bool = False,
        message: Optional[str] = None
    ) -> MergeOutcome:
        """Integrate an agent's branch, then tear down its worktree.

        A conflict returns a failed outcome and changes nothing.
        """

        def op(registry: Registry) -> MergeOutcome:
            agent = registry.get(agent_id)
            apply_resolution(agent, self.resolver.resolve(agent))

            outcome = self.merger.merge(agent, strategy, target=target, force=force, message=message)
            if not outcome.success:
                self.events.write(
                    EventType.MERGE_FAILED, agent_id,
                    target=outcome.target, strategy=strategy.value, conflicts=outcome.conflicts
                )
                return outcome

            warnings = self._teardown_after_merge(agent)
            agent.transition(AgentStatus.MERGED, force=force)
            self.events.write(
                EventType.MERGED, agent_id,
                target=outcome.target, strategy=strategy.value, merged_ref=outcome.merged_ref
            )
            if warnings:
                outcome.message = f"{outcome.message} (cleanup: {'; '.join(warnings)})"
            return outcome

        return self.registry.with_lock(op)

    def _teardown_after_merge(self, agent: Agent) -> list[str]:
        warnings = []
        try:
            self.sessions.kill(agent.tmux_session, agent.tmux_window)
        except Exception as e:
            warnings.append(f"could not kill window: {e}")
        try:
            self.checkout.remove_checkout(agent.worktree_path, force=True)
        except Exception as e:
            warnings.append(f"could not remove worktree: {e}")
        if self.config.delete_merged_branches:
            try:
                self.checkout.delete_branch(agent.branch)
            except Exception as e:
                warnings.append(f"could not delete branch: {e}")
        warnings.extend(self.workspace.clear_agent_files(agent.id))
        for warning in warnings:
            console.print(f"Warning: {warning}", style="yellow", markup=False)
        return warnings

    def create_pr(
        self,
        agent_id: int,
        title: Optional[str] = None,
        body: Optional[str] = None,
        force: bool = False
    ) -> str:
        """Push the agent's branch and open a pull request with `gh`.

        Returns:
            The pull request URL
        """
        view = self.status(agent_id)
        agent = view.agent
        status = view.status
        if status not in FINISHED_STATUSES and not (force and status == AgentStatus.RUNNING):
            raise PreconditionNotMet(
                f"Cannot open a pull request for agent {agent_id}: status is {status.value}",
                agent_id=agent_id,
            )
        if not self.git.branch_exists(agent.branch):
            raise PreconditionNotMet(f"Branch {agent.branch} no longer exists", agent_id=agent_id)

        gh = shutil.which("gh")
        if gh is None:
            raise ExternalCommandError("gh", "GitHub CLI not found on PATH")

        self.git.run("push", "--set-upstream", "origin", agent.branch)

        title = title or _pr_title(agent.task)
        if body is None:
            body = agent.task
            terminal = self.workspace.read_terminal_status(agent_id)
            if terminal and terminal.summary:
                body = f"{body}\n\n## Summary\n\n{terminal.summary}"

        result = run_gh(
            gh,
            ["pr", "create", "--base", agent.base_branch, "--head", agent.branch, "--title", title, "--body", body],
            self.root
        )
        if result.returncode != 0:
            raise ExternalCommandError("gh pr create", result.stderr or result.stdout)
        lines = [line.strip() for line in result.stdout.splitlines() if line.strip()]
        url = lines[-1] if lines else ""
        self.events.write(EventType.PR_CREATED, agent_id, url=url)
        return url

    # =========================================================================
    # Remove / prune
    # =========================================================================

    def remove(self, agent_id: int, force: bool = False) -> RemovalReport:
        """Remove an agent and everything it owns.

        The registry entry is dropped only once the worktree and branch are
        confirmed gone, or when forced.
        """

        def op(registry: Registry) -> RemovalReport:
            agent = registry.get(agent_id)
            apply_resolution(agent, self.resolver.resolve(agent))
            report = self.remover.remove(agent, force=force)
            if report.removed:
                registry.remove(agent_id)
                self.events.write(EventType.REMOVED, agent_id, forced=force, failures=report.failures)
            return report

        return self.registry.with_lock(op)

    def prune(self, prune_filter: Optional[PruneFilter] = None, force: bool = False) -> PruneReport:
        """Remove every agent matching the filter, collecting failures."""
        prune_filter = prune_filter or PruneFilter.inactive()
        return prune(self.list_agents(), prune_filter, lambda agent_id: self.remove(agent_id, force=force))


def run_gh(gh: str, args: list[str], cwd: Path) -> subprocess.CompletedProcess:
    """Run the GitHub CLI without raising on a non-zero exit."""
    return subprocess.run([gh, *args], cwd=cwd, capture_output=True, text=True, check=False)


def _pr_title(task: str) -> str:
    first_line = task.strip().splitlines()[0] if task.strip() else "Agent changes"
    if len(first_line) > PR_TITLE_MAX_LEN:
        return first_line[:PR_TITLE_MAX_LEN - 3] + "..."
    return first_line
