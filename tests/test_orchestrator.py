"""End-to-end tests for the orchestration facade with a fake tmux."""

import subprocess
import threading
from pathlib import Path
from unittest.mock import patch

import pytest

from conftest import FakeSessionController, commit_file, git, write_status
from worktree_agents.errors import (
    BranchExists, ExternalCommandError, PathExists, PreconditionNotMet, SessionError, SessionNotFound,
)
from worktree_agents.models import (
    AgentStatus, LaunchRequest, MergeStrategy, OrchestratorConfig, Provider,
)
from worktree_agents.orchestrator import Orchestrator


class TestLaunch:
    """Tests for Orchestrator.launch."""

    def test_launch_creates_everything(self, orchestrator: Orchestrator, sessions: FakeSessionController, git_repo: Path):
        """Test that launch creates the worktree, prompt, window and registry entry."""
        agent = orchestrator.launch(LaunchRequest(task="Add a health endpoint"))

        assert agent.id == 1
        assert agent.branch == "wta/1"
        assert agent.base_branch == "main"
        assert agent.status == AgentStatus.RUNNING
        assert agent.worktree_path == git_repo / ".worktrees" / "1"
        assert (agent.worktree_path / "README.md").exists()
        assert orchestrator.workspace.prompt_path(1).read_text().startswith("Add a health endpoint")

        window = sessions.windows[(agent.tmux_session, "agent-1")]
        assert window["workdir"] == agent.worktree_path
        assert "| claude " in window["command"]
        assert str(orchestrator.workspace.status_path(1)) in window["command"]

        stored = orchestrator.get_agent(1)
        assert stored == agent
        assert orchestrator.recent_events()[-1]["type"] == "launched"

    def test_launch_options(self, orchestrator: Orchestrator, sessions: FakeSessionController, git_repo: Path):
        """Test that branch, base and provider options are honored."""
        git(git_repo, "branch", "develop")

        agent = orchestrator.launch(LaunchRequest(
            task="Port to the new API",
            branch="port-api",
            base="develop",
            provider=Provider.CODEX,
        ))

        assert agent.branch == "port-api"
        assert agent.base_branch == "develop"
        assert agent.provider == Provider.CODEX
        assert "codex exec" in sessions.windows[(agent.tmux_session, agent.tmux_window)]["command"]

    def test_ids_increase(self, orchestrator: Orchestrator):
        """Test that consecutive launches get consecutive ids."""
        first = orchestrator.launch(LaunchRequest(task="one"))
        second = orchestrator.launch(LaunchRequest(task="two"))
        assert (first.id, second.id) == (1, 2)

    def test_existing_branch_is_refused(self, orchestrator: Orchestrator, git_repo: Path):
        """Test that launching onto an existing branch changes nothing."""
        git(git_repo, "branch", "taken")

        with pytest.raises(BranchExists):
            orchestrator.launch(LaunchRequest(task="x", branch="taken"))

        assert orchestrator.registry.load().agents == []

    def test_failed_start_rolls_back(self, orchestrator: Orchestrator, sessions: FakeSessionController):
        """Test that a tmux failure leaves no worktree, branch or registry entry."""
        sessions.fail_start = True

        with pytest.raises(SessionError):
            orchestrator.launch(LaunchRequest(task="Doomed"))

        assert not orchestrator.workspace.worktree_path(1).exists()
        assert not orchestrator.checkout.branch_exists("wta/1")
        assert not orchestrator.workspace.prompt_path(1).exists()
        registry = orchestrator.registry.load()
        assert registry.agents == []
        # The id is burned, never reused
        assert registry.next_id == 2

        sessions.fail_start = False
        assert orchestrator.launch(LaunchRequest(task="Retry")).id == 2

    def test_force_clears_stale_worktree_directory(self, orchestrator: Orchestrator):
        """Test that force clears a leftover directory at the worktree path."""
        stale = orchestrator.workspace.worktree_path(1)
        stale.mkdir(parents=True)
        (stale / "leftover.txt").write_text("from a crashed launch\n")

        with pytest.raises(PathExists):
            orchestrator.launch(LaunchRequest(task="task"))

        # The refused launch burned id 1, so plant the leftover at the next path
        stale = orchestrator.workspace.worktree_path(2)
        stale.mkdir(parents=True)
        agent = orchestrator.launch(LaunchRequest(task="task", force=True))

        assert agent.id == 2
        assert not (agent.worktree_path / "leftover.txt").exists()
        assert (agent.worktree_path / "README.md").exists()

    def test_concurrent_launches_get_distinct_ids(self, git_repo: Path, sessions: FakeSessionController):
        """Test that two simultaneous launches get N and N+1."""
        results = []
        errors = []

        def worker(task: str):
            try:
                orch = Orchestrator(git_repo, sessions=sessions, config=OrchestratorConfig())
                results.append(orch.launch(LaunchRequest(task=task)).id)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(f"task {i}",)) for i in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert sorted(results) == [1, 2]
        registry = Orchestrator(git_repo, sessions=sessions).registry.load()
        assert registry.next_id == 3
        assert sorted(a.id for a in registry.agents) == [1, 2]

    def test_launch_from_inside_a_worktree(self, orchestrator: Orchestrator, sessions: FakeSessionController, git_repo: Path):
        """Test that a caller inside an agent worktree still targets the main repository."""
        first = orchestrator.launch(LaunchRequest(task="outer"))

        nested = Orchestrator.discover(first.worktree_path, sessions=sessions)
        second = nested.launch(LaunchRequest(task="inner"))

        assert nested.root == git_repo
        assert second.id == 2
        assert second.worktree_path == git_repo / ".worktrees" / "2"


class TestReads:
    """Tests for status, output, attach and diff."""

    def test_list_records_completion(self, orchestrator: Orchestrator):
        """Test that listing persists an observed completion."""
        agent = orchestrator.launch(LaunchRequest(task="task"))
        write_status(orchestrator, agent.id, "completed", "finished cleanly")

        views = orchestrator.list_agents()

        assert views[0].status == AgentStatus.COMPLETED
        stored = orchestrator.get_agent(agent.id)
        assert stored.status == AgentStatus.COMPLETED
        assert stored.status_message == "finished cleanly"
        assert orchestrator.recent_events(agent_id=agent.id)[-1]["type"] == "status_changed"

    def test_closed_window_is_failure(self, orchestrator: Orchestrator, sessions: FakeSessionController):
        """Test that a closed window without an artifact is recorded as failed."""
        agent = orchestrator.launch(LaunchRequest(task="task"))
        sessions.close(agent.tmux_session, agent.tmux_window)

        view = orchestrator.status(agent.id)

        assert view.status == AgentStatus.FAILED
        assert orchestrator.get_agent(agent.id).status == AgentStatus.FAILED

    def test_completion_is_sticky(self, orchestrator: Orchestrator):
        """Test that a completed agent never reads as running again."""
        agent = orchestrator.launch(LaunchRequest(task="task"))
        status_file = write_status(orchestrator, agent.id, "completed")
        orchestrator.list_agents()
        status_file.unlink()

        assert orchestrator.status(agent.id).status == AgentStatus.COMPLETED

    def test_list_does_not_wait_for_a_held_lock(self, orchestrator: Orchestrator):
        """Test that listing returns while a writer holds the registry lock."""
        agent = orchestrator.launch(LaunchRequest(task="task"))
        write_status(orchestrator, agent.id, "completed")
        results = []

        with orchestrator.registry.lock():
            thread = threading.Thread(target=lambda: results.append(orchestrator.list_agents()))
            thread.start()
            thread.join(timeout=5)
            assert not thread.is_alive()

        assert results[0][0].status == AgentStatus.COMPLETED
        # Recording was skipped, so the next read records it
        assert orchestrator.get_agent(agent.id).status == AgentStatus.RUNNING
        orchestrator.list_agents()
        assert orchestrator.get_agent(agent.id).status == AgentStatus.COMPLETED

    def test_unavailable_status_in_listing(self, orchestrator: Orchestrator, sessions: FakeSessionController):
        """Test that an unreachable tmux leaves the stored status alone."""
        orchestrator.launch(LaunchRequest(task="task"))
        sessions.fail_window_check = True

        views = orchestrator.list_agents()

        assert views[0].resolution.display_status == "unavailable"
        assert orchestrator.get_agent(1).status == AgentStatus.RUNNING

    def test_output_and_attach(self, orchestrator: Orchestrator, sessions: FakeSessionController):
        """Test that output and attach target the agent's window."""
        agent = orchestrator.launch(LaunchRequest(task="task"))
        sessions.windows[(agent.tmux_session, agent.tmux_window)]["output"] = "a\nb\nc"

        assert orchestrator.output(agent.id, lines=2) == "b\nc"
        orchestrator.attach(agent.id)
        assert sessions.attached == [(agent.tmux_session, agent.tmux_window)]

        sessions.close(agent.tmux_session, agent.tmux_window)
        with pytest.raises(SessionNotFound):
            orchestrator.output(agent.id)

    def test_diff(self, orchestrator: Orchestrator):
        """Test that diff reports committed changes on the branch."""
        agent = orchestrator.launch(LaunchRequest(task="task"))
        commit_file(agent.worktree_path, "feature.py", "a = 1\nb = 2\n")

        summary = orchestrator.diff(agent.id)

        assert summary.files_changed == ["feature.py"]
        assert summary.stats.additions == 2
        assert summary.stats.deletions == 0
        assert summary.stats.files_changed == 1
        assert "+a = 1" in summary.diff

    def test_diff_ignores_later_base_commits(self, orchestrator: Orchestrator, git_repo: Path):
        """Test that commits made on the base after launch are not in the diff."""
        agent = orchestrator.launch(LaunchRequest(task="task"))
        commit_file(git_repo, "unrelated.txt", "x\n")

        assert orchestrator.diff(agent.id).files_changed == []

    def test_diff_of_deleted_branch_is_empty(self, orchestrator: Orchestrator):
        """Test that a deleted branch diffs as empty."""
        agent = orchestrator.launch(LaunchRequest(task="task"))
        orchestrator.checkout.remove(agent.worktree_path, agent.branch, force=True)

        summary = orchestrator.diff(agent.id)
        assert summary.diff == "" and summary.files_changed == []


class TestMerge:
    """Tests for Orchestrator.merge, including teardown."""

    def finished_agent(self, orchestrator: Orchestrator, **request):
        agent = orchestrator.launch(LaunchRequest(task="Implement feature", **request))
        commit_file(agent.worktree_path, "feature.txt", "feature\n")
        write_status(orchestrator, agent.id, "completed")
        return agent

    def test_merge_completed_agent(self, orchestrator: Orchestrator, sessions: FakeSessionController, git_repo: Path):
        """Test merging a completed agent into main and tearing it down."""
        agent = self.finished_agent(orchestrator, branch="feature-1")

        outcome = orchestrator.merge(agent.id)

        assert outcome.success
        assert (git_repo / "feature.txt").exists()
        assert not agent.worktree_path.exists()
        assert not orchestrator.checkout.branch_exists("feature-1")
        assert (agent.tmux_session, agent.tmux_window) not in sessions.windows
        stored = orchestrator.get_agent(agent.id)
        assert stored.status == AgentStatus.MERGED
        assert orchestrator.recent_events()[-1]["type"] == "merged"

    def test_merge_into_develop(self, orchestrator: Orchestrator, git_repo: Path):
        """Test that merging into a non-default target leaves main untouched."""
        git(git_repo, "branch", "develop")
        main_before = git(git_repo, "rev-parse", "main")
        agent = self.finished_agent(orchestrator, base="develop")

        outcome = orchestrator.merge(agent.id, target="develop")

        assert outcome.success
        assert git(git_repo, "rev-parse", "main") == main_before
        assert "feature.txt" in git(git_repo, "ls-tree", "--name-only", "develop")

    def test_running_agent_is_refused(self, orchestrator: Orchestrator, git_repo: Path):
        """Test that merging a running agent changes neither git nor the registry."""
        agent = orchestrator.launch(LaunchRequest(task="busy"))
        commit_file(agent.worktree_path, "feature.txt", "feature\n")
        main_before = git(git_repo, "rev-parse", "main")
        state_before = orchestrator.workspace.state_file.read_text()

        with pytest.raises(PreconditionNotMet):
            orchestrator.merge(agent.id)

        assert git(git_repo, "rev-parse", "main") == main_before
        assert orchestrator.workspace.state_file.read_text() == state_before
        assert agent.worktree_path.exists()

    def test_force_merges_running_agent(self, orchestrator: Orchestrator):
        """Test that force merges a running agent."""
        agent = orchestrator.launch(LaunchRequest(task="busy"))
        commit_file(agent.worktree_path, "feature.txt", "feature\n")

        assert orchestrator.merge(agent.id, force=True).success
        assert orchestrator.get_agent(agent.id).status == AgentStatus.MERGED

    def test_conflict_changes_nothing(self, orchestrator: Orchestrator, git_repo: Path):
        """Test that a conflict keeps the agent, worktree and branch."""
        agent = orchestrator.launch(LaunchRequest(task="edit readme"))
        commit_file(agent.worktree_path, "README.md", "agent\n")
        commit_file(git_repo, "README.md", "human\n")
        write_status(orchestrator, agent.id, "completed")
        main_before = git(git_repo, "rev-parse", "main")

        outcome = orchestrator.merge(agent.id, MergeStrategy.MERGE)

        assert not outcome.success
        assert outcome.conflicts == ["README.md"]
        assert git(git_repo, "rev-parse", "main") == main_before
        assert agent.worktree_path.exists()
        assert orchestrator.get_agent(agent.id).status == AgentStatus.COMPLETED
        assert orchestrator.recent_events()[-1]["type"] == "merge_failed"

    def test_keep_branch_when_configured(self, git_repo: Path, sessions: FakeSessionController):
        """Test that the branch survives when branch deletion is disabled."""
        orchestrator = Orchestrator(git_repo, sessions=sessions, config=OrchestratorConfig(delete_merged_branches=False))
        agent = self.finished_agent(orchestrator)

        assert orchestrator.merge(agent.id).success
        assert orchestrator.checkout.branch_exists(agent.branch)

    def test_merged_agent_cannot_be_merged_twice(self, orchestrator: Orchestrator):
        """Test that a second merge is refused."""
        agent = self.finished_agent(orchestrator)
        orchestrator.merge(agent.id)

        with pytest.raises(PreconditionNotMet):
            orchestrator.merge(agent.id, force=True)

    def test_merged_agent_can_be_removed(self, orchestrator: Orchestrator):
        """Test that a merged agent can still be removed."""
        agent = self.finished_agent(orchestrator)
        orchestrator.merge(agent.id)

        report = orchestrator.remove(agent.id)

        assert report.removed
        assert orchestrator.registry.load().agents == []


class TestCreatePullRequest:
    """Tests for Orchestrator.create_pr with a local remote and a mocked gh."""

    @pytest.fixture
    def remote(self, git_repo: Path, tmp_path: Path) -> Path:
        remote = tmp_path / "remote.git"
        git(tmp_path, "init", "-q", "--bare", str(remote))
        git(git_repo, "remote", "add", "origin", str(remote))
        return remote

    def test_pushes_and_opens_pr(self, orchestrator: Orchestrator, remote: Path):
        """Test that the branch is pushed and gh's URL is returned."""
        agent = orchestrator.launch(LaunchRequest(task="Add caching layer\n\nUse an LRU."))
        commit_file(agent.worktree_path, "cache.py", "cache = {}\n")
        write_status(orchestrator, agent.id, "completed", "Added an LRU cache")

        gh_result = subprocess.CompletedProcess(args=[], returncode=0, stdout="https://github.com/o/r/pull/7\n", stderr="")
        with patch("worktree_agents.orchestrator.shutil.which", return_value="/usr/bin/gh"), \
                patch("worktree_agents.orchestrator.run_gh", return_value=gh_result) as run_gh:
            url = orchestrator.create_pr(agent.id)

        assert url == "https://github.com/o/r/pull/7"
        assert git(remote, "rev-parse", agent.branch) == git(agent.worktree_path, "rev-parse", "HEAD")
        gh, args, cwd = run_gh.call_args[0]
        assert gh == "/usr/bin/gh"
        assert args[:2] == ["pr", "create"]
        assert args[args.index("--title") + 1] == "Add caching layer"
        assert "Added an LRU cache" in args[args.index("--body") + 1]
        assert args[args.index("--base") + 1] == "main"

    def test_running_agent_needs_force(self, orchestrator: Orchestrator):
        """Test that a running agent needs force to open a pull request."""
        agent = orchestrator.launch(LaunchRequest(task="busy"))
        with pytest.raises(PreconditionNotMet):
            orchestrator.create_pr(agent.id)

    def test_missing_gh(self, orchestrator: Orchestrator):
        """Test that a missing gh binary is reported."""
        agent = orchestrator.launch(LaunchRequest(task="task"))
        write_status(orchestrator, agent.id, "completed")

        with patch("worktree_agents.orchestrator.shutil.which", return_value=None):
            with pytest.raises(ExternalCommandError):
                orchestrator.create_pr(agent.id)

    def test_gh_failure(self, orchestrator: Orchestrator, remote: Path):
        """Test that a failing gh command is reported."""
        agent = orchestrator.launch(LaunchRequest(task="task"))
        write_status(orchestrator, agent.id, "completed")

        failure = subprocess.CompletedProcess(args=[], returncode=1, stdout="", stderr="not logged in")
        with patch("worktree_agents.orchestrator.shutil.which", return_value="/usr/bin/gh"), \
                patch("worktree_agents.orchestrator.run_gh", return_value=failure):
            with pytest.raises(ExternalCommandError, match="not logged in"):
                orchestrator.create_pr(agent.id)
