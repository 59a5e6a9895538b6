"""Shared fixtures: throwaway git repositories and a fake tmux controller."""

import json
import subprocess
from pathlib import Path
from typing import Optional

import pytest

from worktree_agents.errors import SessionError, SessionNotFound
from worktree_agents.models import OrchestratorConfig
from worktree_agents.orchestrator import Orchestrator


def git(cwd: Path, *args: str) -> str:
    """Run git in `cwd`, failing the test on error."""
    result = subprocess.run(["git", *args], cwd=cwd, capture_output=True, text=True, check=True)
    return result.stdout.strip()


def commit_file(cwd: Path, name: str, content: str, message: Optional[str] = None) -> str:
    """Write a file, commit it and return the new HEAD."""
    path = Path(cwd) / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    git(cwd, "add", name)
    git(cwd, "commit", "-q", "-m", message or f"Update {name}")
    return git(cwd, "rev-parse", "HEAD")


def write_status(orchestrator: Orchestrator, agent_id: int, status: str, summary: str = "done") -> Path:
    """Write a terminal-status artifact the way an agent would."""
    path = orchestrator.workspace.status_path(agent_id)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps({"status": status, "summary": summary, "error": None}))
    return path


class FakeSessionController:
    """In-memory stand-in for tmux implementing SessionController."""

    def __init__(self):
        self.windows: dict[tuple[str, str], dict] = {}
        self.attached: list[tuple[str, str]] = []
        self.fail_start = False
        self.fail_kill = False
        self.fail_window_check = False

    def start(self, session: str, window: str, workdir: Path, command: str) -> None:
        if self.fail_start:
            raise SessionError("tmux refused to open a window")
        self.windows[(session, window)] = {"workdir": Path(workdir), "command": command, "output": ""}

    def window_exists(self, session: str, window: str) -> bool:
        if self.fail_window_check:
            raise SessionError("tmux server unreachable")
        return (session, window) in self.windows

    def capture(self, session: str, window: str, lines: int = 100) -> str:
        if (session, window) not in self.windows:
            raise SessionNotFound(session, window)
        output = self.windows[(session, window)]["output"].splitlines()
        return "\n".join(output[-lines:])

    def kill(self, session: str, window: str) -> None:
        if self.fail_kill:
            raise SessionError("tmux refused to kill the window")
        self.windows.pop((session, window), None)

    def attach(self, session: str, window: str) -> None:
        if (session, window) not in self.windows:
            raise SessionNotFound(session, window)
        self.attached.append((session, window))

    def close(self, session: str, window: str) -> None:
        """Simulate the window exiting on its own."""
        self.windows.pop((session, window), None)


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """A repository on `main` with one commit."""
    repo = tmp_path / "repo"
    repo.mkdir()
    git(repo, "init", "-q")
    git(repo, "symbolic-ref", "HEAD", "refs/heads/main")
    git(repo, "config", "user.email", "test@example.com")
    git(repo, "config", "user.name", "Test User")
    git(repo, "config", "commit.gpgsign", "false")
    commit_file(repo, "README.md", "# Test repo\n", "Initial commit")
    return repo.resolve()


@pytest.fixture
def sessions() -> FakeSessionController:
    return FakeSessionController()


@pytest.fixture
def orchestrator(git_repo: Path, sessions: FakeSessionController) -> Orchestrator:
    return Orchestrator(git_repo, sessions=sessions, config=OrchestratorConfig())
