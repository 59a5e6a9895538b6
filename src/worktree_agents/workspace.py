"""Workspace management for the .worktree-agents/ directory structure.

Handles:
- Directory structure creation
- Config overrides (config.json)
- Per-agent prompt and status-artifact paths
- Reading terminal-status artifacts written by agent processes
"""

import hashlib
import json
from datetime import datetime
from pathlib import Path
from typing import Optional

from pydantic import ValidationError
from rich.console import Console

from .models import AgentStatus, OrchestratorConfig, TerminalStatus

console = Console(stderr=True)

IGNORE_ALL = "*\n"


class WorkspaceManager:
    """Manages the on-disk state of one repository.

    Directory structure:
        <root>/
        ├── .worktree-agents/
        │   ├── state.json          # Registry (id counter + agents)
        │   ├── state.lock          # Registry lock
        │   ├── config.json         # Optional config overrides
        │   ├── events.jsonl        # Lifecycle event log
        │   ├── prompts/<id>.txt    # Task prompt read by the provider
        │   └── status/<id>.json    # Terminal-status artifact written by the agent
        └── .worktrees/<id>/        # Agent worktrees
    """

    STATE_DIRNAME = ".worktree-agents"

    def __init__(self, root: Path, worktrees_dir: str = ".worktrees"):
        """Initialize workspace manager.

        Args:
            root: Resolved repository root
            worktrees_dir: Worktree directory, relative to the root
        """
        self.root = Path(root).resolve()
        self.state_dir = self.root / self.STATE_DIRNAME
        self.prompts_dir = self.state_dir / "prompts"
        self.status_dir = self.state_dir / "status"
        self.worktrees_dir = self.root / worktrees_dir

        # File paths
        self.state_file = self.state_dir / "state.json"
        self.lock_file = self.state_dir / "state.lock"
        self.config_file = self.state_dir / "config.json"
        self.events_file = self.state_dir / "events.jsonl"

    def ensure_structure(self) -> None:
        """Create the state and worktree directories if they don't exist."""
        for directory in (self.state_dir, self.prompts_dir, self.status_dir, self.worktrees_dir):
            directory.mkdir(parents=True, exist_ok=True)

        # Keep engine state out of `git status` of the main checkout
        for directory in (self.state_dir, self.worktrees_dir):
            gitignore = directory / ".gitignore"
            if not gitignore.exists():
                gitignore.write_text(IGNORE_ALL)

    # =========================================================================
    # Config
    # =========================================================================

    def load_config(self) -> OrchestratorConfig:
        """Load config overrides from config.json.

        Returns defaults when the file is missing or unreadable.
        """
        if not self.config_file.exists():
            return OrchestratorConfig()

        try:
            data = json.loads(self.config_file.read_text(encoding="utf-8"))
            return OrchestratorConfig.model_validate(data)
        except (json.JSONDecodeError, ValidationError, OSError) as e:
            console.print(f"Warning: could not load {self.config_file}, using defaults: {e}", style="yellow", markup=False)
            return OrchestratorConfig()

    def save_config(self, config: OrchestratorConfig) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.config_file.write_text(
            json.dumps(config.model_dump(mode="json", exclude_defaults=True), indent=2),
            encoding="utf-8"
        )

    # =========================================================================
    # Per-agent paths
    # =========================================================================

    def worktree_path(self, agent_id: int) -> Path:
        return self.worktrees_dir / str(agent_id)

    def prompt_path(self, agent_id: int) -> Path:
        return self.prompts_dir / f"{agent_id}.txt"

    def status_path(self, agent_id: int) -> Path:
        return self.status_dir / f"{agent_id}.json"

    def session_name(self, prefix: str = "wta") -> str:
        """tmux session name unique to this repository.

        Project directory name plus a short hash of the full path, so two
        checkouts with the same name don't share a session.
        """
        short_hash = hashlib.sha1(str(self.root).encode("utf-8")).hexdigest()[:6]
        return f"{prefix}-{self.root.name}-{short_hash}"

    def write_prompt(self, agent_id: int, task: str) -> Path:
        """Write the task prompt consumed by the provider at launch."""
        self.prompts_dir.mkdir(parents=True, exist_ok=True)
        prompt_file = self.prompt_path(agent_id)
        status_file = self.status_path(agent_id)
        prompt_file.write_text(
            f"{task}\n\n"
            "---\n"
            "IMPORTANT: When you complete this task:\n"
            "1. Commit your changes\n"
            f"2. Write a JSON status file to: {status_file}\n"
            '   Format: {"status": "completed"|"failed", "summary": "brief description", '
            '"files_changed": ["file1", "file2"], "error": null}\n',
            encoding="utf-8"
        )
        return prompt_file

    def clear_agent_files(self, agent_id: int) -> list[str]:
        """Delete an agent's prompt and status artifact.

        Returns a description of each file that could not be deleted.
        """
        failures = []
        for path in (self.prompt_path(agent_id), self.status_path(agent_id)):
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                failures.append(f"could not delete {path}: {e}")
        return failures

    # =========================================================================
    # Terminal-status artifacts
    # =========================================================================

    def read_terminal_status(self, agent_id: int) -> Optional[TerminalStatus]:
        """Parse the agent's terminal-status artifact.

        Accepts the JSON format written by agents and by the launch wrapper,
        and a plain-text form whose first word is the status. Returns None if
        the artifact is absent or does not name a terminal status.
        """
        path = self.status_path(agent_id)
        if not path.exists():
            return None

        content = path.read_text(encoding="utf-8").strip()
        if not content:
            return None

        try:
            data = json.loads(content)
        except json.JSONDecodeError:
            data = None

        if isinstance(data, dict):
            status = _terminal_status(data.get("status"))
            if status is None:
                return None
            files = data.get("files_changed") or []
            return TerminalStatus(
                status=status,
                summary=_as_text(data.get("summary")),
                error=_as_text(data.get("error")),
                files_changed=[str(f) for f in files] if isinstance(files, list) else [],
            )

        first, _, rest = content.partition("\n") if "\n" in content else content.partition(" ")
        status = _terminal_status(first.strip().rstrip(":"))
        if status is None:
            return None
        return TerminalStatus(status=status, summary=rest.strip() or None)

    def terminal_status_time(self, agent_id: int) -> Optional[datetime]:
        """When the artifact was written (its modification time)."""
        path = self.status_path(agent_id)
        try:
            return datetime.fromtimestamp(path.stat().st_mtime)
        except OSError:
            return None


def _terminal_status(value) -> Optional[AgentStatus]:
    if not isinstance(value, str):
        return None
    value = value.strip().lower()
    if value == AgentStatus.COMPLETED.value:
        return AgentStatus.COMPLETED
    if value == AgentStatus.FAILED.value:
        return AgentStatus.FAILED
    return None


def _as_text(value) -> Optional[str]:
    # Agents write free-form summaries; lists join by line, anything else is dumped as JSON
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, list) and all(isinstance(v, str) for v in value):
        return "\n".join(value)
    return json.dumps(value)
