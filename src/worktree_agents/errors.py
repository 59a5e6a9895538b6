"""Error taxonomy for the orchestrator.

Every error raised by the engine derives from OrchestratorError so callers
(the CLI and the dashboard API) can report it uniformly. Each class carries
the HTTP status the dashboard should answer with: 4xx for conditions the
caller can correct, 5xx for corrupt or unexpected state.
"""

from pathlib import Path
from typing import Optional, Sequence


class OrchestratorError(Exception):
    """Base class for all orchestrator errors."""
    http_status = 500


class NotARepository(OrchestratorError):
    """The working directory is not inside a git repository."""
    http_status = 400

    def __init__(self, path: Path, detail: str = ""):
        self.path = Path(path)
        message = f"Not a git repository: {self.path}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class NoDefaultBranch(OrchestratorError):
    """The repository has no history, so no integration branch can be chosen."""
    http_status = 400

    def __init__(self, root: Path):
        self.root = Path(root)
        super().__init__(
            f"Could not determine a default branch for {self.root}: "
            "the repository has no commits. Use --base/--target explicitly."
        )


class BranchExists(OrchestratorError):
    http_status = 409

    def __init__(self, branch: str):
        self.branch = branch
        super().__init__(f"Branch already exists: {branch}")


class PathExists(OrchestratorError):
    http_status = 409

    def __init__(self, path: Path):
        self.path = Path(path)
        super().__init__(f"Worktree path already exists: {self.path}")


class DirtyCheckout(OrchestratorError):
    """A checkout has uncommitted changes and the operation was not forced."""
    http_status = 409

    def __init__(self, path: Path, operation: str = "", files: Sequence[str] = ()):
        self.path = Path(path)
        self.operation = operation
        self.files = list(files)
        message = f"Checkout has uncommitted changes: {self.path}"
        if operation:
            message = f"Cannot {operation}: {message}"
        if self.files:
            shown = ", ".join(self.files[:5])
            more = f" (+{len(self.files) - 5} more)" if len(self.files) > 5 else ""
            message = f"{message} [{shown}{more}]"
        super().__init__(f"{message}. Commit or discard them, or use --force.")


class SessionError(OrchestratorError):
    """tmux could not be run or refused a command."""
    http_status = 500


class SessionNotFound(SessionError):
    http_status = 404

    def __init__(self, session: str, window: Optional[str] = None):
        self.session = session
        self.window = window
        target = f"{session}:{window}" if window else session
        super().__init__(f"tmux window not found: {target}")


class CorruptState(OrchestratorError):
    """The registry document exists but cannot be parsed."""
    http_status = 500

    def __init__(self, path: Path, detail: str):
        self.path = Path(path)
        self.detail = detail
        super().__init__(f"State file corrupted: {self.path}: {detail}")


class PreconditionNotMet(OrchestratorError):
    http_status = 409

    def __init__(self, message: str, agent_id: Optional[int] = None):
        self.agent_id = agent_id
        super().__init__(message)


class MergeConflict(OrchestratorError):
    """Raised by a merge strategy after it has aborted a conflicting operation."""
    http_status = 409

    def __init__(self, branch: str, target: str, files: Sequence[str] = ()):
        self.branch = branch
        self.target = target
        self.files = list(files)
        listing = f": {', '.join(self.files)}" if self.files else ""
        super().__init__(f"Merge conflict integrating {branch} into {target}{listing}")


class AgentNotFound(OrchestratorError):
    http_status = 404

    def __init__(self, agent_id):
        self.agent_id = agent_id
        super().__init__(f"Agent not found: {agent_id}")


class GitCommandError(OrchestratorError):
    """A git command exited non-zero."""
    http_status = 500

    def __init__(self, args: Sequence[str], returncode: Optional[int], stderr: str, cwd: Optional[Path] = None):
        self.args_list = list(args)
        self.returncode = returncode
        self.stderr = stderr.strip()
        self.cwd = cwd
        command = "git " + " ".join(self.args_list)
        super().__init__(f"Command failed: {command}, exit code: {returncode}, stderr: {self.stderr}")


class ExternalCommandError(OrchestratorError):
    """A non-git helper tool (gh, tmux attach) failed or is missing."""
    http_status = 502

    def __init__(self, command: str, detail: str):
        self.command = command
        self.detail = detail.strip()
        super().__init__(f"{command} failed: {self.detail}")
