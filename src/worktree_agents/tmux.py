"""tmux session and window management."""

import os
import subprocess
from pathlib import Path
from typing import Optional

from .errors import ExternalCommandError, SessionError, SessionNotFound

TMUX = "tmux"
MAIN_WINDOW = "main"

# stderr fragments tmux prints when the target simply isn't there
_MISSING_MARKERS = (
    "can't find session",
    "can't find window",
    "no server running",
    "session not found",
    "window not found",
    "error connecting to",
)


def window_name(agent_id: int) -> str:
    """Name of an agent's window.

    Prefixed so tmux never mistakes it for a window index.
    """
    return f"agent-{agent_id}"


class TmuxSessionController:
    """Drives tmux through its command-line interface."""

    def __init__(self, binary: str = TMUX):
        self.binary = binary

    def _run(self, *args: str) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                [self.binary, *args],
                capture_output=True,
                text=True,
                check=False
            )
        except FileNotFoundError as e:
            raise SessionError(f"tmux is not installed or not on PATH: {e}") from e

    @staticmethod
    def _target(session: str, window: Optional[str] = None) -> str:
        if window is None:
            return f"={session}"
        return f"={session}:{window}"

    @staticmethod
    def _is_missing(result: subprocess.CompletedProcess) -> bool:
        stderr = result.stderr.lower()
        return any(marker in stderr for marker in _MISSING_MARKERS)

    def session_exists(self, session: str) -> bool:
        return self._run("has-session", "-t", self._target(session)).returncode == 0

    def ensure_session(self, session: str) -> None:
        """Create the session if it doesn't exist."""
        if self.session_exists(session):
            return
        result = self._run("new-session", "-d", "-s", session, "-n", MAIN_WINDOW)
        if result.returncode != 0 and not self.session_exists(session):
            raise SessionError(f"Failed to create tmux session {session}: {result.stderr.strip()}")

    def start(self, session: str, window: str, workdir: Path, command: str) -> None:
        """Open a window rooted at `workdir` and type `command` into it."""
        self.ensure_session(session)

        result = self._run("new-window", "-d", "-t", f"={session}:", "-n", window, "-c", str(workdir))
        if result.returncode != 0:
            raise SessionError(f"Failed to create tmux window {session}:{window}: {result.stderr.strip()}")

        result = self._run("send-keys", "-t", self._target(session, window), command, "Enter")
        if result.returncode != 0:
            raise SessionError(f"Failed to send command to {session}:{window}: {result.stderr.strip()}")

    def list_windows(self, session: str) -> list[str]:
        """Window names in a session; empty when the session is gone."""
        result = self._run("list-windows", "-t", self._target(session), "-F", "#{window_name}")
        if result.returncode != 0:
            if self._is_missing(result):
                return []
            raise SessionError(f"Failed to list windows of {session}: {result.stderr.strip()}")
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def window_exists(self, session: str, window: str) -> bool:
        return window in self.list_windows(session)

    def capture(self, session: str, window: str, lines: int = 100) -> str:
        """Return the last `lines` lines of a window's pane.

        Raises:
            SessionNotFound: If the window no longer exists.
        """
        result = self._run(
            "capture-pane", "-p", "-t", self._target(session, window), "-S", f"-{max(lines, 1)}"
        )
        if result.returncode != 0:
            if self._is_missing(result):
                raise SessionNotFound(session, window)
            raise SessionError(f"Failed to capture {session}:{window}: {result.stderr.strip()}")
        output = result.stdout.rstrip("\n").splitlines()
        return "\n".join(output[-lines:])

    def kill(self, session: str, window: str) -> None:
        """Kill a window, ignoring windows that are already gone."""
        result = self._run("kill-window", "-t", self._target(session, window))
        if result.returncode != 0 and not self._is_missing(result):
            raise SessionError(f"Failed to kill {session}:{window}: {result.stderr.strip()}")

    def attach(self, session: str, window: str) -> None:
        """Attach to the window, switching client when already inside tmux."""
        if not self.window_exists(session, window):
            raise SessionNotFound(session, window)
        verb = "switch-client" if os.environ.get("TMUX") else "attach-session"
        try:
            completed = subprocess.run([self.binary, verb, "-t", self._target(session, window)], check=False)
        except FileNotFoundError as e:
            raise SessionError(f"tmux is not installed or not on PATH: {e}") from e
        if completed.returncode != 0:
            raise ExternalCommandError(f"tmux {verb}", f"exit code {completed.returncode}")
