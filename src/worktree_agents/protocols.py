"""Protocol definitions for dependency injection.

The tmux controller is the one collaborator tests cannot rely on, so it is
described here as a Protocol and injected into the orchestrator.
"""

from pathlib import Path
from typing import Protocol, runtime_checkable


@runtime_checkable
class SessionController(Protocol):
    """Protocol for terminal-multiplexer operations."""

    def start(self, session: str, window: str, workdir: Path, command: str) -> None:
        """Create or reuse `session`, open `window` in `workdir` and run `command`."""
        ...

    def window_exists(self, session: str, window: str) -> bool:
        """Check whether the window is still alive."""
        ...

    def capture(self, session: str, window: str, lines: int = 100) -> str:
        """Return the last `lines` lines of the window's output."""
        ...

    def kill(self, session: str, window: str) -> None:
        """Kill the window. A missing window is not an error."""
        ...

    def attach(self, session: str, window: str) -> None:
        """Attach the current terminal to the window."""
        ...
