"""Provider command construction and CLI discovery.

Each provider is an external AI coding CLI that reads the task prompt on stdin
inside the agent's worktree. The orchestrator never talks to the provider
beyond launching it; completion is signalled through the status artifact.
"""

import os
import shlex
import shutil
import sys
from pathlib import Path
from typing import Optional, Sequence

from .models import Provider

DANGEROUSLY_ALLOW_ALL = "--dangerously-allow-all"

# Tools Claude may use without prompting, unless everything is allowed
DEFAULT_ALLOWED_TOOLS = (
    "Bash(git diff:*)",
    "Bash(git status:*)",
    "Bash(git log:*)",
    "Bash(git branch:*)",
    "Bash(git add:*)",
    "Bash(git commit:*)",
    "Bash(ls:*)",
    "Bash(pwd)",
)

# Flags each provider needs to run unattended
_PROVIDER_FLAGS = {
    Provider.CODEX: ["exec", "--full-auto"],
    Provider.GEMINI: ["-y"],
    Provider.DEEPAGENTS: ["--auto-approve"],
    Provider.AMP: [DANGEROUSLY_ALLOW_ALL],
    Provider.OPENCODE: [],
}


def binary_name(provider: Provider) -> str:
    return provider.value


def find_executable(provider: Provider) -> Optional[str]:
    """Find a provider's CLI executable.

    Searches PATH first, then the usual npm/user install locations.

    Returns:
        Path to the executable, or None if not found.
    """
    name = binary_name(provider)
    found = shutil.which(name)
    if found:
        return found

    if sys.platform == "win32":
        return shutil.which(f"{name}.cmd")

    candidates = [
        Path.home() / ".npm-global" / "bin" / name,
        Path("/usr/local/bin") / name,
        Path.home() / ".local" / "bin" / name,
        Path.home() / ".nvm" / "current" / "bin" / name,
    ]
    for candidate in candidates:
        if candidate.exists() and os.access(candidate, os.X_OK):
            return str(candidate)
    return None


def _claude_args(status_file: Path, extra_args: Sequence[str]) -> list[str]:
    if DANGEROUSLY_ALLOW_ALL in extra_args:
        return []
    status_pattern = f"Write({status_file.parent}/*)"
    allowed = ",".join([*DEFAULT_ALLOWED_TOOLS, status_pattern])
    return ["--permission-mode", "acceptEdits", "--allowedTools", allowed]


def build_command(
    provider: Provider,
    worktree_path: Path,
    prompt_file: Path,
    status_file: Path,
    extra_args: Sequence[str] = ()
) -> str:
    """Build the shell command that runs a provider on a prompt file.

    Args:
        provider: Which CLI to run
        worktree_path: Agent's worktree (the command's working directory)
        prompt_file: Task prompt piped to the CLI on stdin
        status_file: Terminal-status artifact the agent should write
        extra_args: Additional CLI arguments passed through verbatim

    Returns:
        A single shell command line
    """
    extra = list(extra_args)
    if provider == Provider.CLAUDE:
        args = _claude_args(status_file, extra) + extra
    else:
        args = [*_PROVIDER_FLAGS[provider]]
        args += [a for a in extra if a not in args]
        if provider == Provider.CODEX:
            args.append("-")

    cli = " ".join([binary_name(provider), *(shlex.quote(a) for a in args)])
    return f"cd {shlex.quote(str(worktree_path))} && cat {shlex.quote(str(prompt_file))} | {cli}"


def wrap_with_status(command: str, status_file: Path) -> str:
    """Wrap a provider command so its exit always leaves a status artifact.

    The agent is asked to write the artifact itself; if it exits without
    doing so, the wrapper writes `completed` on exit code 0 and `failed`
    (with the exit code) otherwise. An artifact written by the agent is
    never overwritten.
    """
    target = shlex.quote(str(status_file))
    completed = shlex.quote('{"status": "completed", "summary": "provider exited without writing a status file", "error": null}')
    return (
        f"( {command} ); wta_rc=$?; "
        f"if [ ! -s {target} ]; then "
        f"if [ $wta_rc -eq 0 ]; then printf '%s\\n' {completed} > {target}; "
        f"else printf '{{\"status\": \"failed\", \"summary\": null, \"error\": \"provider exited with code %s\"}}\\n' \"$wta_rc\" > {target}; "
        f"fi; fi"
    )
