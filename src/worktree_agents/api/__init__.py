"""Dashboard API for worktree-agents.

REST endpoints over the orchestrator.
"""

from .main import create_app, run_dashboard

__all__ = ["create_app", "run_dashboard"]
