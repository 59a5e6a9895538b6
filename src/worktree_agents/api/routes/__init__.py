"""API routes for the dashboard."""

from . import agents, events

__all__ = ["agents", "events"]
