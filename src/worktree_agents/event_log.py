"""JSONL event log for agent lifecycle observability.

Each line is a complete JSON object with a timestamp and type:
    {"type": "launched", "timestamp": "...", "agent_id": 1, "branch": "wta/1", ...}
    {"type": "status_changed", "timestamp": "...", "agent_id": 1, "status": "completed"}
    {"type": "merged", "timestamp": "...", "agent_id": 1, "target": "main", ...}
    {"type": "removed", "timestamp": "...", "agent_id": 1, "forced": false}

Entries are flushed and fsynced immediately so a tail of the file is always
current.
"""

import json
import os
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Optional


class EventType(str, Enum):
    LAUNCHED = "launched"
    STATUS_CHANGED = "status_changed"
    MERGED = "merged"
    MERGE_FAILED = "merge_failed"
    PR_CREATED = "pr_created"
    REMOVED = "removed"


class EventLog:
    """Append-only lifecycle log stored in .worktree-agents/events.jsonl."""

    def __init__(self, log_file: Path):
        self.log_file = Path(log_file)

    def write(self, event_type: EventType, agent_id: Optional[int] = None, **fields: Any) -> dict:
        """Append one event with immediate flush.

        Args:
            event_type: Kind of event
            agent_id: Agent the event is about
            **fields: Extra JSON-serializable details

        Returns:
            The entry as written
        """
        entry: dict[str, Any] = {
            "type": event_type.value,
            "timestamp": datetime.now().isoformat(),
        }
        if agent_id is not None:
            entry["agent_id"] = agent_id
        entry.update(fields)

        self.log_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self.log_file, "a", encoding="utf-8") as f:
            f.write(json.dumps(entry, default=str) + "\n")
            f.flush()
            try:
                os.fsync(f.fileno())
            except OSError:
                pass  # Some filesystems don't support fsync
        return entry

    def read(self, limit: Optional[int] = None, agent_id: Optional[int] = None) -> list[dict]:
        """Read events, oldest first.

        Args:
            limit: Only return the most recent `limit` events
            agent_id: Only return events for this agent

        Returns:
            Parsed entries; malformed lines are skipped
        """
        if not self.log_file.exists():
            return []

        events = []
        for line in self.log_file.read_text(encoding="utf-8").splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                continue
            if agent_id is not None and entry.get("agent_id") != agent_id:
                continue
            events.append(entry)

        if limit is not None:
            events = events[-limit:] if limit > 0 else []
        return events
