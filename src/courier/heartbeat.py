"""Periodic heartbeat file with worker statistics."""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path

from courier.events import EVENT_JOB_COMPLETED, EVENT_JOB_FAILED, EventCollector

logger = logging.getLogger(__name__)

HEARTBEAT_FILENAME = "heartbeat.json"


class Heartbeat:
    """Counts finished jobs from events and writes ``heartbeat.json``."""

    def __init__(self, path: str | Path, events: EventCollector | None = None):
        self.path = Path(path)
        self.started_at = datetime.now(timezone.utc)
        self.last_heartbeat: str | None = None
        self.tasks_processed = 0
        self.tasks_failed = 0
        if events is not None:
            events.add_listener(self.on_event)

    def on_event(self, event: dict) -> None:
        if event["event_type"] == EVENT_JOB_COMPLETED:
            self.tasks_processed += 1
        elif event["event_type"] == EVENT_JOB_FAILED:
            self.tasks_failed += 1

    def stats(self) -> dict:
        now = datetime.now(timezone.utc)
        return {
            "started_at": self.started_at.isoformat(),
            "last_heartbeat": self.last_heartbeat,
            "tasks_processed": self.tasks_processed,
            "tasks_failed": self.tasks_failed,
            "uptime": int((now - self.started_at).total_seconds()),
        }

    def write(self) -> dict:
        self.last_heartbeat = datetime.now(timezone.utc).isoformat()
        stats = self.stats()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(f".{self.path.name}.tmp")
        tmp.write_text(json.dumps(stats, indent=2))
        os.replace(tmp, self.path)
        logger.debug(f"Heartbeat written: {stats['tasks_processed']} processed, {stats['tasks_failed']} failed")
        return stats
