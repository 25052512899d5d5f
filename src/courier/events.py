"""Event bus and executor listener interface."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

logger = logging.getLogger(__name__)

# Standard event types
EVENT_JOB_QUEUED = "job_queued"
EVENT_JOB_STARTED = "job_started"
EVENT_JOB_COMPLETED = "job_completed"
EVENT_JOB_FAILED = "job_failed"
EVENT_JOB_CANCELLED = "job_cancelled"
EVENT_JOB_RECOVERED = "job_recovered"
EVENT_SESSION_CREATED = "session_created"
EVENT_SESSIONS_EXPIRED = "sessions_expired"
EVENT_DELIVERY_FAILED = "delivery_failed"


class EventCollector:
    """Central event bus: notifies listeners, never raises into the emitter."""

    def __init__(self):
        self._listeners: list[Callable] = []

    def emit(
        self,
        event_type: str,
        summary: str,
        *,
        job_id: str | None = None,
        session_code: str | None = None,
        metadata: dict | None = None,
    ) -> dict:
        """Notify all listeners and return the event record."""
        event_data = {
            "timestamp": time.time(),
            "event_type": event_type,
            "summary": summary,
            "job_id": job_id,
            "session_code": session_code,
            "metadata": metadata,
        }

        for listener in self._listeners:
            try:
                listener(event_data)
            except Exception as e:
                logger.warning(f"Event listener error: {e}")

        return event_data

    def add_listener(self, callback: Callable[[dict], Any]) -> None:
        """Subscribe to job and session events, such as the heartbeat counters.

        Adding the same callback twice delivers each event once.
        """
        if callback in self._listeners:
            return
        self._listeners.append(callback)

    def remove_listener(self, callback: Callable[[dict], Any]) -> None:
        """Unsubscribe; unknown callbacks are ignored."""
        if callback in self._listeners:
            self._listeners.remove(callback)


class ExecutionListener:
    """Extension points invoked by the Executor.

    Subclass and override what you need; every method defaults to a no-op.
    Methods may be plain functions or coroutines.
    """

    def before_execute(self, parsed, context: dict) -> Any:
        return None

    def after_execute(self, result: dict) -> Any:
        return None

    def on_session_create(self, definition, args: list[str], context: dict) -> Any:
        return None

    def on_session_resume(self, code: str, message: str | None, context: dict) -> Any:
        return None
