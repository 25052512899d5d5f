"""Result delivery back to the channel a job came from."""

from __future__ import annotations

import inspect
import logging
from datetime import datetime, timezone
from typing import Any, Callable

from courier.callback import CallbackClient, build_callback_payload
from courier.events import EVENT_DELIVERY_FAILED, EventCollector
from courier.job_queue import COMPLETED, FAILED, Job, parse_iso

logger = logging.getLogger(__name__)

# A sender receives (job, message) and may be sync or async.
Sender = Callable[[Job, str], Any]


def _duration_ms(job: Job) -> int:
    started = parse_iso(job.started_at)
    finished = parse_iso(job.completed_at or job.failed_at)
    if started is None or finished is None:
        return 0
    return max(0, int((finished - started).total_seconds() * 1000))


def callback_payload_for(job: Job, message: str) -> dict:
    """Signed-callback body describing a finished job."""
    transcript = list(job.messages or [])
    transcript.append(
        {"role": "agent", "content": message, "timestamp": datetime.now(timezone.utc).isoformat()}
    )
    return build_callback_payload(
        status=job.status,
        session_code=job.session_code,
        messages=transcript,
        output_data={"result": job.result} if job.status == COMPLETED else None,
        error_message=str(job.error) if job.status == FAILED and job.error else None,
        usage={"duration_ms": _duration_ms(job)},
    )


class ChannelRouter:
    """Maps source tags to senders; webhook jobs also get a signed callback.

    Delivery is best-effort: every failure is logged and reported as an
    event, nothing is raised back into the worker.
    """

    def __init__(self, callback_client: CallbackClient | None = None, events: EventCollector | None = None):
        self.callback_client = callback_client
        self.events = events
        self._senders: dict[str, Sender] = {}

    def register(self, source: str, sender: Sender) -> None:
        self._senders[source] = sender

    def unregister(self, source: str) -> None:
        self._senders.pop(source, None)

    def has_sender(self, source: str) -> bool:
        return source in self._senders

    async def deliver(self, job: Job, message: str) -> bool:
        delivered = True

        sender = self._senders.get(job.source)
        if sender is not None:
            try:
                value = sender(job, message)
                if inspect.isawaitable(value):
                    await value
            except Exception as e:
                logger.error(f"Failed to send result for job {job.id} via {job.source}: {e}")
                self._report(job, str(e))
                delivered = False
        elif job.external_task_id is None:
            logger.debug(f"No sender registered for source {job.source!r}; job {job.id} result not sent")

        if job.external_task_id and self.callback_client is not None:
            result = await self.callback_client.send(
                job.external_task_id, callback_payload_for(job, message), job.callback_url
            )
            if not result.success:
                self._report(job, result.error or "callback failed")
                delivered = False

        return delivered

    def _report(self, job: Job, error: str) -> None:
        if self.events is None:
            return
        self.events.emit(
            EVENT_DELIVERY_FAILED,
            f"Result delivery failed for job {job.id}",
            job_id=job.id,
            session_code=job.session_code,
            metadata={"source": job.source, "error": error},
        )
