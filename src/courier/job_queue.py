"""Durable priority job queue: one JSON file per job, directory = state.

Layout under the queue root::

    <root>/<id>.json              pending
    <root>/active/<id>.json       active
    <root>/completed/<id>.json    completed
    <root>/failed/<id>.json       failed or cancelled

A transition rewrites the record in place (temp file + ``os.replace``)
and then renames it into the destination directory, so a record is in
exactly one directory at any observable instant. The directory is the
source of truth for state; the ``status`` field is informational except
inside ``failed/`` where it separates failed from cancelled jobs.

Scans are linear. The queue is expected to hold at most a few hundred
records, and every mutation is a single create/rename/delete on a unique
path, so no in-process lock is needed.
"""

from __future__ import annotations

import json
import logging
import os
import secrets
import string
import time
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable

from courier.errors import PersistenceCorruption
from courier.schema import Priority

logger = logging.getLogger(__name__)

PENDING = "pending"
ACTIVE = "active"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"

CANCEL_ERROR = "Cancelled by user"
DEFAULT_STALE_SECONDS = 60 * 60

_ID_ALPHABET = string.ascii_lowercase + string.digits


def new_job_id() -> str:
    """Epoch milliseconds plus a random base36 suffix."""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(6))
    return f"{int(time.time() * 1000)}-{suffix}"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Job:
    """One unit of queued work."""

    id: str
    task: str
    channel_id: str | None = None
    priority: int = int(Priority.NORMAL)
    source: str = "chat"
    status: str = PENDING
    created_at: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    failed_at: str | None = None
    cancelled_at: str | None = None
    result: Any = None
    error: Any = None
    retry_count: int = 0
    session_code: str | None = None
    external_task_id: str | None = None
    input_data: dict | None = None
    messages: list[dict] = field(default_factory=list)
    callback_url: str | None = None
    metadata: dict | None = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Job":
        if not isinstance(data, dict) or "id" not in data or "task" not in data:
            raise ValueError("record is missing id or task")
        known = {f.name for f in fields(cls)}
        job = cls(**{k: v for k, v in data.items() if k in known})
        if job.messages is None:
            job.messages = []
        return job


class JobQueue:
    """Filesystem-backed queue; see module docstring for the layout."""

    def __init__(self, root: str | Path):
        self.root = Path(root).expanduser()
        self.pending_dir = self.root
        self.active_dir = self.root / ACTIVE
        self.completed_dir = self.root / COMPLETED
        self.failed_dir = self.root / FAILED
        for d in (self.pending_dir, self.active_dir, self.completed_dir, self.failed_dir):
            d.mkdir(parents=True, exist_ok=True)
        self._last_stamp: datetime | None = None

    # --- Low-level record I/O ---

    def _dir_for(self, status: str) -> Path:
        return {
            PENDING: self.pending_dir,
            ACTIVE: self.active_dir,
            COMPLETED: self.completed_dir,
            FAILED: self.failed_dir,
            CANCELLED: self.failed_dir,
        }[status]

    @staticmethod
    def _record_path(directory: Path, job_id: str) -> Path:
        return directory / f"{job_id}.json"

    @staticmethod
    def _write(path: Path, job: Job) -> None:
        tmp = path.with_name(f".{path.name}.tmp")
        tmp.write_text(json.dumps(job.to_dict(), indent=2, default=str))
        os.replace(tmp, path)

    def _read(self, path: Path, state: str | None = None) -> Job | None:
        """Load one record; corrupt or vanished records are skipped."""
        try:
            job = Job.from_dict(json.loads(path.read_text()))
        except FileNotFoundError:
            return None
        except (OSError, ValueError, TypeError) as e:
            logger.error("%s", PersistenceCorruption(path, str(e)))
            return None
        if state in (PENDING, ACTIVE, COMPLETED):
            job.status = state
        return job

    def _scan(self, state: str) -> list[Job]:
        directory = self._dir_for(state)
        jobs = []
        for path in sorted(directory.glob("*.json")):
            job = self._read(path, state)
            if job is not None:
                jobs.append(job)
        return jobs

    def _move(self, job_id: str, src_state: str, dest_state: str, mutate: Callable[[Job], None]) -> Job | None:
        src = self._record_path(self._dir_for(src_state), job_id)
        if not src.exists():
            return None
        job = self._read(src, src_state)
        if job is None:
            return None
        mutate(job)
        dest = self._record_path(self._dir_for(dest_state), job_id)
        try:
            self._write(src, job)
            os.rename(src, dest)
        except FileNotFoundError:
            logger.warning(f"Job {job_id} moved concurrently, skipping {src_state} -> {dest_state}")
            return None
        logger.debug(f"Job {job_id}: {src_state} -> {dest_state}")
        return job

    def _stamp(self) -> str:
        """Creation timestamp, strictly increasing within this queue instance."""
        now = datetime.now(timezone.utc)
        if self._last_stamp is not None and now <= self._last_stamp:
            now = self._last_stamp + timedelta(microseconds=1)
        self._last_stamp = now
        return now.isoformat(timespec="microseconds")

    # --- Queue operations ---

    def enqueue(self, job: Job | dict) -> str:
        """Write a new pending record and return its id."""
        if isinstance(job, dict):
            data = dict(job)
            data.setdefault("id", new_job_id())
            data.setdefault("task", "")
            job = Job.from_dict(data)
        if not job.id:
            job.id = new_job_id()
        if job.priority is None:
            job.priority = int(Priority.NORMAL)
        job.priority = int(job.priority)
        job.status = PENDING
        job.created_at = self._stamp()

        self._write(self._record_path(self.pending_dir, job.id), job)
        logger.info(f"Enqueued job {job.id} (priority {job.priority}): {job.task[:50]}")
        return job.id

    def pending_jobs(self) -> list[Job]:
        """Pending jobs, highest priority first, oldest first among ties."""
        return sorted(self._scan(PENDING), key=lambda j: (-int(j.priority), j.created_at or ""))

    def next_job(self) -> Job | None:
        jobs = self.pending_jobs()
        return jobs[0] if jobs else None

    def get(self, job_id: str) -> Job | None:
        for state in (PENDING, ACTIVE, COMPLETED, FAILED):
            path = self._record_path(self._dir_for(state), job_id)
            if path.exists():
                return self._read(path, state)
        return None

    def list_jobs(self, status: str) -> list[Job]:
        if status == PENDING:
            return self.pending_jobs()
        jobs = self._scan(status)
        if status in (FAILED, CANCELLED):
            jobs = [j for j in jobs if (j.status == CANCELLED) == (status == CANCELLED)]
        return jobs

    def mark_active(self, job_id: str) -> Job | None:
        def _activate(job: Job) -> None:
            job.status = ACTIVE
            job.started_at = utc_now_iso()

        return self._move(job_id, PENDING, ACTIVE, _activate)

    def mark_completed(self, job_id: str, result: Any) -> Job | None:
        def _complete(job: Job) -> None:
            job.status = COMPLETED
            job.completed_at = utc_now_iso()
            job.result = result

        return self._move(job_id, ACTIVE, COMPLETED, _complete)

    def mark_failed(self, job_id: str, error: Any) -> Job | None:
        def _fail(job: Job) -> None:
            job.status = FAILED
            job.failed_at = utc_now_iso()
            job.error = error

        return self._move(job_id, ACTIVE, FAILED, _fail)

    def queue_depth(self) -> int:
        return sum(1 for _ in self.pending_dir.glob("*.json"))

    def active_count(self) -> int:
        return sum(1 for _ in self.active_dir.glob("*.json"))

    def active_jobs(self) -> list[Job]:
        return self._scan(ACTIVE)

    def find_by_session_code(self, code: str, statuses: tuple[str, ...] = (PENDING, ACTIVE)) -> Job | None:
        for state in statuses:
            jobs = self.pending_jobs() if state == PENDING else self.list_jobs(state)
            for job in jobs:
                if job.session_code == code:
                    return job
        return None

    def find_by_external_task_id(self, task_id: str) -> Job | None:
        """Most recent job for an external task, preferring live states."""
        for state in (PENDING, ACTIVE, COMPLETED, FAILED):
            matches = [j for j in self._scan(state) if j.external_task_id == task_id]
            if matches:
                return max(matches, key=lambda j: j.created_at or "")
        return None

    def _cancel(self, state: str, code: str) -> Job | None:
        job = self.find_by_session_code(code, statuses=(state,))
        if job is None:
            return None

        def _mark(j: Job) -> None:
            j.status = CANCELLED
            j.error = CANCEL_ERROR
            j.cancelled_at = utc_now_iso()

        cancelled = self._move(job.id, state, FAILED, _mark)
        if cancelled:
            logger.info(f"Cancelled {state} job {cancelled.id} (session {code})")
        return cancelled

    def cancel_pending(self, code: str) -> Job | None:
        return self._cancel(PENDING, code)

    def cancel_active(self, code: str) -> Job | None:
        return self._cancel(ACTIVE, code)

    def update_pending(self, job_id: str, **changes) -> Job | None:
        """Rewrite fields of a pending record in place."""
        path = self._record_path(self.pending_dir, job_id)
        job = self._read(path, PENDING) if path.exists() else None
        if job is None:
            return None
        for key, value in changes.items():
            setattr(job, key, value)
        self._write(path, job)
        return job

    def requeue_active(self, job_id: str, messages: list[dict] | None = None) -> Job | None:
        """Move an active job back to pending, appending messages.

        Used for clarification; unlike stale recovery this is not a retry.
        """

        def _requeue(job: Job) -> None:
            job.status = PENDING
            job.started_at = None
            job.messages = list(job.messages or []) + list(messages or [])

        return self._move(job_id, ACTIVE, PENDING, _requeue)

    def recover_stale_jobs(
        self, stale_after_seconds: float = DEFAULT_STALE_SECONDS, exclude: set[str] | None = None
    ) -> list[str]:
        """Move active jobs older than the threshold back to pending.

        ``exclude`` names jobs the caller knows are still running.
        """
        now = datetime.now(timezone.utc)
        exclude = exclude or set()
        recovered = []
        for job in self._scan(ACTIVE):
            if job.id in exclude:
                continue
            started = parse_iso(job.started_at)
            if started is None or (now - started).total_seconds() <= stale_after_seconds:
                continue

            def _reset(j: Job) -> None:
                j.status = PENDING
                j.retry_count = int(j.retry_count or 0) + 1
                j.started_at = None

            if self._move(job.id, ACTIVE, PENDING, _reset):
                logger.warning(f"Recovered stale job {job.id} (retry {int(job.retry_count or 0) + 1})")
                recovered.append(job.id)
        return recovered

    def cleanup_finished(self, max_age_days: float = 7) -> int:
        """Delete completed/failed records older than max_age_days."""
        cutoff = time.time() - max_age_days * 86400
        count = 0
        for directory in (self.completed_dir, self.failed_dir):
            for path in directory.glob("*.json"):
                try:
                    if path.stat().st_mtime < cutoff:
                        path.unlink()
                        count += 1
                except FileNotFoundError:
                    continue
        if count:
            logger.info(f"Removed {count} finished job records older than {max_age_days} days")
        return count

    def clear(self) -> None:
        """Remove every record (tests and manual resets)."""
        for directory in (self.pending_dir, self.active_dir, self.completed_dir, self.failed_dir):
            for path in directory.glob("*.json"):
                path.unlink(missing_ok=True)
