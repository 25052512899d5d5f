"""Process tracking, handoff cleanup, and the single-owner lock file."""

from __future__ import annotations

import json
import logging
import os
import signal
from datetime import datetime
from pathlib import Path

from courier.errors import LockError

logger = logging.getLogger(__name__)


def should_cleanup(current_session_code: str | None, incoming_session_code: str | None, has_active_process: bool) -> bool:
    """Cleanup is skipped only when the same session continues on a live process."""
    if current_session_code and incoming_session_code == current_session_code and has_active_process:
        return False
    return True


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class ProcessTracker:
    """Remembers spawned agent process groups so leftovers can be reaped."""

    def __init__(self):
        self._pids: set[int] = set()

    def track(self, pid: int) -> None:
        self._pids.add(pid)

    def untrack(self, pid: int) -> None:
        self._pids.discard(pid)

    def tracked(self) -> list[int]:
        return sorted(self._pids)

    def cleanup(self, keep: set[int] | None = None) -> int:
        """SIGTERM every tracked process group not in ``keep``."""
        keep = keep or set()
        count = 0
        for pid in self.tracked():
            if pid in keep:
                continue
            try:
                os.killpg(pid, signal.SIGTERM)
                count += 1
            except ProcessLookupError:
                pass
            except PermissionError as e:
                logger.warning(f"Cannot signal process group {pid}: {e}")
            self._pids.discard(pid)
        if count:
            logger.info(f"Terminated {count} leftover agent process groups")
        return count


class WorkerLock:
    """PID lock file; a lock whose PID is gone is reclaimed."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._held = False

    def acquire(self) -> None:
        if self.path.exists():
            try:
                data = json.loads(self.path.read_text())
                pid = int(data["pid"])
            except (OSError, ValueError, KeyError, TypeError):
                logger.warning(f"Removing unreadable lock file {self.path}")
                self.path.unlink(missing_ok=True)
            else:
                if pid != os.getpid() and _pid_alive(pid):
                    raise LockError(f"Worker already running (PID: {pid})")
                logger.info(f"Removing stale lock file (PID {pid} not running)")
                self.path.unlink(missing_ok=True)

        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError as e:
            raise LockError(f"Lock file {self.path} was created concurrently") from e
        with os.fdopen(fd, "w") as f:
            json.dump({"pid": os.getpid(), "started_at": datetime.now().isoformat()}, f)
        self._held = True

    def release(self) -> None:
        if not self._held:
            return
        try:
            self.path.unlink(missing_ok=True)
            logger.info("Lock released")
        except OSError as e:
            logger.error(f"Failed to release lock: {e}")
        self._held = False

    def __enter__(self) -> "WorkerLock":
        self.acquire()
        return self

    def __exit__(self, *exc) -> None:
        self.release()
