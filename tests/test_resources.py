"""Tests for courier.resources, courier.heartbeat and courier.events."""

import json
import os
import subprocess
import sys

import pytest

from courier.errors import LockError
from courier.events import EVENT_JOB_COMPLETED, EVENT_JOB_FAILED, EventCollector
from courier.heartbeat import Heartbeat
from courier.resources import ProcessTracker, WorkerLock, should_cleanup


class TestShouldCleanup:
    """Cleanup is skipped only for a live continuation of the same session."""

    def test_same_session_live_process(self):
        assert should_cleanup("ab", "ab", True) is False

    def test_same_session_no_process(self):
        assert should_cleanup("ab", "ab", False) is True

    def test_different_session(self):
        assert should_cleanup("ab", "cd", True) is True

    def test_no_current_session(self):
        assert should_cleanup(None, None, True) is True


class TestProcessTracker:
    """Test leftover process reaping."""

    def test_cleanup_terminates_untracked_groups(self):
        proc = subprocess.Popen(
            [sys.executable, "-c", "import time; time.sleep(30)"], start_new_session=True
        )
        tracker = ProcessTracker()
        tracker.track(proc.pid)
        try:
            assert tracker.cleanup() == 1
            assert proc.wait(timeout=10) != 0
            assert tracker.tracked() == []
        finally:
            if proc.poll() is None:
                proc.kill()

    def test_keep_is_respected(self):
        tracker = ProcessTracker()
        tracker.track(12345)
        assert tracker.cleanup(keep={12345}) == 0
        assert tracker.tracked() == [12345]

    def test_vanished_process_ignored(self):
        proc = subprocess.Popen([sys.executable, "-c", "pass"], start_new_session=True)
        proc.wait()
        tracker = ProcessTracker()
        tracker.track(proc.pid)
        assert tracker.cleanup() == 0
        assert tracker.tracked() == []


class TestWorkerLock:
    """Test single-owner locking."""

    def test_acquire_and_release(self, tmp_path):
        lock = WorkerLock(tmp_path / "worker.lock")
        lock.acquire()
        assert json.loads(lock.path.read_text())["pid"] == os.getpid()
        lock.release()
        assert not lock.path.exists()

    def test_live_owner_blocks(self, tmp_path):
        path = tmp_path / "worker.lock"
        path.write_text(json.dumps({"pid": os.getppid()}))
        with pytest.raises(LockError, match="already running"):
            WorkerLock(path).acquire()

    def test_stale_lock_reclaimed(self, tmp_path):
        proc = subprocess.Popen([sys.executable, "-c", "pass"])
        proc.wait()
        path = tmp_path / "worker.lock"
        path.write_text(json.dumps({"pid": proc.pid}))
        with WorkerLock(path):
            assert json.loads(path.read_text())["pid"] == os.getpid()
        assert not path.exists()

    def test_unreadable_lock_reclaimed(self, tmp_path):
        path = tmp_path / "worker.lock"
        path.write_text("garbage")
        with WorkerLock(path) as lock:
            assert lock.path.exists()


class TestHeartbeat:
    """Test the heartbeat file."""

    def test_counts_events_and_writes(self, tmp_path):
        events = EventCollector()
        heartbeat = Heartbeat(tmp_path / "heartbeat.json", events)
        events.emit(EVENT_JOB_COMPLETED, "done")
        events.emit(EVENT_JOB_COMPLETED, "done")
        events.emit(EVENT_JOB_FAILED, "failed")

        stats = heartbeat.write()
        on_disk = json.loads((tmp_path / "heartbeat.json").read_text())
        assert on_disk == stats
        assert stats["tasks_processed"] == 2
        assert stats["tasks_failed"] == 1
        assert stats["last_heartbeat"] is not None
        assert stats["uptime"] >= 0


class TestEventCollector:
    """Test the event bus."""

    def test_emit_to_listeners(self):
        events = EventCollector()
        seen = []
        events.add_listener(seen.append)
        record = events.emit("custom", "hello", job_id="j1", metadata={"k": 1})
        assert seen == [record]
        assert record["job_id"] == "j1"
        assert record["metadata"] == {"k": 1}

    def test_listener_errors_do_not_propagate(self):
        events = EventCollector()
        seen = []

        def broken(event):
            raise RuntimeError("listener bug")

        events.add_listener(broken)
        events.add_listener(seen.append)
        events.emit("custom", "still delivered")
        assert len(seen) == 1

    def test_duplicate_listener_called_once(self):
        events = EventCollector()
        seen = []
        events.add_listener(seen.append)
        events.add_listener(seen.append)
        events.emit("custom", "once")
        assert len(seen) == 1

    def test_remove_listener(self):
        events = EventCollector()
        seen = []
        events.add_listener(seen.append)
        events.remove_listener(seen.append)
        events.remove_listener(seen.append)
        events.emit("custom", "nobody listening")
        assert seen == []
