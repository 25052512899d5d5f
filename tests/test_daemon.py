"""Tests for courier.daemon lifecycle."""

import asyncio
import json

import pytest

from courier.context import CourierContext
from courier.daemon import LOCK_FILENAME, CourierDaemon
from courier.heartbeat import HEARTBEAT_FILENAME


class TestDaemonLifecycle:
    """Start, tick, and stop a dry-run daemon."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, config, tmp_path):
        config.webhook.host = "127.0.0.1"
        config.webhook.port = 0
        config.webhook.heartbeat_interval_seconds = 0.05
        context = CourierContext(config, dry_run=True)
        daemon = CourierDaemon(context, home=tmp_path)

        task = asyncio.create_task(daemon.start())
        for _ in range(100):
            if (tmp_path / HEARTBEAT_FILENAME).exists():
                break
            await asyncio.sleep(0.05)

        assert json.loads((tmp_path / LOCK_FILENAME).read_text())["pid"]
        assert (tmp_path / HEARTBEAT_FILENAME).exists()

        await daemon.stop()
        await asyncio.wait_for(task, timeout=10)
        assert not (tmp_path / LOCK_FILENAME).exists()
