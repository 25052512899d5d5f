"""Courier daemon: queue ticks, session sweeps, heartbeat, and the webhook server."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys
from pathlib import Path
from typing import Awaitable, Callable

from courier.config import COURIER_HOME, COURIER_LOGS, CourierConfig, configure_logging, ensure_courier_home
from courier.context import CourierContext
from courier.errors import CourierError
from courier.events import EVENT_SESSIONS_EXPIRED
from courier.heartbeat import HEARTBEAT_FILENAME, Heartbeat
from courier.resources import WorkerLock
from courier.webhook import WebhookGateway

logger = logging.getLogger(__name__)

LOCK_FILENAME = "worker.lock"
CLEANUP_INTERVAL_SECONDS = 24 * 60 * 60


class CourierDaemon:
    """Long-running process that owns the queue."""

    def __init__(
        self,
        context: CourierContext | None = None,
        *,
        dry_run: bool = False,
        debug: bool = False,
        port: int | None = None,
        home: Path | None = None,
    ):
        self.context = context or CourierContext(CourierConfig.load(), dry_run=dry_run)
        self.config = self.context.config
        self.debug = debug
        self.port = port or self.config.webhook.port
        home = home or COURIER_HOME
        self.lock = WorkerLock(home / LOCK_FILENAME)
        self.heartbeat = Heartbeat(home / HEARTBEAT_FILENAME, self.context.events)
        self.gateway = WebhookGateway(self.context, debug=debug)
        self._slack_channel = None
        self._tasks: list[asyncio.Task] = []
        self._running = False
        self._stop_event = asyncio.Event()

    async def start(self) -> None:
        """Start all daemon services and block until stopped."""
        self.lock.acquire()
        try:
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, lambda: asyncio.create_task(self.stop()))

            recovered = self.context.queue.recover_stale_jobs(self.config.queue.stale_after_seconds)
            if recovered:
                logger.warning(f"Recovered {len(recovered)} stale jobs on startup")

            await self.gateway.start(self.config.webhook.host, self.port)
            await self._start_slack()

            self._running = True
            worker = self.config.worker
            sessions = self.config.sessions
            self._spawn("courier-queue-tick", self._tick, worker.tick_interval_seconds)
            self._spawn("courier-session-sweep", self._sweep_sessions, sessions.sweep_interval_seconds)
            self._spawn(
                "courier-heartbeat", self._write_heartbeat, self.config.webhook.heartbeat_interval_seconds
            )
            self._spawn("courier-cleanup", self._cleanup_finished, CLEANUP_INTERVAL_SECONDS)

            mode = "dry-run" if self.context.dry_run else "live"
            logger.info(
                f"Courier daemon started ({mode}, max {worker.max_concurrent} concurrent, port {self.port})"
            )
            await self._stop_event.wait()
        finally:
            self.lock.release()

    async def stop(self) -> None:
        """Gracefully stop all services."""
        if not self._running:
            self._stop_event.set()
            return
        logger.info("Courier daemon stopping")
        self._running = False

        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()

        if self._slack_channel is not None:
            try:
                await self._slack_channel.stop()
            except Exception as e:
                logger.exception("Slack channel stop error: %s", e)

        await self.gateway.stop()
        await self.context.worker.shutdown()
        self.heartbeat.write()
        self._stop_event.set()

    # --- Periodic loops ---

    def _spawn(self, name: str, fn: Callable[[], Awaitable[None]], interval: float) -> None:
        self._tasks.append(asyncio.create_task(self._every(name, fn, interval), name=name))

    async def _every(self, name: str, fn: Callable[[], Awaitable[None]], interval: float) -> None:
        """Run ``fn`` now and then every ``interval`` seconds; errors are logged."""
        while self._running:
            try:
                await fn()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"{name} failed: {e}")
            await asyncio.sleep(interval)

    async def _tick(self) -> None:
        if self.context.dry_run:
            return
        await self.context.worker.tick()

    async def _sweep_sessions(self) -> None:
        count = self.context.sessions.expire_all()
        if count:
            self.context.events.emit(
                EVENT_SESSIONS_EXPIRED, f"Expired {count} sessions", metadata={"count": count}
            )

    async def _write_heartbeat(self) -> None:
        self.heartbeat.write()

    async def _cleanup_finished(self) -> None:
        self.context.queue.cleanup_finished(self.config.queue.finished_retention_days)

    async def _start_slack(self) -> None:
        slack = self.config.slack
        if not (slack.enabled and slack.bot_token and slack.app_token):
            return
        try:
            from courier.slack_channel import SlackChannel

            self._slack_channel = SlackChannel(self.context, slack.bot_token, slack.app_token)
            await self._slack_channel.start()
            logger.info("Slack channel started")
        except ImportError:
            logger.warning("slack-bolt not installed, skipping Slack channel")
        except Exception as e:
            logger.exception("Slack channel failed to start: %s", e)


def main(argv: list[str] | None = None) -> int:
    """Entry point for ``python -m courier.daemon [--dry-run] [--debug]``."""
    args = sys.argv[1:] if argv is None else argv
    debug = "--debug" in args
    ensure_courier_home()
    configure_logging(debug=debug, log_dir=COURIER_LOGS)
    try:
        daemon = CourierDaemon(dry_run="--dry-run" in args, debug=debug)
        asyncio.run(daemon.start())
    except (CourierError, OSError) as e:
        logger.error(f"Courier daemon failed to start: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
