"""Worker pool: runs queued jobs as time-boxed agent processes.

Each tick recovers stale jobs, fills free slots up to ``max_concurrent``
(re-reading the active count from disk), and starts one asyncio task per
job. A task spawns the agent executable in its own process group, waits
for it under a time box, records the outcome on the queue and hands the
result to the channel router.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import signal
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from courier.errors import ExecutionFailure
from courier.events import (
    EVENT_JOB_CANCELLED,
    EVENT_JOB_COMPLETED,
    EVENT_JOB_FAILED,
    EVENT_JOB_RECOVERED,
    EVENT_JOB_STARTED,
    EventCollector,
)
from courier.job_queue import ACTIVE, COMPLETED, DEFAULT_STALE_SECONDS, Job, JobQueue
from courier.resources import ProcessTracker, should_cleanup
from courier.sessions import SessionStore

if TYPE_CHECKING:
    from courier.channels import ChannelRouter
    from courier.config import CourierConfig

logger = logging.getLogger(__name__)

ANSI_ESCAPE = re.compile(r"\x1B\[[0-9;]*[a-zA-Z]")
AGENT_SESSION_ID = re.compile(r"session[_-]?id[:\s]+([a-zA-Z0-9_-]+)", re.IGNORECASE)
MAX_OUTPUT_CHARS = 50_000
MAX_ERROR_OUTPUT_CHARS = 500
NO_OUTPUT = "Done (no output)"
DEFAULT_AGENT_COMMAND = ["claude", "--dangerously-skip-permissions"]


def strip_ansi(text: str) -> str:
    return ANSI_ESCAPE.sub("", text)


def bound_output(text: str, limit: int = MAX_OUTPUT_CHARS) -> str:
    """Keep the tail of long output; agents summarize at the end."""
    if len(text) <= limit:
        return text
    return "[output truncated]\n" + text[-limit:]


def format_duration(seconds: float) -> str:
    if seconds >= 60 and seconds % 60 == 0:
        minutes = int(seconds // 60)
        return f"{minutes} minute{'s' if minutes != 1 else ''}"
    return f"{seconds:g} seconds"


def build_prompt(job: Job) -> str:
    """Task text, followed by the clarification transcript when present."""
    if not job.messages:
        return job.task
    lines = [job.task, "", "Conversation so far:"]
    for message in job.messages:
        lines.append(f"{message.get('role', 'user')}: {message.get('content', '')}")
    return "\n".join(lines)


@dataclass
class RunOutcome:
    exit_code: int | None
    output: str
    timed_out: bool = False
    spawn_error: str | None = None
    agent_session_id: str | None = None


@dataclass
class _Running:
    job: Job
    task: asyncio.Task | None = None
    process: asyncio.subprocess.Process | None = None
    stdout: list[str] = field(default_factory=list)
    stderr: list[str] = field(default_factory=list)
    stopping: bool = False


class WorkerPool:
    """Bounded pool of concurrently running agent processes."""

    def __init__(
        self,
        queue: JobQueue,
        sessions: SessionStore,
        router: ChannelRouter | None = None,
        events: EventCollector | None = None,
        *,
        max_concurrent: int = 3,
        task_timeout: float = 60 * 60,
        kill_grace: float = 5.0,
        agent_command: list[str] | None = None,
        workspace: str | None = None,
        stale_after_seconds: float = DEFAULT_STALE_SECONDS,
        tracker: ProcessTracker | None = None,
    ):
        self.queue = queue
        self.sessions = sessions
        self.router = router
        self.events = events or EventCollector()
        self.max_concurrent = max_concurrent
        self.task_timeout = task_timeout
        self.kill_grace = kill_grace
        self.agent_command = list(agent_command or DEFAULT_AGENT_COMMAND)
        self.workspace = workspace or None
        self.stale_after_seconds = stale_after_seconds
        self.tracker = tracker or ProcessTracker()
        self._running: dict[str, _Running] = {}

    @classmethod
    def from_config(
        cls,
        config: CourierConfig,
        queue: JobQueue,
        sessions: SessionStore,
        router: ChannelRouter | None = None,
        events: EventCollector | None = None,
    ) -> "WorkerPool":
        return cls(
            queue,
            sessions,
            router,
            events,
            max_concurrent=config.worker.max_concurrent,
            task_timeout=config.worker.task_timeout_seconds,
            kill_grace=config.worker.kill_grace_seconds,
            agent_command=config.worker.agent_command,
            workspace=config.worker.workspace,
            stale_after_seconds=config.queue.stale_after_seconds,
        )

    # --- State ---

    @property
    def is_processing(self) -> bool:
        return bool(self._running)

    @property
    def running_jobs(self) -> list[Job]:
        return [r.job for r in self._running.values()]

    @property
    def current_task(self) -> str | None:
        jobs = self.running_jobs
        return jobs[0].task if jobs else None

    @property
    def current_session_code(self) -> str | None:
        for job in self.running_jobs:
            if job.session_code:
                return job.session_code
        return None

    # --- Scheduling ---

    async def tick(self) -> list[str]:
        """Recover stale jobs and start as many pending jobs as slots allow."""
        for job_id in self.queue.recover_stale_jobs(self.stale_after_seconds, exclude=set(self._running)):
            self.events.emit(EVENT_JOB_RECOVERED, f"Recovered stale job {job_id}", job_id=job_id)
        self._reap_cancelled()

        started: list[str] = []
        skipped: set[str] = set()
        slots = self.max_concurrent - self.queue.active_count()
        while slots > 0:
            # A requeued job still winding down here waits for its old run to exit.
            job = next(
                (j for j in self.queue.pending_jobs() if j.id not in skipped and j.id not in self._running),
                None,
            )
            if job is None:
                break

            self._cleanup_before(job)
            active = self.queue.mark_active(job.id)
            if active is None:
                skipped.add(job.id)
                continue

            running = _Running(job=active)
            self._running[active.id] = running
            running.task = asyncio.create_task(self._run(running), name=f"courier-job-{active.id}")
            started.append(active.id)
            slots -= 1
        return started

    def _reap_cancelled(self) -> None:
        # Another process (CLI, webhook) may have cancelled a job we are running.
        for running in list(self._running.values()):
            if running.stopping or running.process is None or running.process.returncode is not None:
                continue
            record = self.queue.get(running.job.id)
            if record is None or record.status != ACTIVE:
                logger.info(f"Job {running.job.id} was cancelled, terminating its agent")
                running.stopping = True
                self._terminate_later(running.process)

    def _cleanup_before(self, job: Job) -> None:
        # Skip when the incoming job continues a session that is already running.
        needs_cleanup = all(
            should_cleanup(r.job.session_code, job.session_code, r.process is not None)
            for r in self._running.values()
        )
        if needs_cleanup:
            keep = {r.process.pid for r in self._running.values() if r.process is not None}
            self.tracker.cleanup(keep=keep)

    async def wait_idle(self) -> None:
        """Wait until every running job has finished."""
        tasks = [r.task for r in self._running.values() if r.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def shutdown(self) -> None:
        """Stop running agents and hand their jobs back to pending."""
        running = list(self._running.values())
        for r in running:
            if r.task is not None:
                r.task.cancel()
        await asyncio.gather(*(r.task for r in running if r.task is not None), return_exceptions=True)
        for r in running:
            if self.queue.requeue_active(r.job.id):
                logger.info(f"Returned interrupted job {r.job.id} to pending")
        self._running.clear()

    # --- Cancellation ---

    async def cancel(self, session_code: str) -> Job | None:
        """Cancel the pending or active job for a session code."""
        job = self.queue.cancel_pending(session_code)
        if job is None:
            job = self.queue.cancel_active(session_code)
            if job is not None:
                running = self._running.get(job.id)
                if running is not None and running.process is not None:
                    running.stopping = True
                    self._terminate_later(running.process)
        if job is not None:
            self.events.emit(
                EVENT_JOB_CANCELLED, f"Cancelled job {job.id}", job_id=job.id, session_code=session_code
            )
        return job

    # --- Execution ---

    async def _run(self, running: _Running) -> None:
        job = running.job
        try:
            logger.info(f"Starting job {job.id}: {job.task[:50]}")
            self.events.emit(
                EVENT_JOB_STARTED, f"Started job {job.id}", job_id=job.id, session_code=job.session_code
            )
            outcome = await self._execute(running)
            await self._finish(job, outcome)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Worker error on job {job.id}")
            if self.queue.mark_failed(job.id, f"Worker error: {e}"):
                self.events.emit(EVENT_JOB_FAILED, f"Job {job.id} failed", job_id=job.id)
        finally:
            self._running.pop(job.id, None)

    async def _execute(self, running: _Running) -> RunOutcome:
        job = running.job
        args = [*self.agent_command, "-p", build_prompt(job)]
        if job.session_code:
            session = self.sessions.get_by_code(job.session_code)
            if session is not None and session.agent_session_id:
                args += ["--resume", session.agent_session_id]

        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.workspace,
                env={**os.environ, "FORCE_COLOR": "0"},
                start_new_session=True,
            )
        except OSError as e:
            logger.error(f"Failed to spawn agent for job {job.id}: {e}")
            return RunOutcome(exit_code=None, output="", spawn_error=str(e))

        running.process = process
        self.tracker.track(process.pid)
        agent_session: dict[str, str] = {}

        async def read_stdout() -> None:
            while True:
                chunk = await process.stdout.read(4096)
                if not chunk:
                    return
                running.stdout.append(chunk.decode(errors="replace"))
                if "id" not in agent_session:
                    match = AGENT_SESSION_ID.search("".join(running.stdout))
                    if match:
                        agent_session["id"] = match.group(1)
                        if job.session_code:
                            self.sessions.set_agent_session_id(job.session_code, match.group(1))

        async def read_stderr() -> None:
            while True:
                chunk = await process.stderr.read(4096)
                if not chunk:
                    return
                running.stderr.append(chunk.decode(errors="replace"))

        timed_out = False
        try:
            await asyncio.wait_for(
                asyncio.gather(read_stdout(), read_stderr(), process.wait()), timeout=self.task_timeout
            )
        except asyncio.TimeoutError:
            timed_out = True
            logger.warning(f"Job {job.id} exceeded {format_duration(self.task_timeout)}, terminating")
            await self._terminate(process)
        except asyncio.CancelledError:
            _signal_group(process, signal.SIGKILL)
            raise
        finally:
            self.tracker.untrack(process.pid)

        output = "".join(running.stdout) or "".join(running.stderr) or NO_OUTPUT
        return RunOutcome(
            exit_code=process.returncode,
            output=bound_output(strip_ansi(output)),
            timed_out=timed_out,
            agent_session_id=agent_session.get("id"),
        )

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        """SIGTERM the process group, SIGKILL it after the grace period."""
        _signal_group(process, signal.SIGTERM)
        try:
            await asyncio.wait_for(process.wait(), timeout=self.kill_grace)
        except asyncio.TimeoutError:
            _signal_group(process, signal.SIGKILL)
            await process.wait()

    def _terminate_later(self, process: asyncio.subprocess.Process) -> None:
        _signal_group(process, signal.SIGTERM)
        loop = asyncio.get_running_loop()
        loop.call_later(self.kill_grace, _kill_if_running, process)

    def _failure(self, job: Job, outcome: RunOutcome) -> ExecutionFailure | None:
        if outcome.timed_out:
            return ExecutionFailure(f"Task timed out after {format_duration(self.task_timeout)}")
        if outcome.spawn_error is not None:
            return ExecutionFailure(outcome.spawn_error)
        if outcome.exit_code != 0:
            return ExecutionFailure(f"Exit code {outcome.exit_code}: {outcome.output[:MAX_ERROR_OUTPUT_CHARS]}")
        return None

    async def _finish(self, job: Job, outcome: RunOutcome) -> None:
        failure = self._failure(job, outcome)
        if failure is None:
            message = outcome.output
            finished = self.queue.mark_completed(job.id, outcome.output)
            if finished is not None and job.session_code:
                self.sessions.update_activity(job.session_code)
        else:
            if outcome.timed_out:
                message = f"Task timed out: {job.task[:50]}..."
            elif outcome.spawn_error is not None:
                message = f"Error: {outcome.spawn_error}"
            else:
                message = outcome.output
            finished = self.queue.mark_failed(job.id, str(failure))

        if finished is None:
            # Cancelled or otherwise moved while running.
            logger.info(f"Job {job.id} left active before it finished; result discarded")
            return

        if finished.status == COMPLETED:
            logger.info(f"Finished job {job.id}")
            self.events.emit(
                EVENT_JOB_COMPLETED, f"Completed job {job.id}", job_id=job.id, session_code=job.session_code
            )
        else:
            logger.warning(f"Job {job.id} failed: {str(finished.error)[:200]}")
            self.events.emit(
                EVENT_JOB_FAILED,
                f"Job {job.id} failed",
                job_id=job.id,
                session_code=job.session_code,
                metadata={"error": finished.error},
            )

        if self.router is not None:
            try:
                await self.router.deliver(finished, message)
            except Exception as e:
                logger.error(f"Result delivery for job {job.id} raised: {e}")


def _signal_group(process: asyncio.subprocess.Process, sig: int) -> None:
    try:
        os.killpg(process.pid, sig)
    except ProcessLookupError:
        pass
    except PermissionError:
        try:
            process.send_signal(sig)
        except ProcessLookupError:
            pass


def _kill_if_running(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        _signal_group(process, signal.SIGKILL)
