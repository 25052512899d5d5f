"""Composition root: one object owning every Courier component.

``CourierContext`` is built once per process (daemon, CLI command, or
test) and handed to whatever needs the registry, queue, or session
store. Only ``get_default_context`` keeps a process-wide instance, and
only the CLI and daemon call it.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from courier.builtins import register_builtin_commands
from courier.callback import CallbackClient, RetryPolicy
from courier.channels import ChannelRouter
from courier.config import CourierConfig
from courier.events import EVENT_JOB_QUEUED, EVENT_SESSION_CREATED, EventCollector
from courier.executor import AgentDispatcher, Executor
from courier.job_queue import Job, JobQueue
from courier.parser import help_text, parse_message
from courier.registry import CommandRegistry
from courier.schema import SOURCE_CHAT, SOURCE_WEBHOOK, CommandDefinition, Priority
from courier.sessions import KIND_CHAT, KIND_WEBHOOK, Session, SessionStore
from courier.worker import WorkerPool

logger = logging.getLogger(__name__)

TASK_PREVIEW_CHARS = 50
SESSION_PREVIEW_CHARS = 40


def _preview(text: str, limit: int = TASK_PREVIEW_CHARS) -> str:
    return text[:limit] + ("..." if len(text) > limit else "")


def _age(timestamp: str | None) -> str:
    if not timestamp:
        return "?"
    try:
        created = datetime.fromisoformat(timestamp)
    except ValueError:
        return "?"
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    minutes = int((datetime.now(timezone.utc) - created).total_seconds() // 60)
    if minutes < 60:
        return f"{minutes}m"
    if minutes < 24 * 60:
        return f"{minutes // 60}h"
    return f"{minutes // (24 * 60)}d"


def build_registry(project_path: str | Path | None = None, commands_path: str | None = None) -> CommandRegistry:
    """Built-in commands plus any declared under ``.courier/commands``."""
    registry = register_builtin_commands(CommandRegistry())
    for base in (project_path, commands_path):
        if base:
            registry.discover(base)
    return registry


class QueueDispatcher(AgentDispatcher):
    """Live side effects for the executor: sessions and queued jobs."""

    def __init__(self, context: "CourierContext"):
        self.context = context

    def on_session_create(self, definition: CommandDefinition, args: list[str], context: dict) -> str:
        source = context.get("source", SOURCE_CHAT)
        kind = KIND_WEBHOOK if source == SOURCE_WEBHOOK else KIND_CHAT
        session = self.context.create_session(
            kind,
            " ".join(args) or definition.name,
            channel_id=context.get("channel_id"),
            source=source,
            code_length=definition.session.code_length,
        )
        return session.code

    def on_session_resume(self, code: str, message: str | None, context: dict) -> str | None:
        session = self.context.sessions.get_by_code(code)
        if session is None:
            return None
        job_id = self.context.enqueue_task(
            message or "continue",
            priority=Priority.CRITICAL,
            source=context.get("source", SOURCE_CHAT),
            channel_id=context.get("channel_id") or session.channel_id,
            session_code=session.code,
        )
        self.context.sessions.update_activity(session.code)
        return job_id

    def dispatch_agent(self, definition, prompt: str, context: dict, session_code: str | None) -> str:
        return self.context.enqueue_task(
            prompt,
            priority=definition.priority,
            source=context.get("source", SOURCE_CHAT),
            channel_id=context.get("channel_id"),
            session_code=session_code,
            metadata={"command": definition.name},
        )

    def dispatch_skill(self, definition, args: list[str], context: dict, session_code: str | None) -> str:
        return self.context.enqueue_task(
            f"Use the /{definition.handler.skill} skill: {' '.join(args)}",
            priority=definition.priority,
            source=context.get("source", SOURCE_CHAT),
            channel_id=context.get("channel_id"),
            session_code=session_code,
            metadata={"command": definition.name, "skill": definition.handler.skill},
        )


class CourierContext:
    """Owns config, registry, queue, sessions, worker, and executor."""

    def __init__(
        self,
        config: CourierConfig | None = None,
        *,
        dry_run: bool = False,
        project_path: str | Path | None = None,
        registry: CommandRegistry | None = None,
        queue: JobQueue | None = None,
        sessions: SessionStore | None = None,
        events: EventCollector | None = None,
        callback_client: CallbackClient | None = None,
    ):
        self.config = config or CourierConfig()
        self.events = events or EventCollector()
        self.registry = registry or build_registry(project_path, self.config.commands_path)
        self.queue = queue or JobQueue(self.config.queue.root)
        self.sessions = sessions or SessionStore(
            self.config.sessions.path, max_age_seconds=self.config.sessions.max_age_seconds
        )
        self.callback_client = callback_client or CallbackClient(
            agent_id=self.config.webhook.agent_id,
            secret=self.config.webhook.secret,
            api_url=self.config.callback.api_url,
            policy=RetryPolicy(max_retries=self.config.callback.max_retries),
            timeout=self.config.callback.timeout_seconds,
        )
        self.router = ChannelRouter(self.callback_client, self.events)
        self.worker = WorkerPool.from_config(self.config, self.queue, self.sessions, self.router, self.events)
        self.executor = Executor(dry_run=dry_run, listener=QueueDispatcher(self))

        self.executor.register_handler("handle_help", self.handle_help)
        self.executor.register_handler("handle_status", self.handle_status)
        self.executor.register_handler("handle_sessions", self.handle_sessions)
        self.executor.register_handler("handle_cancel", self.handle_cancel)

    @property
    def dry_run(self) -> bool:
        return self.executor.dry_run

    # --- Queue and session operations ---

    def enqueue_task(
        self,
        task: str,
        *,
        priority: int = Priority.NORMAL,
        source: str = SOURCE_CHAT,
        channel_id: str | None = None,
        session_code: str | None = None,
        **fields: Any,
    ) -> str:
        job = Job(
            id="",
            task=task,
            channel_id=channel_id,
            priority=int(priority),
            source=source,
            session_code=session_code,
            **fields,
        )
        job_id = self.queue.enqueue(job)
        self.events.emit(
            EVENT_JOB_QUEUED,
            f"Queued job {job_id}",
            job_id=job_id,
            session_code=session_code,
            metadata={"priority": int(priority), "source": source},
        )
        return job_id

    def create_session(self, kind: str, task: str, **kwargs) -> Session:
        # A code equal to a command name could never be resumed.
        kwargs.setdefault("reserved", self.registry.names())
        session = self.sessions.create_session(kind, task, **kwargs)
        self.events.emit(
            EVENT_SESSION_CREATED,
            f"Created {kind} session {session.code}",
            session_code=session.code,
            metadata={"kind": kind},
        )
        return session

    async def cancel(self, code: str) -> Job | None:
        """Cancel the pending or active job for a session and end the session."""
        job = await self.worker.cancel(code)
        if job is not None:
            self.sessions.end_session(code)
        return job

    # --- Inbound messages ---

    async def handle_message(self, text: str, channel_id: str | None = None, source: str = SOURCE_CHAT) -> dict:
        """Parse and execute one inbound chat message."""
        parsed = parse_message(text, self.registry)
        return await self.executor.execute(parsed, {"channel_id": channel_id, "source": source})

    def reply_for(self, result: dict) -> str | None:
        """Text to send back to the chat for an executor result."""
        replies = []
        for action in result["actions"]:
            kind = action["type"]
            if kind == "error":
                reply = action["error"]
                if action.get("usage"):
                    reply += f"\nUsage: {action['usage']}"
                elif not action.get("live"):
                    reply += "\n\nUse /help to see available commands."
                replies.append(reply)
            elif kind == "handler_result" and action["result"] is not None:
                replies.append(str(action["result"]))
            elif kind == "queued":
                replies.append(self._queued_reply(action))

        if result["dry_run"] or replies:
            return "\n".join(replies) or None

        parsed = result["parsed"]
        if parsed.type == "session_resume":
            return f"Session not found: /{parsed.code}\n\nUse /sessions to see active sessions."
        return None

    def _queued_reply(self, action: dict) -> str:
        code = action.get("session_code")
        position = self.queue.queue_depth()
        if self.worker.is_processing and self.worker.current_session_code != code:
            reply = self.busy_message(position)
        elif self.worker.is_processing:
            reply = "Queued follow-up"
        else:
            reply = "Starting..."
        if code:
            reply += f"\nSession: /{code}"
        return reply

    # --- Chat status messages ---

    def busy_message(self, queue_position: int | None = None) -> str:
        current = self.worker.current_task
        summary = _preview(current) if current else "a task"
        message = f'Working on: "{summary}"'
        if queue_position:
            message += f"\nYour message is queued (#{queue_position}) and will run next."
        else:
            message += "\nYour message will be prioritized once complete."
        return message

    def status_message(self) -> str:
        processing = self.worker.is_processing
        lines = [f"Bot Status: {'BUSY' if processing else 'IDLE'}"]
        current = self.worker.current_task
        if processing and current:
            lines.append(f"Current: {_preview(current)}")
            running = len(self.worker.running_jobs)
            if running > 1:
                lines.append(f"Running: {running}/{self.worker.max_concurrent}")
            if self.worker.current_session_code:
                lines.append(f"Session: {self.worker.current_session_code}")
        lines.append(f"Queue: {self.queue.queue_depth()} pending")
        return "\n".join(lines)

    # --- Internal command handlers ---

    def handle_help(self, args: list[str], context: dict) -> str:
        return help_text(self.registry, args[0] if args else None)

    def handle_status(self, args: list[str], context: dict) -> str:
        return self.status_message()

    def handle_sessions(self, args: list[str], context: dict) -> str:
        kind = KIND_WEBHOOK if context.get("source") == SOURCE_WEBHOOK else KIND_CHAT
        sessions = self.sessions.list_active(kind)
        if not sessions:
            return "No active sessions.\n\nUse /agent <task> to start a new task."
        lines = ["Active Sessions:", ""]
        for session in sessions:
            lines.append(f"/{session.code} - {_preview(session.task, SESSION_PREVIEW_CHARS)}")
            lines.append(f"  Created: {_age(session.created_at)} ago")
            lines.append("")
        lines.append("Resume with: /<code> [message]")
        return "\n".join(lines)

    async def handle_cancel(self, args: list[str], context: dict) -> str:
        code = args[0].lower()
        job = await self.cancel(code)
        if job is None:
            return f"No pending or active job for /{code}"
        return f"Cancelled /{code}: {_preview(job.task)}"

    def snapshot(self) -> dict:
        """Counts used by /health and the CLI."""
        return {
            "processing": self.worker.is_processing,
            "queueDepth": self.queue.queue_depth(),
            "active": self.queue.active_count(),
            "sessions": len(self.sessions.list_active()),
        }


_default_context: CourierContext | None = None


def get_default_context(config: CourierConfig | None = None, **kwargs) -> CourierContext:
    """Process-wide context for the CLI and daemon entry points."""
    global _default_context
    if _default_context is None:
        _default_context = CourierContext(config or CourierConfig.load(), **kwargs)
    return _default_context


def reset_default_context() -> None:
    global _default_context
    _default_context = None
