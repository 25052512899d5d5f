"""Executor: turn a parsed message into a deterministic list of actions.

Dry-run and live mode walk the same code path and emit the same actions.
Live mode additionally performs the side effects (session creation,
queueing, internal handler calls) and records each one as an extra action
flagged ``"live": True``. Stripping those flagged actions from a live
trace yields the dry-run trace exactly, which is what makes dry-run a
reliable harness for new command definitions.
"""

from __future__ import annotations

import inspect
import logging
from datetime import datetime, timezone
from typing import Any, Callable

from courier.arguments import substitute_arguments, validate_arguments
from courier.events import ExecutionListener
from courier.parser import Command, NotCommand, ParsedMessage, SessionResume, UnknownCommand
from courier.schema import AgentHandler, InternalHandler, SkillHandler

logger = logging.getLogger(__name__)


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def strip_live_actions(actions: list[dict]) -> list[dict]:
    """Drop the side-effect records that only live mode emits."""
    return [a for a in actions if not a.get("live")]


class AgentDispatcher(ExecutionListener):
    """Listener that also performs live dispatch of agent and skill work.

    ``dispatch_agent``/``dispatch_skill`` return a job id (or None).
    """

    def dispatch_agent(self, definition, prompt: str, context: dict, session_code: str | None) -> Any:
        return None

    def dispatch_skill(self, definition, args: list[str], context: dict, session_code: str | None) -> Any:
        return None


class Executor:
    """Dispatches parsed messages by handler kind."""

    def __init__(self, dry_run: bool = False, listener: ExecutionListener | None = None):
        self.dry_run = dry_run
        self.listener = listener or ExecutionListener()
        self._internal_handlers: dict[str, Callable] = {}

    def register_handler(self, name: str, handler: Callable) -> None:
        """Register an internal function; it receives ``(args, context)``."""
        self._internal_handlers[name] = handler

    def has_handler(self, name: str) -> bool:
        return name in self._internal_handlers

    async def execute(self, parsed: ParsedMessage, context: dict | None = None) -> dict:
        context = dict(context or {})
        result = {
            "parsed": parsed,
            "context": context,
            "dry_run": self.dry_run,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "actions": [],
        }
        actions: list[dict] = result["actions"]

        await _maybe_await(self.listener.before_execute(parsed, context))

        if isinstance(parsed, NotCommand):
            actions.append({"type": "ignored", "reason": "Not a command"})
        elif isinstance(parsed, UnknownCommand):
            actions.append({"type": "error", "error": f"Unknown command: /{parsed.name}"})
        elif isinstance(parsed, SessionResume):
            actions.append(
                {"type": "session_resume", "session_code": parsed.code, "message": parsed.message}
            )
            if not self.dry_run:
                job_id = await _maybe_await(
                    self.listener.on_session_resume(parsed.code, parsed.message, context)
                )
                if job_id is not None:
                    actions.append(
                        {"type": "queued", "job_id": job_id, "session_code": parsed.code, "live": True}
                    )
        elif isinstance(parsed, Command):
            await self._execute_command(parsed, context, actions)
        else:
            raise TypeError(f"Unhandled parsed message: {parsed!r}")

        await _maybe_await(self.listener.after_execute(result))
        return result

    async def _execute_command(self, parsed: Command, context: dict, actions: list[dict]) -> None:
        definition = parsed.definition
        handler = definition.handler
        args = list(parsed.args)

        errors = validate_arguments(args, definition.arguments)
        if errors:
            actions.append(
                {
                    "type": "error",
                    "command": definition.name,
                    "error": "; ".join(errors),
                    "usage": f"/{definition.name} {definition.arguments.hint}".rstrip(),
                }
            )
            return

        session = {"create": definition.session.create, "code_length": definition.session.code_length}

        if isinstance(handler, AgentHandler):
            prompt = substitute_arguments(handler.prompt, args, context)
            actions.append(
                {
                    "type": "agent",
                    "command": definition.name,
                    "prompt": prompt,
                    "args": args,
                    "priority": int(definition.priority),
                    "session": session,
                }
            )
            if not self.dry_run:
                code = await self._create_session(definition, args, context)
                dispatch = getattr(self.listener, "dispatch_agent", None)
                job_id = await _maybe_await(dispatch(definition, prompt, context, code)) if dispatch else None
                actions.append({"type": "queued", "job_id": job_id, "session_code": code, "live": True})

        elif isinstance(handler, SkillHandler):
            actions.append(
                {
                    "type": "skill",
                    "command": definition.name,
                    "skill": handler.skill,
                    "args": args,
                    "priority": int(definition.priority),
                    "session": session,
                }
            )
            if not self.dry_run:
                code = await self._create_session(definition, args, context)
                dispatch = getattr(self.listener, "dispatch_skill", None)
                job_id = await _maybe_await(dispatch(definition, args, context, code)) if dispatch else None
                actions.append({"type": "queued", "job_id": job_id, "session_code": code, "live": True})

        elif isinstance(handler, InternalHandler):
            actions.append(
                {
                    "type": "internal",
                    "command": definition.name,
                    "function": handler.function,
                    "args": args,
                }
            )
            if not self.dry_run:
                fn = self._internal_handlers.get(handler.function)
                if fn is None:
                    actions.append(
                        {"type": "error", "error": f"No handler for {handler.function}", "live": True}
                    )
                else:
                    try:
                        value = await _maybe_await(fn(args, context))
                    except Exception as e:
                        logger.exception("Internal handler %s failed", handler.function)
                        actions.append({"type": "error", "error": str(e), "live": True})
                    else:
                        actions.append({"type": "handler_result", "result": value, "live": True})

        else:
            raise TypeError(f"Unhandled handler type: {handler!r}")

    async def _create_session(self, definition, args: list[str], context: dict) -> str | None:
        if not definition.session.create:
            return context.get("session_code")
        code = await _maybe_await(self.listener.on_session_create(definition, args, context))
        return code or context.get("session_code")
