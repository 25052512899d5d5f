"""HTTP gateway: signed task lifecycle events plus the legacy webhook.

Routes::

    GET    /health
    POST   /webhook              signed lifecycle event, or legacy {task}
    POST   /webhook/{code}       continue a webhook session
    GET    /webhook/{code}       session snapshot
    DELETE /webhook/{code}       cancel the session's job

A request carrying ``X-Signature`` is always verified before anything
else happens. Requests without one use the legacy contract, which can be
disabled with ``webhook.allow_unsigned``.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from aiohttp import web

from courier.errors import AuthError, CourierError, NotFoundError, ValidationError
from courier.job_queue import ACTIVE, COMPLETED, FAILED, PENDING
from courier.schema import SOURCE_WEBHOOK, Priority
from courier.sessions import KIND_WEBHOOK
from courier.signing import HEADER_SIGNATURE, verify

if TYPE_CHECKING:
    from courier.context import CourierContext

logger = logging.getLogger(__name__)

EVENT_TASK_CREATED = "task.created"
EVENT_TASK_CLARIFICATION = "task.clarification"
EVENT_TASK_CANCELLED = "task.cancelled"
LIFECYCLE_EVENTS = (EVENT_TASK_CREATED, EVENT_TASK_CLARIFICATION, EVENT_TASK_CANCELLED)

MAX_BODY_BYTES = 1024 * 1024


def normalize_event(body: dict) -> dict:
    """Fold a flat ``{event, task_id, ...}`` body into ``{event, task: {...}}``."""
    if isinstance(body.get("task"), dict):
        return body
    task = {k: v for k, v in body.items() if k not in ("event", "task_id")}
    if "task_id" in body:
        task["id"] = body["task_id"]
    return {"event": body.get("event"), "task": task}


def build_task_text(task: dict) -> str:
    """Prompt text for an externally created task."""
    for key in ("prompt", "description", "title"):
        value = task.get(key)
        if isinstance(value, str) and value.strip():
            return value
    task_type = task.get("task_type") or "task"
    input_data = task.get("input_data")
    if input_data:
        return f"{task_type}: {json.dumps(input_data, sort_keys=True)}"
    return str(task_type)


def check_task_fields(task: dict) -> None:
    """Reject task fields of the wrong type before they reach the queue."""
    errors = []
    messages = task.get("messages")
    if messages is not None and not (
        isinstance(messages, list) and all(isinstance(m, dict) for m in messages)
    ):
        errors.append("task.messages must be a list of objects")
    if task.get("input_data") is not None and not isinstance(task["input_data"], dict):
        errors.append("task.input_data must be an object")
    for key in ("callback_url", "session_code"):
        if task.get(key) is not None and not isinstance(task[key], str):
            errors.append(f"task.{key} must be a string")
    if errors:
        raise ValidationError("; ".join(errors), errors)


def merge_messages(existing: list[dict], incoming: list[dict]) -> list[dict]:
    """Messages from ``incoming`` that are not already in the transcript.

    Senders may resend the whole transcript or only the new turns.
    """
    def key(m: dict) -> tuple:
        return (m.get("role"), m.get("content"))

    if len(incoming) >= len(existing) and [key(m) for m in incoming[: len(existing)]] == [
        key(m) for m in existing
    ]:
        new = incoming[len(existing):]
    else:
        new = incoming
    now = datetime.now(timezone.utc).isoformat()
    return [{**m, "timestamp": m.get("timestamp") or now} for m in new]


@web.middleware
async def error_middleware(request: web.Request, handler):
    """Map the error taxonomy onto HTTP status codes."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except CourierError as e:
        if e.status_code >= 500:
            logger.exception(f"{request.method} {request.path} failed")
            return web.json_response({"error": "Internal server error"}, status=500)
        body = {"error": str(e)}
        if isinstance(e, ValidationError) and e.errors:
            body["errors"] = e.errors
        logger.info(f"{request.method} {request.path} -> {e.status_code}: {e}")
        return web.json_response(body, status=e.status_code)
    except Exception:
        logger.exception(f"{request.method} {request.path} failed")
        return web.json_response({"error": "Internal server error"}, status=500)


@web.middleware
async def debug_middleware(request: web.Request, handler):
    """Log request and response bodies (``--debug``)."""
    if request.can_read_body:
        raw = await request.read()
        logger.debug(f"--> {request.method} {request.path} {raw.decode(errors='replace')}")
    else:
        logger.debug(f"--> {request.method} {request.path}")
    response = await handler(request)
    text = getattr(response, "text", None)
    logger.debug(f"<-- {response.status} {text or ''}")
    return response


class WebhookGateway:
    """aiohttp application translating HTTP requests into queue operations."""

    def __init__(
        self,
        context: CourierContext,
        *,
        secret: str | None = None,
        allow_unsigned: bool | None = None,
        debug: bool = False,
    ):
        self.context = context
        webhook_config = context.config.webhook
        self.secret = webhook_config.secret if secret is None else secret
        self.allow_unsigned = webhook_config.allow_unsigned if allow_unsigned is None else allow_unsigned
        self.debug = debug
        self._runner: web.AppRunner | None = None

    def create_app(self) -> web.Application:
        middlewares = [error_middleware]
        if self.debug:
            middlewares.insert(0, debug_middleware)
        app = web.Application(middlewares=middlewares, client_max_size=MAX_BODY_BYTES)

        app.router.add_get("/health", self.handle_health)
        app.router.add_post("/webhook", self.handle_webhook)
        app.router.add_post("/webhook/{code}", self.handle_continue)
        app.router.add_get("/webhook/{code}", self.handle_snapshot)
        app.router.add_delete("/webhook/{code}", self.handle_cancel)
        return app

    async def start(self, host: str, port: int) -> None:
        """Bind and serve; a bind failure propagates to the caller."""
        self._runner = web.AppRunner(self.create_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, host, port)
        await site.start()
        logger.info(f"Webhook server listening on {host}:{port}")

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            logger.info("Webhook server stopped")

    # --- Request helpers ---

    async def _read_body(self, request: web.Request) -> dict:
        raw = await request.read()
        if not raw.strip():
            return {}
        try:
            body = json.loads(raw)
        except ValueError as e:
            raise ValidationError(f"Invalid JSON body: {e}") from e
        if not isinstance(body, dict):
            raise ValidationError("Request body must be a JSON object")
        return body

    def _authenticate(self, request: web.Request, body: dict) -> bool:
        """True for a verified signed request, False for an allowed unsigned one."""
        if HEADER_SIGNATURE in request.headers:
            if not self.secret:
                raise AuthError("Signed requests are not configured (no shared secret)")
            result = verify(request.headers, body, self.secret)
            if not result.valid:
                raise AuthError(result.error)
            return True
        if not self.allow_unsigned:
            raise AuthError("Missing required headers")
        return False

    def _require_session(self, code: str):
        session = self.context.sessions.get_by_code(code)
        if session is None:
            raise NotFoundError("Session not found or expired")
        return session

    # --- Handlers ---

    async def handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "ok", **self.context.snapshot()})

    async def handle_webhook(self, request: web.Request) -> web.Response:
        body = await self._read_body(request)
        if self._authenticate(request, body):
            return await self._handle_lifecycle(normalize_event(body))
        return self._handle_legacy(body)

    def _handle_legacy(self, body: dict) -> web.Response:
        task = body.get("task")
        if not isinstance(task, str) or not task.strip():
            raise ValidationError("task is required")
        if body.get("metadata") is not None and not isinstance(body["metadata"], dict):
            raise ValidationError("metadata must be an object")

        session = self.context.create_session(
            KIND_WEBHOOK, task, source=body.get("source") or "external"
        )
        job_id = self.context.enqueue_task(
            task,
            priority=Priority.HIGH,
            source=SOURCE_WEBHOOK,
            session_code=session.code,
            metadata=body.get("metadata"),
        )
        return web.json_response(
            {
                "success": True,
                "jobId": job_id,
                "sessionCode": session.code,
                "queuePosition": self.context.queue.queue_depth(),
            }
        )

    async def _handle_lifecycle(self, body: dict) -> web.Response:
        event = body.get("event")
        task = body.get("task") or {}
        if event not in LIFECYCLE_EVENTS:
            raise ValidationError(f"Unknown event: {event}")
        logger.info(f"Received {event} for task {task.get('id')}")

        if event == EVENT_TASK_CREATED:
            return self._task_created(task)
        if event == EVENT_TASK_CLARIFICATION:
            return self._task_clarification(task)
        return await self._task_cancelled(task)

    def _task_created(self, task: dict) -> web.Response:
        task_id = task.get("id")
        if not task_id:
            raise ValidationError("task.id is required")
        check_task_fields(task)

        existing = self.context.queue.find_by_external_task_id(task_id)
        if existing is not None and existing.status in (PENDING, ACTIVE):
            logger.info(f"Task {task_id} already queued as job {existing.id}")
            return web.json_response(
                {"success": True, "jobId": existing.id, "sessionCode": existing.session_code, "duplicate": True}
            )

        text = build_task_text(task)
        session = self.context.create_session(
            KIND_WEBHOOK,
            text,
            code=task.get("session_code"),
            source=SOURCE_WEBHOOK,
            external_task_id=task_id,
        )
        job_id = self.context.enqueue_task(
            text,
            priority=Priority.HIGH,
            source=SOURCE_WEBHOOK,
            session_code=session.code,
            external_task_id=task_id,
            input_data=task.get("input_data"),
            messages=merge_messages([], task.get("messages") or []),
            callback_url=task.get("callback_url"),
            metadata={"task_type": task.get("task_type")},
        )
        return web.json_response(
            {
                "success": True,
                "jobId": job_id,
                "sessionCode": session.code,
                "queuePosition": self.context.queue.queue_depth(),
            }
        )

    def _task_clarification(self, task: dict) -> web.Response:
        task_id = task.get("id")
        if not task_id:
            raise ValidationError("task.id is required")
        check_task_fields(task)
        job = self.context.queue.find_by_external_task_id(task_id)
        if job is None:
            raise NotFoundError(f"Task not found: {task_id}")

        new_messages = merge_messages(job.messages or [], task.get("messages") or [])
        if job.status == ACTIVE:
            updated = self.context.queue.requeue_active(job.id, new_messages)
        elif job.status == PENDING:
            updated = self.context.queue.update_pending(job.id, messages=list(job.messages) + new_messages)
        else:
            # Finished: continue the same session with the extended transcript.
            follow_up = self.context.enqueue_task(
                job.task,
                priority=Priority.HIGH,
                source=SOURCE_WEBHOOK,
                session_code=job.session_code,
                external_task_id=task_id,
                input_data=job.input_data,
                messages=list(job.messages) + new_messages,
                callback_url=job.callback_url,
                metadata=job.metadata,
            )
            updated = self.context.queue.get(follow_up)

        if updated is None:
            raise NotFoundError(f"Task {task_id} changed state, retry the clarification")
        if job.session_code:
            self.context.sessions.update_activity(job.session_code)
        return web.json_response(
            {"success": True, "jobId": updated.id, "sessionCode": updated.session_code, "status": updated.status}
        )

    async def _task_cancelled(self, task: dict) -> web.Response:
        code = task.get("session_code")
        if not code and task.get("id"):
            job = self.context.queue.find_by_external_task_id(task["id"])
            code = job.session_code if job is not None else None
        if not code:
            raise NotFoundError("Task not found")

        cancelled = await self.context.cancel(code)
        if cancelled is None:
            raise NotFoundError(f"No pending or active job for session {code}")
        return web.json_response({"success": True, "jobId": cancelled.id, "sessionCode": code})

    async def handle_continue(self, request: web.Request) -> web.Response:
        code = request.match_info["code"]
        body = await self._read_body(request)
        self._authenticate(request, body)

        session = self._require_session(code)
        if session.kind != KIND_WEBHOOK:
            raise ValidationError("Not a webhook session")

        message = body.get("message") or "continue"
        if not isinstance(message, str):
            raise ValidationError("message must be a string")
        job_id = self.context.enqueue_task(
            message,
            priority=Priority.HIGH,
            source=SOURCE_WEBHOOK,
            session_code=code,
            external_task_id=session.external_task_id,
        )
        self.context.sessions.update_activity(code)
        return web.json_response(
            {
                "success": True,
                "jobId": job_id,
                "sessionCode": code,
                "queuePosition": self.context.queue.queue_depth(),
            }
        )

    async def handle_snapshot(self, request: web.Request) -> web.Response:
        code = request.match_info["code"]
        session = self._require_session(code)
        snapshot = {
            "sessionCode": session.code,
            "type": session.kind,
            "task": session.task,
            "status": session.status,
            "createdAt": session.created_at,
            "lastActivity": session.last_activity,
        }
        job = self.context.queue.find_by_session_code(code, statuses=(ACTIVE, PENDING, COMPLETED, FAILED))
        if job is not None:
            snapshot["job"] = {"id": job.id, "status": job.status, "retryCount": job.retry_count}
        return web.json_response(snapshot)

    async def handle_cancel(self, request: web.Request) -> web.Response:
        code = request.match_info["code"]
        body = await self._read_body(request)
        self._authenticate(request, body)

        cancelled = await self.context.cancel(code)
        if cancelled is None:
            raise NotFoundError(f"No pending or active job for session {code}")
        return web.json_response({"success": True, "jobId": cancelled.id, "sessionCode": code})
