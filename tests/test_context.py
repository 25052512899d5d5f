"""Tests for courier.context: chat flows through the composition root."""

import pytest

from courier.context import CourierContext, get_default_context, reset_default_context
from courier.events import EVENT_JOB_QUEUED, EVENT_SESSION_CREATED
from courier.job_queue import CANCELLED, Job
from courier.worker import _Running


def _queued(result):
    return [a for a in result["actions"] if a["type"] == "queued"]


def _pretend_running(context, task="long running task", session_code="ab"):
    job = Job(id="running-1", task=task, session_code=session_code)
    context.worker._running[job.id] = _Running(job=job)
    return job


class TestHandleMessage:
    """Test live message handling."""

    @pytest.mark.asyncio
    async def test_agent_command_creates_session_and_job(self, context):
        seen = []
        context.events.add_listener(seen.append)

        result = await context.handle_message("/agent fix the build", channel_id="C1")
        queued = _queued(result)[0]
        code = queued["session_code"]

        assert len(code) == 2
        job = context.queue.get(queued["job_id"])
        assert job.task == "fix the build"
        assert job.priority == 100
        assert job.channel_id == "C1"
        assert job.session_code == code
        assert job.metadata == {"command": "agent"}
        assert context.sessions.get_by_code(code).channel_id == "C1"
        assert {e["event_type"] for e in seen} >= {EVENT_JOB_QUEUED, EVENT_SESSION_CREATED}
        assert context.reply_for(result) == f"Starting...\nSession: /{code}"

    @pytest.mark.asyncio
    async def test_skill_command(self, context):
        result = await context.handle_message("/research rust async")
        job = context.queue.get(_queued(result)[0]["job_id"])
        assert job.task == "Use the /research skill: rust async"

    @pytest.mark.asyncio
    async def test_webhook_source_gets_three_char_session_when_configured(self, context):
        from courier import factory

        context.registry.register(factory.agent("triage", "Triage", "$ARGUMENTS", code_length=3))
        result = await context.handle_message("/triage inbox", source="webhook")
        assert len(_queued(result)[0]["session_code"]) == 3

    @pytest.mark.asyncio
    async def test_session_resume(self, context):
        first = await context.handle_message("/agent start", channel_id="C1")
        code = _queued(first)[0]["session_code"]

        result = await context.handle_message(f"/{code} more details")
        job = context.queue.get(_queued(result)[0]["job_id"])
        assert job.task == "more details"
        assert job.priority == 100
        assert job.session_code == code
        assert job.channel_id == "C1"

    @pytest.mark.asyncio
    async def test_session_resume_without_message(self, context):
        first = await context.handle_message("/agent start")
        code = _queued(first)[0]["session_code"]
        result = await context.handle_message(f"/{code}")
        assert context.queue.get(_queued(result)[0]["job_id"]).task == "continue"

    @pytest.mark.asyncio
    async def test_session_not_found(self, context):
        result = await context.handle_message("/k7 hello")
        assert _queued(result) == []
        assert context.reply_for(result) == "Session not found: /k7\n\nUse /sessions to see active sessions."

    @pytest.mark.asyncio
    async def test_unknown_command_reply(self, context):
        result = await context.handle_message("/deploy")
        assert context.reply_for(result) == "Unknown command: /deploy\n\nUse /help to see available commands."

    @pytest.mark.asyncio
    async def test_missing_argument_reply(self, context):
        result = await context.handle_message("/agent")
        assert context.reply_for(result) == "Missing required argument: task\nUsage: /agent <task>"
        assert context.queue.queue_depth() == 0

    @pytest.mark.asyncio
    async def test_plain_text_has_no_reply(self, context):
        result = await context.handle_message("good morning")
        assert context.reply_for(result) is None

    @pytest.mark.asyncio
    async def test_dry_run_has_no_side_effects(self, config, callback_client):
        context = CourierContext(config, dry_run=True, callback_client=callback_client)
        result = await context.handle_message("/agent do things")
        assert result["dry_run"] is True
        assert [a["type"] for a in result["actions"]] == ["agent"]
        assert context.queue.queue_depth() == 0
        assert context.sessions.list_active() == []


class TestInternalCommands:
    """Test /help, /status, /sessions, /cancel."""

    @pytest.mark.asyncio
    async def test_help(self, context):
        reply = context.reply_for(await context.handle_message("/help"))
        assert "--- TASKS ---" in reply
        assert "/research <topic> (r)" in reply

    @pytest.mark.asyncio
    async def test_help_for_command(self, context):
        reply = context.reply_for(await context.handle_message("/h research"))
        assert "Usage: /research <topic>" in reply

    @pytest.mark.asyncio
    async def test_status_idle(self, context):
        reply = context.reply_for(await context.handle_message("/status"))
        assert reply == "Bot Status: IDLE\nQueue: 0 pending"

    @pytest.mark.asyncio
    async def test_sessions_empty(self, context):
        reply = context.reply_for(await context.handle_message("/sessions"))
        assert reply.startswith("No active sessions.")

    @pytest.mark.asyncio
    async def test_sessions_listed(self, context):
        first = await context.handle_message("/agent write the changelog")
        code = _queued(first)[0]["session_code"]
        reply = context.reply_for(await context.handle_message("/sessions"))
        assert f"/{code} - write the changelog" in reply
        assert "Created: 0m ago" in reply

    @pytest.mark.asyncio
    async def test_cancel(self, context):
        first = await context.handle_message("/agent fix build")
        queued = _queued(first)[0]
        reply = context.reply_for(await context.handle_message(f"/cancel {queued['session_code']}"))

        assert reply == f"Cancelled /{queued['session_code']}: fix build"
        assert context.queue.get(queued["job_id"]).status == CANCELLED
        assert context.sessions.get_by_code(queued["session_code"]) is None

    @pytest.mark.asyncio
    async def test_cancel_unknown(self, context):
        reply = context.reply_for(await context.handle_message("/stop zz"))
        assert reply == "No pending or active job for /zz"


class TestBusyMessages:
    """Test chat replies while the worker is busy."""

    def test_busy_message_with_position(self, context):
        _pretend_running(context)
        assert context.busy_message(2) == (
            'Working on: "long running task"\nYour message is queued (#2) and will run next.'
        )

    def test_busy_message_without_position(self, context):
        assert context.busy_message().endswith("Your message will be prioritized once complete.")

    def test_long_task_preview(self, context):
        _pretend_running(context, task="x" * 80)
        assert f'"{"x" * 50}..."' in context.busy_message()

    def test_status_busy(self, context):
        _pretend_running(context)
        assert context.status_message() == (
            "Bot Status: BUSY\nCurrent: long running task\nSession: ab\nQueue: 0 pending"
        )

    @pytest.mark.asyncio
    async def test_queued_reply_while_busy(self, context):
        _pretend_running(context, session_code=None)
        result = await context.handle_message("/agent another thing")
        code = _queued(result)[0]["session_code"]
        reply = context.reply_for(result)
        assert reply.startswith('Working on: "long running task"\nYour message is queued (#1)')
        assert reply.endswith(f"\nSession: /{code}")

    @pytest.mark.asyncio
    async def test_follow_up_for_running_session(self, context):
        first = await context.handle_message("/agent start")
        code = _queued(first)[0]["session_code"]
        _pretend_running(context, session_code=code)

        reply = context.reply_for(await context.handle_message(f"/{code} keep going"))
        assert reply == f"Queued follow-up\nSession: /{code}"


class TestDefaultContext:
    """Test the process-wide accessor."""

    def test_singleton(self, config):
        reset_default_context()
        try:
            first = get_default_context(config)
            assert get_default_context() is first
        finally:
            reset_default_context()

    def test_snapshot(self, context):
        assert context.snapshot() == {"processing": False, "queueDepth": 0, "active": 0, "sessions": 0}
