"""Tests for courier.executor and courier.dry_run."""

import pytest

from courier.dry_run import format_result
from courier.executor import AgentDispatcher, Executor, strip_live_actions
from courier.parser import parse_message


class RecordingDispatcher(AgentDispatcher):
    """Listener that records every hook call."""

    def __init__(self, resume_job="job-resume"):
        self.calls = []
        self.resume_job = resume_job

    def before_execute(self, parsed, context):
        self.calls.append(("before", parsed.type))

    async def after_execute(self, result):
        self.calls.append(("after", len(result["actions"])))

    def on_session_create(self, definition, args, context):
        self.calls.append(("session_create", definition.name))
        return "xy"

    async def on_session_resume(self, code, message, context):
        self.calls.append(("session_resume", code, message))
        return self.resume_job

    def dispatch_agent(self, definition, prompt, context, session_code):
        self.calls.append(("agent", prompt, session_code))
        return "job-agent"

    def dispatch_skill(self, definition, args, context, session_code):
        self.calls.append(("skill", args, session_code))
        return "job-skill"


async def _both_modes(registry, text, context=None):
    parsed = parse_message(text, registry)
    dry = await Executor(dry_run=True, listener=RecordingDispatcher()).execute(parsed, context)
    listener = RecordingDispatcher()
    live_executor = Executor(dry_run=False, listener=listener)
    live_executor.register_handler("handle_help", lambda args, ctx: "help text")
    live = await live_executor.execute(parsed, context)
    return dry, live, listener


class TestDryRunLiveSymmetry:
    """Stripping live actions from a live trace yields the dry-run trace."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "text",
        [
            "just chatting",
            "/nope",
            "/agent fix the build",
            "/research rust async",
            "/schedule",
            "/help",
            "/k7 keep going",
        ],
    )
    async def test_symmetry(self, registry, text):
        dry, live, _ = await _both_modes(registry, text, {"source": "chat"})
        assert strip_live_actions(live["actions"]) == dry["actions"]
        assert dry["dry_run"] is True
        assert live["dry_run"] is False


class TestExecutor:
    """Test dispatch by handler kind."""

    @pytest.mark.asyncio
    async def test_not_command_ignored(self, registry):
        result = await Executor(dry_run=True).execute(parse_message("hello", registry))
        assert result["actions"] == [{"type": "ignored", "reason": "Not a command"}]

    @pytest.mark.asyncio
    async def test_unknown_command(self, registry):
        result = await Executor(dry_run=True).execute(parse_message("/deploy", registry))
        assert result["actions"] == [{"type": "error", "error": "Unknown command: /deploy"}]

    @pytest.mark.asyncio
    async def test_agent_live_creates_session_and_dispatches(self, registry):
        dry, live, listener = await _both_modes(registry, "/agent fix the build")

        assert dry["actions"][0]["prompt"] == "fix the build"
        assert dry["actions"][0]["priority"] == 100
        assert dry["actions"][0]["session"] == {"create": True, "code_length": 2}
        assert live["actions"][-1] == {"type": "queued", "job_id": "job-agent", "session_code": "xy", "live": True}
        assert ("agent", "fix the build", "xy") in listener.calls

    @pytest.mark.asyncio
    async def test_skill_dispatch(self, registry):
        _, live, listener = await _both_modes(registry, "/research rust")
        assert live["actions"][0]["skill"] == "research"
        assert ("skill", ["rust"], "xy") in listener.calls

    @pytest.mark.asyncio
    async def test_validation_error_stops_dispatch(self, registry):
        _, live, listener = await _both_modes(registry, "/schedule")
        assert live["actions"] == [
            {
                "type": "error",
                "command": "schedule",
                "error": "Missing required argument: time; Missing required argument: task",
                "usage": "/schedule at <time> <task>",
            }
        ]
        assert not any(call[0] in ("agent", "session_create") for call in listener.calls)

    @pytest.mark.asyncio
    async def test_session_resume_live(self, registry):
        _, live, listener = await _both_modes(registry, "/k7 keep going")
        assert live["actions"][1] == {"type": "queued", "job_id": "job-resume", "session_code": "k7", "live": True}
        assert ("session_resume", "k7", "keep going") in listener.calls

    @pytest.mark.asyncio
    async def test_session_resume_not_found(self, registry):
        parsed = parse_message("/k7", registry)
        result = await Executor(listener=RecordingDispatcher(resume_job=None)).execute(parsed)
        assert result["actions"] == [{"type": "session_resume", "session_code": "k7", "message": None}]

    @pytest.mark.asyncio
    async def test_internal_handler_result(self, registry):
        _, live, _ = await _both_modes(registry, "/help")
        assert live["actions"][-1] == {"type": "handler_result", "result": "help text", "live": True}

    @pytest.mark.asyncio
    async def test_internal_handler_missing(self, registry):
        result = await Executor().execute(parse_message("/status", registry))
        assert result["actions"][-1] == {"type": "error", "error": "No handler for handle_status", "live": True}

    @pytest.mark.asyncio
    async def test_internal_handler_error_is_recorded(self, registry):
        executor = Executor()

        async def broken(args, context):
            raise RuntimeError("boom")

        executor.register_handler("handle_status", broken)
        result = await executor.execute(parse_message("/status", registry))
        assert result["actions"][-1] == {"type": "error", "error": "boom", "live": True}

    @pytest.mark.asyncio
    async def test_listener_hooks_called_in_order(self, registry):
        _, _, listener = await _both_modes(registry, "/agent go")
        assert listener.calls[0] == ("before", "command")
        assert listener.calls[-1] == ("after", 2)

    @pytest.mark.asyncio
    async def test_context_session_code_reaches_prompt(self, registry):
        from courier import factory
        from courier.registry import CommandRegistry

        custom = CommandRegistry().register(factory.agent("note", "Note", "[${SESSION_CODE}] $ARGUMENTS"))
        result = await Executor(dry_run=True).execute(
            parse_message("/note hi", custom), {"session_code": "ab"}
        )
        assert result["actions"][0]["prompt"] == "[ab] hi"


class TestFormatResult:
    """Test dry-run rendering."""

    @pytest.mark.asyncio
    async def test_renders_agent_trace(self, registry):
        result = await Executor(dry_run=True).execute(parse_message("/a fix it", registry))
        text = format_result(result)
        assert "DRY RUN:" in text
        assert "Command: /agent" in text
        assert 'Prompt: "fix it"' in text
        assert "Session: create=True, code_length=2" in text
