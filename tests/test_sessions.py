"""Tests for courier.sessions: codes, persistence, expiry."""

from datetime import datetime, timedelta, timezone

import pytest

from courier.errors import SessionCodeExhausted, ValidationError
from courier.sessions import (
    CHARSET,
    KIND_CHAT,
    KIND_WEBHOOK,
    SessionStore,
    generate_code,
    generate_unique_code,
    is_valid_code,
)


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class TestCodes:
    """Test session code generation."""

    def test_thousand_codes_no_repeats_no_collisions(self):
        active: set[str] = set()
        for _ in range(1000):
            code = generate_unique_code(2, active)
            assert len(code) == 2
            assert len(set(code)) == 2
            assert all(c in CHARSET for c in code)
            assert code not in active
            active.add(code)

    def test_three_char_codes(self):
        code = generate_code(3)
        assert is_valid_code(code, 3)

    def test_is_valid_code(self):
        assert is_valid_code("ab", 2)
        assert not is_valid_code("aa", 2)
        assert not is_valid_code("AB", 2)
        assert not is_valid_code("abc", 2)
        assert not is_valid_code(None, 2)

    def test_exhaustion_raises(self):
        taken = {a + b for a in CHARSET for b in CHARSET if a != b}
        with pytest.raises(SessionCodeExhausted):
            generate_unique_code(2, taken, max_attempts=5)


class TestSessionStore:
    """Test session lifecycle."""

    def test_create_chat_and_webhook_lengths(self, sessions):
        chat = sessions.create_session(KIND_CHAT, "fix build", channel_id="C1")
        hook = sessions.create_session(KIND_WEBHOOK, "external task")
        assert len(chat.code) == 2
        assert len(hook.code) == 3
        assert chat.channel_id == "C1"
        assert chat.session_id.startswith("session-")

    def test_explicit_code_length(self, sessions):
        assert len(sessions.create_session(KIND_CHAT, "x", code_length=3).code) == 3

    def test_explicit_code(self, sessions):
        session = sessions.create_session(KIND_WEBHOOK, "x", code="AB1")
        assert session.code == "ab1"
        with pytest.raises(ValidationError, match="already active"):
            sessions.create_session(KIND_WEBHOOK, "y", code="ab1")

    def test_invalid_explicit_code(self, sessions):
        with pytest.raises(ValidationError):
            sessions.create_session(KIND_WEBHOOK, "x", code="toolong")

    @pytest.mark.parametrize("code", ["aaa", "aba", "a1", "ab-", 123])
    def test_explicit_code_must_fit_webhook_kind(self, sessions, code):
        with pytest.raises(ValidationError, match="Invalid session code"):
            sessions.create_session(KIND_WEBHOOK, "x", code=code)
        assert sessions.list_active() == []

    def test_explicit_chat_code_with_repeat_rejected(self, sessions):
        with pytest.raises(ValidationError):
            sessions.create_session(KIND_CHAT, "x", code="aa")
        assert sessions.create_session(KIND_CHAT, "x", code="a1").code == "a1"

    def test_explicit_code_cannot_shadow_command(self, sessions):
        with pytest.raises(ValidationError, match="conflicts with a command"):
            sessions.create_session(KIND_CHAT, "x", code="gh", reserved={"gh", "help"})

    def test_persists_across_instances(self, sessions):
        code = sessions.create_session(KIND_CHAT, "x").code
        reopened = SessionStore(sessions.path)
        assert reopened.get_by_code(code).task == "x"

    def test_update_activity_and_agent_session(self, sessions):
        code = sessions.create_session(KIND_CHAT, "x").code
        sessions.set_agent_session_id(code, "abc-123")
        assert sessions.get_by_code(code).agent_session_id == "abc-123"
        assert sessions.update_activity("zz") is None

    def test_end_session_archives(self, sessions):
        code = sessions.create_session(KIND_CHAT, "x").code
        ended = sessions.end_session(code)
        assert ended.status == "ended"
        assert sessions.get_by_code(code) is None
        assert [s.code for s in sessions.archived()] == [code]

    def test_list_active_by_kind(self, sessions):
        sessions.create_session(KIND_CHAT, "a")
        sessions.create_session(KIND_WEBHOOK, "b")
        assert len(sessions.list_active()) == 2
        assert [s.task for s in sessions.list_active(KIND_WEBHOOK)] == ["b"]

    def test_corrupt_file_starts_empty(self, sessions):
        sessions.path.write_text("{broken")
        assert sessions.list_active() == []
        sessions.create_session(KIND_CHAT, "x")
        assert len(sessions.list_active()) == 1


class TestExpiry:
    """Test lazy and swept expiry."""

    def test_lazy_expiry_on_lookup(self, tmp_path):
        clock = FakeClock()
        store = SessionStore(tmp_path / "s.json", max_age_seconds=60, clock=clock)
        code = store.create_session(KIND_CHAT, "x").code

        clock.advance(seconds=30)
        assert store.get_by_code(code) is not None

        clock.advance(seconds=61)
        assert store.get_by_code(code) is None
        assert store.archived()[0].status == "expired"

    def test_activity_extends_lifetime(self, tmp_path):
        clock = FakeClock()
        store = SessionStore(tmp_path / "s.json", max_age_seconds=60, clock=clock)
        code = store.create_session(KIND_CHAT, "x").code
        clock.advance(seconds=50)
        store.update_activity(code)
        clock.advance(seconds=50)
        assert store.get_by_code(code) is not None

    def test_expire_all(self, tmp_path):
        clock = FakeClock()
        store = SessionStore(tmp_path / "s.json", max_age_seconds=60, clock=clock)
        store.create_session(KIND_CHAT, "old")
        clock.advance(seconds=120)
        store.create_session(KIND_CHAT, "new")

        assert store.expire_all() == 1
        assert [s.task for s in store.list_active()] == ["new"]
