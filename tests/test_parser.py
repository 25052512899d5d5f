"""Tests for courier.arguments and courier.parser."""

import pytest

from courier.arguments import parse_arguments, substitute_arguments, validate_arguments
from courier.parser import Command, NotCommand, SessionResume, UnknownCommand, help_text, parse_message
from courier.schema import ArgumentSpec


class TestParseArguments:
    """Test quote-aware tokenizing."""

    @pytest.mark.parametrize("value", [None, "", "   ", 42])
    def test_empty_input(self, value):
        assert parse_arguments(value) == []

    def test_whitespace_split(self):
        assert parse_arguments("a  b\tc") == ["a", "b", "c"]

    def test_quotes_group_and_are_dropped(self):
        assert parse_arguments('deploy "my app" \'to prod\'') == ["deploy", "my app", "to prod"]

    def test_other_quote_kept_inside_quotes(self):
        assert parse_arguments('"it\'s fine"') == ["it's fine"]

    def test_idempotent_on_joined_output(self):
        first = parse_arguments('one "two three" four')
        assert parse_arguments(" ".join(f'"{a}"' for a in first)) == first


class TestSubstituteArguments:
    """Test prompt template placeholders."""

    def test_all_arguments(self):
        assert substitute_arguments("Do: $ARGUMENTS", ["a", "b"]) == "Do: a b"

    def test_positional(self):
        assert substitute_arguments("$1 then $0", ["x", "y"]) == "y then x"

    def test_missing_positional_is_empty(self):
        assert substitute_arguments("[$0][$3]", ["x"]) == "[x][]"

    def test_default_value(self):
        assert substitute_arguments("branch ${1:-main}", ["repo"]) == "branch main"
        assert substitute_arguments("branch ${1:-main}", ["repo", "dev"]) == "branch dev"

    def test_session_code_from_context(self):
        assert substitute_arguments("code ${SESSION_CODE}", [], {"session_code": "ab"}) == "code ab"
        assert substitute_arguments("code ${SESSION_CODE}", []) == "code "


class TestValidateArguments:
    """Test required-slot checks."""

    def test_reports_missing_slots_in_order(self):
        spec = ArgumentSpec(required=("time", "task"))
        assert validate_arguments([], spec) == [
            "Missing required argument: time",
            "Missing required argument: task",
        ]
        assert validate_arguments(["5pm"], spec) == ["Missing required argument: task"]

    def test_no_argument_spec(self):
        assert validate_arguments(["x"], None) == []


class TestParseMessage:
    """Test message classification."""

    def test_plain_text(self, registry):
        parsed = parse_message("  hello there ", registry)
        assert isinstance(parsed, NotCommand)
        assert parsed.text == "hello there"

    def test_command_with_args(self, registry):
        parsed = parse_message('/research "rust async" runtimes', registry)
        assert isinstance(parsed, Command)
        assert parsed.definition.name == "research"
        assert parsed.args == ["rust async", "runtimes"]
        assert parsed.raw_args == '"rust async" runtimes'

    def test_alias_is_case_insensitive(self, registry):
        parsed = parse_message("/R topic", registry)
        assert isinstance(parsed, Command)
        assert parsed.definition.name == "research"

    def test_registered_short_alias_wins_over_session_code(self, registry):
        parsed = parse_message("/gh open prs", registry)
        assert isinstance(parsed, Command)
        assert parsed.definition.name == "github"

    def test_session_resume(self, registry):
        parsed = parse_message("/k7", registry)
        assert isinstance(parsed, SessionResume)
        assert parsed.code == "k7"
        assert parsed.message is None

    def test_session_resume_with_message(self, registry):
        parsed = parse_message("/x9q use the staging db", registry)
        assert parsed == SessionResume(code="x9q", message="use the staging db")

    def test_unknown_command(self, registry):
        parsed = parse_message("/deploy now", registry)
        assert isinstance(parsed, UnknownCommand)
        assert parsed.name == "deploy"
        assert parsed.raw_args == "now"


class TestHelpText:
    """Test categorised and detailed help."""

    def test_categorised(self, registry):
        text = help_text(registry)
        assert text.startswith("--- TASKS ---")
        assert "/agent <task> (a)" in text
        assert "--- SESSION RESUME ---" in text
        assert text.index("--- TASKS ---") < text.index("--- SKILLS ---") < text.index("--- HELP ---")

    def test_detailed(self, registry):
        text = help_text(registry, "r")
        assert text.startswith("/research <topic>")
        assert "Aliases: /r" in text
        assert "Usage: /research <topic>" in text
        assert "Type: skill" in text

    def test_unknown(self, registry):
        assert help_text(registry, "nope").startswith('Unknown command: "nope"')
