"""Tests for the Slack channel text helpers."""

from courier.slack_channel import chunk_message, strip_mention


class TestSlackHelpers:
    """Mention stripping and message chunking."""

    def test_strip_mention(self):
        assert strip_mention("<@U123> /agent fix it") == "/agent fix it"
        assert strip_mention("  /status ") == "/status"
        assert strip_mention(None) == ""

    def test_chunk_message(self):
        assert chunk_message("") == []
        assert chunk_message("abcdef", limit=4) == ["abcd", "ef"]
