"""Built-in commands shipped with Courier."""

from __future__ import annotations

from courier import factory
from courier.registry import CommandRegistry


def register_builtin_commands(registry: CommandRegistry) -> CommandRegistry:
    """Register the agent, internal, and skill commands every deployment has."""
    # Agent commands
    registry.register(
        factory.agent(
            "agent",
            "Run a new agent task",
            "$ARGUMENTS",
            aliases=["a"],
            arguments={"required": ["task"], "optional": [], "hint": "<task>"},
        )
    )
    registry.register(
        factory.agent(
            "schedule",
            "Schedule a task to run later",
            "Schedule the following task: $ARGUMENTS",
            priority="NORMAL",
            category="scheduling",
            arguments={"required": ["time", "task"], "optional": [], "hint": "at <time> <task>"},
        )
    )

    # Internal commands
    registry.register(
        factory.internal("help", "Show available commands", "handle_help", aliases=["h", "?"])
    )
    registry.register(
        factory.internal("status", "Show worker status and queue", "handle_status", aliases=["s"])
    )
    registry.register(
        factory.internal(
            "sessions", "List active sessions", "handle_sessions", category="sessions"
        )
    )
    registry.register(
        factory.internal(
            "cancel",
            "Cancel the job running under a session code",
            "handle_cancel",
            aliases=["stop"],
            category="sessions",
            arguments={"required": ["code"], "optional": [], "hint": "<code>"},
        )
    )

    # Skill commands
    registry.register(
        factory.skill(
            "research",
            "Research a topic on the web",
            "research",
            aliases=["r"],
            arguments={"required": ["topic"], "optional": [], "hint": "<topic>"},
        )
    )
    registry.register(
        factory.skill(
            "github",
            "GitHub actions",
            "github",
            aliases=["gh"],
            arguments={"required": ["action"], "optional": [], "hint": "<action>"},
        )
    )

    return registry
