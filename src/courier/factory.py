"""Builders that produce schema-valid command definitions."""

from __future__ import annotations

from courier.schema import CommandDefinition

_EMPTY_ARGUMENTS = {"required": [], "optional": [], "hint": ""}


def _build(base: dict, category: str | None) -> CommandDefinition:
    if category:
        base["category"] = category
    return CommandDefinition.from_dict(base)


def agent(
    name: str,
    description: str,
    prompt: str,
    *,
    aliases: list[str] | None = None,
    priority: str = "CRITICAL",
    arguments: dict | None = None,
    source: str = "both",
    category: str = "tasks",
    code_length: int = 2,
) -> CommandDefinition:
    """Agent-prompt command; always creates a session."""
    return _build(
        {
            "name": name,
            "description": description,
            "aliases": aliases or [],
            "priority": priority,
            "source": source,
            "arguments": arguments or dict(_EMPTY_ARGUMENTS),
            "handler": {"type": "agent", "prompt": prompt},
            "session": {"create": True, "codeLength": code_length},
        },
        category,
    )


def skill(
    name: str,
    description: str,
    skill: str,
    *,
    aliases: list[str] | None = None,
    priority: str = "CRITICAL",
    arguments: dict | None = None,
    source: str = "both",
    category: str = "skills",
) -> CommandDefinition:
    """Skill command; creates a 2-char session."""
    return _build(
        {
            "name": name,
            "description": description,
            "aliases": aliases or [],
            "priority": priority,
            "source": source,
            "arguments": arguments or dict(_EMPTY_ARGUMENTS),
            "handler": {"type": "skill", "skill": skill},
            "session": {"create": True, "codeLength": 2},
        },
        category,
    )


def internal(
    name: str,
    description: str,
    function: str,
    *,
    aliases: list[str] | None = None,
    arguments: dict | None = None,
    category: str = "help",
    hidden: bool = False,
) -> CommandDefinition:
    """In-process command; never creates a session."""
    base = {
        "name": name,
        "description": description,
        "aliases": aliases or [],
        "priority": "CRITICAL",
        "source": "both",
        "arguments": arguments or dict(_EMPTY_ARGUMENTS),
        "handler": {"type": "internal", "function": function},
        "session": {"create": False},
        "hidden": hidden,
    }
    return _build(base, category)


def from_dict(raw: dict) -> CommandDefinition:
    """Definition from raw JSON, with defaults applied."""
    return CommandDefinition.from_dict(raw)
