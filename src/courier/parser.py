"""Classify raw inbound text into a command, a session resume, or plain text."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Union

from courier.arguments import parse_arguments
from courier.registry import CommandRegistry
from courier.schema import CommandDefinition

COMMAND_SIGIL = "/"
SESSION_CODE_SHAPE = re.compile(r"^[a-z0-9]{2,3}$")

CATEGORY_ORDER = ["tasks", "sessions", "scheduling", "skills", "help"]


@dataclass(frozen=True)
class NotCommand:
    text: str
    type: str = field(default="not_command", init=False)


@dataclass(frozen=True)
class Command:
    definition: CommandDefinition
    args: list[str]
    raw_args: str
    type: str = field(default="command", init=False)


@dataclass(frozen=True)
class UnknownCommand:
    name: str
    raw_args: str
    type: str = field(default="unknown_command", init=False)


@dataclass(frozen=True)
class SessionResume:
    code: str
    message: str | None
    type: str = field(default="session_resume", init=False)


ParsedMessage = Union[NotCommand, Command, UnknownCommand, SessionResume]


def parse_message(text: str, registry: CommandRegistry) -> ParsedMessage:
    """Parse one inbound message against the registry."""
    trimmed = (text or "").strip()
    if not trimmed.startswith(COMMAND_SIGIL):
        return NotCommand(text=trimmed)

    body = trimmed[len(COMMAND_SIGIL):]
    name, _, raw_args = body.partition(" ")

    definition = registry.get(name) if name else None
    if definition is not None:
        return Command(definition=definition, args=parse_arguments(raw_args), raw_args=raw_args)

    if SESSION_CODE_SHAPE.match(name):
        return SessionResume(code=name, message=raw_args or None)

    return UnknownCommand(name=name, raw_args=raw_args)


def help_text(registry: CommandRegistry, name: str | None = None) -> str:
    """Categorised help for all commands, or detailed help for one."""
    if name:
        definition = registry.get(name)
        if definition is None:
            return f'Unknown command: "{name}". Use /help to see available commands.'
        return _detailed_help(definition)
    return _categorised_help(registry)


def _detailed_help(definition: CommandDefinition) -> str:
    hint = definition.arguments.hint
    lines = [f"/{definition.name}" + (f" {hint}" if hint else ""), "", definition.description, ""]
    if definition.aliases:
        lines.append("Aliases: " + ", ".join(f"/{a}" for a in definition.aliases))
    if hint:
        lines.append(f"Usage: /{definition.name} {hint}")
    lines.append(f"Type: {definition.handler.type}")
    return "\n".join(lines)


def _categorised_help(registry: CommandRegistry) -> str:
    by_category: dict[str, list[CommandDefinition]] = {}
    for definition in registry.list():
        by_category.setdefault(definition.category or "tasks", []).append(definition)

    order = list(CATEGORY_ORDER)
    order.extend(c for c in by_category if c not in order)

    lines: list[str] = []
    for category in order:
        visible = [d for d in by_category.get(category, []) if not d.hidden]
        if not visible:
            continue
        lines.append(f"--- {category.upper()} ---")
        for d in visible:
            line = f"/{d.name}"
            if d.arguments.hint:
                line += f" {d.arguments.hint}"
            if d.aliases:
                line += f" ({', '.join(d.aliases)})"
            lines.append(line)
            lines.append(f"  {d.description}")
        lines.append("")

    lines.append("--- SESSION RESUME ---")
    lines.append("/<xx> or /<xx> <message>")
    lines.append("  Resume a session using its 2-3 character code")
    lines.append("")
    lines.append("Use /help <command> for detailed help on a specific command.")
    return "\n".join(lines)
