"""Command definition schema: validation, defaults, and the frozen model.

A raw definition is a JSON-shaped dict such as::

    {
        "name": "research",
        "description": "Research a topic on the web",
        "aliases": ["r"],
        "handler": {"type": "skill", "skill": "research"},
        "priority": "HIGH",
        "source": "both",
        "arguments": {"required": ["topic"], "optional": [], "hint": "<topic>"},
        "session": {"create": true, "codeLength": 2}
    }

``validate`` reports every problem at once; ``apply_defaults`` fills the
optional fields; ``CommandDefinition.from_dict`` builds the immutable
object the registry stores.
"""

from __future__ import annotations

import copy
import re
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Union

from courier.errors import ValidationError


class Priority(IntEnum):
    """Queue priority levels (higher runs first)."""

    LOW = 25
    NORMAL = 50
    HIGH = 75
    CRITICAL = 100


HANDLER_TYPES = ("agent", "skill", "internal")
HANDLER_FIELDS = {"agent": "prompt", "skill": "skill", "internal": "function"}
SOURCE_CHAT = "chat"
SOURCE_WEBHOOK = "webhook"
SOURCE_BOTH = "both"
SOURCES = (SOURCE_CHAT, SOURCE_WEBHOOK, SOURCE_BOTH)
CODE_LENGTHS = (2, 3)

NAME_PATTERN = re.compile(r"^[a-z][a-z0-9-]*$")


@dataclass(frozen=True)
class AgentHandler:
    """Send a prompt template to the agent process."""

    prompt: str
    type: str = field(default="agent", init=False)


@dataclass(frozen=True)
class SkillHandler:
    """Invoke a named skill with the parsed arguments."""

    skill: str
    type: str = field(default="skill", init=False)


@dataclass(frozen=True)
class InternalHandler:
    """Call a registered in-process function."""

    function: str
    type: str = field(default="internal", init=False)


Handler = Union[AgentHandler, SkillHandler, InternalHandler]


@dataclass(frozen=True)
class ArgumentSpec:
    required: tuple[str, ...] = ()
    optional: tuple[str, ...] = ()
    hint: str = ""


@dataclass(frozen=True)
class SessionPolicy:
    create: bool = False
    code_length: int = 2


@dataclass(frozen=True)
class CommandDefinition:
    """Immutable, validated command definition."""

    name: str
    description: str
    handler: Handler
    aliases: tuple[str, ...] = ()
    priority: Priority = Priority.NORMAL
    source: str = SOURCE_BOTH
    arguments: ArgumentSpec = field(default_factory=ArgumentSpec)
    session: SessionPolicy = field(default_factory=SessionPolicy)
    category: str = "tasks"
    hidden: bool = False

    @classmethod
    def from_dict(cls, raw: dict) -> "CommandDefinition":
        """Validate, apply defaults, and freeze a raw definition."""
        data = apply_defaults(raw)
        errors = validate(data)
        if errors:
            raise ValidationError(
                f"Command validation failed: {', '.join(errors)}", errors
            )
        return cls(
            name=data["name"],
            description=data["description"],
            handler=_build_handler(data["handler"]),
            aliases=tuple(a.lower() for a in data["aliases"]),
            priority=_parse_priority(data["priority"]),
            source=data["source"],
            arguments=ArgumentSpec(
                required=tuple(data["arguments"]["required"]),
                optional=tuple(data["arguments"]["optional"]),
                hint=data["arguments"]["hint"],
            ),
            session=SessionPolicy(
                create=bool(data["session"]["create"]),
                code_length=int(data["session"]["codeLength"]),
            ),
            category=data.get("category") or "tasks",
            hidden=bool(data.get("hidden", False)),
        )

    def to_dict(self) -> dict:
        """JSON-shaped form, the inverse of ``from_dict``."""
        handler = {"type": self.handler.type}
        if isinstance(self.handler, AgentHandler):
            handler["prompt"] = self.handler.prompt
        elif isinstance(self.handler, SkillHandler):
            handler["skill"] = self.handler.skill
        else:
            handler["function"] = self.handler.function
        return {
            "name": self.name,
            "description": self.description,
            "aliases": list(self.aliases),
            "handler": handler,
            "priority": self.priority.name,
            "source": self.source,
            "arguments": {
                "required": list(self.arguments.required),
                "optional": list(self.arguments.optional),
                "hint": self.arguments.hint,
            },
            "session": {
                "create": self.session.create,
                "codeLength": self.session.code_length,
            },
            "category": self.category,
            "hidden": self.hidden,
        }


def validate(definition: dict) -> list[str]:
    """Return human-readable errors; an empty list means valid."""
    if not isinstance(definition, dict):
        return ["definition must be an object"]
    errors: list[str] = []

    name = definition.get("name")
    if not name:
        errors.append("name is required")
    elif not isinstance(name, str) or not NAME_PATTERN.match(name):
        errors.append(f"name must match {NAME_PATTERN.pattern}")

    if not definition.get("description"):
        errors.append("description is required")

    handler = definition.get("handler")
    if not handler:
        errors.append("handler is required")
    elif not isinstance(handler, dict) or not handler.get("type"):
        errors.append("handler.type is required")
    elif handler["type"] not in HANDLER_TYPES:
        errors.append(f"handler.type must be one of: {', '.join(HANDLER_TYPES)}")
    else:
        required = HANDLER_FIELDS[handler["type"]]
        value = handler.get(required)
        if not value or not isinstance(value, str):
            errors.append(f"{handler['type']} handler requires {required}")

    aliases = definition.get("aliases")
    if aliases is not None and not _is_string_list(aliases):
        errors.append("aliases must be a list of strings")

    if "priority" in definition and definition["priority"] is not None:
        try:
            _parse_priority(definition["priority"])
        except ValueError:
            errors.append(f"priority must be one of: {', '.join(p.name for p in _ordered_priorities())}")

    if "source" in definition and definition["source"] is not None:
        if definition["source"] not in SOURCES:
            errors.append(f"source must be one of: {', '.join(SOURCES)}")

    arguments = definition.get("arguments")
    if arguments is not None:
        if not isinstance(arguments, dict):
            errors.append("arguments must be an object")
        else:
            for key in ("required", "optional"):
                if arguments.get(key) is not None and not _is_string_list(arguments[key]):
                    errors.append(f"arguments.{key} must be a list of strings")
            if arguments.get("hint") is not None and not isinstance(arguments["hint"], str):
                errors.append("arguments.hint must be a string")

    session = definition.get("session")
    if session is not None and not isinstance(session, dict):
        errors.append("session must be an object")
    elif isinstance(session, dict) and session.get("codeLength") is not None:
        if session["codeLength"] not in CODE_LENGTHS or isinstance(session["codeLength"], bool):
            errors.append("session.codeLength must be 2 or 3")

    return errors


def _is_string_list(value) -> bool:
    return isinstance(value, list) and all(isinstance(v, str) for v in value)


def apply_defaults(definition: dict) -> dict:
    """Return a deep copy with optional fields filled in.

    Fields of the wrong shape are left as they are for ``validate`` to report.
    """
    result = copy.deepcopy(definition)
    if not isinstance(result, dict):
        return result
    handler = result.get("handler") or {}
    is_agent = isinstance(handler, dict) and handler.get("type") == "agent"

    if result.get("priority") is None:
        result["priority"] = Priority.NORMAL.name
    if result.get("source") is None:
        result["source"] = SOURCE_BOTH
    if result.get("aliases") is None:
        result["aliases"] = []

    arguments = result.get("arguments")
    if arguments is None:
        arguments = result["arguments"] = {}
    if isinstance(arguments, dict):
        for key, default in (("required", []), ("optional", []), ("hint", "")):
            if arguments.get(key) is None:
                arguments[key] = default

    session = result.get("session")
    if session is None:
        session = result["session"] = {}
    if isinstance(session, dict):
        if session.get("create") is None:
            session["create"] = is_agent
        if session.get("codeLength") is None:
            session["codeLength"] = 2

    return result


def _ordered_priorities() -> list[Priority]:
    return sorted(Priority, key=lambda p: -p.value)


def _parse_priority(value) -> Priority:
    if isinstance(value, Priority):
        return value
    if isinstance(value, str) and value in Priority.__members__:
        return Priority[value]
    if isinstance(value, int) and not isinstance(value, bool):
        return Priority(value)
    raise ValueError(f"invalid priority: {value!r}")


def _build_handler(raw: dict) -> Handler:
    handler_type = raw["type"]
    if handler_type == "agent":
        return AgentHandler(prompt=raw["prompt"])
    if handler_type == "skill":
        return SkillHandler(skill=raw["skill"])
    if handler_type == "internal":
        return InternalHandler(function=raw["function"])
    raise ValidationError(f"unknown handler type: {handler_type}")
