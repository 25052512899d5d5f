"""Command registry: name and alias lookup, source filtering, discovery."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from courier.errors import ValidationError
from courier.schema import SOURCE_BOTH, CommandDefinition

logger = logging.getLogger(__name__)

COMMANDS_DIR = Path(".courier") / "commands"


class CommandRegistry:
    """Stores command definitions keyed by lowercase name, plus an alias map."""

    def __init__(self):
        self._commands: dict[str, CommandDefinition] = {}
        self._aliases: dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._commands)

    def __contains__(self, name_or_alias: str) -> bool:
        return self.has(name_or_alias)

    def register(self, definition: CommandDefinition) -> "CommandRegistry":
        """Register a definition; any name or alias collision is an error."""
        name = definition.name.lower()

        if name in self._commands:
            raise ValidationError(f'Command "{name}" is already registered')
        if name in self._aliases:
            raise ValidationError(f'"{name}" conflicts with an existing alias')

        seen: set[str] = set()
        for alias in definition.aliases:
            lower = alias.lower()
            if lower in self._commands or lower == name:
                raise ValidationError(f'Alias "{lower}" conflicts with an existing command')
            if lower in self._aliases or lower in seen:
                raise ValidationError(f'Alias "{lower}" is already registered')
            seen.add(lower)

        self._commands[name] = definition
        for alias in seen:
            self._aliases[alias] = name
        return self

    def get(self, name_or_alias: str) -> CommandDefinition | None:
        """Case-insensitive lookup; direct names win over aliases."""
        lookup = name_or_alias.lower()
        if lookup in self._commands:
            return self._commands[lookup]
        target = self._aliases.get(lookup)
        if target is not None:
            return self._commands[target]
        return None

    def has(self, name_or_alias: str) -> bool:
        lookup = name_or_alias.lower()
        return lookup in self._commands or lookup in self._aliases

    def names(self) -> set[str]:
        """Every command name and alias."""
        return set(self._commands) | set(self._aliases)

    def list(self, source: str | None = None) -> list[CommandDefinition]:
        """All definitions, or those whose source matches or is 'both'."""
        commands = list(self._commands.values())
        if source is None:
            return commands
        return [c for c in commands if c.source == source or c.source == SOURCE_BOTH]

    def discover(self, base_path: str | Path) -> "CommandRegistry":
        """Load ``.courier/commands/<name>/command.json`` entries under base_path.

        A definition that fails to parse, validate, or register is logged
        and skipped; the remaining entries still load.
        """
        commands_dir = Path(base_path) / COMMANDS_DIR
        if not commands_dir.is_dir():
            return self

        for entry in sorted(commands_dir.iterdir()):
            if not entry.is_dir():
                continue
            command_json = entry / "command.json"
            if not command_json.exists():
                continue
            try:
                raw = json.loads(command_json.read_text())
                self.register(CommandDefinition.from_dict(raw))
                logger.debug(f"Discovered command from {command_json}")
            except (OSError, json.JSONDecodeError, ValidationError) as e:
                logger.warning(f"Failed to load command from {command_json}: {e}")
            except Exception as e:
                logger.exception(f"Unexpected error loading command from {command_json}: {e}")

        return self

    def help_text(self) -> str:
        """Flat listing: ``/name hint (aliases)`` followed by the description."""
        lines = []
        for command in self._commands.values():
            first = f"/{command.name}"
            if command.arguments.hint:
                first += f" {command.arguments.hint}"
            if command.aliases:
                first += f" ({', '.join(command.aliases)})"
            lines.append(first)
            lines.append(f"  {command.description}")
            lines.append("")
        return "\n".join(lines)
