"""Human-readable rendering of executor traces."""

from __future__ import annotations

import json

from courier.parser import Command, SessionResume, UnknownCommand

RULE = "=" * 60


def format_result(result: dict) -> str:
    """Format one ``Executor.execute`` result for display."""
    parsed = result["parsed"]
    label = "DRY RUN" if result.get("dry_run") else "LIVE"
    lines = [RULE, f"{label}: {result['timestamp']}", RULE, f"Type: {parsed.type}"]

    if isinstance(parsed, Command):
        definition = parsed.definition
        lines.append(f"Command: /{definition.name}")
        lines.append(f"Handler: {definition.handler.type}")
        lines.append(f"Args: {json.dumps(parsed.args)}")
        if definition.aliases:
            lines.append(f"Aliases: {', '.join(definition.aliases)}")
    elif isinstance(parsed, SessionResume):
        lines.append(f"Session Code: {parsed.code}")
        lines.append(f"Message: {parsed.message or '(none)'}")
    elif isinstance(parsed, UnknownCommand):
        lines.append(f"Unknown: /{parsed.name}")

    lines.append("")
    lines.append("Actions:")
    for action in result["actions"]:
        lines.append(f"  * {action['type']}:")
        kind = action["type"]
        if kind == "agent":
            lines.append(f'    Prompt: "{action["prompt"]}"')
            lines.append(f"    Priority: {action['priority']}")
            session = action["session"]
            lines.append(f"    Session: create={session['create']}, code_length={session['code_length']}")
        elif kind == "skill":
            lines.append(f"    Skill: {action['skill']}")
            lines.append(f"    Args: {json.dumps(action['args'])}")
        elif kind == "internal":
            lines.append(f"    Function: {action['function']}")
        elif kind == "error":
            lines.append(f"    Error: {action['error']}")
        elif kind == "queued":
            lines.append(f"    Job: {action['job_id']} (session {action.get('session_code') or '-'})")
        elif kind == "handler_result":
            lines.append(f"    Result: {action['result']}")

    lines.append(RULE)
    return "\n".join(lines)
