"""Argument tokenizing and prompt-template substitution.

Supported placeholders, substituted in this order:
    $ARGUMENTS       all arguments joined by a space
    ${N:-default}    argument N, or ``default`` when N is missing
    ${SESSION_CODE}  session code from the execution context
    $N               argument N, or empty string when missing
"""

from __future__ import annotations

import re

from courier.schema import ArgumentSpec

_QUOTES = ("'", '"')
_WHITESPACE = (" ", "\t")

_ALL_ARGS = re.compile(r"\$ARGUMENTS")
_DEFAULTED = re.compile(r"\$\{(\d+):-([^}]*)\}")
_SESSION_CODE = re.compile(r"\$\{SESSION_CODE\}")
_POSITIONAL = re.compile(r"\$(\d+)")


def parse_arguments(arg_string: str | None) -> list[str]:
    """Split on whitespace outside quotes; quote characters are dropped."""
    if not arg_string or not isinstance(arg_string, str):
        return []
    text = arg_string.strip()
    if not text:
        return []

    args: list[str] = []
    current = ""
    quote: str | None = None

    for char in text:
        if quote:
            if char == quote:
                quote = None
            else:
                current += char
        elif char in _QUOTES:
            quote = char
        elif char in _WHITESPACE:
            if current:
                args.append(current)
                current = ""
        else:
            current += char

    if current:
        args.append(current)
    return args


def substitute_arguments(template: str, args: list[str] | None = None, context: dict | None = None) -> str:
    """Fill placeholders in a prompt template."""
    args = args or []
    context = context or {}

    def _arg(index: str, fallback: str) -> str:
        i = int(index)
        return args[i] if i < len(args) else fallback

    result = _ALL_ARGS.sub(lambda _m: " ".join(args), template)
    result = _DEFAULTED.sub(lambda m: _arg(m.group(1), m.group(2)), result)
    result = _SESSION_CODE.sub(lambda _m: context.get("session_code") or "", result)
    result = _POSITIONAL.sub(lambda m: _arg(m.group(1), ""), result)
    return result


def validate_arguments(args: list[str] | None, spec: ArgumentSpec | None) -> list[str]:
    """One error per unmet required slot, in slot order."""
    if spec is None:
        return []
    args = args or []
    errors = []
    for i, name in enumerate(spec.required):
        if i >= len(args) or args[i] == "":
            errors.append(f"Missing required argument: {name}")
    return errors
