"""Slash-command parsing and handler records."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass

CommandHandler = Callable[[str], Awaitable[str]]


def parse_command(text: str) -> tuple[str, str] | None:
    """Split ``/name rest of line`` into ``("name", "rest of line")``."""
    stripped = text.strip()
    if not stripped.startswith("/") or len(stripped) == 1:
        return None
    name, _, args = stripped[1:].partition(" ")
    return name.lower(), args.strip()


@dataclass(slots=True)
class CommandInfo:
    name: str
    description: str
    handler: CommandHandler
    source: str = ""
    enabled: bool = True


@dataclass(slots=True, frozen=True)
class CommandDefinition:
    name: str
    description: str
    source: str
    enabled: bool
