"""Plugins shipped with the agent."""

from nyaagent.plugins.builtin.core_commands import CoreCommandsPlugin
from nyaagent.plugins.builtin.expression import ExpressionPlugin
from nyaagent.plugins.builtin.info import InfoPlugin
from nyaagent.plugins.builtin.memory import MemoryPlugin
from nyaagent.plugins.builtin.personality import PersonalityPlugin

__all__ = [
    "CoreCommandsPlugin",
    "ExpressionPlugin",
    "InfoPlugin",
    "MemoryPlugin",
    "PersonalityPlugin",
    "builtin_plugins",
]


def builtin_plugins() -> list:
    return [
        CoreCommandsPlugin(),
        InfoPlugin(),
        PersonalityPlugin(),
        MemoryPlugin(),
        ExpressionPlugin(),
    ]
