"""Plugin SDK for extending the agent with tools and commands."""

from nyaagent.plugins.base import (
    ConfigFieldDef,
    ConfigFieldType,
    ModelInfo,
    Plugin,
    PluginCapability,
    PluginConfigSchema,
    PluginContext,
    PluginManifest,
    PluginStatus,
)
from nyaagent.plugins.manager import PluginManager

__all__ = [
    "ConfigFieldDef",
    "ConfigFieldType",
    "ModelInfo",
    "Plugin",
    "PluginCapability",
    "PluginConfigSchema",
    "PluginContext",
    "PluginManager",
    "PluginManifest",
    "PluginStatus",
]
