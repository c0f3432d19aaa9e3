"""Plugin lifecycle, tool routing, command registry and plugin configs."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from nyaagent.commands.handlers import CommandDefinition, CommandHandler, CommandInfo
from nyaagent.errors import PluginError
from nyaagent.plugins.base import Plugin, PluginCapability, PluginContext, PluginStatus
from nyaagent.tools.registry import ToolDefinition, ToolProvider, ToolResult

logger = logging.getLogger(__name__)

ContextFactory = Callable[[str], PluginContext]


class PluginManager:
    def __init__(self, context_factory: ContextFactory | None = None) -> None:
        self._context_factory = context_factory
        self._plugins: dict[str, Plugin] = {}
        self._tool_providers: dict[str, ToolProvider] = {}
        self._tool_overrides: dict[str, bool] = {}
        self._commands: dict[str, CommandInfo] = {}
        self._configs: dict[str, dict[str, Any]] = {}

    def set_context_factory(self, factory: ContextFactory) -> None:
        self._context_factory = factory

    # ---------- lifecycle ----------

    def register(self, plugin: Plugin, *, activate: bool = True) -> None:
        """Add a plugin; load it now unless ``activate`` is false or it opts out.

        Plugins registered with ``activate=False`` are loaded in dependency
        order by `activate_all()`.
        """
        plugin_id = plugin.id
        if plugin_id in self._plugins:
            raise PluginError(f"plugin already registered: {plugin_id}")
        self._plugins[plugin_id] = plugin
        if plugin.has_capability(PluginCapability.TOOL):
            self._tool_providers[plugin.provider_id] = plugin
        plugin.status = PluginStatus.LOADED
        if activate and plugin.manifest.auto_activate:
            self.activate(plugin_id)

    def activate(self, plugin_id: str) -> bool:
        plugin = self._plugins.get(plugin_id)
        if plugin is None:
            return False
        if plugin.status is PluginStatus.ACTIVE:
            return True
        for dependency in plugin.manifest.dependencies:
            dep = self._plugins.get(dependency)
            if dep is None:
                return self._skip(plugin, f"missing dependency: {dependency}")
            if dep.status is not PluginStatus.ACTIVE:
                return self._skip(plugin, f"dependency not active: {dependency}")
        if self._context_factory is not None:
            try:
                plugin.on_load(self._context_factory(plugin_id))
            except Exception as exc:
                logger.warning("Plugin %s failed to load", plugin_id, exc_info=True)
                plugin.status = PluginStatus.ERROR
                plugin.status_reason = str(exc) or type(exc).__name__
                return False
        plugin.status = PluginStatus.ACTIVE if plugin.enabled else PluginStatus.DISABLED
        plugin.status_reason = None
        logger.info("Activated plugin %s", plugin_id)
        return True

    def _skip(self, plugin: Plugin, reason: str) -> bool:
        plugin.status = PluginStatus.SKIPPED
        plugin.status_reason = reason
        logger.warning("Skipping plugin %s: %s", plugin.id, reason)
        return False

    def activation_order(self) -> list[str]:
        """Registered auto-activate plugin ids, dependencies first.

        Plugins caught in a dependency cycle are left out and marked skipped.
        """
        order: list[str] = []
        state: dict[str, str] = {}

        def visit(plugin_id: str) -> bool:
            mark = state.get(plugin_id)
            if mark == "done":
                return True
            if mark == "visiting":
                return False
            state[plugin_id] = "visiting"
            plugin = self._plugins[plugin_id]
            acyclic = True
            for dependency in plugin.manifest.dependencies:
                if dependency in self._plugins and not visit(dependency):
                    acyclic = False
            state[plugin_id] = "done"
            if not acyclic:
                self._skip(plugin, "dependency cycle")
                return False
            order.append(plugin_id)
            return True

        for plugin_id, plugin in self._plugins.items():
            if plugin.manifest.auto_activate:
                visit(plugin_id)
        return [pid for pid in order if self._plugins[pid].manifest.auto_activate]

    def activate_all(self) -> dict[str, PluginStatus]:
        for plugin_id in self.activation_order():
            self.activate(plugin_id)
        return {plugin_id: plugin.status for plugin_id, plugin in self._plugins.items()}

    def unregister(self, plugin_id: str) -> bool:
        plugin = self._plugins.get(plugin_id)
        if plugin is None:
            return False
        self._unload(plugin)
        for name in [n for n, info in self._commands.items() if info.source == plugin_id]:
            del self._commands[name]
        del self._plugins[plugin_id]
        self._tool_providers.pop(plugin.provider_id, None)
        return True

    def _unload(self, plugin: Plugin) -> None:
        if plugin.status not in (PluginStatus.ACTIVE, PluginStatus.DISABLED):
            return
        try:
            plugin.on_unload()
        except Exception:
            logger.warning("Plugin %s failed to unload", plugin.id, exc_info=True)

    def set_enabled(self, plugin_id: str, enabled: bool) -> bool:
        plugin = self._plugins.get(plugin_id)
        if plugin is None:
            return False
        plugin.enabled = enabled
        if plugin.status in (PluginStatus.ACTIVE, PluginStatus.DISABLED):
            plugin.status = PluginStatus.ACTIVE if enabled else PluginStatus.DISABLED
        return True

    def reload(self, plugin_id: str) -> bool:
        plugin = self._plugins.get(plugin_id)
        if plugin is None:
            return False
        self._unload(plugin)
        for name in [n for n, info in self._commands.items() if info.source == plugin_id]:
            del self._commands[name]
        plugin.status = PluginStatus.LOADED
        return self.activate(plugin_id)

    # ---------- queries ----------

    def get_plugin(self, plugin_id: str) -> Plugin | None:
        return self._plugins.get(plugin_id)

    def get_plugin_by_name(self, name: str) -> Plugin | None:
        for plugin in self._plugins.values():
            if name in (plugin.manifest.name, plugin.manifest.id):
                return plugin
        return None

    def is_active(self, plugin_id: str) -> bool:
        plugin = self._plugins.get(plugin_id)
        return plugin is not None and plugin.enabled and plugin.status is PluginStatus.ACTIVE

    def get_plugins_by_capability(self, capability: PluginCapability) -> list[Plugin]:
        return [p for p in self._plugins.values() if p.has_capability(capability)]

    def all_plugins(self) -> list[Plugin]:
        return list(self._plugins.values())

    # ---------- tools ----------

    def register_tool_provider(self, provider: ToolProvider) -> None:
        """Expose a non-plugin tool source (e.g. a remote tool server)."""
        self._tool_providers[provider.provider_id] = provider

    def unregister_tool_provider(self, provider_id: str) -> bool:
        return self._tool_providers.pop(provider_id, None) is not None

    def set_tool_enabled(self, tool_name: str, enabled: bool) -> None:
        self._tool_overrides[tool_name] = enabled

    def is_tool_enabled(self, tool_name: str) -> bool:
        return self._tool_overrides.get(tool_name, True)

    def _live_providers(self) -> list[ToolProvider]:
        live: list[ToolProvider] = []
        for provider in self._tool_providers.values():
            if isinstance(provider, Plugin) and not self.is_active(provider.id):
                continue
            live.append(provider)
        return live

    def get_all_tools(self) -> list[ToolDefinition]:
        return [
            tool
            for provider in self._live_providers()
            for tool in provider.get_tools()
            if self.is_tool_enabled(tool.name)
        ]

    def get_all_tools_with_source(self) -> list[tuple[ToolDefinition, str]]:
        return [
            (tool, provider.provider_name)
            for provider in self._live_providers()
            for tool in provider.get_tools()
        ]

    async def execute_tool(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        if not self.is_tool_enabled(name):
            return ToolResult(success=False, error=f"Tool disabled: {name}")
        for provider in self._live_providers():
            if any(tool.name == name for tool in provider.get_tools()):
                return await provider.execute_tool(name, arguments)
        return ToolResult(success=False, error=f"Tool not found: {name}")

    def find_tool(self, name: str) -> ToolDefinition | None:
        for tool in self.get_all_tools():
            if tool.name == name:
                return tool
        return None

    # ---------- commands ----------

    def register_command(
        self,
        name: str,
        description: str,
        handler: CommandHandler,
        source: str = "",
    ) -> None:
        if name in self._commands:
            logger.warning("Replacing command /%s", name)
        self._commands[name] = CommandInfo(
            name=name, description=description, handler=handler, source=source
        )

    def unregister_command(self, name: str) -> bool:
        return self._commands.pop(name, None) is not None

    def get_command_handler(self, name: str) -> CommandHandler | None:
        info = self._commands.get(name)
        if info is None or not info.enabled:
            return None
        return info.handler

    def set_command_enabled(self, name: str, enabled: bool) -> bool:
        info = self._commands.get(name)
        if info is None:
            return False
        info.enabled = enabled
        return True

    def get_command_definitions(self) -> list[CommandDefinition]:
        return [
            CommandDefinition(
                name=info.name,
                description=info.description,
                source=info.source,
                enabled=info.enabled,
            )
            for info in self._commands.values()
        ]

    # ---------- configs ----------

    def get_plugin_config(self, plugin_id: str) -> dict[str, Any]:
        return dict(self._configs.get(plugin_id, {}))

    def save_plugin_config(self, plugin_id: str, config: dict[str, Any]) -> None:
        self._configs[plugin_id] = dict(config)
        plugin = self._plugins.get(plugin_id)
        if plugin is not None and plugin.status in (PluginStatus.ACTIVE, PluginStatus.DISABLED):
            try:
                plugin.on_config_changed(dict(config))
            except Exception:
                logger.warning("Plugin %s rejected config change", plugin_id, exc_info=True)

    def clear_plugin_data(self, plugin_id: str) -> None:
        self.save_plugin_config(plugin_id, {})
        self._configs.pop(plugin_id, None)

    def load_configs(self, configs: dict[str, dict[str, Any]]) -> None:
        for plugin_id, config in configs.items():
            if isinstance(config, dict):
                self._configs[plugin_id] = dict(config)

    def export_configs(self) -> dict[str, dict[str, Any]]:
        return {plugin_id: dict(config) for plugin_id, config in self._configs.items()}
