"""Plugin base class, manifest types and the context handed to plugins."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar, Protocol

from nyaagent.tools.registry import ToolDefinition, ToolRegistry, ToolResult

if TYPE_CHECKING:
    from nyaagent.commands.handlers import CommandHandler
    from nyaagent.providers.base import ChatMessage, LLMRequest, LLMResponse, ProviderConfig

logger = logging.getLogger(__name__)


class PluginType(str, Enum):
    BACKEND = "backend"
    FRONTEND = "frontend"
    HYBRID = "hybrid"


class PluginCapability(str, Enum):
    LLM_PROVIDER = "llm_provider"
    TTS_PROVIDER = "tts_provider"
    TOOL = "tool"
    COMMAND = "command"
    PANEL = "panel"


class PluginStatus(str, Enum):
    LOADED = "loaded"
    ACTIVE = "active"
    ERROR = "error"
    DISABLED = "disabled"
    SKIPPED = "skipped"


class ConfigFieldType(str, Enum):
    BOOL = "bool"
    INT = "int"
    FLOAT = "float"
    STRING = "string"
    TEXT = "text"
    LIST = "list"
    OBJECT = "object"
    DICT = "dict"


_FIELD_TYPES: dict[ConfigFieldType, tuple[type, ...]] = {
    ConfigFieldType.BOOL: (bool,),
    ConfigFieldType.INT: (int,),
    ConfigFieldType.FLOAT: (int, float),
    ConfigFieldType.STRING: (str,),
    ConfigFieldType.TEXT: (str,),
    ConfigFieldType.LIST: (list,),
    ConfigFieldType.OBJECT: (dict,),
    ConfigFieldType.DICT: (dict,),
}


@dataclass(slots=True, frozen=True)
class ConfigFieldDef:
    key: str
    type: ConfigFieldType
    description: str = ""
    default: Any = None
    options: tuple[str, ...] = ()
    invisible: bool = False

    def accepts(self, value: Any) -> bool:
        if value is None:
            return False
        if isinstance(value, bool) and self.type is not ConfigFieldType.BOOL:
            return False
        if not isinstance(value, _FIELD_TYPES[self.type]):
            return False
        return not self.options or value in self.options


@dataclass(slots=True, frozen=True)
class PluginConfigSchema:
    fields: tuple[ConfigFieldDef, ...] = ()

    def defaults(self) -> dict[str, Any]:
        return {item.key: item.default for item in self.fields}

    def resolve(self, config: dict[str, Any]) -> dict[str, Any]:
        """Schema defaults overlaid with the stored values that fit each field."""
        values = self.defaults()
        for item in self.fields:
            if item.key not in config:
                continue
            value = config[item.key]
            if item.accepts(value):
                values[item.key] = float(value) if item.type is ConfigFieldType.FLOAT else value
            else:
                logger.warning("Ignoring invalid value for %s: %r", item.key, value)
        return values


@dataclass(slots=True, frozen=True)
class PluginManifest:
    id: str
    name: str
    version: str = "1.0.0"
    author: str = ""
    description: str = ""
    type: PluginType = PluginType.BACKEND
    capabilities: tuple[PluginCapability, ...] = ()
    dependencies: tuple[str, ...] = ()
    auto_activate: bool = True


@dataclass(slots=True, frozen=True)
class ProviderBriefInfo:
    instance_id: str
    provider_id: str
    display_name: str
    model: str | None
    status: str


# ---------- Live2D model description ----------


@dataclass(slots=True, frozen=True)
class ParameterInfo:
    id: str
    min: float
    max: float
    default: float = 0.0


@dataclass(slots=True, frozen=True)
class MappedParameter:
    id: str
    alias: str
    min: float
    max: float
    default: float = 0.0
    description: str = ""


@dataclass(slots=True, frozen=True)
class MappedExpression:
    id: str
    alias: str
    description: str = ""


@dataclass(slots=True, frozen=True)
class MappedMotion:
    group: str
    index: int
    alias: str
    description: str = ""


@dataclass(slots=True)
class ModelInfo:
    """What the loaded avatar model can do; motions maps group -> variant count."""

    hit_areas: list[str] = field(default_factory=list)
    expressions: list[str] = field(default_factory=list)
    motions: dict[str, int] = field(default_factory=dict)
    available_parameters: list[ParameterInfo] = field(default_factory=list)
    mapped_parameters: list[MappedParameter] = field(default_factory=list)
    mapped_expressions: list[MappedExpression] = field(default_factory=list)
    mapped_motions: list[MappedMotion] = field(default_factory=list)

    @property
    def motion_groups(self) -> list[str]:
        return list(self.motions)


@dataclass(slots=True)
class Live2DCommand:
    command: str
    group: str | None = None
    index: int | None = None
    priority: int | None = None
    expression_id: str | None = None
    parameter_id: str | None = None
    value: float | None = None
    weight: float | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.command}
        for key, value in (
            ("group", self.group),
            ("index", self.index),
            ("priority", self.priority),
            ("expressionId", self.expression_id),
            ("parameterId", self.parameter_id),
            ("value", self.value),
            ("weight", self.weight),
        ):
            if value is not None:
                data[key] = value
        return data


class PluginContext(Protocol):
    """Host API available to a loaded plugin; the plugin id is already bound."""

    plugin_id: str

    def get_config(self) -> dict[str, Any]: ...

    def save_config(self, config: dict[str, Any]) -> None: ...

    async def send_dialogue(self, text: str, duration: int = 5000) -> None: ...

    async def send_live2d_command(self, command: Live2DCommand) -> None: ...

    async def send_system_message(self, text: str) -> None: ...

    def get_plugin(self, plugin_id: str) -> Plugin | None: ...

    def register_command(self, name: str, description: str, handler: CommandHandler) -> None: ...

    def unregister_command(self, name: str) -> None: ...

    def clear_conversation_history(self) -> None: ...

    def get_conversation_history(self) -> list[tuple[str, str]]: ...

    def add_message_to_history(self, message: ChatMessage) -> None: ...

    def current_conversation_id(self) -> str: ...

    def get_primary_provider_info(self) -> ProviderBriefInfo | None: ...

    def get_all_providers(self) -> list[ProviderBriefInfo]: ...

    async def call_provider(self, instance_id: str, request: LLMRequest) -> LLMResponse: ...

    def get_provider_config(self, instance_id: str) -> ProviderConfig | None: ...

    def get_all_command_definitions(self) -> list[tuple[str, str]]: ...

    def get_model_info(self) -> ModelInfo | None: ...

    def log_info(self, message: str) -> None: ...

    def log_warn(self, message: str) -> None: ...

    def log_error(self, message: str) -> None: ...


class Plugin:
    """Base class for agent plugins.

    Subclasses set `manifest`, optionally `config_schema`, and override
    `register_tools()` to contribute tools (declare `PluginCapability.TOOL`),
    or `on_load()` to register commands through the context.
    """

    manifest: ClassVar[PluginManifest]
    config_schema: ClassVar[PluginConfigSchema | None] = None

    def __init__(self) -> None:
        self.enabled = True
        self.status = PluginStatus.LOADED
        self.status_reason: str | None = None
        self.context: PluginContext | None = None
        self.tools = ToolRegistry(self.manifest.id, self.manifest.name)
        self.register_tools(self.tools)

    @property
    def id(self) -> str:
        return self.manifest.id

    @property
    def provider_id(self) -> str:
        return self.manifest.id

    @property
    def provider_name(self) -> str:
        return self.manifest.name

    def has_capability(self, capability: PluginCapability) -> bool:
        return capability in self.manifest.capabilities

    def register_tools(self, registry: ToolRegistry) -> None:
        """Register tools with the plugin's registry. Override in subclasses."""

    def get_tools(self) -> list[ToolDefinition]:
        return self.tools.get_tools()

    async def execute_tool(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        return await self.tools.execute_tool(name, arguments)

    def on_load(self, context: PluginContext) -> None:
        self.context = context
        self.on_config_changed(context.get_config())

    def on_unload(self) -> None:
        self.context = None

    def on_config_changed(self, config: dict[str, Any]) -> None:
        """Called with the stored config after load and after each save."""

    def resolve_config(self, config: dict[str, Any]) -> dict[str, Any]:
        if self.config_schema is None:
            return dict(config)
        return self.config_schema.resolve(config)
