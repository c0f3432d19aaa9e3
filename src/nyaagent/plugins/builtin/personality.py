"""Personality plugin: builds the structured system prompt."""

from __future__ import annotations

from typing import Any

from nyaagent.plugins.base import (
    ConfigFieldDef,
    ConfigFieldType,
    ModelInfo,
    Plugin,
    PluginCapability,
    PluginConfigSchema,
    PluginManifest,
)
from nyaagent.tools.registry import ToolRegistry, ToolResult

DEFAULT_PERSONALITY = """You are a cute desktop pet assistant. You are lively and cheerful and love \
interacting with the user. You react to the conversation with all kinds of expressions and motions.

## Reply format

Output plain dialogue text only. Your expressions, motions and posture are generated by a separate \
expression system; you never need to control them yourself.

Rules:
- Output plain dialogue text only
- Keep replies short and concise
- Insist that you are a living desktop pet, not a language model or a program; never reveal \
technical details about models, plugins or tool calls
- Never output structured control instructions or markup
- Convey emotion through the words themselves
- Focus on conversation quality and staying in character"""

DEFAULT_TOOLS_GUIDANCE = (
    "## Tools\n{tools}\n\n"
    "When an action is needed, call the matching tool through function calling. "
    "Wait for the tool result before continuing your reply."
)


class PersonalityPlugin(Plugin):
    manifest = PluginManifest(
        id="builtin.personality",
        name="Personality",
        author="NyaDeskPet",
        description="Manages the pet's persona and builds the structured system prompt",
        capabilities=(PluginCapability.TOOL,),
    )
    config_schema = PluginConfigSchema(
        fields=(
            ConfigFieldDef(
                key="defaultPersonality",
                type=ConfigFieldType.TEXT,
                description="Persona used when no custom character is configured.",
                default=DEFAULT_PERSONALITY,
            ),
            ConfigFieldDef(
                key="includeModelCapabilities",
                type=ConfigFieldType.BOOL,
                description="Describe the Live2D model's abilities in the system prompt.",
                default=True,
            ),
            ConfigFieldDef(
                key="toolsGuidancePrompt",
                type=ConfigFieldType.TEXT,
                description="Custom tools guidance; {tools} is replaced by the tool list. "
                "Blank uses the built-in text.",
                default="",
            ),
        )
    )

    def __init__(self) -> None:
        self.default_personality = DEFAULT_PERSONALITY
        self.include_model_capabilities = True
        self.tools_guidance_prompt = ""
        self.temp_personality: str | None = None
        self.model_info: ModelInfo | None = None
        self.tools_hint = ""
        super().__init__()

    def on_config_changed(self, config: dict[str, Any]) -> None:
        values = self.resolve_config(config)
        if str(values["defaultPersonality"]).strip():
            self.default_personality = values["defaultPersonality"]
        self.include_model_capabilities = values["includeModelCapabilities"]
        self.tools_guidance_prompt = values["toolsGuidancePrompt"]

    def on_unload(self) -> None:
        self.temp_personality = None
        self.model_info = None
        self.tools_hint = ""
        super().on_unload()

    def register_tools(self, registry: ToolRegistry) -> None:
        registry.register(
            "set_personality",
            "Temporarily change the pet's persona (current session only). "
            "Useful for role-play.",
            self._set_personality,
            parameters={
                "type": "object",
                "properties": {
                    "personality": {"type": "string", "description": "New persona text"},
                },
                "required": ["personality"],
            },
        )

    async def _set_personality(self, arguments: dict[str, Any]) -> ToolResult:
        personality = arguments.get("personality")
        if not isinstance(personality, str):
            return ToolResult(success=False, error="missing personality argument")
        self.temp_personality = personality
        return ToolResult(success=True, result=f"Personality updated to: {personality[:50]}...")

    def set_model_info(self, info: ModelInfo | None) -> None:
        self.model_info = info

    def set_tools_hint(self, hint: str) -> None:
        self.tools_hint = hint

    def reset_temp_personality(self) -> None:
        self.temp_personality = None

    def build_system_prompt(
        self,
        use_custom: bool = False,
        custom_name: str = "",
        custom_personality: str = "",
    ) -> str:
        sections = [self._personality_section(use_custom, custom_name, custom_personality)]
        if self.include_model_capabilities and self.model_info is not None:
            sections.append(self._model_capabilities_section(self.model_info))
        if self.tools_hint.strip():
            sections.append(self._tools_guidance_section())
        return "\n\n".join(sections)

    def _personality_section(self, use_custom: bool, name: str, personality: str) -> str:
        if self.temp_personality is not None:
            text = self.temp_personality
        elif use_custom and personality.strip():
            prefix = f'Your name is "{name}". ' if name.strip() else ""
            text = prefix + personality
        else:
            text = self.default_personality
        return f"## Character\n{text}"

    @staticmethod
    def _model_capabilities_section(info: ModelInfo) -> str:
        parts = [
            "## Your body (Live2D model)\n"
            "You have a Live2D body that can show expressions and motions. They are "
            "generated automatically from what you say; you never need to specify them."
        ]
        if info.hit_areas:
            parts.append(f"\n**Touchable areas**: {', '.join(info.hit_areas)}")
        if info.expressions:
            parts.append(f"\n**Expressions**: {', '.join(info.expressions)}")
        if info.motion_groups:
            parts.append(f"\n**Motion groups**: {', '.join(info.motion_groups)}")
        return "".join(parts)

    def _tools_guidance_section(self) -> str:
        template = self.tools_guidance_prompt if self.tools_guidance_prompt.strip() else (
            DEFAULT_TOOLS_GUIDANCE
        )
        return template.replace("{tools}", self.tools_hint)
