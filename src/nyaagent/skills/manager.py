"""Skill registry: higher-level behaviors exposed to the model as tools."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from nyaagent.errors import SkillError
from nyaagent.providers.base import ChatMessage, LLMRequest, LLMResponse
from nyaagent.tools.registry import ToolDefinition, ToolResult, empty_schema

logger = logging.getLogger(__name__)

SKILL_TOOL_PREFIX = "skill_"


@dataclass(slots=True)
class SkillExample:
    description: str
    input: dict[str, Any] = field(default_factory=dict)
    expected_output: str | None = None


@dataclass(slots=True)
class SkillSchema:
    name: str
    description: str
    category: str = "custom"
    instructions: str = ""
    parameters: dict[str, Any] = field(default_factory=empty_schema)
    examples: list[SkillExample] = field(default_factory=list)


@dataclass(slots=True)
class SkillContext:
    call_provider: Callable[[LLMRequest], Awaitable[LLMResponse]]
    execute_tool: Callable[[str, dict[str, Any]], Awaitable[ToolResult]]


@dataclass(slots=True)
class SkillResult:
    success: bool
    output: str
    data: Any = None


SkillHandler = Callable[[dict[str, Any], SkillContext], Awaitable[SkillResult]]


@dataclass(slots=True)
class SkillDefinition:
    schema: SkillSchema
    handler: SkillHandler
    source: str = "builtin"
    enabled: bool = True
    registered_at: float = field(default_factory=time.time)


@dataclass(slots=True, frozen=True)
class SkillInfo:
    name: str
    description: str
    category: str
    instructions: str
    source: str
    enabled: bool
    example_count: int
    parameter_names: tuple[str, ...]


class SkillManager:
    def __init__(self) -> None:
        self._skills: dict[str, SkillDefinition] = {}

    def register(self, schema: SkillSchema, handler: SkillHandler, source: str = "builtin") -> None:
        if schema.name in self._skills:
            logger.warning("Skill already registered, replacing: %s", schema.name)
        self._skills[schema.name] = SkillDefinition(schema=schema, handler=handler, source=source)
        logger.info("Registered skill %s (%s) [%s]", schema.name, schema.category, source)

    def unregister(self, name: str) -> bool:
        return self._skills.pop(name, None) is not None

    def unregister_by_source(self, source: str) -> int:
        names = [name for name, skill in self._skills.items() if skill.source == source]
        for name in names:
            del self._skills[name]
        return len(names)

    async def invoke(self, name: str, params: dict[str, Any], ctx: SkillContext) -> SkillResult:
        skill = self._skills.get(name)
        if skill is None:
            return SkillResult(success=False, output=f"Skill not found: {name}")
        if not skill.enabled:
            return SkillResult(success=False, output=f"Skill disabled: {name}")
        started = time.monotonic()
        try:
            result = await skill.handler(params, ctx)
        except Exception as exc:
            logger.warning("Skill %s raised", name, exc_info=True)
            return SkillResult(success=False, output=f"skill execution exception: {exc}")
        logger.info(
            "Skill %s finished in %.0fms success=%s",
            name,
            (time.monotonic() - started) * 1000,
            result.success,
        )
        return result

    def list(self) -> list[SkillInfo]:
        infos = []
        for skill in self._skills.values():
            properties = skill.schema.parameters.get("properties")
            infos.append(
                SkillInfo(
                    name=skill.schema.name,
                    description=skill.schema.description,
                    category=skill.schema.category,
                    instructions=skill.schema.instructions,
                    source=skill.source,
                    enabled=skill.enabled,
                    example_count=len(skill.schema.examples),
                    parameter_names=tuple(properties) if isinstance(properties, dict) else (),
                )
            )
        return infos

    def get_schema(self, name: str) -> SkillSchema | None:
        skill = self._skills.get(name)
        return skill.schema if skill else None

    def has(self, name: str) -> bool:
        return name in self._skills

    def set_enabled(self, name: str, enabled: bool) -> bool:
        skill = self._skills.get(name)
        if skill is None:
            return False
        skill.enabled = enabled
        return True

    def enabled_count(self) -> int:
        return sum(1 for skill in self._skills.values() if skill.enabled)

    # ---------- tool surface ----------

    def to_tool_definitions(self) -> list[ToolDefinition]:
        return [
            ToolDefinition(
                name=f"{SKILL_TOOL_PREFIX}{skill.schema.name}",
                description=f"[Skill] {skill.schema.description}\n\n{skill.schema.instructions}",
                parameters=skill.schema.parameters,
            )
            for skill in self._skills.values()
            if skill.enabled
        ]

    def is_skill_tool_call(self, tool_name: str) -> bool:
        return (
            tool_name.startswith(SKILL_TOOL_PREFIX)
            and tool_name[len(SKILL_TOOL_PREFIX) :] in self._skills
        )

    async def handle_tool_call(
        self,
        tool_name: str,
        arguments: dict[str, Any],
        ctx: SkillContext,
    ) -> ToolResult:
        result = await self.invoke(tool_name[len(SKILL_TOOL_PREFIX) :], arguments, ctx)
        return ToolResult(
            success=result.success,
            result=result.output,
            error=None if result.success else result.output,
        )

    # ---------- import ----------

    def import_skill(self, source: str | dict[str, Any]) -> SkillInfo:
        """Register a skill described as JSON; it runs by delegating to the LLM."""
        if isinstance(source, str):
            try:
                root = json.loads(source)
            except json.JSONDecodeError as exc:
                raise SkillError(f"invalid skill JSON: {exc}") from exc
        else:
            root = source
        if not isinstance(root, dict):
            raise SkillError("skill definition must be an object")
        name = root.get("name")
        if not isinstance(name, str) or not name.strip():
            raise SkillError("skill definition is missing name")
        description = str(root.get("description") or "")
        parameters = root.get("parameters")
        schema = SkillSchema(
            name=name,
            description=description,
            category=str(root.get("category") or "custom"),
            instructions=str(root.get("instructions") or description),
            parameters=parameters if isinstance(parameters, dict) else empty_schema(),
            examples=_parse_examples(root.get("examples")),
        )
        self.register(schema, _delegating_handler(schema), source="imported")
        return next(info for info in self.list() if info.name == name)


def _parse_examples(raw: object) -> list[SkillExample]:
    examples: list[SkillExample] = []
    if not isinstance(raw, list):
        return examples
    for item in raw:
        if not isinstance(item, dict):
            continue
        inputs = item.get("input")
        expected = item.get("expectedOutput")
        examples.append(
            SkillExample(
                description=str(item.get("description") or ""),
                input=inputs if isinstance(inputs, dict) else {},
                expected_output=expected if isinstance(expected, str) else None,
            )
        )
    return examples


def build_skill_prompt(schema: SkillSchema, params: dict[str, Any]) -> str:
    lines = [
        f"You are executing skill: {schema.name}",
        "",
        "[Instructions]",
        schema.instructions,
        "",
        "[Input parameters]",
    ]
    lines.extend(f"- {key}: {value}" for key, value in params.items())
    if schema.examples:
        lines.extend(["", "[Examples]"])
        for i, example in enumerate(schema.examples, 1):
            lines.append(f"Example {i}: {example.description}")
            if example.expected_output is not None:
                lines.append(f"  Expected output: {example.expected_output}")
    return "\n".join(lines)


def _delegating_handler(schema: SkillSchema) -> SkillHandler:
    async def handler(params: dict[str, Any], ctx: SkillContext) -> SkillResult:
        request = LLMRequest(
            messages=[ChatMessage(role="user", content=build_skill_prompt(schema, params))]
        )
        try:
            response = await ctx.call_provider(request)
        except Exception as exc:
            return SkillResult(success=False, output=f"skill execution failed: {exc}")
        if response.is_error:
            return SkillResult(
                success=False,
                output=f"skill execution failed: {response.text or 'provider error'}",
            )
        return SkillResult(success=True, output=response.text or "skill completed")

    return handler
