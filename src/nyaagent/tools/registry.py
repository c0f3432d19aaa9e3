"""Tool registration helpers."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

ToolCallable = Callable[[dict[str, Any]], Awaitable[Any]]


def empty_schema() -> dict[str, Any]:
    return {"type": "object", "properties": {}}


@dataclass(slots=True)
class ToolDefinition:
    name: str
    description: str
    parameters: dict[str, Any] = field(default_factory=empty_schema)
    require_confirm: bool = False

    def schema(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }


@dataclass(slots=True)
class ToolResult:
    success: bool
    result: Any = None
    error: str | None = None


@runtime_checkable
class ToolProvider(Protocol):
    provider_id: str
    provider_name: str

    def get_tools(self) -> list[ToolDefinition]: ...

    async def execute_tool(self, name: str, arguments: dict[str, Any]) -> ToolResult: ...


@dataclass(slots=True)
class ToolDef:
    definition: ToolDefinition
    handler: ToolCallable


class ToolRegistry:
    """A `ToolProvider` backed by plain async functions.

    Handlers take the parsed argument mapping and return the result value;
    a returned `ToolResult` is passed through unchanged and an exception
    becomes a failed result.
    """

    def __init__(self, provider_id: str = "functions", provider_name: str = "") -> None:
        self.provider_id = provider_id
        self.provider_name = provider_name or provider_id
        self._tools: dict[str, ToolDef] = {}

    def register(
        self,
        name: str,
        description: str,
        handler: ToolCallable,
        parameters: dict[str, Any] | None = None,
        *,
        require_confirm: bool = False,
    ) -> None:
        self._tools[name] = ToolDef(
            definition=ToolDefinition(
                name=name,
                description=description,
                parameters=parameters or empty_schema(),
                require_confirm=require_confirm,
            ),
            handler=handler,
        )

    def unregister(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def get(self, name: str) -> ToolDef | None:
        return self._tools.get(name)

    def get_tools(self) -> list[ToolDefinition]:
        return [tool.definition for tool in self._tools.values()]

    def schemas(self) -> list[dict[str, Any]]:
        return [tool.definition.schema() for tool in self._tools.values()]

    async def execute_tool(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        tool = self._tools.get(name)
        if tool is None:
            return ToolResult(success=False, error=f"Unknown tool: {name}")
        try:
            value = await tool.handler(arguments)
        except Exception as exc:
            logger.warning("Tool %s raised", name, exc_info=True)
            return ToolResult(success=False, error=str(exc) or type(exc).__name__)
        if isinstance(value, ToolResult):
            return value
        return ToolResult(success=True, result=value)
