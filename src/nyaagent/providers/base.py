"""Provider contracts and the wire-independent chat data model."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

import httpx

from nyaagent.config import get_settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

CAPABILITY_FIELDS = (
    "supports_text",
    "supports_vision",
    "supports_file",
    "supports_tool_calling",
)


class ProviderStatus(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


@dataclass(slots=True)
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass(slots=True)
class ToolCallInfo:
    """A complete tool call; ``arguments`` is the raw JSON text from the model."""

    id: str
    name: str
    arguments: str = "{}"


@dataclass(slots=True)
class ToolCallDelta:
    """Fragment of a streamed tool call, keyed by the call's stream index."""

    index: int
    id: str | None = None
    name: str | None = None
    arguments: str | None = None


@dataclass(slots=True)
class ChatAttachment:
    type: str
    data: str | None = None
    url: str | None = None
    mime_type: str | None = None
    file_name: str | None = None


@dataclass(slots=True)
class ChatMessage:
    role: str
    content: str = ""
    reasoning_content: str | None = None
    tool_calls: list[ToolCallInfo] | None = None
    tool_call_id: str | None = None
    tool_name: str | None = None
    attachment: ChatAttachment | None = None


@dataclass(slots=True)
class LLMRequest:
    messages: list[ChatMessage]
    system_prompt: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    model: str | None = None
    tools: list[dict[str, Any]] | None = None
    tool_choice: str | None = None


@dataclass(slots=True)
class LLMResponse:
    text: str
    usage: TokenUsage | None = None
    model: str | None = None
    finish_reason: str | None = None
    reasoning_content: str | None = None
    tool_calls: list[ToolCallInfo] | None = None

    @property
    def is_error(self) -> bool:
        return self.finish_reason == "error"


@dataclass(slots=True)
class LLMStreamChunk:
    """One streamed chunk.

    A ``done`` chunk terminates the stream. A ``done`` chunk whose ``delta`` is
    non-empty carries an error message instead of content.
    """

    delta: str = ""
    done: bool = False
    usage: TokenUsage | None = None
    reasoning_delta: str | None = None
    finish_reason: str | None = None
    tool_call_deltas: list[ToolCallDelta] | None = None


@dataclass(slots=True)
class TestResult:
    __test__ = False

    success: bool
    error: str | None = None
    model: str | None = None


@dataclass(slots=True)
class ProviderConfigField:
    key: str
    label: str
    type: str = "string"
    required: bool = False
    default: str | None = None
    placeholder: str | None = None
    options: list[str] = field(default_factory=list)
    description: str | None = None


@dataclass(slots=True)
class ProviderMetadata:
    id: str
    name: str
    description: str = ""
    config_schema: list[ProviderConfigField] = field(default_factory=list)


@dataclass(slots=True)
class ProviderCapabilities:
    supports_text: bool = True
    supports_vision: bool = False
    supports_file: bool = False
    supports_tool_calling: bool = True


_KNOWN_CONFIG_KEYS = ("id", "name", "api_key", "base_url", "model", "timeout", "proxy")
_CAMEL_ALIASES = {"apiKey": "api_key", "baseUrl": "base_url"}


@dataclass(slots=True)
class ProviderConfig:
    id: str = ""
    name: str = ""
    api_key: str | None = None
    base_url: str | None = None
    model: str | None = None
    timeout: int | None = None
    proxy: str | None = None
    extra: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProviderConfig:
        config = cls()
        extra: dict[str, str] = {}
        for raw_key, value in data.items():
            key = _CAMEL_ALIASES.get(raw_key, raw_key)
            if key == "extra" and isinstance(value, dict):
                extra.update({str(k): str(v) for k, v in value.items()})
            elif key == "timeout":
                config.timeout = int(value) if value not in (None, "") else None
            elif key in _KNOWN_CONFIG_KEYS:
                setattr(config, key, None if value is None else str(value))
            elif value is not None:
                extra[key] = str(value)
        config.extra = extra
        return config

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {key: getattr(self, key) for key in _KNOWN_CONFIG_KEYS}
        data["extra"] = dict(self.extra)
        return data

    def raw_value(self, key: str) -> str | None:
        if key in _KNOWN_CONFIG_KEYS:
            value = getattr(self, key)
            return None if value is None else str(value)
        return self.extra.get(key)


def validate_config(metadata: ProviderMetadata, config: ProviderConfig) -> list[str]:
    """Return the keys of required fields the config leaves blank."""
    missing: list[str] = []
    for config_field in metadata.config_schema:
        if not config_field.required:
            continue
        value = config.raw_value(config_field.key)
        if (value is None or not value.strip()) and not config_field.default:
            missing.append(config_field.key)
    return missing


def coerce_value(raw: str | None, default: T) -> T:
    """Coerce a stored string to the type of ``default``; blank means default."""
    if raw is None or raw == "":
        return default
    try:
        if isinstance(default, bool):
            return raw.strip().lower() in {"1", "true", "yes", "on"}  # type: ignore[return-value]
        if isinstance(default, int):
            return int(float(raw))  # type: ignore[return-value]
        if isinstance(default, float):
            return float(raw)  # type: ignore[return-value]
    except ValueError:
        logger.warning("Config value %r is not a valid %s", raw, type(default).__name__)
        return default
    return raw  # type: ignore[return-value]


class ConfiguredProvider:
    """Config access and HTTP client plumbing shared by LLM and TTS providers."""

    metadata: ProviderMetadata = ProviderMetadata(id="", name="")

    def __init__(
        self,
        config: ProviderConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self.initialized = False
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def initialize(self) -> None:
        self.initialized = True

    async def terminate(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await client.aclose()
        self.initialized = False

    def get_config_value(self, key: str, default: T) -> T:
        return coerce_value(self.config.raw_value(key), default)

    def default_headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        return headers

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            timeout = self.config.timeout or get_settings().default_provider_timeout_seconds
            self._client = httpx.AsyncClient(
                timeout=float(timeout),
                proxy=self.config.proxy or None,
                transport=self._transport,
                headers=self.default_headers(),
            )
        return self._client


class LLMProvider(ConfiguredProvider):
    """Base class for chat providers.

    Subclasses implement `chat()` and usually override `chat_stream()` and
    `get_models()`. Network failures inside `chat()` are returned as a
    response with ``finish_reason="error"``; `chat_stream()` reports them as a
    terminal chunk whose delta carries the error text.
    """

    async def chat(self, request: LLMRequest) -> LLMResponse:
        raise NotImplementedError

    async def chat_stream(self, request: LLMRequest) -> AsyncIterator[LLMStreamChunk]:
        """Fallback stream built from a single `chat()` round trip."""
        response = await self.chat(request)
        if response.is_error:
            yield LLMStreamChunk(
                delta=response.text or "request failed", done=True, finish_reason="error"
            )
            return
        deltas = [
            ToolCallDelta(index=i, id=call.id, name=call.name, arguments=call.arguments)
            for i, call in enumerate(response.tool_calls or [])
        ]
        if response.text or response.reasoning_content or deltas:
            yield LLMStreamChunk(
                delta=response.text,
                reasoning_delta=response.reasoning_content,
                tool_call_deltas=deltas or None,
            )
        yield LLMStreamChunk(
            done=True, usage=response.usage, finish_reason=response.finish_reason or "stop"
        )

    async def get_models(self) -> list[str]:
        return [self.config.model] if self.config.model else []

    async def test(self) -> TestResult:
        try:
            if not self.initialized:
                await self.initialize()
            models = await self.get_models()
        except Exception as exc:
            return TestResult(success=False, error=str(exc) or type(exc).__name__)
        if not models:
            return TestResult(success=False, error="no models available")
        return TestResult(success=True, model=models[0])

    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(
            supports_text=self.get_config_value("supports_text", True),
            supports_vision=self.get_config_value("supports_vision", False),
            supports_file=self.get_config_value("supports_file", False),
            supports_tool_calling=self.get_config_value("supports_tool_calling", True),
        )
