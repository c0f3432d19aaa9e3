"""OpenAI chat-completions adapter, also the base for compatible vendors."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx

from nyaagent.errors import ProviderError
from nyaagent.providers.base import (
    ChatMessage,
    LLMProvider,
    LLMRequest,
    LLMResponse,
    LLMStreamChunk,
    ProviderConfig,
    ProviderConfigField,
    ProviderMetadata,
    TokenUsage,
    ToolCallDelta,
    ToolCallInfo,
)

logger = logging.getLogger(__name__)


def common_config_fields(
    *,
    base_url: str,
    model: str | None,
    model_required: bool = False,
) -> list[ProviderConfigField]:
    return [
        ProviderConfigField(
            key="api_key",
            label="API Key",
            type="password",
            required=True,
            placeholder="sk-...",
        ),
        ProviderConfigField(
            key="base_url",
            label="API Base URL",
            default=base_url,
            placeholder=base_url,
        ),
        ProviderConfigField(
            key="model",
            label="Model",
            required=model_required,
            default=model,
            placeholder=model or "model id",
        ),
        ProviderConfigField(key="timeout", label="Timeout (s)", type="number", default="60"),
        ProviderConfigField(
            key="proxy", label="Proxy", placeholder="http://127.0.0.1:7890"
        ),
        ProviderConfigField(
            key="stream",
            label="Stream responses",
            type="boolean",
            default="false",
        ),
        ProviderConfigField(
            key="supports_vision", label="Supports images", type="boolean", default="false"
        ),
        ProviderConfigField(
            key="supports_tool_calling",
            label="Supports tool calling",
            type="boolean",
            default="true",
        ),
    ]


OPENAI_METADATA = ProviderMetadata(
    id="openai",
    name="OpenAI",
    description="OpenAI chat completions API or any endpoint speaking the same protocol.",
    config_schema=common_config_fields(base_url="https://api.openai.com/v1", model="gpt-4o-mini"),
)


def _sse_payload(line: str) -> str | None:
    if not line or not line.startswith("data:"):
        return None
    payload = line[len("data:"):].strip()
    return payload or None


def _parse_usage(value: object) -> TokenUsage | None:
    if not isinstance(value, dict):
        return None
    return TokenUsage(
        prompt_tokens=int(value.get("prompt_tokens") or 0),
        completion_tokens=int(value.get("completion_tokens") or 0),
        total_tokens=int(value.get("total_tokens") or 0),
    )


class OpenAIProvider(LLMProvider):
    metadata = OPENAI_METADATA
    default_base_url = "https://api.openai.com/v1"
    default_model: str | None = "gpt-4o-mini"

    def __init__(
        self,
        config: ProviderConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(config, transport=transport)
        self._models: list[str] = []

    @property
    def base_url(self) -> str:
        return self.get_config_value("base_url", self.default_base_url).rstrip("/")

    @property
    def model_name(self) -> str:
        return self.get_config_value("model", self.default_model or "")

    async def initialize(self) -> None:
        if not self.model_name:
            raise ProviderError(f"{self.metadata.name}: model is required", retryable=False)
        self.initialized = True

    @staticmethod
    def _coerce_text(value: object) -> str:
        if isinstance(value, str):
            return value
        if isinstance(value, list):
            chunks: list[str] = []
            for item in value:
                if isinstance(item, str):
                    chunks.append(item)
                elif isinstance(item, dict):
                    text = item.get("text")
                    if isinstance(text, str):
                        chunks.append(text)
            return "".join(chunks)
        return ""

    @staticmethod
    def _to_tools(tools: list[dict[str, Any]] | None) -> list[dict[str, Any]] | None:
        if not tools:
            return None
        normalized: list[dict[str, Any]] = []
        for tool in tools:
            name = tool.get("name")
            if not isinstance(name, str) or not name:
                continue
            params = tool.get("parameters")
            function: dict[str, Any] = {
                "name": name,
                "parameters": (
                    params if isinstance(params, dict) else {"type": "object", "properties": {}}
                ),
            }
            description = tool.get("description")
            if isinstance(description, str) and description:
                function["description"] = description
            normalized.append({"type": "function", "function": function})
        return normalized or None

    def _to_message(self, message: ChatMessage) -> dict[str, Any]:
        if message.role == "tool":
            return {
                "role": "tool",
                "content": message.content,
                "tool_call_id": message.tool_call_id or "",
            }
        item: dict[str, Any] = {"role": message.role, "content": message.content}
        if message.role == "assistant" and message.tool_calls:
            item["content"] = message.content or None
            item["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": call.arguments},
                }
                for call in message.tool_calls
            ]
        if message.role == "assistant" and message.reasoning_content is not None:
            item["reasoning_content"] = message.reasoning_content
        attachment = message.attachment
        if (
            attachment is not None
            and attachment.type == "image"
            and (attachment.url or attachment.data)
            and self.capabilities().supports_vision
        ):
            url = attachment.url or (
                f"data:{attachment.mime_type or 'image/png'};base64,{attachment.data}"
            )
            item["content"] = [
                {"type": "text", "text": message.content},
                {"type": "image_url", "image_url": {"url": url}},
            ]
        return item

    def _build_body(self, request: LLMRequest, *, stream: bool) -> dict[str, Any]:
        messages: list[dict[str, Any]] = []
        if request.system_prompt and request.system_prompt.strip():
            messages.append({"role": "system", "content": request.system_prompt})
        messages.extend(self._to_message(message) for message in request.messages)
        body: dict[str, Any] = {
            "model": request.model or self.model_name,
            "messages": messages,
            "stream": stream,
        }
        if request.temperature is not None:
            body["temperature"] = request.temperature
        if request.max_tokens is not None:
            body["max_tokens"] = request.max_tokens
        tools = self._to_tools(request.tools)
        if tools is not None:
            body["tools"] = tools
            body["tool_choice"] = request.tool_choice or "auto"
        if stream:
            body["stream_options"] = {"include_usage": True}
        return body

    @staticmethod
    def _error_text(status_code: int, body: str) -> str:
        try:
            payload = json.loads(body)
        except json.JSONDecodeError:
            payload = None
        if isinstance(payload, dict):
            error = payload.get("error")
            if isinstance(error, dict) and isinstance(error.get("message"), str):
                return error["message"]
        return f"HTTP {status_code}: {body}"

    @staticmethod
    def _parse_tool_calls(raw: object) -> list[ToolCallInfo]:
        calls: list[ToolCallInfo] = []
        if not isinstance(raw, list):
            return calls
        for call in raw:
            if not isinstance(call, dict):
                continue
            fn = call.get("function")
            if not isinstance(fn, dict):
                continue
            name = fn.get("name")
            if not isinstance(name, str) or not name:
                continue
            arguments = fn.get("arguments", "{}")
            if not isinstance(arguments, str):
                arguments = json.dumps(arguments, ensure_ascii=False)
            calls.append(ToolCallInfo(id=str(call.get("id") or ""), name=name, arguments=arguments))
        return calls

    @classmethod
    def _parse_response(cls, payload: dict[str, Any]) -> LLMResponse:
        choices = payload.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            raise ProviderError("chat completion response missing choices")
        first = choices[0]
        message = first.get("message")
        if not isinstance(message, dict):
            raise ProviderError("chat completion response message missing")
        reasoning = cls._coerce_text(message.get("reasoning_content"))
        tool_calls = cls._parse_tool_calls(message.get("tool_calls"))
        return LLMResponse(
            text=cls._coerce_text(message.get("content")),
            usage=_parse_usage(payload.get("usage")),
            model=payload.get("model") if isinstance(payload.get("model"), str) else None,
            finish_reason=first.get("finish_reason"),
            reasoning_content=reasoning or None,
            tool_calls=tool_calls or None,
        )

    @staticmethod
    def _parse_stream_chunk(payload: dict[str, Any]) -> LLMStreamChunk | None:
        choices = payload.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            return None
        first = choices[0]
        delta = first.get("delta")
        if not isinstance(delta, dict):
            delta = {}
        deltas: list[ToolCallDelta] = []
        raw_calls = delta.get("tool_calls")
        if isinstance(raw_calls, list):
            for position, call in enumerate(raw_calls):
                if not isinstance(call, dict):
                    continue
                fn = call.get("function") if isinstance(call.get("function"), dict) else {}
                deltas.append(
                    ToolCallDelta(
                        index=int(call.get("index", position)),
                        id=call.get("id"),
                        name=fn.get("name"),
                        arguments=fn.get("arguments"),
                    )
                )
        content = delta.get("content")
        reasoning = delta.get("reasoning_content")
        return LLMStreamChunk(
            delta=content if isinstance(content, str) else "",
            reasoning_delta=reasoning if isinstance(reasoning, str) else None,
            finish_reason=first.get("finish_reason"),
            tool_call_deltas=deltas or None,
        )

    async def chat(self, request: LLMRequest) -> LLMResponse:
        body = self._build_body(request, stream=False)
        try:
            response = await self.client.post(f"{self.base_url}/chat/completions", json=body)
            if response.status_code >= 400:
                return LLMResponse(
                    text=self._error_text(response.status_code, response.text),
                    finish_reason="error",
                )
            payload = response.json()
            if not isinstance(payload, dict):
                raise ProviderError("chat completion response is not an object")
            return self._parse_response(payload)
        except (httpx.HTTPError, ValueError, ProviderError) as exc:
            logger.warning("%s chat request failed: %s", self.metadata.id, exc)
            return LLMResponse(
                text=f"request failed: {str(exc) or type(exc).__name__}",
                finish_reason="error",
            )

    async def chat_stream(self, request: LLMRequest) -> AsyncIterator[LLMStreamChunk]:
        body = self._build_body(request, stream=True)
        usage: TokenUsage | None = None
        finish_reason: str | None = None
        try:
            async with self.client.stream(
                "POST", f"{self.base_url}/chat/completions", json=body
            ) as response:
                if response.status_code >= 400:
                    raw = (await response.aread()).decode("utf-8", errors="replace")
                    yield LLMStreamChunk(
                        delta=self._error_text(response.status_code, raw),
                        done=True,
                        finish_reason="error",
                    )
                    return
                async for line in response.aiter_lines():
                    payload = _sse_payload(line)
                    if payload is None:
                        continue
                    if payload == "[DONE]":
                        break
                    try:
                        data = json.loads(payload)
                    except json.JSONDecodeError:
                        logger.debug("Skipping malformed stream payload: %s", payload[:200])
                        continue
                    if not isinstance(data, dict):
                        continue
                    chunk = self._parse_stream_chunk(data)
                    if chunk is not None:
                        if chunk.finish_reason:
                            finish_reason = chunk.finish_reason
                        if chunk.delta or chunk.reasoning_delta or chunk.tool_call_deltas:
                            yield chunk
                    chunk_usage = _parse_usage(data.get("usage"))
                    if chunk_usage is not None:
                        usage = chunk_usage
                        break
        except httpx.HTTPError as exc:
            logger.warning("%s stream request failed: %s", self.metadata.id, exc)
            yield LLMStreamChunk(
                delta=f"stream request failed: {str(exc) or type(exc).__name__}",
                done=True,
                finish_reason="error",
            )
            return
        yield LLMStreamChunk(done=True, usage=usage, finish_reason=finish_reason or "stop")

    async def get_models(self) -> list[str]:
        if self._models:
            return list(self._models)
        response = await self.client.get(f"{self.base_url}/models")
        if response.status_code >= 400:
            raise ProviderError(self._error_text(response.status_code, response.text))
        payload = response.json()
        data = payload.get("data") if isinstance(payload, dict) else None
        ids = [
            item["id"]
            for item in data or []
            if isinstance(item, dict) and isinstance(item.get("id"), str)
        ]
        self._models = sorted(ids)
        return list(self._models)
