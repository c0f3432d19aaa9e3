import asyncio
import os
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

import pytest

from nyaagent.agent.service import AgentService, build_agent_service
from nyaagent.config import get_settings
from nyaagent.providers.base import (
    LLMProvider,
    LLMRequest,
    LLMResponse,
    LLMStreamChunk,
    ProviderConfig,
    ProviderMetadata,
)
from nyaagent.providers.instances import ProviderInstanceManager
from nyaagent.providers.registry import ProviderRegistry

_ENV_PREFIXES = ("LLM_", "NYA_", "MAX_TOOL_", "PROVIDER_READY_", "USE_CUSTOM_", "CUSTOM_")

SCRIPTED_METADATA = ProviderMetadata(id="scripted", name="Scripted", description="Test double")


@dataclass
class Script:
    """Queued replies for `ScriptedProvider`; the last entry repeats forever."""

    responses: list[LLMResponse] = field(default_factory=list)
    streams: list[list[LLMStreamChunk]] = field(default_factory=list)
    requests: list[LLMRequest] = field(default_factory=list)

    def next_response(self) -> LLMResponse:
        return self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]

    def next_stream(self) -> list[LLMStreamChunk]:
        return self.streams.pop(0) if len(self.streams) > 1 else self.streams[0]


class ScriptedProvider(LLMProvider):
    metadata = SCRIPTED_METADATA

    def __init__(self, config: ProviderConfig, script: Script) -> None:
        super().__init__(config)
        self.script = script

    async def chat(self, request: LLMRequest) -> LLMResponse:
        self.script.requests.append(request)
        return self.script.next_response()

    async def chat_stream(self, request: LLMRequest) -> AsyncIterator[LLMStreamChunk]:
        self.script.requests.append(request)
        for chunk in self.script.next_stream():
            yield chunk


@pytest.fixture(autouse=True)
def test_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith(_ENV_PREFIXES) or key in {"APP_ENV", "LOG_JSON", "LLM_SYSTEM_PROMPT"}:
            monkeypatch.delenv(key, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def script() -> Script:
    return Script()


@pytest.fixture
def scripted_registry(script: Script) -> ProviderRegistry[LLMProvider]:
    registry: ProviderRegistry[LLMProvider] = ProviderRegistry("llm")
    registry.register(SCRIPTED_METADATA, lambda config: ScriptedProvider(config, script))
    return registry


@pytest.fixture
def make_service(scripted_registry):
    """Build an `AgentService` whose primary LLM instance replays ``script``."""

    async def _make(
        *,
        builtins: bool = False,
        tts_registry: ProviderRegistry[Any] | None = None,
        tts_instances: list[dict[str, Any]] | None = None,
        **overrides: Any,
    ) -> AgentService:
        instances = ProviderInstanceManager(scripted_registry, tts_registry)
        tasks = instances.load(
            {
                "llm_instances": [
                    {
                        "instance_id": "main",
                        "provider_id": "scripted",
                        "display_name": "Main",
                        "config": {"model": "stub-model"},
                    }
                ],
                "primary_llm_instance_id": "main",
                "tts_instances": tts_instances or [],
            }
        )
        await asyncio.gather(*tasks)
        settings = get_settings().model_copy(update=overrides)
        return build_agent_service(instances, settings=settings, with_builtins=builtins)

    return _make
