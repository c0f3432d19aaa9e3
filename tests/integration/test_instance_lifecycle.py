import asyncio

import pytest

from nyaagent.agent.events import EventKind
from nyaagent.agent.service import AgentService
from nyaagent.config import get_settings
from nyaagent.providers.base import (
    LLMProvider,
    LLMRequest,
    LLMResponse,
    ProviderConfig,
    ProviderMetadata,
    ProviderStatus,
)
from nyaagent.providers.instances import ProviderInstanceConfig, ProviderInstanceManager
from nyaagent.providers.registry import ProviderRegistry

SLOW_METADATA = ProviderMetadata(id="slow", name="Slow")


class SlowProvider(LLMProvider):
    """Connects only after ``delay`` seconds and then answers with its model name."""

    metadata = SLOW_METADATA
    terminated = 0

    def __init__(self, config: ProviderConfig, delay: float) -> None:
        super().__init__(config)
        self.delay = delay

    async def initialize(self) -> None:
        await asyncio.sleep(self.delay)
        self.initialized = True

    async def terminate(self) -> None:
        SlowProvider.terminated += 1
        await super().terminate()

    async def chat(self, request: LLMRequest) -> LLMResponse:
        return LLMResponse(text=f"reply from {self.config.model}")


def _manager(delay: float) -> ProviderInstanceManager:
    registry: ProviderRegistry[LLMProvider] = ProviderRegistry("llm")
    registry.register(SLOW_METADATA, lambda config: SlowProvider(config, delay))
    return ProviderInstanceManager(registry)


def _instance(instance_id: str, model: str) -> dict:
    return {"instance_id": instance_id, "provider_id": "slow", "config": {"model": model}}


@pytest.mark.asyncio
async def test_turn_started_during_startup_waits_for_primary() -> None:
    instances = _manager(0.05)
    instances.load({"llm_instances": [_instance("a", "m-a")], "primary_llm_instance_id": "a"})
    assert instances.llm.get("a").status == ProviderStatus.CONNECTING
    service = AgentService(instances)
    events = []

    await service.handle_user_input("hi", emit=events.append)

    assert events[-1].text == "reply from m-a"
    await service.close()


@pytest.mark.asyncio
async def test_turn_reports_still_initializing_after_timeout() -> None:
    instances = _manager(5.0)
    instances.load({"llm_instances": [_instance("a", "m-a")], "primary_llm_instance_id": "a"})
    settings = get_settings().model_copy(update={"provider_ready_timeout_seconds": 0.01})
    service = AgentService(instances, settings=settings)
    events = []

    await service.handle_user_input("hi", emit=events.append)

    assert events[0].kind == EventKind.DIALOGUE_COMPLETE
    assert events[0].text == (
        "[Warning] still initializing, try again later. Check LLM provider configuration."
    )
    await service.close()
    assert instances.llm.get("a").status == ProviderStatus.IDLE


@pytest.mark.asyncio
async def test_removing_primary_reassigns_and_terminates() -> None:
    instances = _manager(0)
    tasks = instances.load(
        {
            "llm_instances": [_instance("a", "m-a"), _instance("b", "m-b")],
            "primary_llm_instance_id": "a",
        }
    )
    await asyncio.gather(*tasks)
    service = AgentService(instances)
    SlowProvider.terminated = 0

    assert await instances.llm.remove("a") is True

    assert SlowProvider.terminated == 1
    assert instances.llm.primary_id == "b"
    events = []
    await service.handle_user_input("hi", emit=events.append)
    assert events[-1].text == "reply from m-b"

    await instances.llm.remove("b")
    assert instances.llm.primary_id == ""
    events.clear()
    await service.handle_user_input("hi", emit=events.append)
    assert events[-1].text.startswith("[Warning] no primary LLM instance set")


@pytest.mark.asyncio
async def test_disabled_primary_is_reported() -> None:
    instances = _manager(0)
    instances.llm.add(ProviderInstanceConfig("a", "slow", config=ProviderConfig(model="m")))
    await instances.llm.initialize("a")
    await instances.llm.disable("a")
    service = AgentService(instances)
    events = []

    await service.handle_user_input("hi", emit=events.append)

    assert events[0].text.startswith("[Warning] instance not enabled.")
