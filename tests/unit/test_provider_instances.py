import asyncio

import pytest

from nyaagent.errors import ConfigError
from nyaagent.providers.base import (
    LLMProvider,
    LLMRequest,
    LLMResponse,
    ProviderConfig,
    ProviderConfigField,
    ProviderMetadata,
    ProviderStatus,
)
from nyaagent.providers.instances import (
    InstanceTable,
    ProviderInstanceConfig,
    ProviderInstanceManager,
)
from nyaagent.providers.registry import ProviderRegistry

KEYED = ProviderMetadata(
    id="keyed",
    name="Keyed",
    config_schema=[ProviderConfigField(key="api_key", label="Key", required=True)],
)


class _Keyed(LLMProvider):
    metadata = KEYED
    gate: asyncio.Event | None = None
    terminated: list[str] = []

    async def initialize(self) -> None:
        if _Keyed.gate is not None:
            await _Keyed.gate.wait()
        if self.config.api_key == "bad":
            raise RuntimeError("auth rejected")
        self.initialized = True

    async def terminate(self) -> None:
        _Keyed.terminated.append(self.config.api_key or "")
        await super().terminate()

    async def chat(self, request: LLMRequest) -> LLMResponse:
        return LLMResponse(text="ok")


@pytest.fixture
def table() -> InstanceTable[LLMProvider]:
    _Keyed.gate = None
    _Keyed.terminated = []
    registry: ProviderRegistry[LLMProvider] = ProviderRegistry("llm")
    registry.register(KEYED, _Keyed)
    return InstanceTable(registry)


def _config(instance_id: str, api_key: str | None = "k", enabled: bool = True):
    return ProviderInstanceConfig(
        instance_id=instance_id,
        provider_id="keyed",
        display_name=instance_id.upper(),
        config=ProviderConfig(api_key=api_key, model=f"model-{instance_id}"),
        enabled=enabled,
    )


def test_first_added_instance_becomes_primary(table) -> None:
    table.add(_config("a"))
    table.add(_config("b"))

    assert table.primary_id == "a"
    assert [i.instance_id for i in table.list()] == ["a", "b"]
    assert table.get("a").is_primary is True
    assert table.get("b").status == ProviderStatus.IDLE


def test_add_rejects_unknown_type_and_duplicate_id(table) -> None:
    table.add(_config("a"))

    with pytest.raises(ConfigError, match="unknown llm provider type"):
        table.add(ProviderInstanceConfig(instance_id="x", provider_id="nope"))
    with pytest.raises(ConfigError, match="duplicate"):
        table.add(_config("a"))


@pytest.mark.asyncio
async def test_initialize_success_and_failures(table) -> None:
    table.add(_config("ok"))
    table.add(_config("nokey", api_key=None))
    table.add(_config("bad", api_key="bad"))

    assert (await table.initialize("ok")).model == "model-ok"
    missing = await table.initialize("nokey")
    failed = await table.initialize("bad")

    assert table.get("ok").status == ProviderStatus.CONNECTED
    assert table.get_provider("ok") is not None
    assert missing.error == "missing required config: api_key"
    assert table.get("nokey").status == ProviderStatus.ERROR
    assert failed.error == "auth rejected"
    assert table.get("bad").error == "auth rejected"
    assert (await table.initialize("ghost")).error == "instance ghost not found"


@pytest.mark.asyncio
async def test_remove_terminates_and_reassigns_primary(table) -> None:
    table.add(_config("a", api_key="key-a"))
    table.add(_config("b"))
    await table.initialize("a")

    assert await table.remove("a") is True

    assert _Keyed.terminated == ["key-a"]
    assert table.primary_id == "b"
    assert "a" not in table
    assert await table.remove("a") is False
    await table.remove("b")
    assert table.primary_id == ""
    assert len(table) == 0


@pytest.mark.asyncio
async def test_remove_during_initialize_discards_new_provider(table) -> None:
    _Keyed.gate = asyncio.Event()
    table.add(_config("a", api_key="late"))
    pending = asyncio.create_task(table.initialize("a"))
    await asyncio.sleep(0)

    await table.remove("a")
    _Keyed.gate.set()
    result = await pending

    assert result.success is False
    assert _Keyed.terminated == ["late"]


@pytest.mark.asyncio
async def test_wait_for_primary_wakes_on_connect(table) -> None:
    _Keyed.gate = asyncio.Event()
    task = table.load([_config("a")], "a")
    assert table.get("a").status == ProviderStatus.CONNECTING

    waiter = asyncio.create_task(table.wait_for_primary(2.0))
    await asyncio.sleep(0)
    assert not waiter.done()
    _Keyed.gate.set()

    assert await waiter is table.get_provider("a")
    assert [r.success for r in await task] == [True]


@pytest.mark.asyncio
async def test_wait_for_primary_gives_up_after_timeout(table) -> None:
    _Keyed.gate = asyncio.Event()
    table.load([_config("a")], "a")

    assert await table.wait_for_primary(0.01) is None
    assert table.get("a").status == ProviderStatus.CONNECTING
    await table.close()


@pytest.mark.asyncio
async def test_update_reconnects_with_new_config(table) -> None:
    table.add(_config("a", api_key="old"))
    await table.initialize("a")

    await table.update("a", _config("ignored", api_key="new"))
    provider = await table.wait_for_primary(1.0)

    assert _Keyed.terminated == ["old"]
    assert provider.config.api_key == "new"
    assert table.get_config("a").instance_id == "a"


@pytest.mark.asyncio
async def test_update_during_slow_initialize_keeps_only_new_config(table) -> None:
    _Keyed.gate = asyncio.Event()
    table.add(_config("a", api_key="old"))
    first = asyncio.create_task(table.initialize("a"))
    await asyncio.sleep(0)

    await table.update("a", _config("a", api_key="new"))
    await asyncio.sleep(0)
    _Keyed.gate.set()
    stale = await first
    provider = await table.wait_for_primary(1.0)

    assert stale.success is False
    assert provider.config.api_key == "new"
    assert _Keyed.terminated == ["old"]
    assert table.get("a").status == ProviderStatus.CONNECTED


@pytest.mark.asyncio
async def test_overlapping_initialize_leaves_one_live_provider(table) -> None:
    _Keyed.gate = asyncio.Event()
    table.add(_config("a"))
    first = asyncio.create_task(table.initialize("a"))
    second = asyncio.create_task(table.initialize("a"))
    await asyncio.sleep(0)
    _Keyed.gate.set()

    results = await asyncio.gather(first, second)

    assert [r.success for r in results] == [False, True]
    assert _Keyed.terminated == ["k"]
    assert table.get_provider("a") is not None


@pytest.mark.asyncio
async def test_disable_during_initialize_discards_new_provider(table) -> None:
    _Keyed.gate = asyncio.Event()
    table.add(_config("a", api_key="late"))
    pending = asyncio.create_task(table.initialize("a"))
    await asyncio.sleep(0)

    await table.disable("a")
    _Keyed.gate.set()

    assert (await pending).success is False
    assert _Keyed.terminated == ["late"]
    assert table.get("a").status == ProviderStatus.IDLE


@pytest.mark.asyncio
async def test_reload_terminates_previous_providers(table) -> None:
    await table.load([_config("a", api_key="live")], "a")
    _Keyed.gate = asyncio.Event()
    table.add(_config("b", api_key="pending"))
    await table.update("b", _config("b", api_key="pending"))
    await asyncio.sleep(0)

    task = table.load([_config("c", api_key="fresh")], "c")
    _Keyed.gate.set()
    results = await task

    assert [r.success for r in results] == [True]
    assert [i.instance_id for i in table.list()] == ["c"]
    assert table.get_provider("c").config.api_key == "fresh"
    await table.close()
    assert sorted(_Keyed.terminated) == ["fresh", "live", "pending"]


@pytest.mark.asyncio
async def test_disable_and_enable(table) -> None:
    table.add(_config("a"))
    await table.initialize("a")

    await table.disable("a")
    assert table.get("a").enabled is False
    assert table.get("a").status == ProviderStatus.IDLE
    assert await table.wait_for_primary(0.1) is None
    assert await table.ensure_connected("a") is None

    result = await table.enable("a")
    assert result.success is True
    assert table.get("a").status == ProviderStatus.CONNECTED


@pytest.mark.asyncio
async def test_ensure_connected_initializes_lazily(table) -> None:
    table.add(_config("a"))

    provider = await table.ensure_connected("a")

    assert provider is not None
    assert await table.ensure_connected("a") is provider


@pytest.mark.asyncio
async def test_load_skips_unknown_types_and_falls_back_primary(table) -> None:
    task = table.load(
        [ProviderInstanceConfig("x", "nope"), _config("a", enabled=False), _config("b")],
        primary_id="x",
    )

    assert [i.instance_id for i in table.list()] == ["a", "b"]
    assert table.primary_id == "a"
    assert table.get("a").status == ProviderStatus.IDLE
    assert table.get("b").status == ProviderStatus.CONNECTING
    await task
    assert table.get("b").status == ProviderStatus.CONNECTED


def test_get_config_returns_a_copy(table) -> None:
    table.add(_config("a"))

    copy = table.get_config("a")
    copy.config.api_key = "changed"

    assert table.get_config("a").config.api_key == "k"


@pytest.mark.asyncio
async def test_manager_snapshots_and_export_round_trip() -> None:
    registry: ProviderRegistry[LLMProvider] = ProviderRegistry("llm")
    registry.register(KEYED, _Keyed)
    _Keyed.gate = None
    manager = ProviderInstanceManager(registry)
    snapshots = []
    unsubscribe = manager.subscribe(snapshots.append)

    def broken(_snapshot) -> None:
        raise RuntimeError("listener bug")

    manager.subscribe(broken)

    tasks = manager.load(
        {
            "llm_instances": [
                {"instanceId": "a", "providerId": "keyed", "config": {"apiKey": "k"}},
            ],
            "primary_llm_instance_id": "a",
        }
    )
    await asyncio.gather(*tasks)

    assert snapshots[-1].primary_llm_id == "a"
    assert snapshots[-1].llm[0].status == ProviderStatus.CONNECTED
    exported = manager.export()
    assert exported["llm_instances"][0]["config"]["api_key"] == "k"
    assert exported["primary_tts_instance_id"] == ""

    unsubscribe()
    count = len(snapshots)
    manager.llm.set_primary("a")
    assert len(snapshots) == count
    await manager.close()
    assert manager.llm.get("a").status == ProviderStatus.IDLE
