"""Provider instance manager: configured LLM/TTS instances and their lifecycle."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from nyaagent.errors import ConfigError
from nyaagent.providers.base import (
    ConfiguredProvider,
    LLMProvider,
    ProviderConfig,
    ProviderStatus,
    TestResult,
    validate_config,
)
from nyaagent.providers.registry import ProviderRegistry
from nyaagent.providers.tts import TTSProvider

logger = logging.getLogger(__name__)

P = TypeVar("P", bound=ConfiguredProvider)


@dataclass(slots=True)
class ProviderInstanceConfig:
    instance_id: str
    provider_id: str
    display_name: str = ""
    config: ProviderConfig = field(default_factory=ProviderConfig)
    enabled: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProviderInstanceConfig:
        raw_config = data.get("config")
        return cls(
            instance_id=str(data.get("instance_id") or data.get("instanceId") or ""),
            provider_id=str(data.get("provider_id") or data.get("providerId") or ""),
            display_name=str(data.get("display_name") or data.get("displayName") or ""),
            config=ProviderConfig.from_dict(raw_config if isinstance(raw_config, dict) else {}),
            enabled=bool(data.get("enabled", True)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "provider_id": self.provider_id,
            "display_name": self.display_name,
            "config": self.config.to_dict(),
            "enabled": self.enabled,
        }


@dataclass(slots=True, frozen=True)
class ProviderInstanceInfo:
    """Read-only view of one instance, safe to hand to UI consumers."""

    instance_id: str
    provider_id: str
    display_name: str
    enabled: bool
    status: ProviderStatus
    error: str | None
    is_primary: bool
    model: str | None
    config: dict[str, Any]


@dataclass(slots=True, frozen=True)
class InstancesSnapshot:
    llm: tuple[ProviderInstanceInfo, ...]
    tts: tuple[ProviderInstanceInfo, ...]
    primary_llm_id: str
    primary_tts_id: str


class _Entry(Generic[P]):
    """Runtime state of one instance. ``ready`` is set whenever the entry is
    not CONNECTING, so waiters wake on success, failure or disconnect.

    ``generation`` changes on every config or lifecycle change; an
    initialization that finishes under an older generation is stale.
    """

    def __init__(self, config: ProviderInstanceConfig) -> None:
        self.config = config
        self.provider: P | None = None
        self.status = ProviderStatus.IDLE
        self.error: str | None = None
        self.generation = 0
        self.ready = asyncio.Event()
        self.ready.set()

    def set_status(self, status: ProviderStatus, error: str | None = None) -> None:
        self.status = status
        self.error = error
        if status is ProviderStatus.CONNECTING:
            self.ready.clear()
        else:
            self.ready.set()


class InstanceTable(Generic[P]):
    """Instances of one provider kind plus the pointer to the primary one."""

    def __init__(
        self,
        registry: ProviderRegistry[P],
        *,
        on_change: Callable[[], None] | None = None,
    ) -> None:
        self.registry = registry
        self.kind = registry.kind
        self._entries: dict[str, _Entry[P]] = {}
        self._primary_id = ""
        self._on_change = on_change
        self._tasks: set[asyncio.Task[Any]] = set()
        self._retiring: set[asyncio.Task[None]] = set()

    @property
    def primary_id(self) -> str:
        return self._primary_id

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change()

    def _spawn(self, coro: Any) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _info(self, entry: _Entry[P]) -> ProviderInstanceInfo:
        return ProviderInstanceInfo(
            instance_id=entry.config.instance_id,
            provider_id=entry.config.provider_id,
            display_name=entry.config.display_name,
            enabled=entry.config.enabled,
            status=entry.status,
            error=entry.error,
            is_primary=entry.config.instance_id == self._primary_id,
            model=entry.config.config.model,
            config=entry.config.config.to_dict(),
        )

    # ---------- CRUD ----------

    def add(self, config: ProviderInstanceConfig) -> None:
        if not self.registry.has(config.provider_id):
            raise ConfigError(f"unknown {self.kind} provider type: {config.provider_id}")
        if not config.instance_id or config.instance_id in self._entries:
            raise ConfigError(f"duplicate or empty instance id: {config.instance_id!r}")
        self._entries[config.instance_id] = _Entry(config)
        if len(self._entries) == 1:
            self._primary_id = config.instance_id
        logger.info(
            "Added %s instance %s (%s)", self.kind, config.instance_id, config.provider_id
        )
        self._changed()

    async def remove(self, instance_id: str) -> bool:
        entry = self._entries.get(instance_id)
        if entry is None:
            return False
        entry.generation += 1
        del self._entries[instance_id]
        await self._terminate(entry)
        entry.set_status(ProviderStatus.IDLE)
        if self._primary_id == instance_id:
            self._primary_id = next(iter(self._entries), "")
        logger.info("Removed %s instance %s", self.kind, instance_id)
        self._changed()
        return True

    async def update(self, instance_id: str, config: ProviderInstanceConfig) -> bool:
        entry = self._entries.get(instance_id)
        if entry is None:
            return False
        if not self.registry.has(config.provider_id):
            raise ConfigError(f"unknown {self.kind} provider type: {config.provider_id}")
        config.instance_id = instance_id
        entry.config = config
        entry.generation += 1
        await self._terminate(entry)
        entry.set_status(ProviderStatus.IDLE)
        self._changed()
        if config.enabled:
            entry.set_status(ProviderStatus.CONNECTING)
            self._changed()
            self._spawn(self.initialize(instance_id))
        return True

    # ---------- lifecycle ----------

    async def _terminate(self, entry: _Entry[P]) -> None:
        provider, entry.provider = entry.provider, None
        if provider is not None:
            await self._shutdown(provider, entry.config.instance_id)

    async def _shutdown(self, provider: P, instance_id: str) -> None:
        try:
            await provider.terminate()
        except Exception:
            logger.warning(
                "Failed to terminate %s instance %s", self.kind, instance_id, exc_info=True
            )

    def _is_current(self, instance_id: str, entry: _Entry[P], generation: int) -> bool:
        return self._entries.get(instance_id) is entry and entry.generation == generation

    async def initialize(self, instance_id: str) -> TestResult:
        entry = self._entries.get(instance_id)
        if entry is None:
            return TestResult(success=False, error=f"instance {instance_id} not found")
        entry.generation += 1
        generation = entry.generation
        await self._terminate(entry)
        if not self._is_current(instance_id, entry, generation):
            return TestResult(success=False, error=f"instance {instance_id} changed during init")
        entry.set_status(ProviderStatus.CONNECTING)
        self._changed()
        config = entry.config
        provider: P | None = None
        try:
            metadata = self.registry.get(config.provider_id)
            if metadata is not None:
                missing = validate_config(metadata, config.config)
                if missing:
                    raise ConfigError(f"missing required config: {', '.join(missing)}")
            provider = self.registry.create(config.provider_id, config.config)
            if provider is None:
                raise ConfigError(f"cannot create provider: {config.provider_id}")
            await provider.initialize()
        except asyncio.CancelledError:
            if provider is not None:
                await self._shutdown(provider, instance_id)
            raise
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            logger.warning("Initializing %s instance %s failed: %s", self.kind, instance_id, message)
            if self._is_current(instance_id, entry, generation):
                entry.set_status(ProviderStatus.ERROR, message)
                self._changed()
            return TestResult(success=False, error=message)
        if not self._is_current(instance_id, entry, generation) or not entry.config.enabled:
            logger.info("Discarding stale %s provider for instance %s", self.kind, instance_id)
            await self._shutdown(provider, instance_id)
            return TestResult(success=False, error=f"instance {instance_id} changed during init")
        await self._terminate(entry)
        entry.provider = provider
        entry.set_status(ProviderStatus.CONNECTED)
        logger.info("Connected %s instance %s", self.kind, instance_id)
        self._changed()
        return TestResult(success=True, model=config.config.model)

    async def disconnect(self, instance_id: str) -> TestResult:
        entry = self._entries.get(instance_id)
        if entry is None:
            return TestResult(success=False, error=f"instance {instance_id} not found")
        entry.generation += 1
        await self._terminate(entry)
        entry.set_status(ProviderStatus.IDLE)
        self._changed()
        return TestResult(success=True)

    async def enable(self, instance_id: str) -> TestResult:
        entry = self._entries.get(instance_id)
        if entry is None:
            return TestResult(success=False, error=f"instance {instance_id} not found")
        entry.config.enabled = True
        return await self.initialize(instance_id)

    async def disable(self, instance_id: str) -> TestResult:
        entry = self._entries.get(instance_id)
        if entry is None:
            return TestResult(success=False, error=f"instance {instance_id} not found")
        entry.config.enabled = False
        entry.generation += 1
        await self._terminate(entry)
        entry.set_status(ProviderStatus.IDLE)
        self._changed()
        return TestResult(success=True)

    async def ensure_connected(self, instance_id: str) -> P | None:
        """Lazily initialize an enabled instance and return its provider."""
        entry = self._entries.get(instance_id)
        if entry is None or not entry.config.enabled:
            return None
        if entry.provider is None:
            if entry.status is ProviderStatus.CONNECTING:
                await entry.ready.wait()
            else:
                await self.initialize(instance_id)
        return entry.provider

    # ---------- primary ----------

    def set_primary(self, instance_id: str) -> bool:
        if instance_id not in self._entries:
            return False
        self._primary_id = instance_id
        self._changed()
        return True

    def primary_provider(self) -> P | None:
        entry = self._entries.get(self._primary_id)
        return entry.provider if entry is not None else None

    async def wait_for_primary(self, timeout: float) -> P | None:
        """Return the primary provider, waiting up to ``timeout`` seconds while
        it is still connecting."""
        entry = self._entries.get(self._primary_id)
        if entry is None or not entry.config.enabled:
            return None
        if entry.status is ProviderStatus.CONNECTING:
            logger.info("Waiting for %s instance %s to connect", self.kind, self._primary_id)
            try:
                await asyncio.wait_for(entry.ready.wait(), timeout)
            except TimeoutError:
                logger.warning("%s instance %s still connecting", self.kind, self._primary_id)
        return entry.provider

    # ---------- queries ----------

    def get(self, instance_id: str) -> ProviderInstanceInfo | None:
        entry = self._entries.get(instance_id)
        return self._info(entry) if entry is not None else None

    def get_config(self, instance_id: str) -> ProviderInstanceConfig | None:
        entry = self._entries.get(instance_id)
        if entry is None:
            return None
        return ProviderInstanceConfig.from_dict(entry.config.to_dict())

    def get_provider(self, instance_id: str) -> P | None:
        entry = self._entries.get(instance_id)
        return entry.provider if entry is not None else None

    def list(self) -> list[ProviderInstanceInfo]:
        return [self._info(entry) for entry in self._entries.values()]

    def __contains__(self, instance_id: object) -> bool:
        return instance_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    # ---------- bulk ----------

    def load(
        self,
        configs: list[ProviderInstanceConfig],
        primary_id: str = "",
    ) -> asyncio.Task[list[TestResult]] | None:
        """Replace all instances and schedule initialization of enabled ones.

        Enabled entries are marked CONNECTING before this returns, so a request
        arriving before the task runs sees "initializing", not "not configured".
        Pending initializations of the previous set are cancelled and its live
        providers are terminated in the background.
        """
        for task in list(self._tasks):
            task.cancel()
        retired: list[tuple[str, P]] = []
        for instance_id, entry in self._entries.items():
            entry.generation += 1
            if entry.provider is not None:
                retired.append((instance_id, entry.provider))
                entry.provider = None
            entry.set_status(ProviderStatus.IDLE)
        if retired:
            retiring = asyncio.get_running_loop().create_task(self._retire(retired))
            self._retiring.add(retiring)
            retiring.add_done_callback(self._retiring.discard)

        self._entries.clear()
        for config in configs:
            if not self.registry.has(config.provider_id):
                logger.warning(
                    "Skipping %s instance %s: unknown provider %s",
                    self.kind,
                    config.instance_id,
                    config.provider_id,
                )
                continue
            self._entries[config.instance_id] = _Entry(config)
        if primary_id in self._entries:
            self._primary_id = primary_id
        else:
            self._primary_id = next(iter(self._entries), "")
        pending = [entry for entry in self._entries.values() if entry.config.enabled]
        for entry in pending:
            entry.set_status(ProviderStatus.CONNECTING)
        self._changed()
        if not pending:
            return None
        ids = [entry.config.instance_id for entry in pending]
        return self._spawn(self._initialize_many(ids))

    async def _retire(self, providers: list[tuple[str, P]]) -> None:
        for instance_id, provider in providers:
            await self._shutdown(provider, instance_id)
        logger.info("Terminated %d replaced %s provider(s)", len(providers), self.kind)

    async def _initialize_many(self, instance_ids: list[str]) -> list[TestResult]:
        return list(await asyncio.gather(*(self.initialize(i) for i in instance_ids)))

    def export(self) -> tuple[list[dict[str, Any]], str]:
        return [entry.config.to_dict() for entry in self._entries.values()], self._primary_id

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._retiring:
            await asyncio.gather(*self._retiring, return_exceptions=True)
        for entry in self._entries.values():
            entry.generation += 1
            await self._terminate(entry)
            entry.set_status(ProviderStatus.IDLE)


class ProviderInstanceManager:
    """Owns the LLM and TTS instance tables and publishes snapshots on change."""

    def __init__(
        self,
        llm_registry: ProviderRegistry[LLMProvider],
        tts_registry: ProviderRegistry[TTSProvider] | None = None,
    ) -> None:
        self._listeners: list[Callable[[InstancesSnapshot], None]] = []
        self.llm: InstanceTable[LLMProvider] = InstanceTable(llm_registry, on_change=self._notify)
        self.tts: InstanceTable[TTSProvider] = InstanceTable(
            tts_registry or ProviderRegistry("tts"), on_change=self._notify
        )

    def snapshot(self) -> InstancesSnapshot:
        return InstancesSnapshot(
            llm=tuple(self.llm.list()),
            tts=tuple(self.tts.list()),
            primary_llm_id=self.llm.primary_id,
            primary_tts_id=self.tts.primary_id,
        )

    def subscribe(self, listener: Callable[[InstancesSnapshot], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self) -> None:
        if not self._listeners:
            return
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.warning("Instance listener failed", exc_info=True)

    def load(self, data: dict[str, Any]) -> list[asyncio.Task[list[TestResult]]]:
        """Load both tables from a plain mapping (see `export`)."""
        tasks = []
        for table, key in ((self.llm, "llm"), (self.tts, "tts")):
            configs = [
                ProviderInstanceConfig.from_dict(item)
                for item in data.get(f"{key}_instances", [])
                if isinstance(item, dict)
            ]
            task = table.load(configs, str(data.get(f"primary_{key}_instance_id", "")))
            if task is not None:
                tasks.append(task)
        return tasks

    def export(self) -> dict[str, Any]:
        llm_configs, llm_primary = self.llm.export()
        tts_configs, tts_primary = self.tts.export()
        return {
            "llm_instances": llm_configs,
            "primary_llm_instance_id": llm_primary,
            "tts_instances": tts_configs,
            "primary_tts_instance_id": tts_primary,
        }

    async def close(self) -> None:
        await self.llm.close()
        await self.tts.close()
