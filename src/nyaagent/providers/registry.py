"""Provider type registry: type id -> metadata + factory."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

from nyaagent.providers.base import ProviderConfig, ProviderMetadata

logger = logging.getLogger(__name__)

P = TypeVar("P")


@dataclass(slots=True)
class _RegistryEntry(Generic[P]):
    metadata: ProviderMetadata
    factory: Callable[[ProviderConfig], P]


class ProviderRegistry(Generic[P]):
    """Maps provider type ids to a factory.

    One registry is built at startup per provider kind and passed to the
    instance manager; nothing here is process-global.
    """

    def __init__(self, kind: str = "llm") -> None:
        self.kind = kind
        self._entries: dict[str, _RegistryEntry[P]] = {}

    def register(self, metadata: ProviderMetadata, factory: Callable[[ProviderConfig], P]) -> None:
        if metadata.id in self._entries:
            logger.warning("Replacing %s provider type: %s", self.kind, metadata.id)
        self._entries[metadata.id] = _RegistryEntry(metadata=metadata, factory=factory)

    def unregister(self, provider_id: str) -> bool:
        return self._entries.pop(provider_id, None) is not None

    def create(self, provider_id: str, config: ProviderConfig) -> P | None:
        entry = self._entries.get(provider_id)
        if entry is None:
            return None
        return entry.factory(config)

    def get(self, provider_id: str) -> ProviderMetadata | None:
        entry = self._entries.get(provider_id)
        return entry.metadata if entry is not None else None

    def has(self, provider_id: str) -> bool:
        return provider_id in self._entries

    def all(self) -> list[ProviderMetadata]:
        return [entry.metadata for entry in self._entries.values()]
