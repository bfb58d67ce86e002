"""Shared fixtures for resilience tests: in-memory store and a scripted sync target."""
from __future__ import annotations

from typing import Callable, Iterator, Union

import pytest

from fieldops.resilience.config import ServiceConfig
from fieldops.resilience.models import BufferedItem
from fieldops.resilience.service import ResilienceService
from fieldops.resilience.storage import MemoryStore
from fieldops.resilience.sync import SyncTarget


class FakeTarget(SyncTarget):
    """Accepts or rejects items according to ``outcome`` and records every push."""

    def __init__(self, outcome: Union[bool, Callable[[BufferedItem], bool]] = True) -> None:
        self.outcome = outcome
        self.pushed: list[str] = []

    async def push(self, item: BufferedItem) -> bool:
        self.pushed.append(item.id)
        if callable(self.outcome):
            return self.outcome(item)
        return self.outcome


@pytest.fixture
def target() -> FakeTarget:
    return FakeTarget()


@pytest.fixture
def config() -> ServiceConfig:
    return ServiceConfig(sync_item_timeout_s=0.5, auto_sync_interval_s=10.0, auto_sync_enabled=False)


@pytest.fixture
def svc(config, target) -> Iterator[ResilienceService]:
    s = ResilienceService(config, store=MemoryStore(), target=target)
    yield s
    s.close()


@pytest.fixture
def online(svc):
    """Mark a device as online with a healthy 4G link."""
    def _online(device_id: str) -> None:
        svc.network.update_status(device_id, {"isOnline": True, "connectionType": "4g",
                                              "signalStrength": 80, "bandwidthMbps": 5})
    return _online
