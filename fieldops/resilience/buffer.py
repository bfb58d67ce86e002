"""Local buffer queue: per-device, priority-ordered operations awaiting sync."""
from __future__ import annotations

import asyncio
import json
import logging
import math
import weakref
from typing import Any

from .errors import ValidationError
from .models import BufferType, BufferedItem, SyncQueueStats, SyncTracker, now_ms
from .resilience_config import ResilienceConfigStore
from .storage import ResilienceStore

logger = logging.getLogger("fieldops.buffer")


class DeviceLocks:
    """One asyncio.Lock per device id, created on first use.

    Locks are held weakly: a lock lives while some coroutine holds or waits on
    it and is dropped once the device goes quiet.
    """

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def __len__(self) -> int:
        return len(self._locks)

    def get(self, device_id: str) -> asyncio.Lock:
        lock = self._locks.get(device_id)
        if lock is None:
            lock = self._locks[device_id] = asyncio.Lock()
        return lock


def sort_by_priority(items: list[BufferedItem]) -> None:
    """Sort in place, highest priority first. list.sort is stable, so ties keep insertion order."""
    items.sort(key=lambda i: i.sync_priority, reverse=True)


class LocalBufferQueue:
    def __init__(
        self,
        store: ResilienceStore,
        configs: ResilienceConfigStore,
        locks: DeviceLocks | None = None,
    ) -> None:
        self._store = store
        self._configs = configs
        self.locks = locks or DeviceLocks()

    async def enqueue(
        self, device_id: str, type: str, payload: Any, priority: float,
    ) -> tuple[BufferedItem, int]:
        """Add an item and return it with its 1-based position in the sorted queue."""
        try:
            buffer_type = BufferType(type)
        except ValueError:
            raise ValidationError(f"unknown buffer type: {type!r}") from None
        if isinstance(priority, bool) or not isinstance(priority, (int, float)):
            raise ValidationError("priority must be a number")
        if not math.isfinite(priority):
            raise ValidationError("priority must be finite")
        try:
            size = len(json.dumps(payload).encode())
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"payload is not JSON serializable: {exc}") from None

        item = BufferedItem(
            type=buffer_type,
            payload=payload,
            device_id=device_id,
            sync_priority=priority,
            size_bytes=size,
            max_retries=self._configs.get(device_id).auto_retry_max_attempts,
        )
        async with self.locks.get(device_id):
            items = self._store.get_buffer(device_id)
            items.append(item)
            sort_by_priority(items)
            self._store.put_buffer(device_id, items)
            position = next(n for n, i in enumerate(items, 1) if i.id == item.id)

        logger.info("Buffered %s item %s for %s (priority %s, position %d, %dB)",
                    buffer_type.value, item.id, device_id, priority, position, size)
        return item, position

    def pending(self, device_id: str) -> list[BufferedItem]:
        return self._store.get_buffer(device_id)

    def tracker(self, device_id: str) -> SyncTracker:
        return self._store.get_tracker(device_id) or SyncTracker()

    def stats(self, device_id: str) -> SyncQueueStats:
        return SyncQueueStats.compute(self.pending(device_id), self.tracker(device_id), now_ms())

    def total_pending(self) -> int:
        return sum(len(self._store.get_buffer(d)) for d in self._store.buffered_device_ids())
