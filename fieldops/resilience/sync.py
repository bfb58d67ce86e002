"""Delayed sync processor: drains device buffers into the upstream sync target.

Flow per drain: check network → snapshot queue → push each item (bounded by a
per-item timeout) → merge retained items with anything enqueued meanwhile →
persist queue + tracker → hand exhausted items to the abandon hook.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

import aiohttp

from .buffer import DeviceLocks, LocalBufferQueue, sort_by_priority
from .errors import NetworkUnavailable
from .models import BufferedItem, SyncQueueStats, SyncTracker, now_ms
from .network import NetworkStatusTracker
from .resilience_config import ResilienceConfigStore
from .storage import ResilienceStore

logger = logging.getLogger("fieldops.sync")

AbandonHook = Callable[[BufferedItem], Union[Awaitable[None], None]]

MAX_BACKOFF_S = 3600


@dataclass
class SyncResult:
    items_processed: int
    successful: int
    failed: int
    abandoned: int
    sync_stats: SyncQueueStats

    def to_dict(self) -> dict[str, Any]:
        return {
            "itemsProcessed": self.items_processed,
            "successful": self.successful,
            "failed": self.failed,
            "abandoned": self.abandoned,
            "syncStats": self.sync_stats.to_dict(),
        }


# ---------------------------------------------------------------------------
# Sync targets
# ---------------------------------------------------------------------------

class SyncTarget:
    """Receiver of buffered items. ``push`` returns True when the item is accepted."""

    async def push(self, item: BufferedItem) -> bool:
        raise NotImplementedError


class HttpSyncTarget(SyncTarget):
    """POSTs each item to the upstream API with a bearer token."""

    def __init__(self, url: str, token: str = "") -> None:
        if not url:
            raise RuntimeError("FIELDOPS_UPSTREAM_URL is required for HTTP sync")
        self._url = url
        self._token = token

    async def push(self, item: BufferedItem) -> bool:
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(self._url, json=item.to_dict(), headers=headers) as resp:
                    if resp.status >= 300:
                        logger.warning("Upstream rejected item %s from %s: HTTP %d",
                                       item.id, item.device_id, resp.status)
                        return False
                    return True
        except aiohttp.ClientError as exc:
            logger.warning("Upstream sync failed for item %s from %s: %s", item.id, item.device_id, exc)
            return False


def log_abandoned(item: BufferedItem) -> None:
    logger.warning("Item %s (%s) from %s abandoned after %d attempts",
                   item.id, item.type.value, item.device_id, item.retry_count)


# ---------------------------------------------------------------------------
# Processor
# ---------------------------------------------------------------------------

class DelayedSyncProcessor:
    def __init__(
        self,
        store: ResilienceStore,
        queue: LocalBufferQueue,
        network: NetworkStatusTracker,
        target: SyncTarget,
        item_timeout_s: float = 10.0,
        on_item_abandoned: Optional[AbandonHook] = None,
    ) -> None:
        self._store = store
        self._queue = queue
        self._network = network
        self._target = target
        self._item_timeout_s = item_timeout_s
        self._on_item_abandoned = on_item_abandoned or log_abandoned
        self._drain_locks = DeviceLocks()

    async def process_sync(self, device_id: str, force: bool = False) -> SyncResult:
        if not force:
            status = self._network.peek(device_id)
            if status is None or not status.is_online:
                logger.warning("Sync refused for %s: network unavailable", device_id)
                raise NetworkUnavailable(f"Network not available for sync on device {device_id}")

        async with self._drain_locks.get(device_id):
            async with self._queue.locks.get(device_id):
                snapshot = self._store.get_buffer(device_id)

            successful = failed = 0
            retained: list[BufferedItem] = []
            abandoned: list[BufferedItem] = []
            for item in snapshot:
                if await self._attempt(item):
                    successful += 1
                    continue
                failed += 1
                item.retry_count += 1
                if item.retry_count < item.max_retries:
                    retained.append(item)
                else:
                    abandoned.append(item)

            now = now_ms()
            rate = successful / (successful + failed) * 100 if snapshot else 100.0
            tracker = SyncTracker(success_rate=rate, last_successful_sync=now)

            async with self._queue.locks.get(device_id):
                seen = {i.id for i in snapshot}
                arrived = [i for i in self._store.get_buffer(device_id) if i.id not in seen]
                merged = retained + arrived
                sort_by_priority(merged)
                self._store.put_buffer(device_id, merged)
                self._store.put_tracker(device_id, tracker)

        for item in abandoned:
            await self._abandon(item)

        logger.info("Sync for %s: %d processed, %d ok, %d failed, %d abandoned, %d pending",
                    device_id, len(snapshot), successful, failed, len(abandoned), len(merged))
        return SyncResult(
            items_processed=len(snapshot),
            successful=successful,
            failed=failed,
            abandoned=len(abandoned),
            sync_stats=SyncQueueStats.compute(merged, tracker, now),
        )

    async def _attempt(self, item: BufferedItem) -> bool:
        try:
            return bool(await asyncio.wait_for(self._target.push(item), timeout=self._item_timeout_s))
        except asyncio.TimeoutError:
            logger.warning("Sync of item %s from %s timed out after %.1fs",
                           item.id, item.device_id, self._item_timeout_s)
        except Exception:
            logger.exception("Sync target raised for item %s from %s", item.id, item.device_id)
        return False

    async def _abandon(self, item: BufferedItem) -> None:
        try:
            result = self._on_item_abandoned(item)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("on_item_abandoned hook failed for item %s", item.id)


# ---------------------------------------------------------------------------
# Background drain with backoff
# ---------------------------------------------------------------------------

class AutoSyncLoop:
    """Periodically drains online devices that have pending items.

    A device whose last automatic pass had failures waits
    ``interval * multiplier ** consecutive_failed_passes`` before the next one.
    """

    def __init__(
        self,
        processor: DelayedSyncProcessor,
        store: ResilienceStore,
        configs: ResilienceConfigStore,
        interval_s: float = 60.0,
    ) -> None:
        self._processor = processor
        self._store = store
        self._configs = configs
        self._interval_s = interval_s
        self._next_due: dict[str, float] = {}
        self._failed_passes: dict[str, int] = {}

    def backoff_s(self, device_id: str) -> float:
        n = self._failed_passes.get(device_id, 0)
        multiplier = self._configs.get(device_id).retry_backoff_multiplier
        return min(self._interval_s * multiplier ** n, MAX_BACKOFF_S)

    async def run_once(self, now: float | None = None) -> list[str]:
        """One sweep over all devices. Returns the ids that were drained."""
        now = time.monotonic() if now is None else now
        drained: list[str] = []
        for device_id in self._store.buffered_device_ids():
            if not self._store.get_buffer(device_id):
                self._forget(device_id)
                continue
            status = self._store.get_network_status(device_id)
            if status is None or not status.is_online:
                continue
            if self._next_due.get(device_id, 0.0) > now:
                continue
            try:
                result = await self._processor.process_sync(device_id)
            except NetworkUnavailable:
                continue
            drained.append(device_id)
            if result.failed:
                self._failed_passes[device_id] = self._failed_passes.get(device_id, 0) + 1
                delay = self.backoff_s(device_id)
                self._next_due[device_id] = now + delay
                logger.info("Auto sync for %s had %d failures, next attempt in %.0fs",
                            device_id, result.failed, delay)
            else:
                self._forget(device_id)
        return drained

    def tracked_devices(self) -> set[str]:
        return set(self._next_due) | set(self._failed_passes)

    def _forget(self, device_id: str) -> None:
        self._failed_passes.pop(device_id, None)
        self._next_due.pop(device_id, None)

    async def run(self) -> None:
        logger.info("Auto sync loop started (every %.0fs)", self._interval_s)
        while True:
            await asyncio.sleep(self._interval_s)
            try:
                await self.run_once()
            except Exception:
                logger.exception("Error in auto sync loop")
