"""Wires the resilience components onto one store."""
from __future__ import annotations

from typing import Any

from .buffer import LocalBufferQueue
from .config import ServiceConfig
from .failures import FailureEventRecorder
from .fallback import FallbackAdapter, SMSGateway
from .maps import OfflineMapCatalog
from .network import NetworkStatusTracker
from .resilience_config import ResilienceConfigStore
from .storage import ResilienceStore, open_store
from .sync import AbandonHook, AutoSyncLoop, DelayedSyncProcessor, HttpSyncTarget, SyncTarget


class ResilienceService:
    def __init__(
        self,
        config: ServiceConfig,
        store: ResilienceStore | None = None,
        target: SyncTarget | None = None,
        gateway: SMSGateway | None = None,
        on_item_abandoned: AbandonHook | None = None,
    ) -> None:
        self.config = config
        self.store = store or open_store(config.db_path)
        self.configs = ResilienceConfigStore(self.store)
        self.network = NetworkStatusTracker(self.store)
        self.buffer = LocalBufferQueue(self.store, self.configs)
        self.failures = FailureEventRecorder(self.store, self.configs)
        self.fallback = FallbackAdapter(self.store, self.configs, gateway)
        self.maps = OfflineMapCatalog(self.network, config.maps_base_url, config.maps_version)
        self.sync = DelayedSyncProcessor(
            self.store,
            self.buffer,
            self.network,
            target or HttpSyncTarget(config.upstream_url, config.upstream_token),
            item_timeout_s=config.sync_item_timeout_s,
            on_item_abandoned=on_item_abandoned,
        )
        self.auto_sync = AutoSyncLoop(self.sync, self.store, self.configs, config.auto_sync_interval_s)

    def fleet_stats(self) -> dict[str, Any]:
        return {
            "totalDevices": len(self.store.device_ids()),
            "totalNetworkFailures": len(self.failures.list_network_failures()),
            "totalPowerFailures": len(self.failures.list_power_failures()),
            "offlineMapPackages": len(self.maps),
            "pendingBufferItems": self.buffer.total_pending(),
        }

    def close(self) -> None:
        self.store.close()
