"""Failure event recorder: append-only network and power failure logs."""
from __future__ import annotations

import logging
import math
from typing import Any

from .errors import ValidationError
from .models import NetworkFailureEvent, PowerFailureEvent, now_ms
from .resilience_config import ResilienceConfigStore
from .storage import ResilienceStore

logger = logging.getLogger("fieldops.failures")

ASSUMED_RECOVERY_MS = 15000  # fixed offset, not measured


def _operations(value: Any, name: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ValidationError(f"{name} must be a list of strings")
    return tuple(value)


class FailureEventRecorder:
    def __init__(self, store: ResilienceStore, configs: ResilienceConfigStore) -> None:
        self._store = store
        self._configs = configs

    def record_network_failure(
        self, duration_ms: float, affected_operations: list[str] | None, device_id: str,
    ) -> NetworkFailureEvent:
        if isinstance(duration_ms, bool) or not isinstance(duration_ms, (int, float)) \
                or not math.isfinite(duration_ms) or duration_ms < 0:
            raise ValidationError("duration must be a non-negative number")
        threshold = self._configs.get(device_id).network_failure_max_duration_ms
        ts = now_ms()
        fallback = duration_ms > threshold
        event = NetworkFailureEvent(
            device_id=device_id,
            duration_ms=duration_ms,
            affected_operations=_operations(affected_operations, "affectedOperations"),
            fallback_used=fallback,
            timestamp=ts,
            recovery_time=ts + ASSUMED_RECOVERY_MS if fallback else None,
        )
        self._store.append_network_failure(event)
        log = logger.warning if fallback else logger.info
        log("Network failure on %s: %.0fms (threshold %dms), fallback=%s",
            device_id, duration_ms, threshold, fallback)
        return event

    def record_power_failure(
        self, battery_level: float, device_id: str, critical_operations: list[str] | None,
    ) -> PowerFailureEvent:
        if isinstance(battery_level, bool) or not isinstance(battery_level, (int, float)) \
                or not 0 <= battery_level <= 100:
            raise ValidationError("batteryLevel must be between 0 and 100")
        critical_level = self._configs.get(device_id).critical_battery_level
        shutdown = battery_level < critical_level
        event = PowerFailureEvent(
            device_id=device_id,
            battery_level=battery_level,
            critical_operations_protected=_operations(critical_operations, "criticalOperations"),
            auto_shutdown_triggered=shutdown,
            timestamp=now_ms(),
        )
        self._store.append_power_failure(event)
        log = logger.critical if shutdown else logger.info
        log("Power failure on %s: battery %s%%, auto shutdown=%s", device_id, battery_level, shutdown)
        return event

    def list_network_failures(self, device_id: str | None = None) -> list[NetworkFailureEvent]:
        return self._store.list_network_failures(device_id)

    def list_power_failures(self, device_id: str | None = None) -> list[PowerFailureEvent]:
        return self._store.list_power_failures(device_id)
