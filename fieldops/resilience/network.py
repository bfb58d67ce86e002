"""Network status tracker: last known connectivity snapshot per device."""
from __future__ import annotations

import logging
import math
from dataclasses import replace
from typing import Any

from .errors import ValidationError
from .models import ConnectionType, NetworkStatus, Provider, now_ms
from .storage import ResilienceStore

logger = logging.getLogger("fieldops.network")

WEAK_SIGNAL_PCT = 30
HIGH_LATENCY_MS = 2000
LOW_BANDWIDTH_MBPS = 1

REC_WEAK_SIGNAL = "Weak signal - consider moving to a different location"
REC_HIGH_LATENCY = "High latency - synchronization may be slow"
REC_LOW_BANDWIDTH = "Low bandwidth - use offline mode"
REC_2G = "2G connection - limited functionality available"


class NetworkStatusTracker:
    def __init__(self, store: ResilienceStore) -> None:
        self._store = store

    def get_status(self, device_id: str) -> NetworkStatus:
        """Return the last known status; first query persists an offline default."""
        status = self._store.get_network_status(device_id)
        if status is None:
            status = NetworkStatus()
            self._store.put_network_status(device_id, status)
            logger.debug("No status for %s, persisted offline default", device_id)
        return status

    def peek(self, device_id: str) -> NetworkStatus | None:
        return self._store.get_network_status(device_id)

    def update_status(self, device_id: str, partial: dict[str, Any]) -> tuple[NetworkStatus, list[str]]:
        changes = parse_status_patch(partial)
        current = self._store.get_network_status(device_id) or NetworkStatus()
        updated = replace(current, **changes, last_check=now_ms())
        self._store.put_network_status(device_id, updated)
        recs = recommendations(updated)
        logger.info("Network status for %s: online=%s type=%s signal=%s latency=%sms",
                    device_id, updated.is_online, updated.connection_type.value,
                    updated.signal_strength, updated.latency_ms)
        return updated, recs


def recommendations(status: NetworkStatus) -> list[str]:
    recs: list[str] = []
    if status.signal_strength < WEAK_SIGNAL_PCT:
        recs.append(REC_WEAK_SIGNAL)
    if status.latency_ms > HIGH_LATENCY_MS:
        recs.append(REC_HIGH_LATENCY)
    if status.bandwidth_mbps < LOW_BANDWIDTH_MBPS:
        recs.append(REC_LOW_BANDWIDTH)
    if status.connection_type == ConnectionType.EDGE:
        recs.append(REC_2G)
    return recs


def _number(wire: str, value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{wire} must be a number")
    if not math.isfinite(value):
        raise ValidationError(f"{wire} must be finite")
    if value < 0:
        raise ValidationError(f"{wire} must not be negative")
    return value


def parse_status_patch(partial: Any) -> dict[str, Any]:
    if not isinstance(partial, dict):
        raise ValidationError("network status must be an object")
    changes: dict[str, Any] = {}
    for wire, value in partial.items():
        if wire == "isOnline":
            if not isinstance(value, bool):
                raise ValidationError("isOnline must be a boolean")
            changes["is_online"] = value
        elif wire == "connectionType":
            try:
                changes["connection_type"] = ConnectionType(value)
            except ValueError:
                raise ValidationError(f"unknown connectionType: {value!r}") from None
        elif wire == "provider":
            try:
                changes["provider"] = Provider(value)
            except ValueError:
                raise ValidationError(f"unknown provider: {value!r}") from None
        elif wire == "signalStrength":
            signal = _number(wire, value)
            if signal > 100:
                raise ValidationError("signalStrength must be between 0 and 100")
            changes["signal_strength"] = signal
        elif wire == "latencyMs":
            changes["latency_ms"] = _number(wire, value)
        elif wire == "bandwidthMbps":
            changes["bandwidth_mbps"] = _number(wire, value)
        elif wire == "lastCheck":
            continue  # always stamped server side
        else:
            raise ValidationError(f"unknown network status field: {wire}")
    return changes
