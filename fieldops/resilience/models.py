"""Resilience data models.

Timestamps are epoch milliseconds. ``to_dict`` gives the camelCase wire form
used by the HTTP API and by the stores; ``from_dict`` reverses it.
"""
from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


def now_ms() -> int:
    return int(time.time() * 1000)


def new_id() -> str:
    return uuid.uuid4().hex


class ConnectionType(str, Enum):
    WIFI = "wifi"
    LTE = "4g"
    UMTS = "3g"
    EDGE = "2g"
    SATELLITE = "satellite"
    NONE = "none"


class Provider(str, Enum):
    UNITEL = "unitel"
    MOVICEL = "movicel"
    AFRICELL = "africell"
    OTHER = "other"


class BufferType(str, Enum):
    CRITICAL = "critical"
    NORMAL = "normal"
    LOW_PRIORITY = "low_priority"


# ---------------------------------------------------------------------------
# Network status
# ---------------------------------------------------------------------------

@dataclass
class NetworkStatus:
    is_online: bool = False
    connection_type: ConnectionType = ConnectionType.NONE
    signal_strength: float = 0
    latency_ms: float = 0
    bandwidth_mbps: float = 0
    provider: Provider = Provider.OTHER
    last_check: int = field(default_factory=now_ms)

    def to_dict(self) -> dict[str, Any]:
        return {
            "isOnline": self.is_online,
            "connectionType": self.connection_type.value,
            "signalStrength": self.signal_strength,
            "latencyMs": self.latency_ms,
            "bandwidthMbps": self.bandwidth_mbps,
            "provider": self.provider.value,
            "lastCheck": self.last_check,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> NetworkStatus:
        return cls(
            is_online=d["isOnline"],
            connection_type=ConnectionType(d["connectionType"]),
            signal_strength=d["signalStrength"],
            latency_ms=d["latencyMs"],
            bandwidth_mbps=d["bandwidthMbps"],
            provider=Provider(d["provider"]),
            last_check=d["lastCheck"],
        )


# ---------------------------------------------------------------------------
# Local buffer
# ---------------------------------------------------------------------------

@dataclass
class BufferedItem:
    type: BufferType
    payload: Any
    device_id: str
    sync_priority: float
    size_bytes: int = 0
    retry_count: int = 0
    max_retries: int = 5
    id: str = field(default_factory=new_id)
    enqueued_at: int = field(default_factory=now_ms)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "payload": self.payload,
            "sizeBytes": self.size_bytes,
            "enqueuedAt": self.enqueued_at,
            "deviceId": self.device_id,
            "syncPriority": self.sync_priority,
            "retryCount": self.retry_count,
            "maxRetries": self.max_retries,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> BufferedItem:
        return cls(
            id=d["id"],
            type=BufferType(d["type"]),
            payload=d["payload"],
            size_bytes=d["sizeBytes"],
            enqueued_at=d["enqueuedAt"],
            device_id=d["deviceId"],
            sync_priority=d["syncPriority"],
            retry_count=d["retryCount"],
            max_retries=d["maxRetries"],
        )


@dataclass
class SyncTracker:
    """Outcome of the most recent drain of a device queue."""

    success_rate: float = 100.0
    last_successful_sync: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return {"successRate": self.success_rate, "lastSuccessfulSync": self.last_successful_sync}

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> SyncTracker:
        return cls(success_rate=d["successRate"], last_successful_sync=d["lastSuccessfulSync"])


@dataclass
class SyncQueueStats:
    total_pending: int
    critical_pending: int
    normal_pending: int
    low_priority_pending: int
    average_wait_time_ms: float
    success_rate: float
    last_successful_sync: Optional[int]

    @classmethod
    def compute(cls, items: list[BufferedItem], tracker: SyncTracker, now: int) -> SyncQueueStats:
        counts = {t: 0 for t in BufferType}
        for item in items:
            counts[item.type] += 1
        wait = sum(now - i.enqueued_at for i in items) / len(items) if items else 0
        return cls(
            total_pending=len(items),
            critical_pending=counts[BufferType.CRITICAL],
            normal_pending=counts[BufferType.NORMAL],
            low_priority_pending=counts[BufferType.LOW_PRIORITY],
            average_wait_time_ms=wait,
            success_rate=tracker.success_rate,
            last_successful_sync=tracker.last_successful_sync,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalPending": self.total_pending,
            "criticalPending": self.critical_pending,
            "normalPending": self.normal_pending,
            "lowPriorityPending": self.low_priority_pending,
            "averageWaitTime": self.average_wait_time_ms,
            "successRate": self.success_rate,
            "lastSuccessfulSync": self.last_successful_sync,
        }


# ---------------------------------------------------------------------------
# Failure events (append-only)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class NetworkFailureEvent:
    device_id: str
    duration_ms: float
    affected_operations: tuple[str, ...]
    fallback_used: bool
    timestamp: int
    recovery_time: Optional[int] = None
    id: str = field(default_factory=new_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "deviceId": self.device_id,
            "timestamp": self.timestamp,
            "durationMs": self.duration_ms,
            "affectedOperations": list(self.affected_operations),
            "fallbackUsed": self.fallback_used,
            "recoveryTime": self.recovery_time,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> NetworkFailureEvent:
        return cls(
            id=d["id"],
            device_id=d["deviceId"],
            timestamp=d["timestamp"],
            duration_ms=d["durationMs"],
            affected_operations=tuple(d["affectedOperations"]),
            fallback_used=d["fallbackUsed"],
            recovery_time=d.get("recoveryTime"),
        )


@dataclass(frozen=True)
class PowerFailureEvent:
    device_id: str
    battery_level: float
    critical_operations_protected: tuple[str, ...]
    auto_shutdown_triggered: bool
    timestamp: int
    id: str = field(default_factory=new_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "deviceId": self.device_id,
            "timestamp": self.timestamp,
            "batteryLevel": self.battery_level,
            "criticalOperationsProtected": list(self.critical_operations_protected),
            "autoShutdownTriggered": self.auto_shutdown_triggered,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> PowerFailureEvent:
        return cls(
            id=d["id"],
            device_id=d["deviceId"],
            timestamp=d["timestamp"],
            battery_level=d["batteryLevel"],
            critical_operations_protected=tuple(d["criticalOperationsProtected"]),
            auto_shutdown_triggered=d["autoShutdownTriggered"],
        )


# ---------------------------------------------------------------------------
# Per-device configuration
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ResilienceConfig:
    network_failure_max_duration_ms: int = 30000
    power_failure_auto_save: bool = True
    critical_battery_level: float = 15
    auto_retry_max_attempts: int = 5
    retry_backoff_multiplier: float = 2
    maps_cache_size_mb: int = 2048
    sms_credits: int = 1000
    ussd_credits: int = 500

    # wire name -> (attribute, accepted types)
    WIRE_FIELDS = {
        "networkFailureMaxDurationMs": ("network_failure_max_duration_ms", (int,)),
        "powerFailureAutoSave": ("power_failure_auto_save", (bool,)),
        "criticalBatteryLevel": ("critical_battery_level", (int, float)),
        "autoRetryMaxAttempts": ("auto_retry_max_attempts", (int,)),
        "retryBackoffMultiplier": ("retry_backoff_multiplier", (int, float)),
        "mapsCacheSize": ("maps_cache_size_mb", (int,)),
        "smsCredits": ("sms_credits", (int,)),
        "ussdCredits": ("ussd_credits", (int,)),
    }

    def to_dict(self) -> dict[str, Any]:
        return {wire: getattr(self, attr) for wire, (attr, _) in self.WIRE_FIELDS.items()}

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> ResilienceConfig:
        return cls(**{attr: d[wire] for wire, (attr, _) in cls.WIRE_FIELDS.items() if wire in d})


# ---------------------------------------------------------------------------
# Fallback channels & maps
# ---------------------------------------------------------------------------

@dataclass
class SMSFallbackConfig:
    provider: Provider
    phone_number: str
    commands: dict[str, str]
    enabled: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "provider": self.provider.value,
            "phoneNumber": self.phone_number,
            "commands": dict(self.commands),
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> SMSFallbackConfig:
        return cls(
            enabled=d["enabled"],
            provider=Provider(d["provider"]),
            phone_number=d["phoneNumber"],
            commands=dict(d["commands"]),
        )


@dataclass(frozen=True)
class OfflineMapPackage:
    id: str
    region: str
    province: str
    package_size_mb: int
    last_updated: int
    download_url: str
    version: str
    checksum: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "region": self.region,
            "province": self.province,
            "packageSize": self.package_size_mb,
            "lastUpdated": self.last_updated,
            "downloadUrl": self.download_url,
            "version": self.version,
            "checksum": self.checksum,
        }
