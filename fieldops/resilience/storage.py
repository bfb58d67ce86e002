"""Repositories for per-device resilience state.

``ResilienceStore`` exposes typed accessors on top of five primitives
(``_get``, ``_put``, ``_keys``, ``_append``, ``_list``) that each adapter
implements over JSON documents. Records cross the boundary through
``to_dict``/``from_dict``, so callers always get copies.
"""
from __future__ import annotations

import copy
import json
import logging
import sqlite3
from pathlib import Path
from typing import Any, Optional

from .models import (
    BufferedItem,
    NetworkFailureEvent,
    NetworkStatus,
    PowerFailureEvent,
    ResilienceConfig,
    SMSFallbackConfig,
    SyncTracker,
)

logger = logging.getLogger("fieldops.storage")

NETWORK = "network_status"
BUFFER = "buffer"
TRACKER = "sync_tracker"
CONFIG = "resilience_config"
SMS = "sms_config"
NETWORK_FAILURES = "network_failure"
POWER_FAILURES = "power_failure"


class ResilienceStore:
    # --- primitives (adapter specific) ---

    def _get(self, kind: str, key: str) -> Optional[Any]:
        raise NotImplementedError

    def _put(self, kind: str, key: str, doc: Any) -> None:
        raise NotImplementedError

    def _keys(self, kind: str) -> list[str]:
        raise NotImplementedError

    def _append(self, kind: str, device_id: str, doc: dict[str, Any]) -> None:
        raise NotImplementedError

    def _list(self, kind: str, device_id: Optional[str]) -> list[dict[str, Any]]:
        raise NotImplementedError

    def close(self) -> None:
        pass

    # --- network status ---

    def get_network_status(self, device_id: str) -> Optional[NetworkStatus]:
        doc = self._get(NETWORK, device_id)
        return NetworkStatus.from_dict(doc) if doc is not None else None

    def put_network_status(self, device_id: str, status: NetworkStatus) -> None:
        self._put(NETWORK, device_id, status.to_dict())

    def device_ids(self) -> list[str]:
        return self._keys(NETWORK)

    # --- local buffer ---

    def get_buffer(self, device_id: str) -> list[BufferedItem]:
        docs = self._get(BUFFER, device_id) or []
        return [BufferedItem.from_dict(d) for d in docs]

    def put_buffer(self, device_id: str, items: list[BufferedItem]) -> None:
        self._put(BUFFER, device_id, [i.to_dict() for i in items])

    def buffered_device_ids(self) -> list[str]:
        return self._keys(BUFFER)

    def get_tracker(self, device_id: str) -> Optional[SyncTracker]:
        doc = self._get(TRACKER, device_id)
        return SyncTracker.from_dict(doc) if doc is not None else None

    def put_tracker(self, device_id: str, tracker: SyncTracker) -> None:
        self._put(TRACKER, device_id, tracker.to_dict())

    # --- resilience config ---

    def get_config(self, key: str) -> Optional[ResilienceConfig]:
        doc = self._get(CONFIG, key)
        return ResilienceConfig.from_dict(doc) if doc is not None else None

    def put_config(self, key: str, cfg: ResilienceConfig) -> None:
        self._put(CONFIG, key, cfg.to_dict())

    # --- SMS fallback ---

    def get_sms_config(self, device_id: str) -> Optional[SMSFallbackConfig]:
        doc = self._get(SMS, device_id)
        return SMSFallbackConfig.from_dict(doc) if doc is not None else None

    def put_sms_config(self, device_id: str, cfg: SMSFallbackConfig) -> None:
        self._put(SMS, device_id, cfg.to_dict())

    # --- failure logs ---

    def append_network_failure(self, event: NetworkFailureEvent) -> None:
        self._append(NETWORK_FAILURES, event.device_id, event.to_dict())

    def append_power_failure(self, event: PowerFailureEvent) -> None:
        self._append(POWER_FAILURES, event.device_id, event.to_dict())

    def list_network_failures(self, device_id: str | None = None) -> list[NetworkFailureEvent]:
        return [NetworkFailureEvent.from_dict(d) for d in self._list(NETWORK_FAILURES, device_id)]

    def list_power_failures(self, device_id: str | None = None) -> list[PowerFailureEvent]:
        return [PowerFailureEvent.from_dict(d) for d in self._list(POWER_FAILURES, device_id)]


class MemoryStore(ResilienceStore):
    """Process-local store. State is lost on restart."""

    def __init__(self) -> None:
        self._records: dict[str, dict[str, Any]] = {}
        self._events: dict[str, list[tuple[str, dict[str, Any]]]] = {}

    def _get(self, kind: str, key: str) -> Optional[Any]:
        doc = self._records.get(kind, {}).get(key)
        return copy.deepcopy(doc)

    def _put(self, kind: str, key: str, doc: Any) -> None:
        self._records.setdefault(kind, {})[key] = copy.deepcopy(doc)

    def _keys(self, kind: str) -> list[str]:
        return list(self._records.get(kind, {}))

    def _append(self, kind: str, device_id: str, doc: dict[str, Any]) -> None:
        self._events.setdefault(kind, []).append((device_id, copy.deepcopy(doc)))

    def _list(self, kind: str, device_id: Optional[str]) -> list[dict[str, Any]]:
        return [
            copy.deepcopy(doc) for dev, doc in self._events.get(kind, [])
            if device_id is None or dev == device_id
        ]


class SQLiteStore(ResilienceStore):
    """Durable store; buffered items survive a process restart."""

    def __init__(self, db_path: str) -> None:
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")
        self._init_schema()
        logger.info("SQLite store opened at %s", db_path)

    def _init_schema(self) -> None:
        self._conn.execute(
            """CREATE TABLE IF NOT EXISTS records (
                kind TEXT NOT NULL,
                key TEXT NOT NULL,
                body TEXT NOT NULL,
                PRIMARY KEY (kind, key)
            )"""
        )
        self._conn.execute(
            """CREATE TABLE IF NOT EXISTS events (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                kind TEXT NOT NULL,
                device_id TEXT NOT NULL,
                body TEXT NOT NULL
            )"""
        )
        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_events_kind_device ON events (kind, device_id)")
        self._conn.commit()

    def _get(self, kind: str, key: str) -> Optional[Any]:
        row = self._conn.execute(
            "SELECT body FROM records WHERE kind=? AND key=?", (kind, key)
        ).fetchone()
        return json.loads(row[0]) if row else None

    def _put(self, kind: str, key: str, doc: Any) -> None:
        self._conn.execute(
            "INSERT OR REPLACE INTO records (kind, key, body) VALUES (?, ?, ?)",
            (kind, key, json.dumps(doc, default=str)),
        )
        self._conn.commit()

    def _keys(self, kind: str) -> list[str]:
        rows = self._conn.execute("SELECT key FROM records WHERE kind=? ORDER BY key", (kind,)).fetchall()
        return [r[0] for r in rows]

    def _append(self, kind: str, device_id: str, doc: dict[str, Any]) -> None:
        self._conn.execute(
            "INSERT INTO events (kind, device_id, body) VALUES (?, ?, ?)",
            (kind, device_id, json.dumps(doc, default=str)),
        )
        self._conn.commit()

    def _list(self, kind: str, device_id: Optional[str]) -> list[dict[str, Any]]:
        if device_id is None:
            rows = self._conn.execute(
                "SELECT body FROM events WHERE kind=? ORDER BY seq", (kind,)
            ).fetchall()
        else:
            rows = self._conn.execute(
                "SELECT body FROM events WHERE kind=? AND device_id=? ORDER BY seq", (kind, device_id)
            ).fetchall()
        return [json.loads(r[0]) for r in rows]

    def close(self) -> None:
        self._conn.close()


def open_store(db_path: str) -> ResilienceStore:
    return SQLiteStore(db_path) if db_path else MemoryStore()
