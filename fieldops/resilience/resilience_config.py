"""Per-device resilience tunables with a shared ``default`` fallback record."""
from __future__ import annotations

import logging
import math
from dataclasses import replace
from typing import Any

from .errors import ValidationError
from .models import ResilienceConfig
from .storage import ResilienceStore

logger = logging.getLogger("fieldops.config")

DEFAULT_KEY = "default"


class ResilienceConfigStore:
    def __init__(self, store: ResilienceStore) -> None:
        self._store = store
        if self._store.get_config(DEFAULT_KEY) is None:
            self._store.put_config(DEFAULT_KEY, ResilienceConfig())

    def get(self, device_id: str) -> ResilienceConfig:
        cfg = self._store.get_config(device_id)
        if cfg is None:
            cfg = self._store.get_config(DEFAULT_KEY) or ResilienceConfig()
        return cfg

    def update(self, device_id: str, partial: dict[str, Any]) -> ResilienceConfig:
        """Merge *partial* (wire field names) over the effective config for *device_id*.

        The merged record is stored under ``device_id``; the shared default is
        only replaced when ``device_id`` is ``"default"`` itself.
        """
        changes = parse_config_patch(partial)
        updated = replace(self.get(device_id), **changes)
        self._store.put_config(device_id, updated)
        logger.info("Resilience config updated for %s: %s", device_id, sorted(changes))
        return updated

    def consume_sms_credits(self, device_id: str, amount: int) -> ResilienceConfig:
        cfg = self.get(device_id)
        updated = replace(cfg, sms_credits=cfg.sms_credits - amount)
        self._store.put_config(device_id, updated)
        return updated


def parse_config_patch(partial: Any) -> dict[str, Any]:
    if not isinstance(partial, dict):
        raise ValidationError("config must be an object")
    changes: dict[str, Any] = {}
    for wire, value in partial.items():
        field_def = ResilienceConfig.WIRE_FIELDS.get(wire)
        if field_def is None:
            raise ValidationError(f"unknown config field: {wire}")
        attr, types = field_def
        if isinstance(value, bool) and bool not in types:
            raise ValidationError(f"{wire} must be numeric")
        if not isinstance(value, types):
            raise ValidationError(f"{wire} has invalid type {type(value).__name__}")
        if not isinstance(value, bool) and not math.isfinite(value):
            raise ValidationError(f"{wire} must be finite")
        if not isinstance(value, bool) and value < 0:
            raise ValidationError(f"{wire} must not be negative")
        changes[attr] = value
    return changes
