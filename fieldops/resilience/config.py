"""Resilience service configuration: YAML file, then environment overrides."""
from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

load_dotenv()


class ConfigValidationError(ValueError):
    """Raised when a configuration value is out of range."""


@dataclass(frozen=True)
class ServiceConfig:
    """Immutable configuration for the resilience service."""

    # HTTP
    host: str = "0.0.0.0"
    port: int = 8090
    api_base: str = "/api/angola"

    # Storage; empty db_path keeps everything in memory
    db_path: str = ""

    # Upstream sync target
    upstream_url: str = ""
    upstream_token: str = ""
    sync_item_timeout_s: float = 10.0
    auto_sync_enabled: bool = True
    auto_sync_interval_s: float = 60.0

    # Offline maps
    maps_base_url: str = "https://maps.sgst.ao/offline"
    maps_version: str = "2025.1.0"

    # Logging
    log_dir: str = "logs"
    log_level: str = "INFO"
    log_retention_days: int = 7

    @classmethod
    def from_yaml(cls, path: str) -> ServiceConfig:
        with open(path, "r") as f:
            raw: dict[str, Any] = yaml.safe_load(f) or {}
        server = raw.get("server", {})
        storage = raw.get("storage", {})
        sync = raw.get("sync", {})
        maps = raw.get("maps", {})
        log_cfg = raw.get("logging", {})
        return cls(
            host=server.get("host", cls.host),
            port=server.get("port", cls.port),
            api_base=server.get("api_base", cls.api_base),
            db_path=storage.get("db_path", cls.db_path),
            upstream_url=sync.get("upstream_url", cls.upstream_url),
            upstream_token=sync.get("upstream_token", cls.upstream_token),
            sync_item_timeout_s=sync.get("item_timeout_s", cls.sync_item_timeout_s),
            auto_sync_enabled=sync.get("auto_sync", cls.auto_sync_enabled),
            auto_sync_interval_s=sync.get("auto_sync_interval_s", cls.auto_sync_interval_s),
            maps_base_url=maps.get("base_url", cls.maps_base_url),
            maps_version=maps.get("version", cls.maps_version),
            log_dir=log_cfg.get("log_dir", cls.log_dir),
            log_level=log_cfg.get("level", cls.log_level),
            log_retention_days=log_cfg.get("retention_days", cls.log_retention_days),
        )

    def with_env(self) -> ServiceConfig:
        """Return a copy with FIELDOPS_* environment variables applied on top."""
        overrides: dict[str, Any] = {}
        for f in fields(self):
            value = os.environ.get(f"FIELDOPS_{f.name.upper()}")
            if value is None:
                continue
            default = getattr(self, f.name)
            if isinstance(default, bool):
                overrides[f.name] = value.strip().lower() in ("1", "true", "yes", "on")
            elif isinstance(default, int):
                overrides[f.name] = int(value)
            elif isinstance(default, float):
                overrides[f.name] = float(value)
            else:
                overrides[f.name] = value
        return replace(self, **overrides)

    @classmethod
    def load(cls) -> ServiceConfig:
        """YAML from FIELDOPS_CONFIG (if it exists), then env overrides, then validate."""
        config_path = os.environ.get("FIELDOPS_CONFIG", str(
            Path(__file__).parent / "resilience.yaml"
        ))
        cfg = cls.from_yaml(config_path) if Path(config_path).exists() else cls()
        cfg = cfg.with_env()
        validate_config(cfg)
        return cfg


def validate_config(cfg: ServiceConfig) -> None:
    if not 0 < cfg.port < 65536:
        raise ConfigValidationError(f"port must be 1-65535, got {cfg.port}")
    if cfg.sync_item_timeout_s <= 0:
        raise ConfigValidationError("sync item_timeout_s must be positive")
    if cfg.auto_sync_interval_s <= 0:
        raise ConfigValidationError("auto_sync_interval_s must be positive")
    if cfg.log_retention_days < 0:
        raise ConfigValidationError("logging retention_days must not be negative")
    if not cfg.api_base.startswith("/"):
        raise ConfigValidationError(f"api_base must start with '/', got {cfg.api_base!r}")
