"""Offline resilience: failure logging, local buffering and delayed sync for field devices."""
from .config import ServiceConfig
from .errors import (
    CreditsExhausted,
    NetworkUnavailable,
    NotConfigured,
    NotFound,
    ResilienceError,
    ValidationError,
)
from .service import ResilienceService
from .storage import MemoryStore, SQLiteStore
from .sync import HttpSyncTarget, SyncTarget

__all__ = [
    "ServiceConfig",
    "ResilienceService",
    "MemoryStore",
    "SQLiteStore",
    "SyncTarget",
    "HttpSyncTarget",
    "ResilienceError",
    "ValidationError",
    "NotFound",
    "NotConfigured",
    "CreditsExhausted",
    "NetworkUnavailable",
]
