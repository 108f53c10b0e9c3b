"""
Local/remote entity sync engine.

Keeps a local DuckDB store eventually consistent with a remote authoritative
API: live per-entity sync through a worker queue, batch reconciliation sweeps
and anomaly alerting.
"""
from syncengine.config import AppConfig, config, load_config
from syncengine.engine import SyncEngine
from syncengine.events import EventBus, SyncEvent
from syncengine.models import (
    ConflictResolution,
    DiscrepancyType,
    Entity,
    RemoteSnapshot,
    RepairPolicy,
    SyncStatus,
)

__version__ = "1.0.0"

__all__ = [
    "AppConfig",
    "ConflictResolution",
    "DiscrepancyType",
    "Entity",
    "EventBus",
    "RemoteSnapshot",
    "RepairPolicy",
    "SyncEngine",
    "SyncEvent",
    "SyncStatus",
    "config",
    "load_config",
]
