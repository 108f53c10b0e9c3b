"""
Centralized configuration for the sync engine.

This module provides a single source of truth for all configuration values.
Configuration is loaded from environment variables with sensible defaults,
built once, and handed to each component at construction.

Usage:
    from syncengine.config import config

    base_url = config.remote.base_url
    max_retries = config.sync.retry.max_retries
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

from dotenv import load_dotenv

from syncengine.models import DiscrepancyType, EntitySchema, RepairPolicy

# Load environment variables
load_dotenv()


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value not in (None, "") else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value not in (None, "") else default


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value in (None, ""):
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class RemoteConfig:
    """Remote REST API configuration."""

    base_url: str = field(
        default_factory=lambda: os.getenv("SYNC_REMOTE_BASE_URL", "http://localhost:8000/api/v1")
    )
    api_key: str = field(default_factory=lambda: os.getenv("SYNC_REMOTE_API_KEY", ""))
    request_timeout: float = field(default_factory=lambda: _env_float("SYNC_REMOTE_TIMEOUT", 30.0))
    bulk_limit: int = 200
    page_size: int = 100
    max_connections: int = 20
    # Client-side token bucket shared by the live path and the sweeper
    requests_per_second: float = field(default_factory=lambda: _env_float("SYNC_REMOTE_RPS", 10.0))
    burst: int = 20
    # In-call retries for network errors (scheduler-level backoff is separate)
    call_attempts: int = 2
    call_base_delay: float = 0.5
    circuit_failure_threshold: int = 5
    circuit_recovery_timeout: float = 60.0


@dataclass(frozen=True)
class RetryPolicy:
    """
    Backoff for retrying transient sync failures.

    delay = base_delay * multiplier ** attempt, capped at max_delay.
    After max_retries failed attempts the entity moves to DEAD_LETTER.
    """

    base_delay: float = field(default_factory=lambda: _env_float("SYNC_RETRY_BASE_DELAY", 5.0))
    multiplier: float = field(default_factory=lambda: _env_float("SYNC_RETRY_MULTIPLIER", 5.0))
    max_retries: int = field(default_factory=lambda: _env_int("SYNC_MAX_RETRIES", 3))
    max_delay: float = 3600.0

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number `attempt` (0-based)."""
        return min(self.base_delay * (self.multiplier ** max(attempt, 0)), self.max_delay)


@dataclass(frozen=True)
class SyncConfig:
    """Live sync path (queue + state machine) configuration."""

    workers: int = field(default_factory=lambda: _env_int("SYNC_WORKERS", 4))
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    call_timeout: float = 60.0
    pending_batch_size: int = 100
    drain_interval_seconds: int = 30
    stale_dispatch_seconds: int = 900
    # Longest a worker waits on an exhausted remote quota before calling anyway
    max_quota_wait: float = 30.0
    verify_checksums: bool = field(default_factory=lambda: _env_bool("SYNC_VERIFY_CHECKSUMS", True))
    # Attempts for the store's optimistic check-then-set
    write_attempts: int = 5


def _default_repair_policies() -> Dict[DiscrepancyType, RepairPolicy]:
    return {
        DiscrepancyType.VERSION_MISMATCH: RepairPolicy.AUTO_HEAL,
        DiscrepancyType.DATA_MISMATCH: RepairPolicy.AUTO_HEAL,
        DiscrepancyType.DELETED_IN_REMOTE: RepairPolicy.AUTO_HEAL,
        DiscrepancyType.MISSING_IN_REMOTE: RepairPolicy.LOG_ONLY,
        DiscrepancyType.CHECKSUM_MISMATCH: RepairPolicy.LOG_ONLY,
    }


@dataclass(frozen=True)
class ReconciliationConfig:
    """Reconciliation sweeper configuration."""

    batch_size: int = field(default_factory=lambda: _env_int("SYNC_RECON_BATCH_SIZE", 200))
    bulk_concurrency: int = 2
    # Pause between batches when the remote reports this much quota or less
    rate_limit_floor: int = 10
    max_rate_limit_pause: float = 60.0
    repair_policies: Dict[DiscrepancyType, RepairPolicy] = field(
        default_factory=_default_repair_policies
    )
    incremental_interval_minutes: int = 15
    full_sweep_hour: int = 2
    full_sweep_minute: int = 0
    change_feed_max_pages: int = 100

    def policy_for(self, discrepancy: DiscrepancyType) -> RepairPolicy:
        if discrepancy == DiscrepancyType.DELETED_IN_REMOTE:
            # Remote deletion is authoritative
            return RepairPolicy.AUTO_HEAL
        return self.repair_policies.get(discrepancy, RepairPolicy.LOG_ONLY)


@dataclass(frozen=True)
class MonitorConfig:
    """Anomaly & alert monitor configuration."""

    window_seconds: int = 900  # 15 minutes
    window_max_samples: int = 5000
    min_samples: int = 20
    error_rate_threshold: float = 0.25
    stuck_pending_seconds: int = 1800
    stuck_pending_threshold: int = 1
    remote_failure_streak: int = 10
    drift_threshold: int = 50
    alert_min_interval_seconds: int = 900
    check_interval_seconds: int = 60
    max_alert_history: int = 200
    webhook_url: str = field(default_factory=lambda: os.getenv("SYNC_ALERT_WEBHOOK_URL", ""))


@dataclass(frozen=True)
class StoreConfig:
    """Record store configuration."""

    db_path: str = field(
        default_factory=lambda: os.getenv(
            "SYNC_DB_PATH", str(Path(__file__).parent.parent / "data" / "sync.duckdb")
        )
    )


@dataclass(frozen=True)
class LoggingConfig:
    level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    json_format: bool = field(default_factory=lambda: _env_bool("LOG_JSON", False))


@dataclass(frozen=True)
class ApiConfig:
    host: str = field(default_factory=lambda: os.getenv("SYNC_API_HOST", "0.0.0.0"))
    port: int = field(default_factory=lambda: _env_int("SYNC_API_PORT", 8080))


@dataclass(frozen=True)
class AppConfig:
    """Main application configuration."""

    version: str = "1.0.0"
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    reconciliation: ReconciliationConfig = field(default_factory=ReconciliationConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    schema: EntitySchema = field(default_factory=EntitySchema)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    api: ApiConfig = field(default_factory=ApiConfig)


def load_config() -> AppConfig:
    """Build a fresh config from the current environment."""
    return AppConfig()


# Global default config instance
config = AppConfig()


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


def validate_config(cfg: Optional[AppConfig] = None, require_remote: bool = True) -> None:
    """
    Validate that all required configuration is present and consistent.

    Call this on application startup to fail fast with clear error messages
    instead of cryptic runtime failures.

    Args:
        cfg: Config to validate (defaults to the global config)
        require_remote: If True, validate remote API credentials

    Raises:
        ConfigurationError: If required configuration is missing
    """
    cfg = cfg or config
    errors = []

    if require_remote:
        if not cfg.remote.api_key:
            errors.append("SYNC_REMOTE_API_KEY is required but not set")
        if not cfg.remote.base_url.startswith(("http://", "https://")):
            errors.append("SYNC_REMOTE_BASE_URL must start with http:// or https://")

    if not 1 <= cfg.remote.bulk_limit <= 200:
        errors.append("remote.bulk_limit must be between 1 and 200")

    retry = cfg.sync.retry
    if retry.max_retries < 1:
        errors.append("SYNC_MAX_RETRIES must be at least 1")
    if retry.base_delay <= 0:
        errors.append("SYNC_RETRY_BASE_DELAY must be positive")
    if retry.multiplier <= 1:
        errors.append("SYNC_RETRY_MULTIPLIER must be greater than 1 (delays must grow)")

    if cfg.sync.workers < 1:
        errors.append("SYNC_WORKERS must be at least 1")

    if cfg.reconciliation.bulk_concurrency >= cfg.sync.workers:
        errors.append("reconciliation.bulk_concurrency must be lower than SYNC_WORKERS")

    if not 0 < cfg.monitor.error_rate_threshold <= 1:
        errors.append("monitor.error_rate_threshold must be in (0, 1]")

    if errors:
        error_msg = "Configuration validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
        raise ConfigurationError(error_msg)
