"""
Domain models for the sync engine.

Provides type-safe dataclasses for entities, sync tasks, remote snapshots
and reconciliation records. These models are the single source of truth for
data structures passed between the store, the state machine, the queue and
the sweeper.
"""
import copy
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any, Tuple


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp from the remote API.

    Naive values are taken as UTC. Returns None for empty input and raises
    ValueError for anything that is not a timestamp.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    else:
        raise ValueError(f"not a timestamp: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ═══════════════════════════════════════════════════════════════════════════════
# ENUMS
# ═══════════════════════════════════════════════════════════════════════════════

class SyncStatus(str, Enum):
    """Sync lifecycle of one entity."""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SYNCED = "SYNCED"
    ERROR = "ERROR"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    VERSION_CONFLICT = "VERSION_CONFLICT"
    SKIPPED = "SKIPPED"
    DEAD_LETTER = "DEAD_LETTER"

    @classmethod
    def operator_gated(cls) -> frozenset:
        """States that only an explicit operator action may leave."""
        return frozenset({cls.VALIDATION_FAILED, cls.VERSION_CONFLICT, cls.DEAD_LETTER})

    @classmethod
    def terminal(cls) -> frozenset:
        return frozenset({cls.SYNCED, cls.VALIDATION_FAILED, cls.DEAD_LETTER})


class VersionComparison(str, Enum):
    """Remote version relative to the locally stored one."""
    NEWER = "NEWER"
    SAME = "SAME"
    STALE = "STALE"


class DiscrepancyType(str, Enum):
    """Kinds of drift found by a reconciliation sweep."""
    VERSION_MISMATCH = "VERSION_MISMATCH"
    DATA_MISMATCH = "DATA_MISMATCH"
    MISSING_IN_REMOTE = "MISSING_IN_REMOTE"
    DELETED_IN_REMOTE = "DELETED_IN_REMOTE"
    CHECKSUM_MISMATCH = "CHECKSUM_MISMATCH"


class RepairPolicy(str, Enum):
    """What the sweeper does with a discrepancy."""
    AUTO_HEAL = "AUTO_HEAL"
    LOG_ONLY = "LOG_ONLY"


class ConflictResolution(str, Enum):
    """Operator choices for leaving VERSION_CONFLICT."""
    ACCEPT_REMOTE = "ACCEPT_REMOTE"
    KEEP_LOCAL = "KEEP_LOCAL"
    MERGE = "MERGE"


class AlertType(str, Enum):
    """Operator-facing alert categories."""
    HIGH_ERROR_RATE = "high_error_rate"
    STUCK_PENDING = "stuck_pending"
    DEAD_LETTER = "dead_letter"
    REMOTE_UNAVAILABLE = "remote_unavailable"
    RECONCILIATION_DRIFT = "reconciliation_drift"


class AlertSeverity(str, Enum):
    WARNING = "warning"
    CRITICAL = "critical"


# ═══════════════════════════════════════════════════════════════════════════════
# ENTITY
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class Entity:
    """A locally stored record correlated with a remote authoritative record."""
    id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    external_id: Optional[str] = None
    external_version: Optional[int] = None
    sync_status: SyncStatus = SyncStatus.PENDING
    sync_job_ref: Optional[str] = None
    sync_dispatched_at: Optional[datetime] = None
    last_sync_attempt: Optional[datetime] = None
    last_sync_success: Optional[datetime] = None
    sync_error_code: Optional[str] = None
    sync_error_message: Optional[str] = None
    retry_count: int = 0
    next_retry_at: Optional[datetime] = None
    local_modified_at: Optional[datetime] = None
    status_changed_at: Optional[datetime] = None
    last_reconciled_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    conflict_snapshot: Optional[Dict[str, Any]] = None
    # Remote version an operator chose to keep the local payload over
    kept_local_version: Optional[int] = None
    created_at: Optional[datetime] = None
    row_version: int = 0

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def in_flight(self) -> bool:
        """True while a dispatched task has not been adjudicated yet."""
        return self.sync_job_ref is not None or self.sync_status == SyncStatus.PROCESSING

    def copy(self) -> "Entity":
        """Deep copy, so mutators never touch the caller's instance."""
        return replace(
            self,
            payload=copy.deepcopy(self.payload),
            conflict_snapshot=copy.deepcopy(self.conflict_snapshot),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for logging and API projections."""
        def iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "external_id": self.external_id,
            "external_version": self.external_version,
            "payload": self.payload,
            "sync_status": self.sync_status.value,
            "sync_job_ref": self.sync_job_ref,
            "last_sync_attempt": iso(self.last_sync_attempt),
            "last_sync_success": iso(self.last_sync_success),
            "sync_error_code": self.sync_error_code,
            "sync_error_message": self.sync_error_message,
            "retry_count": self.retry_count,
            "next_retry_at": iso(self.next_retry_at),
            "local_modified_at": iso(self.local_modified_at),
            "status_changed_at": iso(self.status_changed_at),
            "last_reconciled_at": iso(self.last_reconciled_at),
            "deleted_at": iso(self.deleted_at),
            "has_conflict_snapshot": self.conflict_snapshot is not None,
            "kept_local_version": self.kept_local_version,
        }


@dataclass
class SyncTask:
    """Unit of asynchronous sync work, owned by the queue."""
    entity_id: str
    enqueued_at: datetime
    attempt: int = 0
    scheduled_not_before: Optional[datetime] = None


# ═══════════════════════════════════════════════════════════════════════════════
# REMOTE SNAPSHOT
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class FieldError:
    """One validation problem in a remote payload."""
    field: str
    message: str
    value: Any = None

    def __str__(self) -> str:
        if self.value is not None:
            return f"{self.field}: {self.message} (got: {self.value!r})"
        return f"{self.field}: {self.message}"


SNAPSHOT_RESERVED_KEYS = ("id", "version", "updated_at", "deleted_at", "checksum")


@dataclass
class RemoteSnapshot:
    """
    Remote system's current representation of an entity.

    Decoding never raises for bad field values; problems are collected in
    `issues` and reported by validation.
    """
    id: Optional[str]
    version: Optional[int]
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    fields: Dict[str, Any] = field(default_factory=dict)
    checksum: Optional[str] = None
    issues: List[FieldError] = field(default_factory=list)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "RemoteSnapshot":
        """Create a snapshot from a remote API response body."""
        issues: List[FieldError] = []

        raw_id = data.get("id")
        snapshot_id = None
        if isinstance(raw_id, bool):
            issues.append(FieldError("id", "Must be a string or integer", raw_id))
        elif isinstance(raw_id, (str, int)):
            snapshot_id = str(raw_id)
        elif raw_id is not None:
            issues.append(FieldError("id", "Must be a string or integer", raw_id))

        raw_version = data.get("version")
        version = None
        if isinstance(raw_version, int) and not isinstance(raw_version, bool):
            version = raw_version
        elif raw_version is not None:
            issues.append(FieldError("version", "Must be an integer", raw_version))

        updated_at = None
        try:
            updated_at = parse_timestamp(data.get("updated_at"))
        except (ValueError, TypeError):
            issues.append(FieldError("updated_at", "Invalid timestamp", data.get("updated_at")))

        deleted_at = None
        try:
            deleted_at = parse_timestamp(data.get("deleted_at"))
        except (ValueError, TypeError):
            issues.append(FieldError("deleted_at", "Invalid timestamp", data.get("deleted_at")))

        checksum = data.get("checksum")
        if checksum is not None and not isinstance(checksum, str):
            issues.append(FieldError("checksum", "Must be a string", checksum))
            checksum = None

        fields = {k: v for k, v in data.items() if k not in SNAPSHOT_RESERVED_KEYS}

        return cls(
            id=snapshot_id,
            version=version,
            updated_at=updated_at,
            deleted_at=deleted_at,
            fields=fields,
            checksum=checksum,
            issues=issues,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize back to the API shape (used for conflict_snapshot)."""
        return {
            "id": self.id,
            "version": self.version,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "deleted_at": self.deleted_at.isoformat() if self.deleted_at else None,
            "checksum": self.checksum,
            **self.fields,
        }


@dataclass(frozen=True)
class FieldSpec:
    """Expected shape of one domain field in remote payloads."""
    name: str
    type: str = "any"  # str, int, float, bool, dict, list, datetime, any
    required: bool = False
    nullable: bool = True
    choices: Tuple[Any, ...] = ()


@dataclass(frozen=True)
class EntitySchema:
    """Per-object field list used for validation and checksums."""
    fields: Tuple[FieldSpec, ...] = ()
    checksum_fields: Tuple[str, ...] = ()
    compared_fields: Tuple[str, ...] = ()

    def get(self, name: str) -> Optional[FieldSpec]:
        for spec in self.fields:
            if spec.name == name:
                return spec
        return None


# ═══════════════════════════════════════════════════════════════════════════════
# REMOTE CLIENT RESULTS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class RateLimitInfo:
    """Remote quota signals, read by the queue and sweeper for backpressure."""
    limit: Optional[int] = None
    remaining: Optional[int] = None
    reset_at: Optional[datetime] = None

    def is_exhausted(self, floor: int = 0) -> bool:
        return self.remaining is not None and self.remaining <= floor

    def seconds_until_reset(self, now: Optional[datetime] = None) -> float:
        if self.reset_at is None:
            return 0.0
        now = now or utcnow()
        return max(0.0, (self.reset_at - now).total_seconds())


@dataclass
class BulkFetchResult:
    found: List[RemoteSnapshot] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)

    def by_id(self) -> Dict[str, RemoteSnapshot]:
        return {s.id: s for s in self.found if s.id is not None}


@dataclass
class ChangePage:
    items: List[RemoteSnapshot] = field(default_factory=list)
    next_cursor: Optional[str] = None


# ═══════════════════════════════════════════════════════════════════════════════
# ADJUDICATION / RECONCILIATION
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class AdjudicationResult:
    """What one adjudicate() call decided."""
    entity: Entity
    status: Optional[SyncStatus]
    applied: bool = False
    noop: bool = False
    reason: Optional[str] = None
    error: Optional[BaseException] = None


@dataclass
class ReconciliationRecord:
    """Append-only audit row for one detected discrepancy."""
    entity_id: str
    external_id: Optional[str]
    discrepancy_type: DiscrepancyType
    details: Dict[str, Any] = field(default_factory=dict)
    detected_at: datetime = field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None
    run_id: Optional[str] = None
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "entity_id": self.entity_id,
            "external_id": self.external_id,
            "discrepancy_type": self.discrepancy_type.value,
            "details": self.details,
            "detected_at": self.detected_at.isoformat(),
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "run_id": self.run_id,
        }


@dataclass
class ReconciliationFilter:
    """Window of entities a sweep walks. after_id makes the walk restartable."""
    modified_since: Optional[datetime] = None
    reconciled_before: Optional[datetime] = None
    after_id: Optional[str] = None
    page_size: int = 200


@dataclass
class ReconciliationSummary:
    """Report emitted when a sweep finishes."""
    run_id: str
    incremental: bool
    started_at: datetime
    finished_at: Optional[datetime] = None
    scanned: int = 0
    counts: Dict[DiscrepancyType, int] = field(
        default_factory=lambda: {t: 0 for t in DiscrepancyType}
    )
    healed: int = 0
    heal_failures: int = 0
    fetch_failures: int = 0

    @property
    def total_discrepancies(self) -> int:
        return sum(self.counts.values())

    @property
    def duration_ms(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds() * 1000

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "incremental": self.incremental,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_ms": round(self.duration_ms, 2) if self.duration_ms is not None else None,
            "scanned": self.scanned,
            "counts": {t.value: n for t, n in self.counts.items()},
            "total_discrepancies": self.total_discrepancies,
            "healed": self.healed,
            "heal_failures": self.heal_failures,
            "fetch_failures": self.fetch_failures,
        }


@dataclass
class Alert:
    """Operator-facing alert raised by the monitor."""
    type: AlertType
    severity: AlertSeverity
    message: str
    details: Dict[str, Any] = field(default_factory=dict)
    raised_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "message": self.message,
            "details": self.details,
            "raised_at": self.raised_at.isoformat(),
        }
