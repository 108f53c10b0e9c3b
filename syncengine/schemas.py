"""
Pydantic models for the status API request/response validation.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


# ═══════════════════════════════════════════════════════════════════════════════
# HEALTH
# ═══════════════════════════════════════════════════════════════════════════════

class HealthResponse(BaseModel):
    """Health check response."""
    status: str = Field(description="ok or degraded")
    version: str
    circuit_state: Optional[str] = Field(None, description="Remote circuit breaker state")
    queue_running: bool
    entities: Dict[str, int] = Field(description="Entity count per sync status")


# ═══════════════════════════════════════════════════════════════════════════════
# ENTITIES
# ═══════════════════════════════════════════════════════════════════════════════

class EntityResponse(BaseModel):
    """One entity with its sync metadata."""
    id: str
    external_id: Optional[str] = None
    external_version: Optional[int] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    sync_status: str
    sync_job_ref: Optional[str] = None
    last_sync_attempt: Optional[str] = None
    last_sync_success: Optional[str] = None
    sync_error_code: Optional[str] = None
    sync_error_message: Optional[str] = None
    retry_count: int = 0
    next_retry_at: Optional[str] = None
    local_modified_at: Optional[str] = None
    status_changed_at: Optional[str] = None
    last_reconciled_at: Optional[str] = None
    deleted_at: Optional[str] = None
    has_conflict_snapshot: bool = False
    kept_local_version: Optional[int] = None


class EntityListResponse(BaseModel):
    entities: List[EntityResponse]
    count: int
    status: Optional[str] = Field(None, description="Status filter applied")


class ResolveRequest(BaseModel):
    """Operator decision for an entity in VERSION_CONFLICT."""
    resolution: str = Field(description="ACCEPT_REMOTE, KEEP_LOCAL or MERGE")
    merged_payload: Optional[Dict[str, Any]] = Field(
        None, description="Full payload to store, required for MERGE"
    )


class ActionResponse(BaseModel):
    """Result of an operator action on one entity."""
    success: bool
    action: str
    entity: EntityResponse


# ═══════════════════════════════════════════════════════════════════════════════
# RECONCILIATION
# ═══════════════════════════════════════════════════════════════════════════════

class ReconciliationRecordResponse(BaseModel):
    id: Optional[int] = None
    entity_id: str
    external_id: Optional[str] = None
    discrepancy_type: str
    details: Dict[str, Any] = Field(default_factory=dict)
    detected_at: str
    resolved_at: Optional[str] = None
    run_id: Optional[str] = None


class ReconciliationRecordListResponse(BaseModel):
    records: List[ReconciliationRecordResponse]
    count: int


class ReconciliationRunRequest(BaseModel):
    incremental: bool = Field(False, description="Only entities changed since the last sweep")


class ReconciliationSummaryResponse(BaseModel):
    run_id: str
    incremental: bool
    started_at: str
    finished_at: Optional[str] = None
    duration_ms: Optional[float] = None
    scanned: int
    counts: Dict[str, int]
    total_discrepancies: int
    healed: int
    heal_failures: int
    fetch_failures: int


# ═══════════════════════════════════════════════════════════════════════════════
# MONITORING
# ═══════════════════════════════════════════════════════════════════════════════

class AlertResponse(BaseModel):
    type: str
    severity: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)
    raised_at: str


class AlertListResponse(BaseModel):
    alerts: List[AlertResponse]
    count: int


class MetricsResponse(BaseModel):
    """Aggregated engine status."""
    version: str
    entities: Dict[str, int]
    queue: Dict[str, Any]
    monitor: Dict[str, Any]
    remote: Dict[str, Any]
    circuit: Optional[Dict[str, Any]] = None
    last_reconciliation: Optional[Dict[str, Any]] = None
    jobs: List[Dict[str, Any]] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    """Standard error response."""
    error: str
    detail: Optional[str] = None
    field: Optional[str] = None
