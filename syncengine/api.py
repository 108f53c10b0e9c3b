"""
FastAPI status API.

Read-only projections over the engine (entities, reconciliation records,
alerts, metrics) plus the operator actions: retry, conflict resolution and
an on-demand reconciliation sweep.
"""
import time
from typing import Callable, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from syncengine.engine import SyncEngine
from syncengine.exceptions import (
    EntityNotFoundError,
    InvalidStateError,
    SyncError,
    ValidationError,
)
from syncengine.observability import (
    generate_correlation_id,
    get_logger,
    set_correlation_id,
)
from syncengine.schemas import (
    ActionResponse,
    AlertListResponse,
    EntityListResponse,
    EntityResponse,
    HealthResponse,
    MetricsResponse,
    ReconciliationRecordListResponse,
    ReconciliationRunRequest,
    ReconciliationSummaryResponse,
    ResolveRequest,
)
from syncengine.validators import (
    validate_entity_id,
    validate_limit,
    validate_resolution,
    validate_status,
)

logger = get_logger(__name__)

router = APIRouter()


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Assigns a correlation ID to each request and logs it with timing."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = request.headers.get("X-Request-ID") or generate_correlation_id()
        set_correlation_id(correlation_id)

        start_time = time.perf_counter()
        method = request.method
        path = request.url.path

        response = await call_next(request)

        duration_ms = (time.perf_counter() - start_time) * 1000
        response.headers["X-Request-ID"] = correlation_id
        response.headers["X-Response-Time"] = f"{duration_ms:.2f}ms"

        # Skip health checks to reduce noise
        if path != "/health":
            level_name = "info" if response.status_code < 400 else "warning"
            getattr(logger, level_name)(
                f"Request completed: {method} {path}",
                extra={
                    "method": method,
                    "path": path,
                    "status_code": response.status_code,
                    "duration_ms": round(duration_ms, 2),
                }
            )
        return response


def get_engine(request: Request) -> SyncEngine:
    return request.app.state.engine


def _http_error(e: Exception) -> HTTPException:
    """Map engine exceptions to HTTP errors."""
    if isinstance(e, ValidationError):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, EntityNotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, (InvalidStateError, SyncError)):
        return HTTPException(status_code=409, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))


# ═══════════════════════════════════════════════════════════════════════════════
# HEALTH & METRICS
# ═══════════════════════════════════════════════════════════════════════════════

@router.get("/health", response_model=HealthResponse)
async def health_check(engine: SyncEngine = Depends(get_engine)):
    """Health check endpoint for load balancer monitoring."""
    circuit = getattr(engine.remote, "circuit", None)
    circuit_state = circuit.state.value if circuit is not None else None
    degraded = circuit is not None and circuit.is_open

    return {
        "status": "degraded" if degraded else "ok",
        "version": engine.config.version,
        "circuit_state": circuit_state,
        "queue_running": engine.queue.is_running,
        "entities": await engine.store.count_by_status(),
    }


@router.get("/metrics", response_model=MetricsResponse)
async def get_metrics(engine: SyncEngine = Depends(get_engine)):
    """Queue, monitor, remote call and reconciliation statistics."""
    return await engine.status()


@router.get("/alerts", response_model=AlertListResponse)
async def get_alerts(
    limit: int = Query(50, ge=1, le=500, description="Most recent alerts to return"),
    engine: SyncEngine = Depends(get_engine),
):
    alerts = engine.monitor.get_alerts(limit)
    return {"alerts": alerts, "count": len(alerts)}


# ═══════════════════════════════════════════════════════════════════════════════
# ENTITIES
# ═══════════════════════════════════════════════════════════════════════════════

@router.get("/entities", response_model=EntityListResponse)
async def list_entities(
    status: Optional[str] = Query(None, description="Filter by sync status"),
    limit: int = Query(100, description="Maximum entities to return"),
    engine: SyncEngine = Depends(get_engine),
):
    try:
        sync_status = validate_status(status)
        limit = validate_limit(limit)
    except ValidationError as e:
        raise _http_error(e)

    entities = await engine.list_entities(sync_status, limit)
    return {
        "entities": [entity.to_dict() for entity in entities],
        "count": len(entities),
        "status": sync_status.value if sync_status else None,
    }


@router.get("/entities/{entity_id}", response_model=EntityResponse)
async def get_entity(entity_id: str, engine: SyncEngine = Depends(get_engine)):
    try:
        entity = await engine.get(validate_entity_id(entity_id))
    except (ValidationError, EntityNotFoundError) as e:
        raise _http_error(e)
    return entity.to_dict()


@router.post("/entities/{entity_id}/retry", response_model=ActionResponse)
async def retry_entity(entity_id: str, engine: SyncEngine = Depends(get_engine)):
    """Send an entity back through sync (resets the retry budget for gated states)."""
    try:
        entity = await engine.retry(validate_entity_id(entity_id))
    except (ValidationError, SyncError) as e:
        raise _http_error(e)

    logger.info(f"Operator retry for {entity_id}", extra={"entity_id": entity_id})
    return {"success": True, "action": "retry", "entity": entity.to_dict()}


@router.post("/entities/{entity_id}/resolve", response_model=ActionResponse)
async def resolve_entity(
    entity_id: str,
    body: ResolveRequest,
    engine: SyncEngine = Depends(get_engine),
):
    """Resolve a VERSION_CONFLICT with ACCEPT_REMOTE, KEEP_LOCAL or MERGE."""
    try:
        resolution = validate_resolution(body.resolution, body.merged_payload)
        entity = await engine.resolve(
            validate_entity_id(entity_id), resolution, body.merged_payload
        )
    except (ValidationError, SyncError) as e:
        raise _http_error(e)

    logger.info(
        f"Conflict on {entity_id} resolved with {resolution.value}",
        extra={"entity_id": entity_id},
    )
    return {"success": True, "action": f"resolve:{resolution.value}", "entity": entity.to_dict()}


# ═══════════════════════════════════════════════════════════════════════════════
# RECONCILIATION
# ═══════════════════════════════════════════════════════════════════════════════

@router.get("/reconciliation/records", response_model=ReconciliationRecordListResponse)
async def list_reconciliation_records(
    entity_id: Optional[str] = Query(None, description="Only records for this entity"),
    run_id: Optional[str] = Query(None, description="Only records from this sweep"),
    unresolved: bool = Query(False, description="Only records not yet healed"),
    limit: int = Query(100, ge=1, le=500),
    engine: SyncEngine = Depends(get_engine),
):
    records = await engine.store.list_reconciliation_records(
        entity_id=entity_id, run_id=run_id, unresolved_only=unresolved, limit=limit
    )
    return {"records": [record.to_dict() for record in records], "count": len(records)}


@router.post("/reconciliation/run", response_model=ReconciliationSummaryResponse)
async def run_reconciliation(
    body: Optional[ReconciliationRunRequest] = None,
    engine: SyncEngine = Depends(get_engine),
):
    """Run a sweep now and return its summary. 409 if one is already running."""
    incremental = body.incremental if body else False
    try:
        summary = await engine.reconcile(incremental=incremental)
    except SyncError as e:
        raise _http_error(e)
    return summary.to_dict()


def create_app(engine: SyncEngine, manage_lifecycle: bool = False) -> FastAPI:
    """
    Build the status API around an engine.

    Args:
        engine: Engine the routes read from and act on
        manage_lifecycle: Start and stop the engine with the app (used by `serve`)
    """
    app = FastAPI(
        title="Sync Engine",
        description="Status and operator API for the sync engine",
        version=engine.config.version,
    )
    app.state.engine = engine
    app.add_middleware(RequestLoggingMiddleware)
    app.include_router(router)

    if manage_lifecycle:
        @app.on_event("startup")
        async def startup_event():
            await engine.start()

        @app.on_event("shutdown")
        async def shutdown_event():
            await engine.stop()

    return app
