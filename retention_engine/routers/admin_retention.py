# retention_engine/routers/admin_retention.py
"""
Admin endpoints for retention cleanup.

GET  /v1/admin/retention/policies          - Registered policies
GET  /v1/admin/retention/policies/{table}  - One policy
GET  /v1/admin/retention/status            - Lock guarantee + expired counts
POST /v1/admin/retention/cleanup/{table}   - Run cleanup for one entity type
POST /v1/admin/retention/dry-run           - Expired counts for every policy
POST /v1/admin/retention/backlog           - Run a backlog round (follow-ups in background)
"""

import logging
from collections.abc import Iterator
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from retention_engine.auth import require_admin_key
from retention_engine.errors import ArchiveTableMissing, ArchiveTransactionError
from retention_engine.services.retention import (
    BacklogScheduler,
    CleanupExecutor,
    PolicyRegistry,
    RetentionPolicy,
    expired_count,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/admin/retention", tags=["admin-retention"])


# -----------------------------------------------------------------------------
# Dependencies
# -----------------------------------------------------------------------------


def get_registry(request: Request) -> PolicyRegistry:
    return request.app.state.registry


def get_executor(request: Request) -> CleanupExecutor:
    return request.app.state.executor


def get_session(request: Request) -> Iterator[Session]:
    db: Session = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def _policy_or_404(registry: PolicyRegistry, table: str) -> RetentionPolicy:
    policy = registry.lookup(table)
    if policy is None:
        raise HTTPException(status_code=404, detail=f"No retention policy registered for '{table}'")
    return policy


# -----------------------------------------------------------------------------
# Response Models
# -----------------------------------------------------------------------------


class PolicyResponse(BaseModel):
    """Registered retention policy."""

    entity: str
    table: str
    period_seconds: int
    strategy: str
    column: str
    batch_limit: int
    has_filter: bool
    has_guard: bool


class CleanupResponse(BaseModel):
    """Result of one cleanup invocation. Absent fields are omitted."""

    table: str
    count: int
    dry_run: bool
    failed: int | None = None
    remaining: bool | None = None
    skipped: bool | None = None
    reason: str | None = None


class StatusResponse(BaseModel):
    """Lock guarantee and current backlog."""

    lock_backend: str
    lock_guarantee: str
    policies: int
    expired: dict[str, int]


class RoundResponse(BaseModel):
    """Backlog round result."""

    round: int
    has_remaining: bool
    outcome: str
    next_round: int | None
    results: dict[str, dict[str, Any]]


class CleanupRequest(BaseModel):
    """Request to run cleanup for one entity type."""

    dry_run: bool = Field(False, description="Count expired rows only, don't remove")
    confirm: bool = Field(False, description="Required confirmation for non-dry-run")


class BacklogRequest(BaseModel):
    """Request to run a backlog round."""

    round: int = Field(1, ge=1, description="Round number; a new chain starts at 1")


# -----------------------------------------------------------------------------
# Endpoints
# -----------------------------------------------------------------------------


@router.get("/policies", response_model=list[PolicyResponse])
def list_policies(
    registry: PolicyRegistry = Depends(get_registry),
    _: None = Depends(require_admin_key),
) -> list[PolicyResponse]:
    """List every registered retention policy in registration order."""
    return [PolicyResponse(**policy.describe()) for policy in registry]


@router.get("/policies/{table}", response_model=PolicyResponse)
def get_policy(
    table: str,
    registry: PolicyRegistry = Depends(get_registry),
    _: None = Depends(require_admin_key),
) -> PolicyResponse:
    return PolicyResponse(**_policy_or_404(registry, table).describe())


@router.get("/status", response_model=StatusResponse)
def get_retention_status(
    db: Session = Depends(get_session),
    executor: CleanupExecutor = Depends(get_executor),
    _: None = Depends(require_admin_key),
) -> StatusResponse:
    """
    Current backlog per entity type and which lock guarantee applies.

    `lock_guarantee` is "in_process" when the database has no advisory
    locks; cleanups started from separate processes are then not excluded.
    """
    now = executor.clock()
    backend = executor.locks.backend_for(db)

    return StatusResponse(
        lock_backend=backend.name,
        lock_guarantee=executor.locks.guarantee_for(db),
        policies=len(executor.registry),
        expired={policy.table_name: expired_count(db, policy, now) for policy in executor.registry},
    )


@router.post("/cleanup/{table}", response_model=CleanupResponse, response_model_exclude_none=True)
def trigger_cleanup(
    table: str,
    request: CleanupRequest,
    db: Session = Depends(get_session),
    executor: CleanupExecutor = Depends(get_executor),
    _: None = Depends(require_admin_key),
) -> CleanupResponse:
    """
    Run cleanup for one entity type.

    **WARNING**: Without dry_run this permanently deletes (or archives) rows.
    Requires `confirm: true` for non-dry-run operations.
    """
    _policy_or_404(executor.registry, table)

    if not request.dry_run and not request.confirm:
        raise HTTPException(
            status_code=400,
            detail="Cleanup requires 'confirm: true' for non-dry-run operations",
        )

    try:
        result = executor.run(db, table, dry_run=request.dry_run)
    except ArchiveTableMissing as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ArchiveTransactionError as e:
        raise HTTPException(status_code=500, detail=str(e))

    if result is None:
        # Unregistered between the lookup and the run
        raise HTTPException(status_code=404, detail=f"No retention policy registered for '{table}'")

    return CleanupResponse(table=table, **result.to_dict())


@router.post("/dry-run", response_model=list[CleanupResponse], response_model_exclude_none=True)
def preview_cleanup(
    db: Session = Depends(get_session),
    executor: CleanupExecutor = Depends(get_executor),
    _: None = Depends(require_admin_key),
) -> list[CleanupResponse]:
    """Dry-run every registered policy. Never mutates."""
    responses = []
    for policy in executor.registry:
        result = executor.run(db, policy.entity, dry_run=True)
        if result is not None:
            responses.append(CleanupResponse(table=policy.table_name, **result.to_dict()))
    return responses


@router.post("/backlog", response_model=RoundResponse)
def trigger_backlog_round(
    request: BacklogRequest,
    background_tasks: BackgroundTasks,
    http_request: Request,
    executor: CleanupExecutor = Depends(get_executor),
    _: None = Depends(require_admin_key),
) -> RoundResponse:
    """
    Run one backlog round now.

    If expired rows remain, the rest of the chain (up to the round limit)
    runs as a background task after the response is sent.
    """
    state = http_request.app.state
    scheduler = BacklogScheduler(
        executor,
        state.session_factory,
        max_rounds=state.max_rounds,
    )

    if request.round > scheduler.max_rounds:
        raise HTTPException(
            status_code=400,
            detail=f"round must be between 1 and {scheduler.max_rounds}",
        )

    scheduler.enqueue = lambda next_round: background_tasks.add_task(scheduler.drain, next_round)
    result = scheduler.run_backlog_round(request.round)

    return RoundResponse(**result.to_dict())
