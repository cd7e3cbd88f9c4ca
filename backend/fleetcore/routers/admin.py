"""
Admin API endpoints for operating the execution core.

All endpoints require admin authentication:
- Supervisor bearer token, OR
- Valid `X-Admin-API-Key` header

For the live fleet view, use `/api/dispatch`.
"""

import uuid
from datetime import datetime, timedelta
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fleetcore.auth.dependencies import admin_actor_id, verify_admin_access
from fleetcore.auth.jwt import TokenClaims
from fleetcore.database import get_db, get_session_factory
from fleetcore.exceptions import StateConflict
from fleetcore.models import DriverStatus, EventType, ReviewStatus, SessionStatus
from fleetcore.routers.events import accepted_response
from fleetcore.schemas.dispatch import GpsQualityRow, JobStatusResponse, SessionAuditRow
from fleetcore.schemas.events import EventAccepted, EventResponse, EventSubmission
from fleetcore.schemas.sessions import SessionActionResponse
from fleetcore.schemas.sync import SyncQueueItemResponse, SyncRunResponse
from fleetcore.services import event_log, projections, reports, session_registry, sync_reconciler
from fleetcore.utils.timezone import utc_now

router = APIRouter()


# =============================================================================
# Schemas
# =============================================================================

class ExpireSweepResponse(BaseModel):
    expired: int


class ReviewDecisionRequest(BaseModel):
    """Supervisor verdict on a flagged event."""
    decision: Literal["approved", "rejected"]
    notes: Optional[str] = Field(None, max_length=1000)


class OverrideRequest(BaseModel):
    """
    Force a job into a status, bypassing the transition table.

    `event_id` is chosen by the caller so a retried override is idempotent.
    """
    event_id: uuid.UUID
    job_id: uuid.UUID
    target_status: DriverStatus
    reason: str = Field(..., min_length=1, max_length=500)
    captured_at: Optional[datetime] = None


class RevokeSessionRequest(BaseModel):
    reason: str = Field(session_registry.END_REASON_REVOKED, min_length=1, max_length=50)


# =============================================================================
# Offline Sync
# =============================================================================

@router.post("/sync/process", response_model=SyncRunResponse)
async def process_sync_queue(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    _admin: Optional[TokenClaims] = Depends(verify_admin_access),
):
    """Run one reconciler pass now instead of waiting for the worker."""
    summary = await sync_reconciler.process_pending_queue(session_factory)
    return SyncRunResponse(
        devices=summary.devices,
        processed=summary.processed,
        failed=summary.failed,
        escalated=summary.escalated,
        skipped_devices=summary.skipped_devices,
    )


@router.get("/sync/escalated", response_model=list[SyncQueueItemResponse])
async def list_escalated(
    limit: int = Query(100, ge=1, le=1000),
    db: AsyncSession = Depends(get_db),
    _admin: Optional[TokenClaims] = Depends(verify_admin_access),
):
    """Queue items that exhausted their retries."""
    return await sync_reconciler.list_escalated_items(db, limit=limit)


@router.post("/sync/{item_id}/requeue", response_model=SyncQueueItemResponse)
async def requeue(
    item_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    _admin: Optional[TokenClaims] = Depends(verify_admin_access),
):
    """Give an escalated item a fresh retry budget."""
    return await sync_reconciler.requeue_item(db, item_id)


# =============================================================================
# Sessions
# =============================================================================

@router.post("/sessions/expire", response_model=ExpireSweepResponse)
async def expire_sessions(
    db: AsyncSession = Depends(get_db),
    _admin: Optional[TokenClaims] = Depends(verify_admin_access),
):
    """Run the heartbeat sweep now."""
    expired = await session_registry.expire_stale_sessions(db)
    return ExpireSweepResponse(expired=expired)


@router.post("/sessions/{session_id}/revoke", response_model=SessionActionResponse)
async def revoke_session(
    session_id: uuid.UUID,
    request: Optional[RevokeSessionRequest] = None,
    db: AsyncSession = Depends(get_db),
    _admin: Optional[TokenClaims] = Depends(verify_admin_access),
):
    """Invalidate a session (lost device, driver offboarded)."""
    await session_registry.get_session(db, session_id)
    reason = request.reason if request else session_registry.END_REASON_REVOKED
    applied = await session_registry.revoke_session(db, session_id, reason=reason)
    return SessionActionResponse(session_id=session_id, applied=applied)


# =============================================================================
# Events
# =============================================================================

@router.get("/events/pending-review", response_model=list[EventResponse])
async def pending_review(
    limit: int = Query(100, ge=1, le=1000),
    db: AsyncSession = Depends(get_db),
    _admin: Optional[TokenClaims] = Depends(verify_admin_access),
):
    """Flagged events awaiting a verdict, oldest first."""
    return await event_log.list_events_pending_review(db, limit=limit)


@router.post("/events/{event_id}/review", response_model=EventResponse)
async def review(
    event_id: uuid.UUID,
    request: ReviewDecisionRequest,
    db: AsyncSession = Depends(get_db),
    admin: Optional[TokenClaims] = Depends(verify_admin_access),
):
    """Record a verdict. Does not change the job's state."""
    return await event_log.review_event(
        db,
        event_id,
        ReviewStatus(request.decision),
        reviewer_id=admin_actor_id(admin),
        notes=request.notes,
    )


@router.post("/events/override", response_model=EventAccepted)
async def supervisor_override(
    request: OverrideRequest,
    db: AsyncSession = Depends(get_db),
    admin: Optional[TokenClaims] = Depends(verify_admin_access),
):
    """
    Force a job into `target_status`.

    Recorded as a SUPERVISOR_OVERRIDE event on behalf of the assigned
    driver and flagged for review.
    """
    job = await projections.get_job_status(db, request.job_id)
    if job.assigned_driver_id is None:
        raise StateConflict(f"Job {job.id} has no assigned driver", code="job_unassigned")

    submission = EventSubmission(
        event_id=request.event_id,
        event_type=EventType.SUPERVISOR_OVERRIDE,
        driver_id=job.assigned_driver_id,
        job_id=job.id,
        captured_at=request.captured_at or utc_now(),
        target_status=request.target_status,
        metadata={"actor_id": admin_actor_id(admin), "reason": request.reason},
    )
    outcome = await event_log.submit_event(db, submission)
    return accepted_response(outcome)


# =============================================================================
# Jobs
# =============================================================================

@router.post("/jobs/{job_id}/rebuild", response_model=JobStatusResponse)
async def rebuild_job(
    job_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    _admin: Optional[TokenClaims] = Depends(verify_admin_access),
):
    """Recompute a job's execution state from its event log."""
    await event_log.rebuild_job_state(db, job_id)
    return await projections.get_job_status(db, job_id)


# =============================================================================
# Reports
# =============================================================================

@router.get("/reports/gps-quality", response_model=list[GpsQualityRow])
async def gps_quality(
    since: Optional[datetime] = None,
    poor_accuracy_m: float = Query(reports.DEFAULT_POOR_ACCURACY_M, gt=0),
    db: AsyncSession = Depends(get_db),
    _admin: Optional[TokenClaims] = Depends(verify_admin_access),
):
    """GPS quality per driver. Defaults to the last 24 hours."""
    since = since or utc_now() - timedelta(hours=24)
    return await reports.gps_quality_report(db, since, poor_accuracy_m=poor_accuracy_m)


@router.get("/reports/sessions", response_model=list[SessionAuditRow])
async def session_audit(
    driver_id: Optional[uuid.UUID] = None,
    status: Optional[SessionStatus] = None,
    limit: int = Query(100, ge=1, le=1000),
    db: AsyncSession = Depends(get_db),
    _admin: Optional[TokenClaims] = Depends(verify_admin_access),
):
    """Recent sessions with event and point counts."""
    return await reports.session_audit(db, driver_id=driver_id, status=status, limit=limit)
