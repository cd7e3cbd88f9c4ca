"""
Dispatch read API.

Live view of the fleet for the dispatch console. Requires supervisor
access.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from fleetcore.auth.dependencies import verify_admin_access
from fleetcore.auth.jwt import TokenClaims
from fleetcore.database import get_db
from fleetcore.schemas.dispatch import ActiveDriverResponse, JobStatusResponse
from fleetcore.schemas.events import EventResponse
from fleetcore.services import event_log, projections

router = APIRouter()


@router.get("/active-drivers", response_model=list[ActiveDriverResponse])
async def active_drivers(
    db: AsyncSession = Depends(get_db),
    _admin: Optional[TokenClaims] = Depends(verify_admin_access),
):
    """Drivers with an active session and their latest position."""
    return await projections.get_active_drivers_with_positions(db)


@router.get("/jobs/{job_id}", response_model=JobStatusResponse)
async def job_status(
    job_id: UUID,
    db: AsyncSession = Depends(get_db),
    _admin: Optional[TokenClaims] = Depends(verify_admin_access),
):
    """Current execution state of a job."""
    return await projections.get_job_status(db, job_id)


@router.get("/jobs/{job_id}/events", response_model=list[EventResponse])
async def job_events(
    job_id: UUID,
    db: AsyncSession = Depends(get_db),
    _admin: Optional[TokenClaims] = Depends(verify_admin_access),
):
    """A job's events in the order they were applied."""
    await projections.get_job_status(db, job_id)
    return await event_log.get_job_events(db, job_id)


@router.get("/drivers/{driver_id}/timeline", response_model=list[EventResponse])
async def driver_timeline(
    driver_id: UUID,
    session_id: Optional[UUID] = None,
    limit: Optional[int] = Query(None, ge=1),
    db: AsyncSession = Depends(get_db),
    _admin: Optional[TokenClaims] = Depends(verify_admin_access),
):
    """A driver's events, newest first."""
    return await event_log.get_driver_event_timeline(db, driver_id, session_id=session_id, limit=limit)
