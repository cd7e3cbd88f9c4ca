"""
Execution event endpoints.

Devices submit events with a client-generated event_id. Re-submitting the
same id is accepted and returns the stored outcome.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from fleetcore.auth.dependencies import ensure_same_driver, get_current_driver
from fleetcore.database import get_db
from fleetcore.models import Driver, EventType
from fleetcore.schemas.events import EventAccepted, EventResponse, EventSubmission
from fleetcore.services import event_log
from fleetcore.services.event_log import EventOutcome

router = APIRouter()


def accepted_response(outcome: EventOutcome) -> EventAccepted:
    event = outcome.event
    return EventAccepted(
        event_id=event.event_id,
        job_id=event.job_id,
        previous_status=event.previous_status,
        resulting_status=event.resulting_status,
        duplicate=outcome.duplicate,
        review_required=outcome.review_required,
        flag_reasons=event.flag_reasons or [],
    )


@router.post("", response_model=EventAccepted)
async def submit_event(
    submission: EventSubmission,
    db: AsyncSession = Depends(get_db),
    driver: Driver = Depends(get_current_driver),
):
    """
    Submit one execution event.

    Rejections (illegal transition, unassigned driver, inactive session,
    stale replay) come back as `{"status": "rejected", "code", "reason"}`.
    """
    ensure_same_driver(driver, submission.driver_id)
    if submission.event_type == EventType.SUPERVISOR_OVERRIDE:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Overrides are submitted through the admin API",
        )
    outcome = await event_log.submit_event(db, submission)
    return accepted_response(outcome)


@router.get("/timeline/{driver_id}", response_model=list[EventResponse])
async def get_timeline(
    driver_id: UUID,
    session_id: Optional[UUID] = None,
    limit: Optional[int] = Query(None, ge=1),
    db: AsyncSession = Depends(get_db),
    driver: Driver = Depends(get_current_driver),
):
    """Get the driver's own events, newest first."""
    ensure_same_driver(driver, driver_id)
    return await event_log.get_driver_event_timeline(db, driver_id, session_id=session_id, limit=limit)
