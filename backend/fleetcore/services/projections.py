"""
Read projections for dispatch.

Positions come from telemetry ordered by capture time, never arrival time,
so a late-flushed older point cannot pull a driver backwards on the map.
Only ACTIVE sessions are projected.
"""

import uuid

from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from fleetcore.exceptions import ResourceNotFound
from fleetcore.models import (
    Driver,
    DriverSession,
    DriverStatus,
    ExecutionJob,
    SessionStatus,
    TelemetryPoint,
)
from fleetcore.schemas.dispatch import ActiveDriverResponse, PositionResponse
from fleetcore.services.state_machine import TERMINAL_STATUSES

# Job states that put a driver "on" a job
_WORKING_STATUSES = [
    status.value for status in DriverStatus
    if status not in TERMINAL_STATUSES and status != DriverStatus.INACTIVE
]


async def _current_jobs(db: AsyncSession, driver_ids: list[uuid.UUID]) -> dict[uuid.UUID, ExecutionJob]:
    """Most recently touched in-progress job per driver."""
    if not driver_ids:
        return {}
    result = await db.execute(
        select(ExecutionJob)
        .where(
            ExecutionJob.assigned_driver_id.in_(driver_ids),
            ExecutionJob.driver_status.in_(_WORKING_STATUSES),
        )
        .order_by(func.coalesce(ExecutionJob.last_event_at, ExecutionJob.created_at).asc())
    )
    jobs = {}
    for job in result.scalars().all():
        # Ascending order: the newest wins
        jobs[job.assigned_driver_id] = job
    return jobs


async def get_active_drivers_with_positions(db: AsyncSession) -> list[ActiveDriverResponse]:
    """
    Every ACTIVE session with its driver's newest point.

    Sessions that have not reported a point yet are included with
    position=None.
    """
    ranked = (
        select(
            TelemetryPoint,
            func.row_number()
            .over(
                partition_by=TelemetryPoint.session_id,
                order_by=(TelemetryPoint.captured_at.desc(), TelemetryPoint.received_at.desc()),
            )
            .label("position_rank"),
        )
        .join(DriverSession, DriverSession.id == TelemetryPoint.session_id)
        .where(DriverSession.status == SessionStatus.ACTIVE.value)
        .subquery()
    )
    latest = aliased(TelemetryPoint, ranked)

    result = await db.execute(
        select(DriverSession, Driver, latest)
        .join(Driver, Driver.id == DriverSession.driver_id)
        .outerjoin(
            latest,
            and_(latest.session_id == DriverSession.id, ranked.c.position_rank == 1),
        )
        .where(DriverSession.status == SessionStatus.ACTIVE.value)
        .order_by(Driver.name.asc())
    )
    rows = result.all()

    jobs = await _current_jobs(db, [session.driver_id for session, _, _ in rows])

    drivers = []
    for session, driver, point in rows:
        job = jobs.get(driver.id)
        drivers.append(ActiveDriverResponse(
            driver_id=driver.id,
            driver_name=driver.name,
            session_id=session.id,
            device_id=session.device_id,
            vehicle_id=session.vehicle_id,
            started_at=session.started_at,
            last_heartbeat_at=session.last_heartbeat_at,
            position=PositionResponse.model_validate(point) if point is not None else None,
            job_id=job.id if job else None,
            job_status=job.driver_status if job else None,
        ))
    return drivers


async def get_job_status(db: AsyncSession, job_id: uuid.UUID) -> ExecutionJob:
    """Get a job with its current execution state."""
    job = await db.get(ExecutionJob, job_id)
    if job is None:
        raise ResourceNotFound(f"Job {job_id} not found", code="job_not_found")
    return job
