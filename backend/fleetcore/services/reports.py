"""
Administrative reports over telemetry and sessions.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from fleetcore.exceptions import ValidationError
from fleetcore.models import Driver, DriverSession, ExecutionEvent, SessionStatus, TelemetryPoint
from fleetcore.schemas.dispatch import GpsQualityRow, SessionAuditRow
from fleetcore.utils.timezone import to_utc, utc_now

DEFAULT_POOR_ACCURACY_M = 50.0


async def gps_quality_report(
    db: AsyncSession,
    since: datetime,
    poor_accuracy_m: float = DEFAULT_POOR_ACCURACY_M,
) -> list[GpsQualityRow]:
    """
    Per-driver GPS quality since a point in time.

    A point counts as poor when its reported accuracy radius exceeds
    `poor_accuracy_m`. Points without an accuracy value are not poor.
    Drivers with the worst ratio come first.
    """
    if poor_accuracy_m <= 0:
        raise ValidationError("poor_accuracy_m must be positive", code="invalid_threshold")

    poor = func.sum(case((TelemetryPoint.accuracy > poor_accuracy_m, 1), else_=0))
    background = func.sum(case((TelemetryPoint.is_background.is_(True), 1), else_=0))
    result = await db.execute(
        select(
            TelemetryPoint.driver_id,
            Driver.name,
            func.count(TelemetryPoint.id).label("total"),
            poor.label("poor"),
            func.avg(TelemetryPoint.accuracy).label("avg_accuracy"),
            background.label("background"),
            func.max(TelemetryPoint.captured_at).label("last_point_at"),
        )
        .join(Driver, Driver.id == TelemetryPoint.driver_id)
        .where(TelemetryPoint.captured_at >= to_utc(since))
        .group_by(TelemetryPoint.driver_id, Driver.name)
    )

    rows = []
    for row in result.all():
        total = row.total or 0
        poor_count = int(row.poor or 0)
        rows.append(GpsQualityRow(
            driver_id=row.driver_id,
            driver_name=row.name,
            total_points=total,
            poor_accuracy_points=poor_count,
            poor_accuracy_ratio=round(poor_count / total, 4) if total else 0.0,
            avg_accuracy=round(float(row.avg_accuracy), 2) if row.avg_accuracy is not None else None,
            background_points=int(row.background or 0),
            last_point_at=row.last_point_at,
        ))
    rows.sort(key=lambda r: (-r.poor_accuracy_ratio, r.driver_name))
    return rows


async def session_audit(
    db: AsyncSession,
    driver_id: Optional[uuid.UUID] = None,
    status: Optional[SessionStatus] = None,
    limit: int = 100,
) -> list[SessionAuditRow]:
    """Recent sessions, newest first, with event and point counts."""
    if limit < 1:
        raise ValidationError("limit must be positive", code="invalid_limit")

    event_count = (
        select(func.count(ExecutionEvent.event_id))
        .where(ExecutionEvent.session_id == DriverSession.id)
        .correlate(DriverSession)
        .scalar_subquery()
    )
    point_count = (
        select(func.count(TelemetryPoint.id))
        .where(TelemetryPoint.session_id == DriverSession.id)
        .correlate(DriverSession)
        .scalar_subquery()
    )

    query = select(
        DriverSession,
        event_count.label("event_count"),
        point_count.label("point_count"),
    )
    if driver_id is not None:
        query = query.where(DriverSession.driver_id == driver_id)
    if status is not None:
        query = query.where(DriverSession.status == status.value)
    query = query.order_by(DriverSession.started_at.desc()).limit(limit)

    result = await db.execute(query)
    now = utc_now()
    rows = []
    for session, events, points in result.all():
        end = session.ended_at or now
        rows.append(SessionAuditRow(
            session_id=session.id,
            driver_id=session.driver_id,
            device_id=session.device_id,
            status=session.status,
            started_at=session.started_at,
            ended_at=session.ended_at,
            end_reason=session.end_reason,
            duration_minutes=round((end - session.started_at).total_seconds() / 60, 1),
            event_count=events or 0,
            point_count=points or 0,
        ))
    return rows
