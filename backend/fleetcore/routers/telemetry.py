"""
Telemetry endpoints.

Devices flush buffered GPS points in batches. Each point gets its own
result so the device only re-sends the ones that failed.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from fleetcore.auth.dependencies import get_current_driver
from fleetcore.database import get_db
from fleetcore.exceptions import ResourceNotFound, ValidationError
from fleetcore.models import Driver
from fleetcore.schemas.telemetry import (
    PointResult,
    TelemetryBatchRequest,
    TelemetryBatchResponse,
    TelemetryPointIn,
)
from fleetcore.services.telemetry import STATUS_ACCEPTED, STATUS_DUPLICATE, STATUS_NOT_FOUND, ingest_points

router = APIRouter()


@router.post("/batch", response_model=TelemetryBatchResponse)
async def submit_batch(
    request: TelemetryBatchRequest,
    db: AsyncSession = Depends(get_db),
    driver: Driver = Depends(get_current_driver),
):
    """Submit a batch of points. Points of other drivers are rejected individually."""
    results = await ingest_points(db, request.points, driver_id=driver.id)
    return TelemetryBatchResponse(
        accepted=sum(1 for r in results if r.status == STATUS_ACCEPTED),
        duplicates=sum(1 for r in results if r.status == STATUS_DUPLICATE),
        failed=sum(1 for r in results if not r.ok),
        results=results,
    )


@router.post("", response_model=PointResult)
async def submit_point(
    point: TelemetryPointIn,
    db: AsyncSession = Depends(get_db),
    driver: Driver = Depends(get_current_driver),
):
    """Submit a single point."""
    [result] = await ingest_points(db, [point.model_dump(mode="json")], driver_id=driver.id)
    if result.status == STATUS_NOT_FOUND:
        raise ResourceNotFound(result.error or "Session not found", code="session_not_found")
    if not result.ok:
        raise ValidationError(result.error or "Point rejected", code="point_rejected")
    return result
