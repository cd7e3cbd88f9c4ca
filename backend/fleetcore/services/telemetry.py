"""
Telemetry ingestion - GPS point intake from field devices.

Each point in a batch validates and inserts independently. Duplicates (same
session, device and capture time) are ignored and reported as success so a
device can safely re-send a flush it is unsure about.
"""

import logging
import uuid
from typing import Any, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fleetcore.config import get_settings
from fleetcore.database import insert_ignore, storage_errors
from fleetcore.exceptions import ValidationError
from fleetcore.models import DriverSession, TelemetryPoint
from fleetcore.schemas.telemetry import PointResult, TelemetryPointIn
from fleetcore.utils.timezone import to_utc, utc_now

_logger = logging.getLogger(__name__)

STATUS_ACCEPTED = "accepted"
STATUS_DUPLICATE = "duplicate"
STATUS_REJECTED = "rejected"
STATUS_NOT_FOUND = "not_found"


def _describe(exc: PydanticValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error["loc"]) or "point"
        parts.append(f"{location}: {error['msg']}")
    return "; ".join(parts)


async def _load_sessions(db: AsyncSession, session_ids: set[uuid.UUID]) -> dict[uuid.UUID, DriverSession]:
    if not session_ids:
        return {}
    result = await db.execute(
        select(DriverSession).where(DriverSession.id.in_(session_ids))
    )
    return {session.id: session for session in result.scalars().all()}


async def ingest_points(
    db: AsyncSession,
    raw_points: list[dict[str, Any]],
    *,
    driver_id: Optional[uuid.UUID] = None,
) -> list[PointResult]:
    """
    Validate and store a batch of GPS points.

    Points referencing a session that is no longer active are still stored;
    the projections simply ignore them.

    Args:
        db: Database session
        raw_points: Points as submitted
        driver_id: When set, every point must belong to this driver

    Returns:
        One PointResult per input point, in input order

    Raises:
        ValidationError: Empty batch or batch above the configured bound
    """
    settings = get_settings()
    if not raw_points:
        raise ValidationError("Batch contains no points", code="empty_batch")
    if len(raw_points) > settings.telemetry_max_batch_size:
        raise ValidationError(
            f"Batch of {len(raw_points)} points exceeds limit of {settings.telemetry_max_batch_size}",
            code="batch_too_large",
        )

    results: list[Optional[PointResult]] = [None] * len(raw_points)
    parsed: list[tuple[int, TelemetryPointIn]] = []
    for index, raw in enumerate(raw_points):
        try:
            parsed.append((index, TelemetryPointIn.model_validate(raw)))
        except PydanticValidationError as exc:
            results[index] = PointResult(index=index, status=STATUS_REJECTED, error=_describe(exc))

    received_at = utc_now()
    async with storage_errors(db):
        sessions = await _load_sessions(db, {point.session_id for _, point in parsed})

        for index, point in parsed:
            session = sessions.get(point.session_id)
            if session is None:
                results[index] = PointResult(
                    index=index, status=STATUS_NOT_FOUND, error=f"Session {point.session_id} not found",
                )
                continue
            if driver_id is not None and point.driver_id != driver_id:
                results[index] = PointResult(
                    index=index, status=STATUS_REJECTED, error="Point belongs to another driver",
                )
                continue
            if session.driver_id != point.driver_id or session.device_id != point.device_id:
                results[index] = PointResult(
                    index=index, status=STATUS_REJECTED, error="Point does not match its session",
                )
                continue

            values = point.model_dump()
            values.update(
                id=uuid.uuid4(),
                captured_at=to_utc(point.captured_at),
                received_at=received_at,
            )
            inserted = await db.execute(insert_ignore(db, TelemetryPoint, values))
            results[index] = PointResult(
                index=index,
                status=STATUS_ACCEPTED if inserted.rowcount else STATUS_DUPLICATE,
            )

        await db.commit()

    accepted = sum(1 for result in results if result.status == STATUS_ACCEPTED)
    failed = sum(1 for result in results if not result.ok)
    _logger.debug("Telemetry batch: %d points, %d accepted, %d failed", len(results), accepted, failed)
    return results
