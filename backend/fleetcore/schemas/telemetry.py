"""
Pydantic schemas for telemetry ingestion.
"""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class TelemetryPointIn(BaseModel):
    """
    One GPS sample.

    Batches arrive as raw dicts and each point is validated against this
    schema on its own, so one malformed point never rejects its neighbours.
    """
    driver_id: UUID
    session_id: UUID
    device_id: str = Field(..., min_length=1, max_length=255)
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    captured_at: datetime

    altitude: Optional[float] = None
    accuracy: Optional[float] = Field(None, ge=0)
    heading: Optional[float] = Field(None, ge=0, le=360)
    speed: Optional[float] = Field(None, ge=0)
    battery_level: Optional[int] = Field(None, ge=0, le=100)

    vehicle_id: Optional[UUID] = None
    job_id: Optional[UUID] = None
    network_type: Optional[str] = Field(None, max_length=20)
    is_background: bool = False


class TelemetryBatchRequest(BaseModel):
    """Periodic flush from a device."""
    points: list[dict[str, Any]]


class PointResult(BaseModel):
    """Per-point outcome; clients retry only the failed indexes."""
    index: int
    status: str  # accepted, duplicate, rejected, not_found
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status in ("accepted", "duplicate")


class TelemetryBatchResponse(BaseModel):
    """Response for a batch submission."""
    accepted: int
    duplicates: int
    failed: int
    results: list[PointResult]
