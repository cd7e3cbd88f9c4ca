"""
Pydantic schemas for the dispatch read API and admin reports.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class PositionResponse(BaseModel):
    """Latest known fix of a driver."""
    model_config = ConfigDict(from_attributes=True)

    lat: float
    lng: float
    accuracy: Optional[float] = None
    heading: Optional[float] = None
    speed: Optional[float] = None
    battery_level: Optional[int] = None
    captured_at: datetime
    received_at: datetime


class ActiveDriverResponse(BaseModel):
    """One row of the live dispatch map."""
    driver_id: UUID
    driver_name: str
    session_id: UUID
    device_id: str
    vehicle_id: Optional[UUID] = None
    started_at: datetime
    last_heartbeat_at: datetime
    position: Optional[PositionResponse] = None
    job_id: Optional[UUID] = None
    job_status: Optional[str] = None


class JobStatusResponse(BaseModel):
    """Current execution state of a job."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    assigned_driver_id: Optional[UUID] = None
    vehicle_id: Optional[UUID] = None
    total_stops: int
    driver_status: str
    current_stop_index: int
    actual_start_time: Optional[datetime] = None
    actual_end_time: Optional[datetime] = None
    last_event_at: Optional[datetime] = None


class GpsQualityRow(BaseModel):
    """Per-driver GPS quality over a reporting window."""
    driver_id: UUID
    driver_name: str
    total_points: int
    poor_accuracy_points: int
    poor_accuracy_ratio: float
    avg_accuracy: Optional[float] = None
    background_points: int
    last_point_at: Optional[datetime] = None


class SessionAuditRow(BaseModel):
    """A session with its activity counts."""
    session_id: UUID
    driver_id: UUID
    device_id: str
    status: str
    started_at: datetime
    ended_at: Optional[datetime] = None
    end_reason: Optional[str] = None
    duration_minutes: float
    event_count: int
    point_count: int
