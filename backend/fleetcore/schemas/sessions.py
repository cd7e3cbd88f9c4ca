"""
Pydantic schemas for the session API.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from fleetcore.schemas.common import Location


class DeviceInfo(BaseModel):
    """Device details reported at login."""
    fingerprint: Optional[str] = Field(None, max_length=255)
    app_version: Optional[str] = Field(None, max_length=50)
    os_version: Optional[str] = Field(None, max_length=50)
    device_model: Optional[str] = Field(None, max_length=100)


class StartSessionRequest(BaseModel):
    """Schema for starting a session on login/activation."""
    driver_id: UUID
    device_id: str = Field(..., min_length=1, max_length=255)
    vehicle_id: Optional[UUID] = None
    device_info: DeviceInfo = Field(default_factory=DeviceInfo)
    start_location: Optional[Location] = None


class EndSessionRequest(BaseModel):
    """Schema for ending a session on logout."""
    reason: str = Field("user_logout", min_length=1, max_length=50)


class SessionResponse(BaseModel):
    """Schema for session data in responses."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    driver_id: UUID
    device_id: str
    vehicle_id: Optional[UUID] = None
    status: str
    started_at: datetime
    ended_at: Optional[datetime] = None
    last_heartbeat_at: datetime
    end_reason: Optional[str] = None


class SessionActionResponse(BaseModel):
    """Result of heartbeat/end; `applied` is False when the session was not active."""
    session_id: UUID
    applied: bool
