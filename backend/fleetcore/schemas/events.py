"""
Pydantic schemas for execution events.
"""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from fleetcore.models import DriverStatus, EventType
from fleetcore.schemas.common import Location


class EventSubmission(BaseModel):
    """
    One execution event as submitted by a device (live or replayed).

    `event_id` is generated on the device and is the idempotency key.
    `resulting_status` is optional; when present it must agree with the
    transition table.
    """
    event_id: UUID
    event_type: EventType
    driver_id: UUID
    session_id: Optional[UUID] = None
    job_id: UUID
    location: Optional[Location] = None
    captured_at: datetime
    metadata: dict[str, Any] = Field(default_factory=dict)
    resulting_status: Optional[DriverStatus] = None
    target_status: Optional[DriverStatus] = None

    @model_validator(mode="after")
    def _check_required_context(self) -> "EventSubmission":
        if self.event_type != EventType.SUPERVISOR_OVERRIDE:
            if self.session_id is None:
                raise ValueError("session_id is required")
            if self.location is None:
                raise ValueError("location is required")
        return self


class EventAccepted(BaseModel):
    """Response for an accepted (or idempotently replayed) event."""
    status: str = "accepted"
    event_id: UUID
    job_id: UUID
    previous_status: DriverStatus
    resulting_status: DriverStatus
    duplicate: bool = False
    review_required: bool = False
    flag_reasons: list[str] = Field(default_factory=list)


class EventResponse(BaseModel):
    """Schema for an event in timelines."""
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    event_id: UUID
    event_type: str
    driver_id: UUID
    session_id: Optional[UUID] = None
    job_id: UUID
    previous_status: str
    resulting_status: str
    lat: Optional[float] = None
    lng: Optional[float] = None
    captured_at: datetime
    received_at: datetime
    metadata: dict[str, Any] = Field(default_factory=dict, validation_alias="event_metadata")
    flagged_for_review: bool
    flag_reasons: list[str] = Field(default_factory=list)
    review_status: Optional[str] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
