"""ExecutionEvent model - append-only log of execution transitions."""

import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Index, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from fleetcore.database import Base, JSONType
from fleetcore.utils.timezone import utc_now


class EventType(str, Enum):
    """Discrete events a driver (or supervisor) can submit for a job."""
    ROUTE_STARTED = "ROUTE_STARTED"
    ARRIVED_AT_STOP = "ARRIVED_AT_STOP"
    DEPARTED_STOP = "DEPARTED_STOP"
    DELAY_REPORTED = "DELAY_REPORTED"
    ROUTE_COMPLETED = "ROUTE_COMPLETED"
    ROUTE_CANCELLED = "ROUTE_CANCELLED"
    PROOF_CAPTURED = "PROOF_CAPTURED"
    SUPERVISOR_OVERRIDE = "SUPERVISOR_OVERRIDE"


class ReviewStatus(str, Enum):
    """Supervisor review of a flagged event. Audit only."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ExecutionEvent(Base):
    """
    One validated execution event.

    Rows are never updated or deleted, with the exception of the review
    columns, which record a supervisor's verdict on a flagged event and
    have no effect on job state.
    """

    __tablename__ = "execution_events"
    __table_args__ = (
        Index("ix_execution_events_driver_captured", "driver_id", "captured_at"),
        Index("ix_execution_events_job_captured", "job_id", "captured_at"),
        Index("ix_execution_events_session", "session_id"),
        Index("ix_execution_events_review", "flagged_for_review", "review_status"),
    )

    # Client-assigned idempotency key
    event_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
    )
    driver_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("drivers.id", ondelete="CASCADE"),
        nullable=False,
    )
    session_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("driver_sessions.id", ondelete="SET NULL"),
    )
    job_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("execution_jobs.id", ondelete="CASCADE"),
        nullable=False,
    )

    event_type: Mapped[str] = mapped_column(String(30), nullable=False)
    previous_status: Mapped[str] = mapped_column(String(20), nullable=False)
    resulting_status: Mapped[str] = mapped_column(String(20), nullable=False)

    # Location at time of event (null only for supervisor overrides)
    lat: Mapped[float | None] = mapped_column(Float)
    lng: Mapped[float | None] = mapped_column(Float)

    # Timestamps
    captured_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)  # Device clock
    received_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utc_now,
        nullable=False,
    )  # Server clock

    # Event payload (proof references, delay reason, override actor...)
    event_metadata: Mapped[dict] = mapped_column("metadata", JSONType, default=dict, nullable=False)

    # Review workflow
    flagged_for_review: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    flag_reasons: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)
    review_status: Mapped[str | None] = mapped_column(String(20))
    reviewed_by: Mapped[str | None] = mapped_column(String(255))
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime)
    review_notes: Mapped[str | None] = mapped_column(Text)

    def __repr__(self) -> str:
        return f"<ExecutionEvent {self.event_type} {self.previous_status}->{self.resulting_status}>"

    @property
    def has_location(self) -> bool:
        return self.lat is not None and self.lng is not None
