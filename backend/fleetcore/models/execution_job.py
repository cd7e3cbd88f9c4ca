"""ExecutionJob model - a delivery job/batch and its derived execution state."""

import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import DateTime, ForeignKey, Integer, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from fleetcore.database import Base
from fleetcore.utils.timezone import utc_now


class DriverStatus(str, Enum):
    """Execution status of a job as seen from the driver's side."""
    INACTIVE = "INACTIVE"
    ACTIVE = "ACTIVE"
    EN_ROUTE = "EN_ROUTE"
    AT_STOP = "AT_STOP"
    DELAYED = "DELAYED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class ExecutionJob(Base):
    """
    Delivery job (batch) assigned to a driver.

    Planning data is written by the scheduling tools. The execution columns
    (driver_status .. last_event_at) are a denormalized projection of the
    job's execution events and are written only by the event log service.
    """

    __tablename__ = "execution_jobs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    assigned_driver_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("drivers.id", ondelete="SET NULL"),
    )
    vehicle_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True))
    total_stops: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Derived execution state
    driver_status: Mapped[str] = mapped_column(
        String(20),
        default=DriverStatus.INACTIVE.value,
        nullable=False,
    )
    current_stop_index: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    actual_start_time: Mapped[datetime | None] = mapped_column(DateTime)
    actual_end_time: Mapped[datetime | None] = mapped_column(DateTime)
    last_event_at: Mapped[datetime | None] = mapped_column(DateTime)  # newest captured_at applied

    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utc_now,
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utc_now,
        onupdate=utc_now,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<ExecutionJob {self.name} - {self.driver_status}>"
