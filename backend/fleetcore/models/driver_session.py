"""DriverSession model - the authoritative device binding for a shift."""

import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import DateTime, Float, ForeignKey, Index, String, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from fleetcore.database import Base
from fleetcore.utils.timezone import utc_now


class SessionStatus(str, Enum):
    """Session lifecycle. Everything except ACTIVE is terminal."""
    ACTIVE = "active"
    ENDED = "ended"  # Graceful logout
    EXPIRED = "expired"  # Heartbeat timeout
    INVALIDATED = "invalidated"  # Superseded by a newer session, or revoked


class DriverSession(Base):
    """
    Binding between a driver and the physical device that is authoritative
    for issuing execution events during a shift.

    At most one ACTIVE session exists per driver. The partial unique index
    below is the storage-level guard; the session registry is the only
    writer.
    """

    __tablename__ = "driver_sessions"
    __table_args__ = (
        Index(
            "uq_driver_sessions_one_active",
            "driver_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
        Index("ix_driver_sessions_heartbeat", "status", "last_heartbeat_at"),
        Index("ix_driver_sessions_device", "device_id", "started_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    driver_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("drivers.id", ondelete="CASCADE"),
        nullable=False,
    )
    device_id: Mapped[str] = mapped_column(String(255), nullable=False)
    vehicle_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True))

    # Lifecycle
    status: Mapped[str] = mapped_column(
        String(20),
        default=SessionStatus.ACTIVE.value,
        nullable=False,
    )
    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime)
    last_heartbeat_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_reason: Mapped[str | None] = mapped_column(String(50))

    # Device information
    device_fingerprint: Mapped[str | None] = mapped_column(String(255))
    app_version: Mapped[str | None] = mapped_column(String(50))
    os_version: Mapped[str | None] = mapped_column(String(50))
    device_model: Mapped[str | None] = mapped_column(String(100))

    # Starting location context
    start_lat: Mapped[float | None] = mapped_column(Float)
    start_lng: Mapped[float | None] = mapped_column(Float)

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
        return f"<DriverSession {self.id} - {self.status}>"

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE.value

    def was_active_at(self, moment: datetime) -> bool:
        """Check whether `moment` falls inside the session's lifetime."""
        if moment < self.started_at:
            return False
        return self.ended_at is None or moment <= self.ended_at
