"""TelemetryPoint model - GPS samples streamed from driver devices."""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Index, SmallInteger, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from fleetcore.database import Base
from fleetcore.utils.timezone import utc_now


class TelemetryPoint(Base):
    """
    GPS sample from a driver's device.

    Used to:
    - Project each active driver's current position
    - Judge plausibility of execution event locations
    - Report GPS quality per driver

    Immutable once written. A device retrying a flush re-sends points with
    the same (session, device, captured_at) key, which is ignored.
    """

    __tablename__ = "telemetry_points"
    __table_args__ = (
        UniqueConstraint(
            "session_id", "device_id", "captured_at",
            name="uq_telemetry_points_sample",
        ),
        Index("ix_telemetry_points_driver_captured", "driver_id", "captured_at"),
        Index("ix_telemetry_points_session_captured", "session_id", "captured_at"),
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
    session_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("driver_sessions.id", ondelete="CASCADE"),
        nullable=False,
    )
    device_id: Mapped[str] = mapped_column(String(255), nullable=False)
    vehicle_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True))
    job_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True))

    # GPS fix
    lat: Mapped[float] = mapped_column(Float, nullable=False)
    lng: Mapped[float] = mapped_column(Float, nullable=False)
    altitude: Mapped[float | None] = mapped_column(Float)  # meters
    accuracy: Mapped[float | None] = mapped_column(Float)  # meters
    heading: Mapped[float | None] = mapped_column(Float)  # degrees
    speed: Mapped[float | None] = mapped_column(Float)  # m/s

    # Device state
    battery_level: Mapped[int | None] = mapped_column(SmallInteger)
    network_type: Mapped[str | None] = mapped_column(String(20))
    is_background: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # When the fix was taken (device time)
    captured_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    # When we received it (server time)
    received_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utc_now,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<TelemetryPoint {self.lat}, {self.lng} @ {self.captured_at}>"
