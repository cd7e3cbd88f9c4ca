"""Driver model - roster rows owned by the fleet registry."""

import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, DateTime, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from fleetcore.database import Base
from fleetcore.utils.timezone import utc_now


class DriverAvailability(str, Enum):
    """Dispatch availability, flipped by the session registry."""
    AVAILABLE = "available"
    BUSY = "busy"


class Driver(Base):
    """
    Driver entity.

    Master data (name, licence, documents) belongs to the fleet registry.
    This core only reads the row and flips `availability` when a session
    starts, ends or expires.
    """

    __tablename__ = "drivers"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    availability: Mapped[str] = mapped_column(
        String(20),
        default=DriverAvailability.AVAILABLE.value,
        nullable=False,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utc_now,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<Driver {self.name} ({self.availability})>"
