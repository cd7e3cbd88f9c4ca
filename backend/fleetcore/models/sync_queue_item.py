"""SyncQueueItem model - encrypted offline batches awaiting replay."""

import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from fleetcore.database import Base, JSONType
from fleetcore.utils.timezone import utc_now


class SyncQueueItem(Base):
    """
    One encrypted flush from a device that was offline.

    Consumed exactly once on success. Validation failures are retried up to
    the configured ceiling, after which the item is escalated for manual
    review instead of being retried forever.
    """

    __tablename__ = "sync_queue_items"
    __table_args__ = (
        Index("ix_sync_queue_items_device_created", "device_id", "created_at"),
        Index("ix_sync_queue_items_pending", "processed_at", "escalated_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    device_id: Mapped[str] = mapped_column(String(255), nullable=False)
    driver_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("drivers.id", ondelete="CASCADE"),
        nullable=False,
    )

    # Encrypted payload from device (base64)
    encrypted_payload: Mapped[str] = mapped_column(Text, nullable=False)
    encryption_iv: Mapped[str] = mapped_column(String(64), nullable=False)

    # Retry tracking
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_retry_at: Mapped[datetime | None] = mapped_column(DateTime)
    error_message: Mapped[str | None] = mapped_column(Text)
    escalated_at: Mapped[datetime | None] = mapped_column(DateTime)

    # Processing result
    processed_at: Mapped[datetime | None] = mapped_column(DateTime)
    processed_event_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("execution_events.event_id", ondelete="SET NULL"),
    )
    result_event_ids: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)
    result_point_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utc_now,
        nullable=False,
    )

    def __repr__(self) -> str:
        state = "processed" if self.processed_at else ("escalated" if self.escalated_at else "pending")
        return f"<SyncQueueItem {self.id} {self.device_id} - {state}>"

    @property
    def is_pending(self) -> bool:
        return self.processed_at is None and self.escalated_at is None
