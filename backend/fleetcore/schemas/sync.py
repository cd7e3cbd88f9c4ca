"""
Pydantic schemas for offline sync.
"""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class EnqueueBatchRequest(BaseModel):
    """Encrypted flush from a device that was offline."""
    device_id: str = Field(..., min_length=1, max_length=255)
    driver_id: UUID
    payload: str = Field(..., min_length=1)  # base64 AES-GCM ciphertext
    iv: str = Field(..., min_length=1, max_length=64)  # base64 nonce


class EnqueueBatchResponse(BaseModel):
    queue_item_id: UUID


class SyncBatchPayload(BaseModel):
    """Decrypted content of a queue item."""
    events: list[dict[str, Any]] = Field(default_factory=list)
    points: list[dict[str, Any]] = Field(default_factory=list)


class SyncQueueItemResponse(BaseModel):
    """Schema for queue items in admin listings."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    device_id: str
    driver_id: UUID
    retry_count: int
    last_retry_at: Optional[datetime] = None
    error_message: Optional[str] = None
    escalated_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    processed_event_id: Optional[UUID] = None
    result_event_ids: list[str] = Field(default_factory=list)
    result_point_count: int = 0
    created_at: datetime


class SyncRunResponse(BaseModel):
    """Summary of one reconciler pass."""
    devices: int
    processed: int
    failed: int
    escalated: int
    skipped_devices: int
