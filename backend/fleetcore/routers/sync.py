"""
Offline sync endpoint.

A device that was offline uploads its buffered events and points as one
encrypted batch. The batch is queued and replayed by the reconciler.
"""

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from fleetcore.auth.dependencies import ensure_same_driver, get_current_driver
from fleetcore.database import get_db
from fleetcore.models import Driver
from fleetcore.schemas.sync import EnqueueBatchRequest, EnqueueBatchResponse
from fleetcore.services.sync_reconciler import enqueue_encrypted_batch

router = APIRouter()


@router.post("/enqueue", response_model=EnqueueBatchResponse, status_code=status.HTTP_202_ACCEPTED)
async def enqueue_batch(
    request: EnqueueBatchRequest,
    db: AsyncSession = Depends(get_db),
    driver: Driver = Depends(get_current_driver),
):
    """Queue an encrypted batch for replay."""
    ensure_same_driver(driver, request.driver_id)
    item = await enqueue_encrypted_batch(
        db,
        device_id=request.device_id,
        driver_id=request.driver_id,
        payload=request.payload,
        iv=request.iv,
    )
    return EnqueueBatchResponse(queue_item_id=item.id)
