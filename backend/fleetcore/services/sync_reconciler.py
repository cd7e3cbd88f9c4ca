"""
Offline sync reconciler - replays encrypted batches queued while a device
had no connectivity.

One consumer runs per device so a device's batches apply in the order they
were queued; different devices proceed in parallel. Replay goes through the
same event log and telemetry paths as live traffic, and both are idempotent,
so a batch that fails halfway can be retried as a whole.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fleetcore.config import get_settings
from fleetcore.crypto import decrypt_payload
from fleetcore.database import storage_errors
from fleetcore.exceptions import (
    ExecutionCoreError,
    ResourceNotFound,
    StateConflict,
    TransientStorageError,
    ValidationError,
)
from fleetcore.models import Driver, EventType, SyncQueueItem
from fleetcore.schemas.events import EventSubmission
from fleetcore.schemas.sync import SyncBatchPayload
from fleetcore.services.event_log import submit_event
from fleetcore.services.telemetry import ingest_points
from fleetcore.utils.locks import KeyedLock
from fleetcore.utils.timezone import to_utc, utc_now

_logger = logging.getLogger(__name__)

_device_locks = KeyedLock()


@dataclass
class SyncRunSummary:
    devices: int = 0
    processed: int = 0
    failed: int = 0
    escalated: int = 0
    skipped_devices: int = 0


@dataclass
class _ReplayResult:
    event_ids: list[str]
    point_count: int


async def enqueue_encrypted_batch(
    db: AsyncSession,
    device_id: str,
    driver_id: uuid.UUID,
    payload: str,
    iv: str,
) -> SyncQueueItem:
    """
    Queue an encrypted batch for later replay.

    The payload is stored as received; it is only decrypted by the
    reconciler.
    """
    driver = await db.get(Driver, driver_id)
    if driver is None:
        raise ResourceNotFound(f"Driver {driver_id} not found", code="driver_not_found")

    async with storage_errors(db):
        item = SyncQueueItem(
            id=uuid.uuid4(),
            device_id=device_id,
            driver_id=driver_id,
            encrypted_payload=payload,
            encryption_iv=iv,
        )
        db.add(item)
        await db.commit()

    _logger.info("Queued sync batch %s for device=%s driver=%s", item.id, device_id, driver_id)
    return item


async def _pending_devices(db: AsyncSession) -> list[str]:
    result = await db.execute(
        select(SyncQueueItem.device_id)
        .where(
            SyncQueueItem.processed_at.is_(None),
            SyncQueueItem.escalated_at.is_(None),
        )
        .distinct()
    )
    return list(result.scalars().all())


async def process_pending_queue(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    now: Optional[datetime] = None,
) -> SyncRunSummary:
    """
    Replay every pending queue item.

    Args:
        session_factory: Each device consumer gets its own session
        now: Timestamp recorded on processed / failed items

    Returns:
        Counts for this pass. A device already being drained by another
        pass, in this process or another one, is skipped.
    """
    settings = get_settings()
    summary = SyncRunSummary()

    async with session_factory() as db:
        devices = await _pending_devices(db)
    summary.devices = len(devices)
    if not devices:
        return summary

    semaphore = asyncio.Semaphore(max(1, settings.sync_worker_concurrency))

    async def consume(device_id: str) -> None:
        if _device_locks.is_held(device_id):
            summary.skipped_devices += 1
            return
        async with semaphore, _device_locks.hold(device_id):
            async with session_factory() as guard, session_factory() as db:
                try:
                    if not await _claim_device(guard, device_id):
                        summary.skipped_devices += 1
                        _logger.info("Device %s is being drained by another worker", device_id)
                        return
                    await _drain_device(db, device_id, summary, now)
                except TransientStorageError as exc:
                    summary.failed += 1
                    _logger.warning("Sync for device=%s interrupted: %s", device_id, exc.reason)

    await asyncio.gather(*(consume(device_id) for device_id in devices))

    _logger.info(
        "Sync pass: %d device(s), %d processed, %d failed, %d escalated, %d skipped",
        summary.devices, summary.processed, summary.failed, summary.escalated, summary.skipped_devices,
    )
    return summary


async def _claim_device(guard: AsyncSession, device_id: str) -> bool:
    """
    Claim a device's queue across worker processes.

    On PostgreSQL this takes a transaction-level advisory lock in `guard`,
    released when the guard session closes. Other backends are only used
    single-process, where the in-process lock is enough.
    """
    if guard.get_bind().dialect.name != "postgresql":
        return True
    async with storage_errors(guard):
        claimed = await guard.scalar(select(func.pg_try_advisory_xact_lock(func.hashtext(device_id))))
    return bool(claimed)


async def _drain_device(
    db: AsyncSession,
    device_id: str,
    summary: SyncRunSummary,
    now: Optional[datetime],
) -> None:
    # Plain rows rather than ORM objects: a rejected replay rolls the session
    # back and would expire loaded instances.
    result = await db.execute(
        select(
            SyncQueueItem.id,
            SyncQueueItem.driver_id,
            SyncQueueItem.encrypted_payload,
            SyncQueueItem.encryption_iv,
        )
        .where(
            SyncQueueItem.device_id == device_id,
            SyncQueueItem.processed_at.is_(None),
            SyncQueueItem.escalated_at.is_(None),
        )
        .order_by(SyncQueueItem.created_at.asc(), SyncQueueItem.id.asc())
    )
    items = result.all()

    for item in items:
        outcome = await _process_item(db, item, now)
        if outcome == "processed":
            summary.processed += 1
            continue
        summary.failed += 1
        if outcome == "escalated":
            summary.escalated += 1
        # Later batches may depend on this one
        break


async def _process_item(db: AsyncSession, item, now: Optional[datetime]) -> str:
    item_id = item.id
    driver_id = item.driver_id
    payload, iv = item.encrypted_payload, item.encryption_iv

    try:
        replayed = await _replay(db, driver_id, payload, iv)
    except TransientStorageError as exc:
        await db.rollback()
        _logger.warning("Sync item %s hit a storage error, will retry: %s", item_id, exc.reason)
        return "retry"
    except ExecutionCoreError as exc:
        await db.rollback()
        escalated = await _record_failure(db, item_id, exc, now or utc_now())
        return "escalated" if escalated else "failed"

    await _mark_processed(db, item_id, replayed, now or utc_now())
    return "processed"


async def _replay(db: AsyncSession, driver_id: uuid.UUID, payload: str, iv: str) -> _ReplayResult:
    settings = get_settings()
    data = decrypt_payload(payload, iv, settings.sync_encryption_key)
    try:
        batch = SyncBatchPayload.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError(f"Malformed sync batch ({exc.error_count()} error(s))", code="malformed_batch") from exc

    submissions = []
    for index, raw in enumerate(batch.events):
        try:
            submission = EventSubmission.model_validate(raw)
        except PydanticValidationError as exc:
            raise ValidationError(f"Event {index} is malformed: {exc.errors()[0]['msg']}", code="malformed_event") from exc
        if submission.driver_id != driver_id:
            raise ValidationError(f"Event {submission.event_id} belongs to another driver", code="driver_mismatch")
        if submission.event_type == EventType.SUPERVISOR_OVERRIDE:
            raise StateConflict("Overrides cannot be replayed from a device", code="override_not_allowed")
        submissions.append(submission)

    event_ids = []
    for submission in sorted(submissions, key=lambda s: to_utc(s.captured_at)):
        outcome = await submit_event(db, submission, replay=True)
        event_ids.append(str(outcome.event.event_id))

    point_count = 0
    chunk_size = settings.telemetry_max_batch_size
    for start in range(0, len(batch.points), chunk_size):
        results = await ingest_points(db, batch.points[start:start + chunk_size], driver_id=driver_id)
        failures = [result for result in results if not result.ok]
        if failures:
            first = failures[0]
            raise ValidationError(
                f"{len(failures)} point(s) rejected; point {start + first.index}: {first.status} {first.error or ''}".rstrip(),
                code="points_rejected",
            )
        point_count += len(results)

    return _ReplayResult(event_ids=event_ids, point_count=point_count)


async def _mark_processed(db: AsyncSession, item_id: uuid.UUID, replayed: _ReplayResult, now: datetime) -> None:
    async with storage_errors(db):
        result = await db.execute(
            update(SyncQueueItem)
            .where(
                SyncQueueItem.id == item_id,
                SyncQueueItem.processed_at.is_(None),
            )
            .values(
                processed_at=now,
                processed_event_id=uuid.UUID(replayed.event_ids[-1]) if replayed.event_ids else None,
                result_event_ids=replayed.event_ids,
                result_point_count=replayed.point_count,
                error_message=None,
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()

    if result.rowcount:
        _logger.info(
            "Sync item %s processed: %d event(s), %d point(s)",
            item_id, len(replayed.event_ids), replayed.point_count,
        )
    else:
        _logger.info("Sync item %s was already processed", item_id)


async def _record_failure(
    db: AsyncSession,
    item_id: uuid.UUID,
    exc: ExecutionCoreError,
    now: datetime,
) -> bool:
    settings = get_settings()
    # Counted in SQL so concurrent failures of the same item are not lost
    attempts = SyncQueueItem.retry_count + 1

    async with storage_errors(db):
        await db.execute(
            update(SyncQueueItem)
            .where(SyncQueueItem.id == item_id)
            .values(
                retry_count=attempts,
                last_retry_at=now,
                error_message=f"{exc.code}: {exc.reason}",
                escalated_at=case(
                    (attempts >= settings.sync_max_retries, now),
                    else_=SyncQueueItem.escalated_at,
                ),
            )
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(
            select(SyncQueueItem.retry_count, SyncQueueItem.escalated_at)
            .where(SyncQueueItem.id == item_id)
        )
        retry_count, escalated_at = result.one()
        await db.commit()

    escalate = escalated_at is not None
    if escalate:
        _logger.warning("Sync item %s escalated after %d attempt(s): %s", item_id, retry_count, exc.reason)
    else:
        _logger.info("Sync item %s failed (attempt %d): %s", item_id, retry_count, exc.reason)
    return escalate


async def get_queue_item(db: AsyncSession, item_id: uuid.UUID) -> SyncQueueItem:
    result = await db.execute(
        select(SyncQueueItem).where(SyncQueueItem.id == item_id)
        .execution_options(populate_existing=True)
    )
    item = result.scalar_one_or_none()
    if item is None:
        raise ResourceNotFound(f"Queue item {item_id} not found", code="queue_item_not_found")
    return item


async def list_escalated_items(db: AsyncSession, limit: int = 100) -> list[SyncQueueItem]:
    """Items waiting for manual review, oldest escalation first."""
    result = await db.execute(
        select(SyncQueueItem)
        .where(
            SyncQueueItem.escalated_at.is_not(None),
            SyncQueueItem.processed_at.is_(None),
        )
        .order_by(SyncQueueItem.escalated_at.asc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def requeue_item(db: AsyncSession, item_id: uuid.UUID) -> SyncQueueItem:
    """Put an escalated item back in the queue with a fresh retry budget."""
    item = await get_queue_item(db, item_id)
    if item.processed_at is not None:
        raise StateConflict("Queue item is already processed", code="already_processed")
    if item.escalated_at is None:
        raise StateConflict("Queue item is not escalated", code="not_escalated")

    async with storage_errors(db):
        item.retry_count = 0
        item.escalated_at = None
        await db.commit()

    _logger.info("Sync item %s requeued", item_id)
    return item
