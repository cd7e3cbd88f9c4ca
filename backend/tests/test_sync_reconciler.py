"""Offline sync: enqueue, replay, idempotency, ordering and escalation."""

import uuid
from datetime import timedelta

import pytest
from sqlalchemy import func, select, update

from conftest import SYNC_KEY, minutes_ago
from fleetcore.config import get_settings
from fleetcore.crypto import encrypt_payload
from fleetcore.exceptions import ResourceNotFound, StateConflict, TransientStorageError, ValidationError
from fleetcore.models import (
    Driver,
    DriverStatus,
    EventType,
    ExecutionEvent,
    ExecutionJob,
    SyncQueueItem,
    TelemetryPoint,
)
from fleetcore.services import session_registry, sync_reconciler
from fleetcore.utils.timezone import utc_now

OTHER_KEY = "a1" * 32


async def _enqueue(db, driver, body, device_id="device-a", key=SYNC_KEY, created_at=None):
    payload, iv = encrypt_payload(body, key)
    item = await sync_reconciler.enqueue_encrypted_batch(db, device_id, driver.id, payload, iv)
    if created_at is not None:
        item.created_at = created_at
        await db.commit()
    return item.id


async def _item(db, item_id) -> SyncQueueItem:
    return await db.get(SyncQueueItem, item_id, populate_existing=True)


async def _count(db, model) -> int:
    return await db.scalar(select(func.count()).select_from(model))


@pytest.fixture
def route_batch(make_event, make_point):
    """A device's offline shift: started, arrived, two fixes. Events deliberately out of order."""
    started_at = minutes_ago(10)
    arrived = make_event(EventType.ARRIVED_AT_STOP, started_at + timedelta(minutes=5))
    started = make_event(EventType.ROUTE_STARTED, started_at)
    return {
        "events": [arrived.model_dump(mode="json"), started.model_dump(mode="json")],
        "points": [make_point(started_at), make_point(started_at + timedelta(minutes=5))],
    }


def _capture_order(batch) -> list[str]:
    return [e["event_id"] for e in sorted(batch["events"], key=lambda e: e["captured_at"])]


async def test_batch_is_replayed(db, session_factory, driver, job, route_batch):
    item_id = await _enqueue(db, driver, route_batch)

    summary = await sync_reconciler.process_pending_queue(session_factory)

    assert (summary.devices, summary.processed, summary.failed) == (1, 1, 0)
    item = await _item(db, item_id)
    assert item.processed_at is not None
    assert item.result_event_ids == _capture_order(route_batch)
    assert str(item.processed_event_id) == _capture_order(route_batch)[-1]
    assert item.result_point_count == 2
    assert item.retry_count == 0

    job = await db.get(ExecutionJob, job.id, populate_existing=True)
    assert job.driver_status == DriverStatus.AT_STOP.value


async def test_same_batch_twice_produces_no_duplicates(db, session_factory, driver, job, route_batch):
    first_id = await _enqueue(db, driver, route_batch, created_at=utc_now() - timedelta(seconds=2))
    second_id = await _enqueue(db, driver, route_batch, created_at=utc_now() - timedelta(seconds=1))

    summary = await sync_reconciler.process_pending_queue(session_factory)

    assert summary.processed == 2
    assert await _count(db, ExecutionEvent) == 2
    assert await _count(db, TelemetryPoint) == 2
    first, second = await _item(db, first_id), await _item(db, second_id)
    assert first.result_event_ids == second.result_event_ids
    processed_at = first.processed_at

    # Nothing left to do
    again = await sync_reconciler.process_pending_queue(session_factory)
    assert (again.devices, again.processed) == (0, 0)
    assert (await _item(db, first_id)).processed_at == processed_at


async def test_undecryptable_batch_escalates(db, session_factory, driver, monkeypatch):
    monkeypatch.setattr(get_settings(), "sync_max_retries", 2)
    item_id = await _enqueue(db, driver, {"events": [], "points": []}, key=OTHER_KEY)

    summary = await sync_reconciler.process_pending_queue(session_factory)
    assert (summary.failed, summary.escalated) == (1, 0)
    item = await _item(db, item_id)
    assert item.retry_count == 1
    assert item.error_message.startswith("decryption_failed")
    assert item.last_retry_at is not None

    summary = await sync_reconciler.process_pending_queue(session_factory)
    assert summary.escalated == 1
    item = await _item(db, item_id)
    assert item.retry_count == 2
    assert item.escalated_at is not None

    # Escalated items are left for an operator
    summary = await sync_reconciler.process_pending_queue(session_factory)
    assert summary.devices == 0
    assert [i.id for i in await sync_reconciler.list_escalated_items(db)] == [item_id]


async def test_requeue_escalated_item(db, session_factory, driver, monkeypatch):
    monkeypatch.setattr(get_settings(), "sync_max_retries", 1)
    item_id = await _enqueue(db, driver, {"events": []}, key=OTHER_KEY)
    await sync_reconciler.process_pending_queue(session_factory)

    item = await sync_reconciler.requeue_item(db, item_id)
    assert item.retry_count == 0
    assert item.escalated_at is None
    assert await sync_reconciler.list_escalated_items(db) == []

    with pytest.raises(StateConflict) as exc_info:
        await sync_reconciler.requeue_item(db, item_id)
    assert exc_info.value.code == "not_escalated"


async def test_rejected_event_fails_the_item(db, session_factory, driver, job, make_event):
    # ARRIVED_AT_STOP is illegal while the job is INACTIVE
    body = {"events": [make_event(EventType.ARRIVED_AT_STOP).model_dump(mode="json")]}
    item_id = await _enqueue(db, driver, body)

    summary = await sync_reconciler.process_pending_queue(session_factory)

    assert summary.failed == 1
    item = await _item(db, item_id)
    assert item.processed_at is None
    assert item.error_message.startswith("illegal_transition")
    assert await _count(db, ExecutionEvent) == 0


async def test_events_of_another_driver_fail_the_item(db, session_factory, driver, other_driver, make_event):
    body = {"events": [make_event(EventType.ROUTE_STARTED, driver_id=other_driver.id).model_dump(mode="json")]}
    item_id = await _enqueue(db, driver, body)

    await sync_reconciler.process_pending_queue(session_factory)

    assert (await _item(db, item_id)).error_message.startswith("driver_mismatch")


async def test_failed_item_blocks_the_rest_of_its_device(
    db, session_factory, driver, other_driver, route_batch, make_point,
):
    bad_id = await _enqueue(db, driver, {"events": []}, key=OTHER_KEY, created_at=utc_now() - timedelta(seconds=2))
    good_id = await _enqueue(db, driver, route_batch, created_at=utc_now() - timedelta(seconds=1))

    other_session = await session_registry.start_session(db, other_driver.id, "device-b")
    other_point = make_point(
        minutes_ago(1),
        driver_id=str(other_driver.id),
        session_id=str(other_session.id),
        device_id="device-b",
    )
    other_id = await _enqueue(db, other_driver, {"points": [other_point]}, device_id="device-b")

    summary = await sync_reconciler.process_pending_queue(session_factory)

    assert (summary.devices, summary.processed, summary.failed) == (2, 1, 1)
    assert (await _item(db, bad_id)).retry_count == 1
    assert (await _item(db, good_id)).processed_at is None
    assert (await _item(db, other_id)).processed_at is not None


async def test_storage_errors_do_not_count_as_retries(db, session_factory, driver, job, route_batch, monkeypatch):
    async def unavailable(*args, **kwargs):
        raise TransientStorageError("connection reset")

    monkeypatch.setattr(sync_reconciler, "submit_event", unavailable)
    item_id = await _enqueue(db, driver, route_batch)

    summary = await sync_reconciler.process_pending_queue(session_factory)

    assert (summary.failed, summary.escalated) == (1, 0)
    item = await _item(db, item_id)
    assert item.retry_count == 0
    assert item.processed_at is None


async def test_enqueue_for_unknown_driver(db):
    ghost = Driver(id=uuid.uuid4(), name="Not On Roster")
    with pytest.raises(ResourceNotFound) as exc_info:
        await _enqueue(db, ghost, {"events": []})
    assert exc_info.value.code == "driver_not_found"


async def test_failure_counts_on_top_of_concurrent_attempts(db, session_factory, driver, monkeypatch):
    item_id = await _enqueue(db, driver, {"events": []})

    async def fails_after_another_worker(db, driver_id, payload, iv):
        # Another worker records a failed attempt while this one is replaying
        async with session_factory() as other:
            await other.execute(
                update(SyncQueueItem).where(SyncQueueItem.id == item_id).values(retry_count=SyncQueueItem.retry_count + 1)
            )
            await other.commit()
        raise ValidationError("Malformed sync batch", code="malformed_batch")

    monkeypatch.setattr(sync_reconciler, "_replay", fails_after_another_worker)
    monkeypatch.setattr(get_settings(), "sync_max_retries", 2)

    summary = await sync_reconciler.process_pending_queue(session_factory)

    assert summary.escalated == 1
    item = await _item(db, item_id)
    assert item.retry_count == 2
    assert item.escalated_at is not None


async def test_device_claim_without_advisory_locks(db, driver):
    # SQLite deployments run one worker; the in-process lock is the only guard
    assert await sync_reconciler._claim_device(db, "device-a")


async def test_device_claimed_elsewhere_is_skipped(db, session_factory, driver, job, route_batch, monkeypatch):
    async def claimed_elsewhere(guard, device_id):
        return False

    monkeypatch.setattr(sync_reconciler, "_claim_device", claimed_elsewhere)
    item_id = await _enqueue(db, driver, route_batch)

    summary = await sync_reconciler.process_pending_queue(session_factory)

    assert (summary.devices, summary.skipped_devices, summary.processed) == (1, 1, 0)
    assert (await _item(db, item_id)).processed_at is None
