"""HTTP surface: driver endpoints, dispatch read API and admin operations."""

import uuid
from datetime import timedelta

from sqlalchemy import update

from conftest import ADMIN_HEADERS, SYNC_KEY, driver_headers, minutes_ago, supervisor_headers
from fleetcore.crypto import encrypt_payload
from fleetcore.models import DriverSession, DriverStatus, EventType


def _event_body(make_event, event_type, **kwargs) -> dict:
    return make_event(event_type, **kwargs).model_dump(mode="json")


async def test_root_and_health(client):
    r = await client.get("/")
    assert r.status_code == 200
    assert r.json()["status"] == "running"

    r = await client.get("/health")
    assert r.json() == {"status": "healthy"}


async def test_login_to_route_completion(client, driver, job, make_event):
    headers = driver_headers(driver.id)
    r = await client.post(
        "/api/sessions/start",
        json={"driver_id": str(driver.id), "device_id": "device-a", "device_info": {"app_version": "2.4.1"}},
        headers=headers,
    )
    assert r.status_code == 201
    session_id = r.json()["id"]

    r = await client.post(f"/api/sessions/{session_id}/heartbeat", headers=headers)
    assert r.json() == {"session_id": session_id, "applied": True}

    start = minutes_ago(30)
    statuses = []
    for offset, event_type in enumerate([
        EventType.ROUTE_STARTED,
        EventType.ARRIVED_AT_STOP,
        EventType.ROUTE_COMPLETED,
    ]):
        body = _event_body(
            make_event,
            event_type,
            captured_at=start + timedelta(minutes=10 * offset),
            session_id=uuid.UUID(session_id),
        )
        r = await client.post("/api/events", json=body, headers=headers)
        assert r.status_code == 200, r.text
        statuses.append(r.json()["resulting_status"])
    assert statuses == ["EN_ROUTE", "AT_STOP", "COMPLETED"]

    r = await client.get(f"/api/dispatch/jobs/{job.id}", headers=ADMIN_HEADERS)
    assert r.json()["driver_status"] == DriverStatus.COMPLETED.value

    r = await client.get(f"/api/events/timeline/{driver.id}", headers=headers)
    assert [e["event_type"] for e in r.json()] == ["ROUTE_COMPLETED", "ARRIVED_AT_STOP", "ROUTE_STARTED"]


async def test_login_on_second_device_invalidates_first(client, driver):
    headers = driver_headers(driver.id)
    first = await client.post(
        "/api/sessions/start", json={"driver_id": str(driver.id), "device_id": "device-a"}, headers=headers,
    )
    second = await client.post(
        "/api/sessions/start", json={"driver_id": str(driver.id), "device_id": "device-b"}, headers=headers,
    )

    r = await client.get(f"/api/sessions/{first.json()['id']}", headers=headers)
    assert r.json()["status"] == "invalidated"
    assert r.json()["end_reason"] == "superseded"
    r = await client.get(f"/api/sessions/{second.json()['id']}", headers=headers)
    assert r.json()["status"] == "active"

    r = await client.post(f"/api/sessions/{first.json()['id']}/heartbeat", headers=headers)
    assert r.json()["applied"] is False

    r = await client.get("/api/sessions/active", headers=headers)
    assert r.json()["device_id"] == "device-b"

    await client.post(f"/api/sessions/{second.json()['id']}/end", headers=headers)
    r = await client.get("/api/sessions/active", headers=headers)
    assert r.json() is None


async def test_illegal_transition_is_rejected(client, driver, job, make_event):
    body = _event_body(make_event, EventType.ARRIVED_AT_STOP)
    r = await client.post("/api/events", json=body, headers=driver_headers(driver.id))

    assert r.status_code == 409
    assert r.json()["status"] == "rejected"
    assert r.json()["code"] == "illegal_transition"

    r = await client.get(f"/api/dispatch/jobs/{job.id}", headers=ADMIN_HEADERS)
    assert r.json()["driver_status"] == DriverStatus.INACTIVE.value


async def test_resubmitted_event_is_accepted(client, driver, job, make_event):
    body = _event_body(make_event, EventType.ROUTE_STARTED)
    headers = driver_headers(driver.id)
    first = await client.post("/api/events", json=body, headers=headers)
    second = await client.post("/api/events", json=body, headers=headers)

    assert first.json()["duplicate"] is False
    assert second.status_code == 200
    assert second.json()["duplicate"] is True


async def test_stale_heartbeat_sweep(client, session_factory, driver, active_session):
    async with session_factory() as db:
        await db.execute(
            update(DriverSession)
            .where(DriverSession.id == active_session.id)
            .values(last_heartbeat_at=minutes_ago(31))
        )
        await db.commit()

    r = await client.post("/api/admin/sessions/expire", headers=ADMIN_HEADERS)
    assert r.json() == {"expired": 1}

    r = await client.get(f"/api/sessions/{active_session.id}", headers=driver_headers(driver.id))
    assert r.json()["status"] == "expired"

    r = await client.get("/api/admin/reports/sessions", headers=ADMIN_HEADERS)
    [row] = r.json()
    assert row["end_reason"] == "heartbeat_timeout"


async def test_authentication(client, driver, other_driver, job, make_event):
    body = _event_body(make_event, EventType.ROUTE_STARTED)

    r = await client.post("/api/events", json=body)
    assert r.status_code == 401

    r = await client.post("/api/events", json=body, headers=driver_headers(other_driver.id))
    assert r.status_code == 403

    r = await client.post("/api/events", json=body, headers=supervisor_headers())
    assert r.status_code == 401

    r = await client.get("/api/dispatch/active-drivers")
    assert r.status_code == 403
    r = await client.get("/api/dispatch/active-drivers", headers={"X-Admin-API-Key": "wrong"})
    assert r.status_code == 403
    r = await client.get("/api/dispatch/active-drivers", headers=driver_headers(driver.id))
    assert r.status_code == 403
    r = await client.get("/api/dispatch/active-drivers", headers=supervisor_headers())
    assert r.status_code == 200


async def test_missing_session_is_not_found(client, driver):
    r = await client.get(f"/api/sessions/{uuid.uuid4()}", headers=driver_headers(driver.id))
    assert r.status_code == 404
    assert r.json()["code"] == "session_not_found"


async def test_event_requires_session_and_location(client, driver, job, make_event):
    body = _event_body(make_event, EventType.ROUTE_STARTED)
    body["session_id"] = None
    r = await client.post("/api/events", json=body, headers=driver_headers(driver.id))
    assert r.status_code == 422
    assert r.json()["status"] == "rejected"
    assert r.json()["code"] == "invalid_request"

    body = _event_body(make_event, EventType.ROUTE_STARTED)
    del body["location"]
    r = await client.post("/api/events", json=body, headers=driver_headers(driver.id))
    assert r.status_code == 422
    assert r.json()["code"] == "invalid_request"
    assert "location" in r.json()["reason"]


async def test_drivers_cannot_submit_overrides(client, driver, job, make_event):
    body = _event_body(
        make_event,
        EventType.SUPERVISOR_OVERRIDE,
        target_status=DriverStatus.COMPLETED,
        metadata={"actor_id": "me"},
    )
    r = await client.post("/api/events", json=body, headers=driver_headers(driver.id))
    assert r.status_code == 403


async def test_override_and_review(client, driver, job, make_event):
    await client.post(
        "/api/events", json=_event_body(make_event, EventType.ROUTE_STARTED), headers=driver_headers(driver.id),
    )

    event_id = str(uuid.uuid4())
    r = await client.post(
        "/api/admin/events/override",
        json={"event_id": event_id, "job_id": str(job.id), "target_status": "CANCELLED", "reason": "store closed"},
        headers=ADMIN_HEADERS,
    )
    assert r.status_code == 200, r.text
    assert r.json()["resulting_status"] == "CANCELLED"
    assert r.json()["review_required"] is True

    r = await client.get("/api/admin/events/pending-review", headers=ADMIN_HEADERS)
    [pending] = r.json()
    assert pending["event_id"] == event_id
    assert pending["metadata"]["actor_id"] == "admin-api-key"

    r = await client.post(
        f"/api/admin/events/{event_id}/review",
        json={"decision": "approved", "notes": "confirmed by phone"},
        headers=supervisor_headers(),
    )
    assert r.json()["review_status"] == "approved"

    r = await client.get(f"/api/dispatch/jobs/{job.id}", headers=ADMIN_HEADERS)
    assert r.json()["driver_status"] == "CANCELLED"


async def test_telemetry_and_live_map(client, driver, active_session, make_point):
    headers = driver_headers(driver.id)
    latest = minutes_ago(1)
    r = await client.post(
        "/api/telemetry/batch",
        json={"points": [
            make_point(latest, lat=52.53),
            make_point(minutes_ago(2), lat=52.52),
            make_point(minutes_ago(3), lat=95.0),
        ]},
        headers=headers,
    )
    assert r.status_code == 200
    assert (r.json()["accepted"], r.json()["failed"]) == (2, 1)
    assert r.json()["results"][2]["status"] == "rejected"

    r = await client.post("/api/telemetry", json=make_point(latest, lat=52.53), headers=headers)
    assert r.json()["status"] == "duplicate"

    r = await client.post(
        "/api/telemetry",
        json=make_point(minutes_ago(1), session_id=str(uuid.uuid4())),
        headers=headers,
    )
    assert r.status_code == 404

    r = await client.get("/api/dispatch/active-drivers", headers=ADMIN_HEADERS)
    [row] = r.json()
    assert row["driver_name"] == driver.name
    assert row["position"]["lat"] == 52.53

    r = await client.get("/api/admin/reports/gps-quality", headers=ADMIN_HEADERS)
    [quality] = r.json()
    assert quality["total_points"] == 2


async def test_empty_telemetry_batch(client, driver):
    r = await client.post("/api/telemetry/batch", json={"points": []}, headers=driver_headers(driver.id))
    assert r.status_code == 422
    assert r.json()["code"] == "empty_batch"


async def test_offline_sync_round_trip(client, driver, job, make_event):
    events = [_event_body(make_event, EventType.ROUTE_STARTED, captured_at=minutes_ago(5))]
    payload, iv = encrypt_payload({"events": events, "points": []}, SYNC_KEY)

    r = await client.post(
        "/api/sync/enqueue",
        json={"device_id": "device-a", "driver_id": str(driver.id), "payload": payload, "iv": iv},
        headers=driver_headers(driver.id),
    )
    assert r.status_code == 202

    r = await client.post("/api/admin/sync/process", headers=ADMIN_HEADERS)
    assert r.json()["processed"] == 1

    r = await client.get(f"/api/dispatch/jobs/{job.id}", headers=ADMIN_HEADERS)
    assert r.json()["driver_status"] == "EN_ROUTE"

    r = await client.get("/api/admin/sync/escalated", headers=ADMIN_HEADERS)
    assert r.json() == []


async def test_revoke_and_rebuild(client, driver, job, active_session, make_event):
    await client.post(
        "/api/events", json=_event_body(make_event, EventType.ROUTE_STARTED), headers=driver_headers(driver.id),
    )

    r = await client.post(f"/api/admin/jobs/{job.id}/rebuild", headers=ADMIN_HEADERS)
    assert r.json()["driver_status"] == "EN_ROUTE"

    r = await client.post(f"/api/admin/sessions/{active_session.id}/revoke", headers=ADMIN_HEADERS)
    assert r.json()["applied"] is True

    r = await client.get("/api/dispatch/active-drivers", headers=ADMIN_HEADERS)
    assert r.json() == []
