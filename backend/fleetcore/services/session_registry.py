"""
Session registry - owns the device/driver binding.

Guarantees at most one ACTIVE session per driver:
- Within this process, start/end/revoke for one driver are serialized by a
  keyed asyncio lock.
- Across processes, the partial unique index on driver_sessions rejects a
  concurrent second ACTIVE row. The loser rolls back and retries, which
  invalidates the winner: the latest committed session wins.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from fleetcore.config import get_settings
from fleetcore.database import storage_errors
from fleetcore.exceptions import ResourceNotFound, TransientStorageError
from fleetcore.models import Driver, DriverAvailability, DriverSession, SessionStatus
from fleetcore.utils.locks import KeyedLock
from fleetcore.utils.timezone import utc_now

_logger = logging.getLogger(__name__)

_driver_locks = KeyedLock()

END_REASON_SUPERSEDED = "superseded"
END_REASON_LOGOUT = "user_logout"
END_REASON_HEARTBEAT_TIMEOUT = "heartbeat_timeout"
END_REASON_REVOKED = "revoked"


async def get_session(db: AsyncSession, session_id: uuid.UUID) -> DriverSession:
    """Load a session or raise ResourceNotFound."""
    result = await db.execute(
        select(DriverSession).where(DriverSession.id == session_id)
    )
    session = result.scalar_one_or_none()
    if session is None:
        raise ResourceNotFound(f"Session {session_id} not found", code="session_not_found")
    return session


async def get_active_session(db: AsyncSession, driver_id: uuid.UUID) -> Optional[DriverSession]:
    """Get the driver's ACTIVE session, if any."""
    result = await db.execute(
        select(DriverSession).where(
            DriverSession.driver_id == driver_id,
            DriverSession.status == SessionStatus.ACTIVE.value,
        )
    )
    return result.scalar_one_or_none()


async def _set_availability(db: AsyncSession, driver_ids: list[uuid.UUID], availability: DriverAvailability) -> None:
    if not driver_ids:
        return
    await db.execute(
        update(Driver)
        .where(Driver.id.in_(driver_ids))
        .values(availability=availability.value)
    )


async def start_session(
    db: AsyncSession,
    driver_id: uuid.UUID,
    device_id: str,
    vehicle_id: Optional[uuid.UUID] = None,
    device_info: Optional[dict[str, Any]] = None,
    start_location: Optional[tuple[float, float]] = None,
) -> DriverSession:
    """
    Start a new ACTIVE session for a driver.

    Any existing ACTIVE session for the driver is invalidated with reason
    "superseded" in the same transaction. Retrying this call is safe by
    effect: it simply produces a newer session.

    Args:
        db: Database session
        driver_id: Driver logging in
        device_id: Stable identifier of the device
        vehicle_id: Vehicle the driver is taking, if known
        device_info: fingerprint / app_version / os_version / device_model
        start_location: (lat, lng) at login, if known

    Returns:
        The new ACTIVE session
    """
    settings = get_settings()
    device_info = device_info or {}
    max_attempts = max(1, settings.session_start_max_attempts)

    async with _driver_locks.hold(driver_id):
        driver = await db.get(Driver, driver_id)
        if driver is None or not driver.is_active:
            raise ResourceNotFound(f"Driver {driver_id} not found", code="driver_not_found")

        for attempt in range(1, max_attempts + 1):
            now = utc_now()
            try:
                async with storage_errors(db):
                    superseded = await db.execute(
                        update(DriverSession)
                        .where(
                            DriverSession.driver_id == driver_id,
                            DriverSession.status == SessionStatus.ACTIVE.value,
                        )
                        .values(
                            status=SessionStatus.INVALIDATED.value,
                            ended_at=now,
                            end_reason=END_REASON_SUPERSEDED,
                            updated_at=now,
                        )
                    )

                    session = DriverSession(
                        id=uuid.uuid4(),
                        driver_id=driver_id,
                        device_id=device_id,
                        vehicle_id=vehicle_id,
                        status=SessionStatus.ACTIVE.value,
                        started_at=now,
                        last_heartbeat_at=now,
                        device_fingerprint=device_info.get("fingerprint"),
                        app_version=device_info.get("app_version"),
                        os_version=device_info.get("os_version"),
                        device_model=device_info.get("device_model"),
                        start_lat=start_location[0] if start_location else None,
                        start_lng=start_location[1] if start_location else None,
                    )
                    db.add(session)
                    await _set_availability(db, [driver_id], DriverAvailability.BUSY)
                    await db.commit()
            except IntegrityError:
                # Another process committed an ACTIVE session between our
                # UPDATE and INSERT. Retry so that ours supersedes it.
                await db.rollback()
                _logger.info(
                    "Concurrent session start for driver=%s, retrying (attempt %d/%d)",
                    driver_id, attempt, max_attempts,
                )
                await asyncio.sleep(settings.storage_retry_backoff_seconds * attempt)
                continue

            if superseded.rowcount:
                _logger.info(
                    "Session %s started for driver=%s device=%s, superseded %d session(s)",
                    session.id, driver_id, device_id, superseded.rowcount,
                )
            else:
                _logger.info("Session %s started for driver=%s device=%s", session.id, driver_id, device_id)
            return session

    raise TransientStorageError(
        f"Could not start session for driver {driver_id} after {max_attempts} attempts",
        code="session_start_contention",
    )


async def heartbeat(db: AsyncSession, session_id: uuid.UUID) -> bool:
    """
    Record a keepalive.

    Returns False (not an error) when the session is not ACTIVE; the client
    should then start a new session.
    """
    now = utc_now()
    async with storage_errors(db):
        result = await db.execute(
            update(DriverSession)
            .where(
                DriverSession.id == session_id,
                DriverSession.status == SessionStatus.ACTIVE.value,
            )
            .values(last_heartbeat_at=now, updated_at=now)
        )
        await db.commit()
    return result.rowcount > 0


async def _close_session(
    db: AsyncSession,
    session_id: uuid.UUID,
    status: SessionStatus,
    reason: str,
) -> bool:
    result = await db.execute(
        select(DriverSession.driver_id).where(DriverSession.id == session_id)
    )
    driver_id = result.scalar_one_or_none()
    if driver_id is None:
        return False

    async with _driver_locks.hold(driver_id):
        now = utc_now()
        async with storage_errors(db):
            closed = await db.execute(
                update(DriverSession)
                .where(
                    DriverSession.id == session_id,
                    DriverSession.status == SessionStatus.ACTIVE.value,
                )
                .values(status=status.value, ended_at=now, end_reason=reason, updated_at=now)
            )
            if closed.rowcount == 0:
                # Nothing written; end the transaction without expiring
                # the caller's loaded instances.
                await db.commit()
                return False
            await _set_availability(db, [driver_id], DriverAvailability.AVAILABLE)
            await db.commit()

    _logger.info("Session %s closed as %s (%s)", session_id, status.value, reason)
    return True


async def end_session(db: AsyncSession, session_id: uuid.UUID, reason: str = END_REASON_LOGOUT) -> bool:
    """
    End a session gracefully (ACTIVE -> ENDED).

    Idempotent: ending a session that is not ACTIVE returns False.
    """
    return await _close_session(db, session_id, SessionStatus.ENDED, reason)


async def revoke_session(db: AsyncSession, session_id: uuid.UUID, reason: str = END_REASON_REVOKED) -> bool:
    """Administratively revoke a session (ACTIVE -> INVALIDATED)."""
    return await _close_session(db, session_id, SessionStatus.INVALIDATED, reason)


async def expire_stale_sessions(
    db: AsyncSession,
    timeout: Optional[timedelta] = None,
    now: Optional[datetime] = None,
) -> int:
    """
    Expire ACTIVE sessions whose heartbeat is older than `timeout`.

    Drivers of expired sessions revert to available.

    Returns:
        Number of sessions expired
    """
    settings = get_settings()
    if timeout is None:
        timeout = timedelta(minutes=settings.session_heartbeat_timeout_minutes)
    now = now or utc_now()
    cutoff = now - timeout

    async with storage_errors(db):
        result = await db.execute(
            select(DriverSession.id, DriverSession.driver_id).where(
                DriverSession.status == SessionStatus.ACTIVE.value,
                DriverSession.last_heartbeat_at < cutoff,
            )
        )
        stale = result.all()
        if not stale:
            return 0

        expired = await db.execute(
            update(DriverSession)
            .where(
                DriverSession.id.in_([row.id for row in stale]),
                DriverSession.status == SessionStatus.ACTIVE.value,
                DriverSession.last_heartbeat_at < cutoff,
            )
            .values(
                status=SessionStatus.EXPIRED.value,
                ended_at=now,
                end_reason=END_REASON_HEARTBEAT_TIMEOUT,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )

        # A driver whose session was superseded between the SELECT and the
        # UPDATE still has an ACTIVE session and stays busy.
        still_active = await db.execute(
            select(DriverSession.driver_id).where(
                DriverSession.driver_id.in_([row.driver_id for row in stale]),
                DriverSession.status == SessionStatus.ACTIVE.value,
            )
        )
        busy = set(still_active.scalars().all())
        await _set_availability(
            db,
            [row.driver_id for row in stale if row.driver_id not in busy],
            DriverAvailability.AVAILABLE,
        )
        await db.commit()

    if expired.rowcount:
        _logger.info("Expired %d stale session(s) (cutoff %s)", expired.rowcount, cutoff.isoformat())
    return expired.rowcount
