"""
Session API endpoints.

A device starts a session at login, keeps it alive with heartbeats and ends
it at logout. Starting a new session supersedes any other active session of
the same driver.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from fleetcore.auth.dependencies import ensure_same_driver, get_current_driver
from fleetcore.database import get_db
from fleetcore.models import Driver, DriverSession
from fleetcore.schemas.sessions import (
    EndSessionRequest,
    SessionActionResponse,
    SessionResponse,
    StartSessionRequest,
)
from fleetcore.services import session_registry

router = APIRouter()


async def _own_session(db: AsyncSession, session_id: UUID, driver: Driver) -> DriverSession:
    session = await session_registry.get_session(db, session_id)
    ensure_same_driver(driver, session.driver_id)
    return session


@router.post("/start", response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
async def start_session(
    request: StartSessionRequest,
    db: AsyncSession = Depends(get_db),
    driver: Driver = Depends(get_current_driver),
):
    """Start a session on login or activation."""
    ensure_same_driver(driver, request.driver_id)
    location = (request.start_location.lat, request.start_location.lng) if request.start_location else None
    return await session_registry.start_session(
        db,
        driver_id=request.driver_id,
        device_id=request.device_id,
        vehicle_id=request.vehicle_id,
        device_info=request.device_info.model_dump(),
        start_location=location,
    )


@router.get("/active", response_model=Optional[SessionResponse])
async def get_active_session(
    db: AsyncSession = Depends(get_db),
    driver: Driver = Depends(get_current_driver),
):
    """Get the caller's active session, or null when logged out everywhere."""
    return await session_registry.get_active_session(db, driver.id)


@router.post("/{session_id}/heartbeat", response_model=SessionActionResponse)
async def heartbeat(
    session_id: UUID,
    db: AsyncSession = Depends(get_db),
    driver: Driver = Depends(get_current_driver),
):
    """
    Keep a session alive.

    `applied` is false when the session is no longer active; the device
    should start a new one.
    """
    await _own_session(db, session_id, driver)
    applied = await session_registry.heartbeat(db, session_id)
    return SessionActionResponse(session_id=session_id, applied=applied)


@router.post("/{session_id}/end", response_model=SessionActionResponse)
async def end_session(
    session_id: UUID,
    request: Optional[EndSessionRequest] = None,
    db: AsyncSession = Depends(get_db),
    driver: Driver = Depends(get_current_driver),
):
    """End a session on logout. Ending an already closed session is a no-op."""
    await _own_session(db, session_id, driver)
    reason = request.reason if request else session_registry.END_REASON_LOGOUT
    applied = await session_registry.end_session(db, session_id, reason=reason)
    return SessionActionResponse(session_id=session_id, applied=applied)


@router.get("/{session_id}", response_model=SessionResponse)
async def get_session(
    session_id: UUID,
    db: AsyncSession = Depends(get_db),
    driver: Driver = Depends(get_current_driver),
):
    """Get a session's current state."""
    return await _own_session(db, session_id, driver)
