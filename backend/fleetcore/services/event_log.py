"""
Event log - append-only record of execution events.

Every accepted event is written together with the job's derived execution
state in one transaction, so the log and the job never disagree. The write
path is idempotent on event_id: offline devices re-send whole batches after
a partial failure, and a replayed id is a successful no-op.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from fleetcore.config import get_settings
from fleetcore.database import storage_errors
from fleetcore.exceptions import (
    DuplicateIgnored,
    ResourceNotFound,
    ReviewRequired,
    StateConflict,
    ValidationError,
)
from fleetcore.models import (
    DriverSession,
    DriverStatus,
    EventType,
    ExecutionEvent,
    ExecutionJob,
    ReviewStatus,
    SessionStatus,
)
from fleetcore.schemas.events import EventSubmission
from fleetcore.services import state_machine
from fleetcore.services.state_machine import EventFacts, JobState
from fleetcore.utils.geo import haversine_m
from fleetcore.utils.timezone import to_utc, utc_now

_logger = logging.getLogger(__name__)

FLAG_IMPLAUSIBLE_SPEED = "implausible_speed"
FLAG_SUPERVISOR_OVERRIDE = "supervisor_override"

# Two fixes captured at the same instant further apart than this are
# treated as a teleport.
_SAME_INSTANT_TOLERANCE_M = 100.0


@dataclass
class EventOutcome:
    """Result of a submission. `signals` carries soft, non-failure codes."""

    event: ExecutionEvent
    duplicate: bool = False
    signals: list[str] = field(default_factory=list)

    @property
    def review_required(self) -> bool:
        return ReviewRequired.code in self.signals


def job_state_of(job: ExecutionJob) -> JobState:
    """Read the derived columns of a job into a JobState."""
    return JobState(
        driver_status=DriverStatus(job.driver_status),
        current_stop_index=job.current_stop_index,
        actual_start_time=job.actual_start_time,
        actual_end_time=job.actual_end_time,
        last_event_at=job.last_event_at,
    )


def _store_job_state(job: ExecutionJob, state: JobState) -> None:
    job.driver_status = state.driver_status.value
    job.current_stop_index = state.current_stop_index
    job.actual_start_time = state.actual_start_time
    job.actual_end_time = state.actual_end_time
    job.last_event_at = state.last_event_at


def facts_of(event: ExecutionEvent) -> EventFacts:
    return EventFacts(
        event_type=EventType(event.event_type),
        resulting_status=DriverStatus(event.resulting_status),
        captured_at=event.captured_at,
        metadata=event.event_metadata or {},
    )


async def get_event(db: AsyncSession, event_id: uuid.UUID) -> Optional[ExecutionEvent]:
    result = await db.execute(
        select(ExecutionEvent).where(ExecutionEvent.event_id == event_id)
    )
    return result.scalar_one_or_none()


async def _check_session(
    db: AsyncSession,
    submission: EventSubmission,
    captured_at: datetime,
    replay: bool,
) -> None:
    session = await db.get(DriverSession, submission.session_id)
    if session is None:
        raise ResourceNotFound(f"Session {submission.session_id} not found", code="session_not_found")
    if session.driver_id != submission.driver_id:
        raise StateConflict("Session belongs to another driver", code="session_driver_mismatch")
    if session.is_active:
        return
    if replay and session.was_active_at(captured_at):
        # Offline capture: the session was authoritative when the event happened
        return
    raise StateConflict(f"Session is {session.status}", code="session_not_active")


async def _plausibility_flags(
    db: AsyncSession,
    submission: EventSubmission,
    captured_at: datetime,
) -> list[str]:
    """Compare the event's location against the driver's previous located event."""
    if submission.location is None:
        return []

    result = await db.execute(
        select(ExecutionEvent)
        .where(
            ExecutionEvent.driver_id == submission.driver_id,
            ExecutionEvent.captured_at <= captured_at,
            ExecutionEvent.lat.is_not(None),
            ExecutionEvent.lng.is_not(None),
        )
        .order_by(ExecutionEvent.captured_at.desc())
        .limit(1)
    )
    prior = result.scalar_one_or_none()
    if prior is None:
        return []

    distance = haversine_m(prior.lat, prior.lng, submission.location.lat, submission.location.lng)
    elapsed = (captured_at - prior.captured_at).total_seconds()
    if elapsed <= 0:
        return [FLAG_IMPLAUSIBLE_SPEED] if distance > _SAME_INSTANT_TOLERANCE_M else []

    speed = distance / elapsed
    if speed > get_settings().max_plausible_speed_mps:
        _logger.info(
            "Implausible location for driver=%s: %.0fm in %.0fs (%.1f m/s)",
            submission.driver_id, distance, elapsed, speed,
        )
        return [FLAG_IMPLAUSIBLE_SPEED]
    return []


def _duplicate_outcome(event: ExecutionEvent) -> EventOutcome:
    signals = [DuplicateIgnored.code]
    if event.flagged_for_review:
        signals.append(ReviewRequired.code)
    return EventOutcome(event=event, duplicate=True, signals=signals)


async def submit_event(
    db: AsyncSession,
    submission: EventSubmission,
    *,
    replay: bool = False,
) -> EventOutcome:
    """
    Validate and append one execution event.

    Args:
        db: Database session
        submission: The event
        replay: True when replaying an offline batch; the session then only
            has to have been active at captured_at

    Returns:
        EventOutcome for the stored (or previously stored) event

    Raises:
        ValidationError: Malformed override
        ResourceNotFound: Unknown job or session
        StateConflict: Illegal transition, unassigned driver, inactive
            session or stale replay. Nothing is written.
    """
    captured_at = to_utc(submission.captured_at)

    existing = await get_event(db, submission.event_id)
    if existing is not None:
        return _duplicate_outcome(existing)

    is_override = submission.event_type == EventType.SUPERVISOR_OVERRIDE
    if is_override and not submission.metadata.get("actor_id"):
        raise ValidationError(
            "SUPERVISOR_OVERRIDE requires metadata.actor_id",
            code="override_actor_missing",
        )

    try:
        return await _append_event(db, submission, captured_at, replay, is_override)
    except (ResourceNotFound, StateConflict, ValidationError):
        # Nothing was written; release the job row lock
        await db.rollback()
        raise


async def _append_event(
    db: AsyncSession,
    submission: EventSubmission,
    captured_at: datetime,
    replay: bool,
    is_override: bool,
) -> EventOutcome:
    async with storage_errors(db):
        job_result = await db.execute(
            select(ExecutionJob)
            .where(ExecutionJob.id == submission.job_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        job = job_result.scalar_one_or_none()
        if job is None:
            raise ResourceNotFound(f"Job {submission.job_id} not found", code="job_not_found")
        if job.assigned_driver_id is None:
            raise StateConflict(f"Job {job.id} has no assigned driver", code="job_unassigned")
        if job.assigned_driver_id != submission.driver_id:
            raise StateConflict(
                f"Driver {submission.driver_id} is not assigned to job {job.id}",
                code="driver_not_assigned",
            )

        if submission.session_id is not None:
            await _check_session(db, submission, captured_at, replay)

        state = job_state_of(job)
        new_status = state_machine.transition(
            state.driver_status,
            submission.event_type,
            target_status=submission.target_status,
            claimed_status=submission.resulting_status,
        )
        if not is_override and state_machine.is_stale(state, captured_at, new_status):
            raise StateConflict(
                f"Event captured at {captured_at.isoformat()} is older than the job's "
                f"last applied event ({state.last_event_at.isoformat()})",
                code="stale_event",
            )

        flags = await _plausibility_flags(db, submission, captured_at)
        if is_override:
            flags.append(FLAG_SUPERVISOR_OVERRIDE)

        now = utc_now()
        event = ExecutionEvent(
            event_id=submission.event_id,
            driver_id=submission.driver_id,
            session_id=submission.session_id,
            job_id=submission.job_id,
            event_type=submission.event_type.value,
            previous_status=state.driver_status.value,
            resulting_status=new_status.value,
            lat=submission.location.lat if submission.location else None,
            lng=submission.location.lng if submission.location else None,
            captured_at=captured_at,
            received_at=now,
            event_metadata=dict(submission.metadata),
            flagged_for_review=bool(flags),
            flag_reasons=flags,
            review_status=ReviewStatus.PENDING.value if flags else None,
        )
        db.add(event)
        _store_job_state(job, state_machine.apply_event(state, facts_of(event)))

        if submission.session_id is not None:
            await db.execute(
                update(DriverSession)
                .where(
                    DriverSession.id == submission.session_id,
                    DriverSession.status == SessionStatus.ACTIVE.value,
                )
                .values(last_heartbeat_at=now)
            )

        try:
            await db.commit()
        except IntegrityError:
            # Same event_id committed concurrently by another worker
            await db.rollback()
            stored = await get_event(db, submission.event_id)
            if stored is None:
                raise
            return _duplicate_outcome(stored)

    _logger.info(
        "Event %s %s job=%s %s -> %s%s",
        event.event_id, event.event_type, event.job_id,
        event.previous_status, event.resulting_status,
        f" flagged={flags}" if flags else "",
    )
    signals = [ReviewRequired.code] if flags else []
    return EventOutcome(event=event, signals=signals)


async def get_driver_event_timeline(
    db: AsyncSession,
    driver_id: uuid.UUID,
    session_id: Optional[uuid.UUID] = None,
    limit: Optional[int] = None,
) -> list[ExecutionEvent]:
    """
    Get a driver's events, newest capture first.

    Args:
        db: Database session
        driver_id: Driver whose history to read
        session_id: Restrict to one session
        limit: Maximum number of events (clamped to the configured maximum)
    """
    settings = get_settings()
    limit = limit or settings.timeline_default_limit
    if limit < 1:
        raise ValidationError("limit must be positive", code="invalid_limit")
    limit = min(limit, settings.timeline_max_limit)

    query = select(ExecutionEvent).where(ExecutionEvent.driver_id == driver_id)
    if session_id is not None:
        query = query.where(ExecutionEvent.session_id == session_id)
    query = query.order_by(
        ExecutionEvent.captured_at.desc(),
        ExecutionEvent.received_at.desc(),
    ).limit(limit)

    result = await db.execute(query)
    return list(result.scalars().all())


async def get_job_events(db: AsyncSession, job_id: uuid.UUID) -> list[ExecutionEvent]:
    """Get a job's events in the order they were applied."""
    result = await db.execute(
        select(ExecutionEvent)
        .where(ExecutionEvent.job_id == job_id)
        .order_by(ExecutionEvent.received_at.asc(), ExecutionEvent.captured_at.asc())
    )
    return list(result.scalars().all())


async def list_events_pending_review(db: AsyncSession, limit: int = 100) -> list[ExecutionEvent]:
    result = await db.execute(
        select(ExecutionEvent)
        .where(
            ExecutionEvent.flagged_for_review.is_(True),
            ExecutionEvent.review_status == ReviewStatus.PENDING.value,
        )
        .order_by(ExecutionEvent.received_at.asc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def review_event(
    db: AsyncSession,
    event_id: uuid.UUID,
    decision: ReviewStatus,
    reviewer_id: str,
    notes: Optional[str] = None,
) -> ExecutionEvent:
    """
    Record a supervisor's verdict on a flagged event.

    Review is an audit trail only: approving or rejecting never changes the
    job's execution state.
    """
    if decision == ReviewStatus.PENDING:
        raise ValidationError("Decision must be approved or rejected", code="invalid_decision")

    event = await get_event(db, event_id)
    if event is None:
        raise ResourceNotFound(f"Event {event_id} not found", code="event_not_found")
    if not event.flagged_for_review:
        raise StateConflict("Event is not flagged for review", code="not_flagged")
    if event.review_status != ReviewStatus.PENDING.value:
        raise StateConflict(f"Event already {event.review_status}", code="already_reviewed")

    async with storage_errors(db):
        event.review_status = decision.value
        event.reviewed_by = reviewer_id
        event.reviewed_at = utc_now()
        event.review_notes = notes
        await db.commit()

    _logger.info("Event %s reviewed as %s by %s", event_id, decision.value, reviewer_id)
    return event


async def rebuild_job_state(db: AsyncSession, job_id: uuid.UUID) -> JobState:
    """Recompute a job's derived execution state from its event log."""
    async with storage_errors(db):
        result = await db.execute(
            select(ExecutionJob)
            .where(ExecutionJob.id == job_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        job = result.scalar_one_or_none()
        if job is None:
            raise ResourceNotFound(f"Job {job_id} not found", code="job_not_found")

        events = await get_job_events(db, job_id)
        state = state_machine.replay(facts_of(event) for event in events)
        _store_job_state(job, state)
        await db.commit()
    return state
