"""
Execution state machine.

Pure functions only: no database access, no clock. The event log service
feeds the job's authoritative status in and persists whatever comes out,
so everything here can be tested without storage.

Transition table (event type: allowed current statuses -> new status):

    ROUTE_STARTED        INACTIVE, ACTIVE              -> EN_ROUTE
    ARRIVED_AT_STOP      EN_ROUTE                      -> AT_STOP
    DEPARTED_STOP        AT_STOP                       -> EN_ROUTE
    DELAY_REPORTED       EN_ROUTE, AT_STOP             -> DELAYED
    ROUTE_COMPLETED      EN_ROUTE, AT_STOP, DELAYED    -> COMPLETED
    ROUTE_CANCELLED      anything but COMPLETED        -> INACTIVE
    PROOF_CAPTURED       anything                      -> unchanged
    SUPERVISOR_OVERRIDE  anything                      -> target status
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any

from fleetcore.exceptions import StateConflict, ValidationError
from fleetcore.models.execution_event import EventType
from fleetcore.models.execution_job import DriverStatus

_ALL_STATUSES = frozenset(DriverStatus)

# event type -> (allowed current statuses, new status); None keeps the status
TRANSITIONS: dict[EventType, tuple[frozenset[DriverStatus], DriverStatus | None]] = {
    EventType.ROUTE_STARTED: (
        frozenset({DriverStatus.INACTIVE, DriverStatus.ACTIVE}),
        DriverStatus.EN_ROUTE,
    ),
    EventType.ARRIVED_AT_STOP: (
        frozenset({DriverStatus.EN_ROUTE}),
        DriverStatus.AT_STOP,
    ),
    EventType.DEPARTED_STOP: (
        frozenset({DriverStatus.AT_STOP}),
        DriverStatus.EN_ROUTE,
    ),
    EventType.DELAY_REPORTED: (
        frozenset({DriverStatus.EN_ROUTE, DriverStatus.AT_STOP}),
        DriverStatus.DELAYED,
    ),
    EventType.ROUTE_COMPLETED: (
        frozenset({DriverStatus.EN_ROUTE, DriverStatus.AT_STOP, DriverStatus.DELAYED}),
        DriverStatus.COMPLETED,
    ),
    EventType.ROUTE_CANCELLED: (
        _ALL_STATUSES - {DriverStatus.COMPLETED},
        DriverStatus.INACTIVE,
    ),
    EventType.PROOF_CAPTURED: (_ALL_STATUSES, None),
}

TERMINAL_STATUSES = frozenset({DriverStatus.COMPLETED, DriverStatus.CANCELLED})


def is_allowed(current: DriverStatus, event_type: EventType) -> bool:
    """Check whether `event_type` may be applied to a job in `current`."""
    if event_type == EventType.SUPERVISOR_OVERRIDE:
        return True
    allowed, _ = TRANSITIONS[event_type]
    return current in allowed


def transition(
    current: DriverStatus,
    event_type: EventType,
    *,
    target_status: DriverStatus | None = None,
    claimed_status: DriverStatus | None = None,
) -> DriverStatus:
    """
    Compute the status a job moves to when `event_type` is applied.

    Args:
        current: The job's authoritative status
        event_type: The submitted event
        target_status: Required for SUPERVISOR_OVERRIDE, ignored otherwise
        claimed_status: Resulting status the client believes it produced;
            must agree with the table when given

    Returns:
        The new status

    Raises:
        StateConflict: The pair is not in the table, or the claim disagrees
        ValidationError: SUPERVISOR_OVERRIDE without a target status
    """
    if event_type == EventType.SUPERVISOR_OVERRIDE:
        if target_status is None:
            raise ValidationError(
                "SUPERVISOR_OVERRIDE requires a target status",
                code="override_target_missing",
            )
        new_status = target_status
    else:
        allowed, next_status = TRANSITIONS[event_type]
        if current not in allowed:
            raise StateConflict(
                f"Cannot apply {event_type.value} while job is {current.value}",
                code="illegal_transition",
            )
        new_status = current if next_status is None else next_status

    if claimed_status is not None and claimed_status != new_status:
        if event_type == EventType.PROOF_CAPTURED:
            message = "PROOF_CAPTURED must not change status"
        else:
            message = f"{event_type.value} must transition to {new_status.value}, not {claimed_status.value}"
        raise StateConflict(message, code="status_mismatch")

    return new_status


@dataclass(frozen=True)
class JobState:
    """Derived execution state of a job (the denormalized columns)."""

    driver_status: DriverStatus = DriverStatus.INACTIVE
    current_stop_index: int = 0
    actual_start_time: datetime | None = None
    actual_end_time: datetime | None = None
    last_event_at: datetime | None = None


@dataclass(frozen=True)
class EventFacts:
    """The subset of an execution event the reducer needs."""

    event_type: EventType
    resulting_status: DriverStatus
    captured_at: datetime
    metadata: Mapping[str, Any]


def apply_event(state: JobState, event: EventFacts) -> JobState:
    """Fold one accepted event into the job state."""
    changes: dict[str, Any] = {"driver_status": event.resulting_status}

    if event.event_type == EventType.ROUTE_STARTED:
        changes["actual_start_time"] = event.captured_at
        changes["actual_end_time"] = None
    elif event.event_type == EventType.ROUTE_COMPLETED:
        changes["actual_end_time"] = event.captured_at
    elif event.event_type == EventType.DEPARTED_STOP:
        changes["current_stop_index"] = state.current_stop_index + 1
    elif event.event_type == EventType.ARRIVED_AT_STOP:
        stop_index = event.metadata.get("stop_index")
        if isinstance(stop_index, int) and not isinstance(stop_index, bool) and stop_index >= 0:
            changes["current_stop_index"] = stop_index

    if state.last_event_at is None or event.captured_at > state.last_event_at:
        changes["last_event_at"] = event.captured_at

    return replace(state, **changes)


def replay(events: Iterable[EventFacts], initial: JobState | None = None) -> JobState:
    """Rebuild job state from accepted events in log order."""
    state = initial or JobState()
    for event in events:
        state = apply_event(state, event)
    return state


def is_stale(state: JobState, captured_at: datetime, new_status: DriverStatus) -> bool:
    """
    Check whether an event would let an older capture supersede newer state.

    Status-neutral events are never stale: they cannot roll anything back.
    """
    if new_status == state.driver_status:
        return False
    return state.last_event_at is not None and captured_at < state.last_event_at
