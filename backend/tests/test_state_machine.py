"""Transition table and reducer, without storage."""

from datetime import datetime, timedelta

import pytest

from fleetcore.exceptions import StateConflict, ValidationError
from fleetcore.models import DriverStatus, EventType
from fleetcore.services import state_machine
from fleetcore.services.state_machine import EventFacts, JobState

T0 = datetime(2026, 3, 2, 8, 0, 0)

LEGAL = {
    (EventType.ROUTE_STARTED, DriverStatus.INACTIVE): DriverStatus.EN_ROUTE,
    (EventType.ROUTE_STARTED, DriverStatus.ACTIVE): DriverStatus.EN_ROUTE,
    (EventType.ARRIVED_AT_STOP, DriverStatus.EN_ROUTE): DriverStatus.AT_STOP,
    (EventType.DEPARTED_STOP, DriverStatus.AT_STOP): DriverStatus.EN_ROUTE,
    (EventType.DELAY_REPORTED, DriverStatus.EN_ROUTE): DriverStatus.DELAYED,
    (EventType.DELAY_REPORTED, DriverStatus.AT_STOP): DriverStatus.DELAYED,
    (EventType.ROUTE_COMPLETED, DriverStatus.EN_ROUTE): DriverStatus.COMPLETED,
    (EventType.ROUTE_COMPLETED, DriverStatus.AT_STOP): DriverStatus.COMPLETED,
    (EventType.ROUTE_COMPLETED, DriverStatus.DELAYED): DriverStatus.COMPLETED,
}
LEGAL.update({
    (EventType.ROUTE_CANCELLED, status): DriverStatus.INACTIVE
    for status in DriverStatus if status != DriverStatus.COMPLETED
})
LEGAL.update({(EventType.PROOF_CAPTURED, status): status for status in DriverStatus})

TABLE_EVENTS = [event for event in EventType if event != EventType.SUPERVISOR_OVERRIDE]
ILLEGAL = [
    (event, status)
    for event in TABLE_EVENTS
    for status in DriverStatus
    if (event, status) not in LEGAL
]


@pytest.mark.parametrize(("event_type", "current"), list(LEGAL))
def test_legal_transitions(event_type, current):
    assert state_machine.is_allowed(current, event_type)
    assert state_machine.transition(current, event_type) == LEGAL[(event_type, current)]


@pytest.mark.parametrize(("event_type", "current"), ILLEGAL)
def test_illegal_transitions_are_conflicts(event_type, current):
    assert not state_machine.is_allowed(current, event_type)
    with pytest.raises(StateConflict) as exc_info:
        state_machine.transition(current, event_type)
    assert exc_info.value.code == "illegal_transition"


def test_every_pair_is_classified():
    assert len(LEGAL) + len(ILLEGAL) == len(TABLE_EVENTS) * len(DriverStatus)


def test_completed_is_terminal_except_for_proof():
    for event in TABLE_EVENTS:
        allowed = state_machine.is_allowed(DriverStatus.COMPLETED, event)
        assert allowed == (event == EventType.PROOF_CAPTURED)


@pytest.mark.parametrize("current", list(DriverStatus))
def test_override_reaches_any_target(current):
    for target in DriverStatus:
        result = state_machine.transition(current, EventType.SUPERVISOR_OVERRIDE, target_status=target)
        assert result == target


def test_override_requires_target():
    with pytest.raises(ValidationError) as exc_info:
        state_machine.transition(DriverStatus.EN_ROUTE, EventType.SUPERVISOR_OVERRIDE)
    assert exc_info.value.code == "override_target_missing"


def test_claimed_status_must_match():
    with pytest.raises(StateConflict) as exc_info:
        state_machine.transition(
            DriverStatus.EN_ROUTE,
            EventType.ARRIVED_AT_STOP,
            claimed_status=DriverStatus.COMPLETED,
        )
    assert exc_info.value.code == "status_mismatch"

    assert state_machine.transition(
        DriverStatus.EN_ROUTE,
        EventType.ARRIVED_AT_STOP,
        claimed_status=DriverStatus.AT_STOP,
    ) == DriverStatus.AT_STOP


def test_proof_claiming_a_new_status_is_rejected():
    with pytest.raises(StateConflict, match="must not change status"):
        state_machine.transition(
            DriverStatus.AT_STOP,
            EventType.PROOF_CAPTURED,
            claimed_status=DriverStatus.COMPLETED,
        )


def _facts(event_type, status, minutes, **metadata):
    return EventFacts(
        event_type=event_type,
        resulting_status=status,
        captured_at=T0 + timedelta(minutes=minutes),
        metadata=metadata,
    )


def test_replay_derives_full_job_state():
    state = state_machine.replay([
        _facts(EventType.ROUTE_STARTED, DriverStatus.EN_ROUTE, 0),
        _facts(EventType.ARRIVED_AT_STOP, DriverStatus.AT_STOP, 10),
        _facts(EventType.DEPARTED_STOP, DriverStatus.EN_ROUTE, 15),
        _facts(EventType.ARRIVED_AT_STOP, DriverStatus.AT_STOP, 25),
        _facts(EventType.ROUTE_COMPLETED, DriverStatus.COMPLETED, 30),
    ])

    assert state.driver_status == DriverStatus.COMPLETED
    assert state.current_stop_index == 1
    assert state.actual_start_time == T0
    assert state.actual_end_time == T0 + timedelta(minutes=30)
    assert state.last_event_at == T0 + timedelta(minutes=30)


def test_arrival_with_explicit_stop_index():
    state = JobState(driver_status=DriverStatus.EN_ROUTE)
    state = state_machine.apply_event(state, _facts(EventType.ARRIVED_AT_STOP, DriverStatus.AT_STOP, 5, stop_index=4))
    assert state.current_stop_index == 4

    # Non-integer indexes are ignored
    state = state_machine.apply_event(state, _facts(EventType.ARRIVED_AT_STOP, DriverStatus.AT_STOP, 6, stop_index="7"))
    assert state.current_stop_index == 4


def test_restart_clears_end_time():
    state = state_machine.replay([
        _facts(EventType.ROUTE_STARTED, DriverStatus.EN_ROUTE, 0),
        _facts(EventType.ROUTE_COMPLETED, DriverStatus.COMPLETED, 30),
        _facts(EventType.SUPERVISOR_OVERRIDE, DriverStatus.INACTIVE, 40),
        _facts(EventType.ROUTE_STARTED, DriverStatus.EN_ROUTE, 50),
    ])
    assert state.actual_start_time == T0 + timedelta(minutes=50)
    assert state.actual_end_time is None


def test_last_event_at_never_moves_backwards():
    state = JobState(driver_status=DriverStatus.AT_STOP, last_event_at=T0 + timedelta(minutes=20))
    state = state_machine.apply_event(state, _facts(EventType.PROOF_CAPTURED, DriverStatus.AT_STOP, 5))
    assert state.last_event_at == T0 + timedelta(minutes=20)


def test_stale_only_for_status_changes():
    state = JobState(driver_status=DriverStatus.AT_STOP, last_event_at=T0 + timedelta(minutes=20))
    earlier = T0 + timedelta(minutes=10)
    later = T0 + timedelta(minutes=30)

    assert state_machine.is_stale(state, earlier, DriverStatus.COMPLETED)
    assert not state_machine.is_stale(state, earlier, DriverStatus.AT_STOP)
    assert not state_machine.is_stale(state, later, DriverStatus.COMPLETED)
    assert not state_machine.is_stale(JobState(), earlier, DriverStatus.EN_ROUTE)
