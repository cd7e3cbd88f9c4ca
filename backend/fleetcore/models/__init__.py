# Database models
from fleetcore.models.driver import Driver, DriverAvailability
from fleetcore.models.driver_session import DriverSession, SessionStatus
from fleetcore.models.execution_job import DriverStatus, ExecutionJob
from fleetcore.models.execution_event import EventType, ExecutionEvent, ReviewStatus
from fleetcore.models.telemetry_point import TelemetryPoint
from fleetcore.models.sync_queue_item import SyncQueueItem

__all__ = [
    "Driver",
    "DriverAvailability",
    "DriverSession",
    "SessionStatus",
    "DriverStatus",
    "ExecutionJob",
    "EventType",
    "ExecutionEvent",
    "ReviewStatus",
    "TelemetryPoint",
    "SyncQueueItem",
]
