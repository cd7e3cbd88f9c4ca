"""
Background loops started with the application.

- Heartbeat sweep: expires sessions whose device went quiet.
- Sync processing: drains the offline sync queue.
"""

import asyncio
import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fleetcore.config import get_settings
from fleetcore.exceptions import TransientStorageError
from fleetcore.services.session_registry import expire_stale_sessions
from fleetcore.services.sync_reconciler import process_pending_queue

_logger = logging.getLogger(__name__)


async def run_session_sweeper(session_factory: async_sessionmaker[AsyncSession]) -> None:
    """Expire stale sessions every `session_sweep_interval_seconds`."""
    settings = get_settings()
    while True:
        await asyncio.sleep(settings.session_sweep_interval_seconds)
        try:
            async with session_factory() as db:
                await expire_stale_sessions(db)
        except TransientStorageError as exc:
            _logger.warning("Session sweep skipped: %s", exc.reason)
        except Exception:
            _logger.exception("Session sweep failed")


async def run_sync_processor(session_factory: async_sessionmaker[AsyncSession]) -> None:
    """Drain the offline sync queue every `sync_process_interval_seconds`."""
    settings = get_settings()
    while True:
        await asyncio.sleep(settings.sync_process_interval_seconds)
        try:
            await process_pending_queue(session_factory)
        except TransientStorageError as exc:
            _logger.warning("Sync pass skipped: %s", exc.reason)
        except Exception:
            _logger.exception("Sync pass failed")


def start_background_workers(session_factory: async_sessionmaker[AsyncSession]) -> list[asyncio.Task]:
    return [
        asyncio.create_task(run_session_sweeper(session_factory), name="session-sweeper"),
        asyncio.create_task(run_sync_processor(session_factory), name="sync-processor"),
    ]


async def stop_background_workers(tasks: list[asyncio.Task]) -> None:
    for task in tasks:
        if not task.done():
            task.cancel()
    for task in tasks:
        try:
            await task
        except asyncio.CancelledError:
            pass
