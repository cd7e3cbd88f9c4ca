"""
Seed the database with a small demo fleet.

Creates drivers and jobs assigned to them, and prints a driver token for
each driver so the API can be exercised by hand.

Run with: python -m scripts.seed_data
"""

import asyncio
import uuid

from sqlalchemy import select

from fleetcore.auth.jwt import ROLE_SUPERVISOR, create_access_token
from fleetcore.database import async_session_maker, init_db
from fleetcore.models import Driver, ExecutionJob

# Stable ids so re-running the script is idempotent
SUPERVISOR_ID = uuid.UUID("00000000-0000-4000-8000-000000000001")

DEMO_DRIVERS = [
    {
        "id": uuid.UUID("6f1c2a10-4b1e-4f6a-9d1a-000000000101"),
        "name": "Amina Bello",
        "jobs": [
            {"name": "Kano North - morning batch", "total_stops": 6},
            {"name": "Kano North - afternoon batch", "total_stops": 4},
        ],
    },
    {
        "id": uuid.UUID("6f1c2a10-4b1e-4f6a-9d1a-000000000102"),
        "name": "Chinedu Okafor",
        "jobs": [
            {"name": "Fagge cold chain run", "total_stops": 5},
        ],
    },
    {
        "id": uuid.UUID("6f1c2a10-4b1e-4f6a-9d1a-000000000103"),
        "name": "Fatima Yusuf",
        "jobs": [],
    },
]


async def seed_fleet() -> None:
    """Seed drivers and their assigned jobs."""
    async with async_session_maker() as session:
        print("\nDrivers:")
        for driver_data in DEMO_DRIVERS:
            driver = await session.get(Driver, driver_data["id"])
            if driver:
                print(f"  ✓ {driver.name} exists")
            else:
                driver = Driver(id=driver_data["id"], name=driver_data["name"])
                session.add(driver)
                await session.flush()
                print(f"  + Created: {driver.name}")

            for job_data in driver_data["jobs"]:
                result = await session.execute(
                    select(ExecutionJob).where(
                        ExecutionJob.assigned_driver_id == driver.id,
                        ExecutionJob.name == job_data["name"],
                    )
                )
                if result.scalar_one_or_none():
                    print(f"    ✓ {job_data['name']} exists")
                    continue
                session.add(ExecutionJob(
                    id=uuid.uuid4(),
                    assigned_driver_id=driver.id,
                    **job_data,
                ))
                print(f"    + Created job: {job_data['name']}")

        await session.commit()

    print("\nTokens:")
    for driver_data in DEMO_DRIVERS:
        print(f"  {driver_data['name']}: {create_access_token(driver_data['id'])}")
    print(f"  supervisor: {create_access_token(SUPERVISOR_ID, role=ROLE_SUPERVISOR)}")
    print("\n✓ Seed data complete!")


async def main():
    """Main entry point."""
    print("=" * 50)
    print("Seeding FleetCore Database")
    print("=" * 50)

    print("\nInitializing database...")
    await init_db()

    print("\nSeeding demo fleet...")
    await seed_fleet()


if __name__ == "__main__":
    asyncio.run(main())
