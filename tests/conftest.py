"""
Shared fixtures: every test gets its own SQLite database file (through aiosqlite),
so the async SQLAlchemy code runs unchanged without PostgreSQL.
"""
from datetime import datetime

import pytest

from fleet_service.app import models, schemas, tenancy
from fleet_service.app.database import Database

ORG_ID = 1
OTHER_ORG_ID = 2


@pytest.fixture
async def database(tmp_path):
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'fleet.db'}")
    await database.create_all()
    yield database
    await database.dispose()


@pytest.fixture
async def db(database):
    async with database.session() as session:
        await tenancy.ensure_organization(session, ORG_ID)
        await tenancy.ensure_organization(session, OTHER_ORG_ID)
        yield session


async def add_bike(db, org_id=ORG_ID, registration="KA01AB1234", daily_rate=500.0, status=None):
    bike = models.Bike(
        organization_id=org_id,
        name="Honda Activa",
        registration_number=registration,
        daily_rate=daily_rate
    )
    if status is not None:
        bike.status = status
    db.add(bike)
    await db.commit()
    await db.refresh(bike)
    return bike


def booking_request(bike_id, start, end, **extra):
    return schemas.BookingCreate(
        bike_id=bike_id,
        customer_name=extra.pop("customer_name", "Ravi Kumar"),
        phone=extra.pop("phone", "9876543210"),
        start_date=start,
        end_date=end,
        **extra
    )


def day(d, hour=0, minute=0):
    return datetime(2030, 1, d, hour, minute)


@pytest.fixture
def bike_factory(db):
    async def factory(**kwargs):
        return await add_bike(db, **kwargs)
    return factory
