import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from . import bike_status, dates, models, schemas, tenancy
from .enums import BikeStatus, OPEN_BOOKING_STATUSES
from .errors import ActiveBookingsExist, BikeLimitReached, BikeRented, DuplicateRegistration

logger = logging.getLogger(__name__)


async def _ensure_unique_registration(
        db: AsyncSession,
        org_id: int,
        registration_number: str,
        exclude_bike_id: Optional[int] = None
):
    query = select(models.Bike.id).where(
        models.Bike.organization_id == org_id,
        models.Bike.registration_number == registration_number
    )
    if exclude_bike_id is not None:
        query = query.where(models.Bike.id != exclude_bike_id)

    result = await db.execute(query)
    if result.first() is not None:
        raise DuplicateRegistration(
            f"Bike with registration number {registration_number} already exists"
        )


async def _commit_unique(db: AsyncSession, registration_number: str):
    # Параллельная вставка того же номера ловится уникальным индексом
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise DuplicateRegistration(
            f"Bike with registration number {registration_number} already exists"
        )


async def list_bikes(db: AsyncSession, org_id: int, status: Optional[BikeStatus] = None) -> List[models.Bike]:
    query = select(models.Bike).where(
        models.Bike.organization_id == org_id,
        models.Bike.is_deleted == False  # noqa: E712
    )
    if status is not None:
        query = query.where(models.Bike.status == status)

    result = await db.execute(query.order_by(models.Bike.created_at.desc(), models.Bike.id.desc()))
    return list(result.scalars().all())


async def create_bike(db: AsyncSession, org_id: int, data: schemas.BikeCreate) -> models.Bike:
    organization = await tenancy.ensure_organization(db, org_id)

    result = await db.execute(
        select(func.count(models.Bike.id)).where(
            models.Bike.organization_id == org_id,
            models.Bike.is_deleted == False  # noqa: E712
        )
    )
    if result.scalar_one() >= organization.bikes_limit:
        raise BikeLimitReached(
            f"Bike limit of {organization.bikes_limit} reached for plan {organization.plan}"
        )

    await _ensure_unique_registration(db, org_id, data.registration_number)

    bike = models.Bike(
        organization_id=org_id,
        name=data.name,
        model=data.model,
        registration_number=data.registration_number,
        year=data.year,
        daily_rate=data.daily_rate,
        status=BikeStatus.AVAILABLE
    )
    db.add(bike)
    await _commit_unique(db, data.registration_number)
    await db.refresh(bike)

    logger.info(f"Bike {bike.id} ({bike.registration_number}) created for organization {org_id}")
    return bike


async def update_bike(db: AsyncSession, org_id: int, bike_id: int, data: schemas.BikeUpdate) -> models.Bike:
    bike = await tenancy.get_bike(db, org_id, bike_id)
    update_data = data.dict(exclude_unset=True)

    if update_data.get("registration_number") and update_data["registration_number"] != bike.registration_number:
        await _ensure_unique_registration(db, org_id, update_data["registration_number"], exclude_bike_id=bike.id)

    for field, value in update_data.items():
        # model и year можно очистить, остальные поля обязательны
        if value is None and field not in ("model", "year"):
            continue
        setattr(bike, field, value)

    await _commit_unique(db, bike.registration_number)
    await db.refresh(bike)
    return bike


async def toggle_maintenance(
        db: AsyncSession,
        org_id: int,
        bike_id: int,
        now: Optional[datetime] = None
) -> models.Bike:
    """Включает/выключает обслуживание. Занятый велосипед отправить на обслуживание нельзя."""
    now = dates.resolve_now(now)
    bike = await tenancy.get_bike(db, org_id, bike_id, for_update=True)

    if bike.status == BikeStatus.MAINTENANCE:
        bike.status = BikeStatus.AVAILABLE
        await bike_status.reconcile(db, bike.id, org_id, now=now, commit=False)
    else:
        if await bike_status.has_occupant(db, bike.id, org_id, now):
            logger.warning(f"Bike {bike.id} is rented, maintenance rejected")
            raise BikeRented("Cannot put a rented bike into maintenance")
        bike.status = BikeStatus.MAINTENANCE

    await db.commit()
    await db.refresh(bike)

    logger.info(f"Bike {bike.id} maintenance toggled, status={bike.status.value}")
    return bike


async def delete_bike(db: AsyncSession, org_id: int, bike_id: int, now: Optional[datetime] = None):
    now = dates.resolve_now(now)
    bike = await tenancy.get_bike(db, org_id, bike_id, for_update=True)

    result = await db.execute(
        select(func.count(models.Booking.id)).where(
            models.Booking.bike_id == bike.id,
            models.Booking.organization_id == org_id,
            models.Booking.status.in_(OPEN_BOOKING_STATUSES),
            models.Booking.is_deleted == False  # noqa: E712
        )
    )
    open_bookings = result.scalar_one()
    if open_bookings:
        raise ActiveBookingsExist(
            f"Bike has {open_bookings} active or upcoming booking(s)",
            details={"bookings": open_bookings}
        )

    bike.is_deleted = True
    bike.deleted_at = now
    await db.commit()

    logger.info(f"Bike {bike.id} deleted")
