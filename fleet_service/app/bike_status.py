import asyncio
import logging
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from . import config, dates, models
from .enums import BikeStatus, BookingStatus, OPEN_BOOKING_STATUSES

logger = logging.getLogger(__name__)


def derive_status(current: BikeStatus, occupied: bool) -> BikeStatus:
    # MAINTENANCE снимает только оператор
    if current == BikeStatus.MAINTENANCE:
        return BikeStatus.MAINTENANCE
    return BikeStatus.RENTED if occupied else BikeStatus.AVAILABLE


async def load_occupying_bookings(
        db: AsyncSession,
        bike_id: int,
        org_id: int,
        now: datetime
) -> List[models.Booking]:
    """Незавершенные брони, которые уже начались. Дата окончания не важна:
    просроченная бронь занимает велосипед, пока его не вернули."""
    result = await db.execute(
        select(models.Booking).where(
            models.Booking.bike_id == bike_id,
            models.Booking.organization_id == org_id,
            models.Booking.status.in_(OPEN_BOOKING_STATUSES),
            models.Booking.is_deleted == False,  # noqa: E712
            or_(
                models.Booking.start_date <= now,
                models.Booking.delivered_at <= now
            )
        )
    )
    return list(result.scalars().all())


async def has_occupant(db: AsyncSession, bike_id: int, org_id: int, now: Optional[datetime] = None) -> bool:
    return bool(await load_occupying_bookings(db, bike_id, org_id, dates.resolve_now(now)))


async def reconcile(
        db: AsyncSession,
        bike_id: int,
        org_id: int,
        now: Optional[datetime] = None,
        commit: bool = True
) -> Optional[BikeStatus]:
    """Пересчитывает статус велосипеда по броням и сохраняет его.

    Начавшиеся брони в статусе UPCOMING переводятся в ACTIVE. Повторный вызов без
    изменений в бронях дает тот же результат.
    """
    now = dates.resolve_now(now)
    result = await db.execute(
        select(models.Bike).where(
            models.Bike.id == bike_id,
            models.Bike.organization_id == org_id
        )
    )
    bike = result.scalar_one_or_none()
    if bike is None or bike.is_deleted:
        return None

    occupying = await load_occupying_bookings(db, bike_id, org_id, now)
    for booking in occupying:
        if booking.status == BookingStatus.UPCOMING:
            booking.status = BookingStatus.ACTIVE
            logger.info(f"Booking {booking.id} started, status set to ACTIVE")

    derived = derive_status(bike.status, bool(occupying))
    if bike.status != derived:
        logger.info(f"Bike {bike_id} status {bike.status.value} -> {derived.value}")
        bike.status = derived

    if commit:
        await db.commit()
    else:
        await db.flush()
    return derived


async def _reconcile_in_own_session(database, bike_id: int, org_id: int, now: datetime) -> Optional[BikeStatus]:
    # У каждой задачи своя сессия: AsyncSession нельзя делить между корутинами
    async with database.session() as db:
        return await reconcile(db, bike_id, org_id, now=now)


async def reconcile_organization(
        database,
        org_id: int,
        now: Optional[datetime] = None,
        batch_size: int = config.RECONCILE_BATCH_SIZE
) -> Dict[int, BikeStatus]:
    """Массовая синхронизация статусов всех велосипедов организации пачками,
    чтобы не исчерпать пул соединений."""
    now = dates.resolve_now(now)
    async with database.session() as db:
        result = await db.execute(
            select(models.Bike.id).where(
                models.Bike.organization_id == org_id,
                models.Bike.is_deleted == False  # noqa: E712
            ).order_by(models.Bike.id)
        )
        bike_ids = list(result.scalars().all())

    statuses = {}
    for i in range(0, len(bike_ids), batch_size):
        batch = bike_ids[i:i + batch_size]
        results = await asyncio.gather(
            *(_reconcile_in_own_session(database, bike_id, org_id, now) for bike_id in batch)
        )
        statuses.update(zip(batch, results))

    logger.info(f"Reconciled {len(bike_ids)} bikes for organization {org_id}")
    return statuses
