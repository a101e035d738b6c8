"""Проверка пересечения броней одного велосипеда.

Передача в тот же день разрешена: бронь, заканчивающаяся в день D, не конфликтует
с бронью, начинающейся в день D. Поэтому существующая бронь сравнивается не с
началом новой, а с началом следующего за ним календарного дня.
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from . import availability, dates, models
from .enums import OPEN_BOOKING_STATUSES
from .errors import BookingOverlap

logger = logging.getLogger(__name__)


def ranges_conflict(existing_start: datetime, existing_end: datetime, start: datetime, end: datetime) -> bool:
    return existing_start <= end and existing_end >= dates.next_calendar_day(start)


async def find_overlap(
        db: AsyncSession,
        bike_id: int,
        org_id: int,
        start: datetime,
        end: datetime,
        exclude_booking_id: Optional[int] = None
) -> Optional[models.Booking]:
    """Первая (по дате начала) незавершенная бронь, пересекающаяся с [start, end]."""
    query = select(models.Booking).where(
        models.Booking.bike_id == bike_id,
        models.Booking.organization_id == org_id,
        models.Booking.status.in_(OPEN_BOOKING_STATUSES),
        models.Booking.is_deleted == False,  # noqa: E712
        models.Booking.start_date <= end,
        models.Booking.end_date >= dates.next_calendar_day(start)
    )
    if exclude_booking_id is not None:
        query = query.where(models.Booking.id != exclude_booking_id)

    result = await db.execute(query.order_by(models.Booking.start_date.asc()).limit(1))
    return result.scalars().first()


async def has_overlap(
        db: AsyncSession,
        bike_id: int,
        org_id: int,
        start: datetime,
        end: datetime,
        exclude_booking_id: Optional[int] = None
):
    conflict = await find_overlap(db, bike_id, org_id, start, end, exclude_booking_id)
    return conflict is not None, conflict


async def check_overlap(
        db: AsyncSession,
        bike_id: int,
        org_id: int,
        start: datetime,
        end: datetime,
        exclude_booking_id: Optional[int] = None,
        now: Optional[datetime] = None
):
    """Бросает BookingOverlap с блокирующей бронью и ближайшей датой, когда велосипед свободен."""
    conflict = await find_overlap(db, bike_id, org_id, start, end, exclude_booking_id)
    if conflict is None:
        return

    others = await availability.load_open_bookings(db, org_id, bike_id, exclude_booking_id)
    free_at, _ = availability.walk_chain(conflict, others)
    # Просроченная блокирующая бронь не может освободить велосипед в прошлом
    next_available = max(free_at.date(), dates.resolve_now(now).date())

    logger.warning(
        f"Booking overlap for bike {bike_id}: requested {start.date()}..{end.date()}, "
        f"blocked by booking {conflict.id}, free from {next_available}"
    )
    raise BookingOverlap(
        f"Bike already booked for selected date range. Available from {next_available.isoformat()}",
        details={
            "blocking_booking": {
                "id": conflict.id,
                "customer_name": conflict.customer_name,
                "start_date": conflict.start_date.isoformat(),
                "end_date": conflict.end_date.isoformat(),
            },
            "next_available_date": next_available.isoformat(),
        }
    )
