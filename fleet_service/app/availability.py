"""Прогноз доступности велосипеда.

Брони могут идти встык (одна заканчивается в день начала следующей), поэтому
освобождение велосипеда это конец самой длинной непрерывной цепочки броней,
а не конец текущей брони.
"""
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import List, Optional, Sequence, Tuple

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from . import config, dates, models, tenancy
from .enums import BikeStatus, BookingStatus, OPEN_BOOKING_STATUSES

logger = logging.getLogger(__name__)


@dataclass
class AvailabilityProjection:
    bike_id: int
    bike_status: BikeStatus
    is_available_now: bool
    current_booking: Optional[models.Booking] = None
    next_available_date: Optional[date] = None
    return_in_days: int = 0
    blocking_chain: List[models.Booking] = field(default_factory=list)


def has_started(booking, at: datetime) -> bool:
    """Бронь началась, если наступил день начала или велосипед уже выдан."""
    if booking.start_date <= at:
        return True
    return booking.delivered_at is not None and booking.delivered_at <= at


def walk_chain(
        head,
        bookings: Sequence,
        head_end: Optional[datetime] = None,
        max_iterations: int = config.AVAILABILITY_MAX_ITERATIONS
) -> Tuple[datetime, list]:
    """Идет вперед от конца брони head, поглощая брони, которые начинаются не позже
    текущей границы и заканчиваются строго после нее.

    Возвращает момент освобождения и всю цепочку (head первой).
    """
    candidate = head_end or head.end_date
    chain = [head]
    counted = {head.id}

    for _ in range(max_iterations):
        blocking = next(
            (
                b for b in bookings
                if b.id not in counted and b.start_date <= candidate and b.end_date > candidate
            ),
            None
        )
        if blocking is None:
            break
        chain.append(blocking)
        counted.add(blocking.id)
        candidate = blocking.end_date

    return candidate, chain


def is_out_now(booking, now: datetime) -> bool:
    """Велосипед по брони действительно у клиента (выдан или бронь уже началась)."""
    return booking.status == BookingStatus.ACTIVE or has_started(booking, now)


def find_current_booking(bookings: Sequence, as_of: datetime, now: datetime):
    """Бронь, которая занимает велосипед в момент as_of.

    Просроченная, но не возвращенная бронь тоже занимает велосипед, но только
    если она уже началась на самом деле и as_of не позже сегодняшнего дня.
    Для будущих моментов бронь занимает велосипед лишь в пределах своих дат.
    """
    overdue_allowed = as_of.date() <= now.date()
    for booking in sorted(bookings, key=lambda b: b.start_date):
        if not has_started(booking, as_of):
            continue
        if as_of <= booking.end_date:
            return booking
        if overdue_allowed and is_out_now(booking, now):
            return booking
    return None


def project_availability(
        bike,
        bookings: Sequence,
        as_of: datetime,
        now: Optional[datetime] = None
) -> AvailabilityProjection:
    """Чистый расчет по уже загруженным незавершенным броням велосипеда."""
    now = dates.resolve_now(now)
    open_bookings = [
        b for b in bookings
        if b.status in OPEN_BOOKING_STATUSES and not b.is_deleted
    ]
    in_maintenance = bike.status == BikeStatus.MAINTENANCE

    current = find_current_booking(open_bookings, as_of, now)
    if current is None:
        return AvailabilityProjection(
            bike_id=bike.id,
            bike_status=bike.status,
            is_available_now=not in_maintenance
        )

    head_end = current.end_date
    if head_end < as_of:
        head_end = dates.end_of_day(as_of)

    free_at, chain = walk_chain(current, open_bookings, head_end=head_end)
    next_available = free_at.date()
    return_in_days = max(1, dates.days_between(as_of, next_available))

    return AvailabilityProjection(
        bike_id=bike.id,
        bike_status=bike.status,
        is_available_now=False,
        current_booking=current,
        next_available_date=next_available,
        return_in_days=return_in_days,
        blocking_chain=chain
    )


async def load_open_bookings(
        db: AsyncSession,
        org_id: int,
        bike_id: int,
        exclude_booking_id: Optional[int] = None
) -> List[models.Booking]:
    query = select(models.Booking).where(
        models.Booking.bike_id == bike_id,
        models.Booking.organization_id == org_id,
        models.Booking.status.in_(OPEN_BOOKING_STATUSES),
        models.Booking.is_deleted == False  # noqa: E712
    )
    if exclude_booking_id is not None:
        query = query.where(models.Booking.id != exclude_booking_id)

    result = await db.execute(query.order_by(models.Booking.start_date.asc()))
    return list(result.scalars().all())


async def get_bike_availability(
        db: AsyncSession,
        org_id: int,
        bike_id: int,
        as_of: Optional[datetime] = None,
        now: Optional[datetime] = None
) -> AvailabilityProjection:
    now = dates.resolve_now(now)
    as_of = dates.to_local(as_of) if as_of is not None else now
    bike = await tenancy.get_bike(db, org_id, bike_id)
    bookings = await load_open_bookings(db, org_id, bike_id)

    projection = project_availability(bike, bookings, as_of, now=now)
    logger.info(
        f"Bike {bike_id} availability at {as_of}: available={projection.is_available_now}, "
        f"next={projection.next_available_date}"
    )
    return projection
