import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from . import bike_status, config, dates, models, schemas
from .enums import BikeStatus, BookingStatus, OPEN_BOOKING_STATUSES

logger = logging.getLogger(__name__)

OVERDUE_LIST_LIMIT = 10
RECENT_LIST_LIMIT = 5


def _brief(bookings):
    return [schemas.BookingBrief.model_validate(b) for b in bookings]


async def _count_returned(db: AsyncSession, org_id: int, since: datetime, until: datetime) -> int:
    result = await db.execute(
        select(func.count(models.Booking.id)).where(
            models.Booking.organization_id == org_id,
            models.Booking.status == BookingStatus.RETURNED,
            models.Booking.is_deleted == False,  # noqa: E712
            models.Booking.returned_at >= since,
            models.Booking.returned_at < until
        )
    )
    return result.scalar_one()


async def _sum_payments(db: AsyncSession, org_id: int, since: datetime, until: datetime) -> float:
    result = await db.execute(
        select(func.coalesce(func.sum(models.Payment.amount), 0.0))
        .join(models.Booking, models.Booking.id == models.Payment.booking_id)
        .where(
            models.Booking.organization_id == org_id,
            models.Booking.is_deleted == False,  # noqa: E712
            models.Payment.date >= since,
            models.Payment.date < until
        )
    )
    return float(result.scalar_one())


async def get_revenue(db: AsyncSession, org_id: int, now: datetime) -> schemas.RevenueSummary:
    """Выручка: всего оплачено, поступления за этот и прошлый месяц, неоплаченный остаток."""
    result = await db.execute(
        select(func.coalesce(func.sum(models.Booking.paid_amount), 0.0)).where(
            models.Booking.organization_id == org_id,
            models.Booking.is_deleted == False  # noqa: E712
        )
    )
    total = float(result.scalar_one())

    result = await db.execute(
        select(
            func.coalesce(func.sum(models.Booking.total_amount), 0.0),
            func.coalesce(func.sum(models.Booking.paid_amount), 0.0)
        ).where(
            models.Booking.organization_id == org_id,
            models.Booking.status.in_(OPEN_BOOKING_STATUSES),
            models.Booking.is_deleted == False  # noqa: E712
        )
    )
    open_total, open_paid = result.one()

    this_month = dates.month_start(now)
    return schemas.RevenueSummary(
        total=total,
        this_month=await _sum_payments(db, org_id, this_month, dates.next_month_start(now)),
        last_month=await _sum_payments(db, org_id, dates.previous_month_start(now), this_month),
        pending=float(open_total) - float(open_paid)
    )


async def get_fleet_summary(
        database,
        db: AsyncSession,
        org_id: int,
        now: Optional[datetime] = None,
        batch_size: int = config.RECONCILE_BATCH_SIZE
) -> schemas.FleetSummary:
    """Сводка по парку. Перед подсчетом статусы всех велосипедов синхронизируются."""
    now = dates.resolve_now(now)
    await bike_status.reconcile_organization(database, org_id, now=now, batch_size=batch_size)

    result = await db.execute(
        select(models.Bike.status, func.count(models.Bike.id))
        .where(
            models.Bike.organization_id == org_id,
            models.Bike.is_deleted == False  # noqa: E712
        )
        .group_by(models.Bike.status)
    )
    by_status = {status: count for status, count in result.all()}

    result = await db.execute(
        select(models.Booking).where(
            models.Booking.organization_id == org_id,
            models.Booking.status.in_(OPEN_BOOKING_STATUSES),
            models.Booking.is_deleted == False  # noqa: E712
        )
    )
    open_bookings = result.scalars().all()

    # Категории считаются по календарным дням, а не по сохраненному статусу
    today = now.date()
    active = upcoming = 0
    overdue, due_today = [], []
    for booking in open_bookings:
        start_day = booking.start_date.date()
        end_day = booking.end_date.date()
        if start_day > today:
            upcoming += 1
            continue
        active += 1
        if end_day < today:
            overdue.append(booking)
        elif end_day == today:
            due_today.append(booking)

    overdue.sort(key=lambda b: b.end_date)
    due_today.sort(key=lambda b: b.id)

    result = await db.execute(
        select(models.Booking)
        .where(
            models.Booking.organization_id == org_id,
            models.Booking.is_deleted == False  # noqa: E712
        )
        .order_by(models.Booking.created_at.desc(), models.Booking.id.desc())
        .limit(RECENT_LIST_LIMIT)
    )
    recent = result.scalars().all()

    day_start = dates.start_of_day(now)
    returned_today = await _count_returned(db, org_id, day_start, day_start + dates.ONE_DAY)
    completed_this_month = await _count_returned(
        db, org_id, dates.month_start(now), dates.next_month_start(now)
    )
    revenue = await get_revenue(db, org_id, now)

    logger.info(
        f"Fleet summary for organization {org_id}: {active} active, {upcoming} upcoming, "
        f"{len(overdue)} overdue"
    )
    return schemas.FleetSummary(
        bikes=schemas.BikeCounts(
            total=sum(by_status.values()),
            available=by_status.get(BikeStatus.AVAILABLE, 0),
            rented=by_status.get(BikeStatus.RENTED, 0),
            maintenance=by_status.get(BikeStatus.MAINTENANCE, 0)
        ),
        bookings=schemas.BookingCounts(
            active=active,
            upcoming=upcoming,
            pending_returns=len(overdue),
            due_today=len(due_today),
            returned_today=returned_today,
            completed_this_month=completed_this_month
        ),
        revenue=revenue,
        recent_bookings=_brief(recent),
        due_today_returns=_brief(due_today),
        overdue_returns=_brief(overdue[:OVERDUE_LIST_LIMIT])
    )
