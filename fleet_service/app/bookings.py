"""Жизненный цикл брони: UPCOMING -> ACTIVE -> RETURNED, отмена и мягкое удаление.

Каждая операция выполняется одной транзакцией: при ошибке ничего не сохраняется.
Запись дат брони идет под блокировкой строки велосипеда, поэтому две параллельные
брони одного велосипеда не могут обе пройти проверку пересечения.
"""
import logging
import math
from datetime import datetime
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from . import bike_status, dates, models, overlap, schemas, settlement, tenancy
from .enums import BikeStatus, BookingStatus, PaymentMethod, TERMINAL_BOOKING_STATUSES
from .errors import (
    AlreadyDelivered, BikeInMaintenance, InvalidDateRange, InvalidStatus, PastDate, ValidationFailed
)

logger = logging.getLogger(__name__)


def booking_days(start: datetime, end: datetime) -> int:
    return max(1, math.ceil((end - start).total_seconds() / 86400))


def initial_status(start: datetime, now: datetime) -> BookingStatus:
    # Бронь с сегодняшнего дня (или раньше) сразу занимает велосипед
    return BookingStatus.UPCOMING if start.date() > now.date() else BookingStatus.ACTIVE


def normalize_range(start, end):
    start = dates.start_of_day(start)
    end = dates.end_of_day(end)
    if end < start:
        raise InvalidDateRange()
    return start, end


def append_note(notes: Optional[str], note: str) -> str:
    return f"{notes}\n{note}" if notes else note


async def list_bookings(
        db: AsyncSession,
        org_id: int,
        status: Optional[BookingStatus] = None,
        bike_id: Optional[int] = None
) -> List[models.Booking]:
    query = select(models.Booking).where(
        models.Booking.organization_id == org_id,
        models.Booking.is_deleted == False  # noqa: E712
    )
    if status is not None:
        query = query.where(models.Booking.status == status)
    if bike_id is not None:
        query = query.where(models.Booking.bike_id == bike_id)

    result = await db.execute(query.order_by(models.Booking.start_date.desc()))
    return list(result.scalars().all())


async def create_booking(
        db: AsyncSession,
        org_id: int,
        data: schemas.BookingCreate,
        now: Optional[datetime] = None
) -> models.Booking:
    now = dates.resolve_now(now)
    start, end = normalize_range(data.start_date, data.end_date)
    if start.date() < now.date():
        raise PastDate()

    bike = await tenancy.get_bike(db, org_id, data.bike_id, for_update=True)
    if bike.status == BikeStatus.MAINTENANCE:
        raise BikeInMaintenance()

    await overlap.check_overlap(db, bike.id, org_id, start, end, now=now)

    total_amount = data.total_amount or booking_days(start, end) * bike.daily_rate
    paid_amount = data.paid_amount or 0.0
    payment_method = data.payment_method
    if paid_amount > 0 and payment_method is None:
        payment_method = PaymentMethod.CASH

    booking = models.Booking(
        organization_id=org_id,
        bike_id=bike.id,
        customer_name=data.customer_name,
        phone=data.phone,
        start_date=start,
        end_date=end,
        status=initial_status(start, now),
        notes=data.notes or "",
        total_amount=total_amount,
        paid_amount=paid_amount,
        payment_method=payment_method,
        payment_notes=data.payment_notes
    )
    db.add(booking)
    await db.flush()

    if paid_amount > 0:
        db.add(models.Payment(
            booking_id=booking.id,
            amount=paid_amount,
            method=payment_method,
            date=now,
            notes=data.payment_notes
        ))

    await bike_status.reconcile(db, bike.id, org_id, now=now, commit=False)
    await db.commit()
    await db.refresh(booking)

    logger.info(
        f"Booking {booking.id} created for bike {bike.id}: {start.date()}..{end.date()}, "
        f"status={booking.status.value}, total={total_amount:.2f}"
    )
    return booking


async def update_booking(
        db: AsyncSession,
        org_id: int,
        booking_id: int,
        data: schemas.BookingUpdate,
        now: Optional[datetime] = None
) -> models.Booking:
    now = dates.resolve_now(now)
    booking = await tenancy.get_booking(db, org_id, booking_id)
    if booking.status in TERMINAL_BOOKING_STATUSES:
        raise InvalidStatus(f"Cannot update a {booking.status.value.lower()} booking")

    update_data = {k: v for k, v in data.dict(exclude_unset=True).items() if v is not None}

    new_start = dates.start_of_day(update_data["start_date"]) if "start_date" in update_data else booking.start_date
    new_end = dates.end_of_day(update_data["end_date"]) if "end_date" in update_data else booking.end_date

    # Проверки дат только если даты действительно меняются
    if new_start != booking.start_date or new_end != booking.end_date:
        if new_end < new_start:
            raise InvalidDateRange()
        if new_start != booking.start_date and new_start.date() < now.date():
            raise PastDate()

        bike = await tenancy.get_bike(db, org_id, booking.bike_id, for_update=True)
        if bike.status == BikeStatus.MAINTENANCE:
            raise BikeInMaintenance()

        await overlap.check_overlap(
            db, booking.bike_id, org_id, new_start, new_end, exclude_booking_id=booking.id, now=now
        )

        booking.start_date = new_start
        booking.end_date = new_end
        if booking.delivered_at is None:
            booking.status = initial_status(new_start, now)

    for field in ("customer_name", "phone", "total_amount", "notes"):
        if field in update_data:
            setattr(booking, field, update_data[field])

    await bike_status.reconcile(db, booking.bike_id, org_id, now=now, commit=False)
    await db.commit()
    await db.refresh(booking)

    logger.info(f"Booking {booking.id} updated: {', '.join(update_data) or 'no changes'}")
    return booking


async def deliver_bike(
        db: AsyncSession,
        org_id: int,
        booking_id: int,
        data: schemas.DeliveryCreate,
        delivered_by: Optional[int] = None,
        now: Optional[datetime] = None
) -> models.Booking:
    """Выдача велосипеда клиенту: фиксирует состояние на старте и переводит бронь в ACTIVE."""
    now = dates.resolve_now(now)
    booking = await tenancy.get_booking(db, org_id, booking_id)
    if booking.delivered_at is not None:
        raise AlreadyDelivered()
    if booking.status in TERMINAL_BOOKING_STATUSES:
        raise InvalidStatus(f"Cannot deliver a {booking.status.value.lower()} booking")

    booking.delivered_at = now
    booking.delivered_by_id = delivered_by
    booking.fuel_level_start = data.fuel_level_start
    booking.odometer_start = data.odometer_start
    booking.helmets_given = data.helmets_given
    booking.existing_damages = data.existing_damages
    booking.id_verified = data.id_verified
    booking.security_deposit = data.security_deposit
    booking.delivery_photos = list(data.photos)
    booking.status = BookingStatus.ACTIVE

    await bike_status.reconcile(db, booking.bike_id, org_id, now=now, commit=False)
    await db.commit()
    await db.refresh(booking)

    logger.info(f"Booking {booking.id}: bike {booking.bike_id} delivered, odometer {data.odometer_start}")
    return booking


async def mark_returned(
        db: AsyncSession,
        org_id: int,
        booking_id: int,
        data: schemas.ReturnCreate,
        received_by: Optional[int] = None,
        now: Optional[datetime] = None
):
    """Возврат велосипеда: расчет доплат, перевод брони в RETURNED, пересчет статуса велосипеда.

    Возвращает (booking, bike, settlement).
    """
    now = dates.resolve_now(now)
    returned_at = dates.to_local(data.returned_at) if data.returned_at is not None else now

    booking = await tenancy.get_booking(db, org_id, booking_id)
    if booking.status in TERMINAL_BOOKING_STATUSES:
        raise InvalidStatus(f"Booking is already {booking.status.value.lower()}")
    if (
        data.odometer_end is not None
        and booking.odometer_start is not None
        and data.odometer_end < booking.odometer_start
    ):
        raise ValidationFailed("Odometer reading at return cannot be lower than at delivery")

    bike = await tenancy.get_bike(db, org_id, booking.bike_id, for_update=True)
    result = settlement.calculate_settlement(booking, bike.daily_rate, data, returned_at)

    booking.late_fee = result.overdue_fee
    booking.fuel_charge = result.fuel_charge
    booking.damage_charge = result.damage_charge
    booking.extra_km_charge = result.extra_km_charge
    booking.total_amount = result.new_total
    booking.paid_amount = result.new_paid
    if data.fines_note:
        booking.notes = append_note(booking.notes, data.fines_note)

    booking.returned_at = returned_at
    booking.received_by_id = received_by
    booking.odometer_end = data.odometer_end
    booking.fuel_level_end = data.fuel_level_end
    booking.helmets_returned = data.helmets_returned
    booking.new_damages = data.new_damages
    # Окно занятости заканчивается фактическим возвратом
    booking.end_date = max(returned_at, booking.start_date)
    booking.status = BookingStatus.RETURNED

    if data.additional_payment:
        db.add(models.Payment(
            booking_id=booking.id,
            amount=data.additional_payment,
            method=data.payment_method or PaymentMethod.CASH,
            date=now,
            notes="Paid at return"
        ))

    await bike_status.reconcile(db, bike.id, org_id, now=now, commit=False)
    await db.commit()
    await db.refresh(booking)
    await db.refresh(bike)

    logger.info(
        f"Booking {booking.id} returned: overdue {result.overdue_days}d, "
        f"extra charges {result.extra_charges:.2f}, balance {result.balance_due:.2f}"
    )
    return booking, bike, result


async def cancel_booking(
        db: AsyncSession,
        org_id: int,
        booking_id: int,
        now: Optional[datetime] = None
) -> models.Booking:
    now = dates.resolve_now(now)
    booking = await tenancy.get_booking(db, org_id, booking_id)
    if booking.status in TERMINAL_BOOKING_STATUSES:
        raise InvalidStatus(f"Cannot cancel a {booking.status.value.lower()} booking")

    booking.status = BookingStatus.CANCELLED
    await bike_status.reconcile(db, booking.bike_id, org_id, now=now, commit=False)
    await db.commit()
    await db.refresh(booking)

    logger.info(f"Booking {booking.id} cancelled")
    return booking


async def delete_booking(
        db: AsyncSession,
        org_id: int,
        booking_id: int,
        now: Optional[datetime] = None
):
    now = dates.resolve_now(now)
    booking = await tenancy.get_booking(db, org_id, booking_id)
    # После расчета при возврате бронь удалять нельзя
    if booking.status == BookingStatus.RETURNED:
        raise InvalidStatus("Cannot delete a returned booking")

    booking.is_deleted = True
    booking.deleted_at = now
    await bike_status.reconcile(db, booking.bike_id, org_id, now=now, commit=False)
    await db.commit()

    logger.info(f"Booking {booking.id} deleted")


async def record_payment(
        db: AsyncSession,
        org_id: int,
        booking_id: int,
        data: schemas.PaymentCreate,
        now: Optional[datetime] = None
) -> models.Payment:
    now = dates.resolve_now(now)
    booking = await tenancy.get_booking(db, org_id, booking_id)
    # Доплата после возврата допустима, по отмененной брони деньги не принимаются
    if booking.status == BookingStatus.CANCELLED:
        raise InvalidStatus("Cannot record a payment for a cancelled booking")

    payment = models.Payment(
        booking_id=booking.id,
        amount=data.amount,
        method=data.method,
        date=now,
        notes=data.notes
    )
    db.add(payment)
    booking.paid_amount = (booking.paid_amount or 0.0) + data.amount
    booking.payment_method = data.method

    await db.commit()
    await db.refresh(payment)

    logger.info(f"Payment {payment.id} of {data.amount:.2f} recorded for booking {booking.id}")
    return payment


async def list_payments(db: AsyncSession, org_id: int, booking_id: int) -> List[models.Payment]:
    booking = await tenancy.get_booking(db, org_id, booking_id)
    result = await db.execute(
        select(models.Payment)
        .where(models.Payment.booking_id == booking.id)
        .order_by(models.Payment.date.asc(), models.Payment.id.asc())
    )
    return list(result.scalars().all())
