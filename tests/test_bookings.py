"""
Booking lifecycle: creation checks, delivery, return, cancellation and payments.
"""
import pytest

from fleet_service.app import bikes, bookings, dates, schemas, tenancy
from fleet_service.app.enums import BikeStatus, BookingStatus, FuelLevel, PaymentMethod
from fleet_service.app.errors import (
    AlreadyDelivered, BikeInMaintenance, InvalidDateRange, InvalidStatus, NotFound, PastDate, ValidationFailed
)

from conftest import ORG_ID, OTHER_ORG_ID, booking_request, day


def delivery(**extra):
    return schemas.DeliveryCreate(
        fuel_level_start=extra.pop("fuel_level_start", FuelLevel.FULL),
        odometer_start=extra.pop("odometer_start", 12000),
        **extra
    )


def test_phone_is_normalized():
    assert booking_request(1, day(1), day(2), phone="098765 43210").phone == "+919876543210"
    assert booking_request(1, day(1), day(2), phone="+91 98765-43210").phone == "+919876543210"

    with pytest.raises(ValueError):
        booking_request(1, day(1), day(2), phone="12345")


async def test_booking_starting_today_is_active(db, bike_factory):
    bike = await bike_factory()

    booking = await bookings.create_booking(db, ORG_ID, booking_request(bike.id, day(3), day(5)), now=day(3, 15))

    assert booking.status == BookingStatus.ACTIVE
    assert booking.start_date == dates.start_of_day(day(3))
    assert booking.end_date == dates.end_of_day(day(5))
    assert (await tenancy.get_bike(db, ORG_ID, bike.id)).status == BikeStatus.RENTED


async def test_future_booking_is_upcoming(db, bike_factory):
    bike = await bike_factory()

    booking = await bookings.create_booking(db, ORG_ID, booking_request(bike.id, day(6), day(8)), now=day(3, 15))

    assert booking.status == BookingStatus.UPCOMING
    assert (await tenancy.get_bike(db, ORG_ID, bike.id)).status == BikeStatus.AVAILABLE


async def test_total_amount_defaults_to_days_times_rate(db, bike_factory):
    bike = await bike_factory(daily_rate=400.0)

    booking = await bookings.create_booking(db, ORG_ID, booking_request(bike.id, day(3), day(5)), now=day(1))

    assert booking.total_amount == 1200.0
    assert booking.paid_amount == 0


async def test_advance_payment_is_recorded(db, bike_factory):
    bike = await bike_factory()

    booking = await bookings.create_booking(
        db, ORG_ID, booking_request(bike.id, day(3), day(5), paid_amount=500), now=day(1)
    )
    payments = await bookings.list_payments(db, ORG_ID, booking.id)

    assert booking.payment_method == PaymentMethod.CASH
    assert [p.amount for p in payments] == [500]


async def test_start_in_the_past_is_rejected(db, bike_factory):
    bike = await bike_factory()

    with pytest.raises(PastDate):
        await bookings.create_booking(db, ORG_ID, booking_request(bike.id, day(2), day(5)), now=day(3))


async def test_end_before_start_is_rejected(db, bike_factory):
    bike = await bike_factory()

    with pytest.raises(InvalidDateRange):
        await bookings.create_booking(db, ORG_ID, booking_request(bike.id, day(6), day(5)), now=day(1))


async def test_bike_in_maintenance_cannot_be_booked(db, bike_factory):
    bike = await bike_factory(status=BikeStatus.MAINTENANCE)

    with pytest.raises(BikeInMaintenance):
        await bookings.create_booking(db, ORG_ID, booking_request(bike.id, day(3), day(5)), now=day(1))


async def test_bike_of_another_organization_is_not_found(db, bike_factory):
    bike = await bike_factory(org_id=OTHER_ORG_ID)

    with pytest.raises(NotFound):
        await bookings.create_booking(db, ORG_ID, booking_request(bike.id, day(3), day(5)), now=day(1))

    assert await bookings.list_bookings(db, OTHER_ORG_ID) == []


async def test_booking_of_another_organization_is_not_found(db, bike_factory):
    bike = await bike_factory()
    booking = await bookings.create_booking(db, ORG_ID, booking_request(bike.id, day(3), day(5)), now=day(1))

    with pytest.raises(NotFound):
        await tenancy.get_booking(db, OTHER_ORG_ID, booking.id)
    with pytest.raises(NotFound):
        await bookings.cancel_booking(db, OTHER_ORG_ID, booking.id, now=day(1))


async def test_update_changes_contact_without_touching_dates(db, bike_factory):
    bike = await bike_factory()
    booking = await bookings.create_booking(db, ORG_ID, booking_request(bike.id, day(3), day(5)), now=day(1))

    # Даты не меняются, поэтому прошедшее начало не мешает
    updated = await bookings.update_booking(
        db, ORG_ID, booking.id,
        schemas.BookingUpdate(customer_name="Ravi K.", phone="9123456789"),
        now=day(4)
    )

    assert updated.customer_name == "Ravi K."
    assert updated.phone == "+919123456789"
    assert updated.start_date == dates.start_of_day(day(3))


async def test_update_moving_start_into_the_past_is_rejected(db, bike_factory):
    bike = await bike_factory()
    booking = await bookings.create_booking(db, ORG_ID, booking_request(bike.id, day(5), day(7)), now=day(1))

    with pytest.raises(PastDate):
        await bookings.update_booking(
            db, ORG_ID, booking.id, schemas.BookingUpdate(start_date=day(2)), now=day(3)
        )


async def test_update_cannot_rewrite_paid_amount(db, bike_factory):
    bike = await bike_factory()
    booking = await bookings.create_booking(
        db, ORG_ID, booking_request(bike.id, day(3), day(5), paid_amount=1000), now=day(1)
    )

    assert "paid_amount" not in schemas.BookingUpdate.model_fields
    updated = await bookings.update_booking(
        db, ORG_ID, booking.id, schemas.BookingUpdate(paid_amount=200, notes="Helmet requested"), now=day(1)
    )
    payments = await bookings.list_payments(db, ORG_ID, booking.id)

    assert updated.notes == "Helmet requested"
    assert updated.paid_amount == 1000
    assert sum(p.amount for p in payments) == updated.paid_amount


async def test_moving_dates_of_bike_in_maintenance_is_rejected(db, bike_factory):
    bike = await bike_factory()
    booking = await bookings.create_booking(db, ORG_ID, booking_request(bike.id, day(5), day(6)), now=day(1))
    await bikes.toggle_maintenance(db, ORG_ID, bike.id, now=day(2))

    with pytest.raises(BikeInMaintenance):
        await bookings.update_booking(
            db, ORG_ID, booking.id, schemas.BookingUpdate(start_date=day(7), end_date=day(8)), now=day(2)
        )

    # Без смены дат бронь по-прежнему можно править
    updated = await bookings.update_booking(
        db, ORG_ID, booking.id, schemas.BookingUpdate(customer_name="Anita Rao"), now=day(2)
    )
    assert updated.start_date == dates.start_of_day(day(5))


async def test_deliver_activates_booking_and_rents_bike(db, bike_factory):
    bike = await bike_factory()
    booking = await bookings.create_booking(db, ORG_ID, booking_request(bike.id, day(5), day(7)), now=day(1))

    delivered = await bookings.deliver_bike(
        db, ORG_ID, booking.id, delivery(helmets_given=2, id_verified=True), delivered_by=7, now=day(4, 18)
    )

    assert delivered.status == BookingStatus.ACTIVE
    assert delivered.delivered_at == day(4, 18)
    assert delivered.delivered_by_id == 7
    assert delivered.helmets_given == 2
    assert (await tenancy.get_bike(db, ORG_ID, bike.id)).status == BikeStatus.RENTED


async def test_second_delivery_is_rejected(db, bike_factory):
    bike = await bike_factory()
    booking = await bookings.create_booking(db, ORG_ID, booking_request(bike.id, day(3), day(5)), now=day(3))
    await bookings.deliver_bike(db, ORG_ID, booking.id, delivery(), now=day(3, 10))

    with pytest.raises(AlreadyDelivered):
        await bookings.deliver_bike(db, ORG_ID, booking.id, delivery(), now=day(3, 11))


async def test_cancelled_booking_cannot_be_delivered(db, bike_factory):
    bike = await bike_factory()
    booking = await bookings.create_booking(db, ORG_ID, booking_request(bike.id, day(3), day(5)), now=day(1))
    await bookings.cancel_booking(db, ORG_ID, booking.id, now=day(1))

    with pytest.raises(InvalidStatus):
        await bookings.deliver_bike(db, ORG_ID, booking.id, delivery(), now=day(3))


async def test_mark_returned_settles_and_frees_bike(db, bike_factory):
    bike = await bike_factory(daily_rate=500.0)
    booking = await bookings.create_booking(
        db, ORG_ID, booking_request(bike.id, day(1), day(5), paid_amount=1000), now=day(1, 9)
    )
    await bookings.deliver_bike(db, ORG_ID, booking.id, delivery(odometer_start=12000), now=day(1, 10))

    returned_at = day(8, 11)
    booking, bike, result = await bookings.mark_returned(
        db, ORG_ID, booking.id,
        schemas.ReturnCreate(
            returned_at=returned_at,
            odometer_end=12450,
            fuel_level_end=FuelLevel.HALF,
            fines_amount=300,
            fines_note="Traffic fine",
            additional_payment=2000
        ),
        received_by=7,
        now=day(8, 11)
    )

    assert result.overdue_days == 3
    assert result.distance_used == 450
    assert booking.status == BookingStatus.RETURNED
    assert booking.end_date == returned_at
    assert booking.total_amount == 2500 + 1500 + 300
    assert booking.paid_amount == 3000
    assert booking.notes.endswith("Traffic fine")
    assert bike.status == BikeStatus.AVAILABLE

    payments = await bookings.list_payments(db, ORG_ID, booking.id)
    assert [p.amount for p in payments] == [1000, 2000]


async def test_returned_booking_cannot_be_returned_again(db, bike_factory):
    bike = await bike_factory()
    booking = await bookings.create_booking(db, ORG_ID, booking_request(bike.id, day(1), day(5)), now=day(1, 9))
    await bookings.mark_returned(db, ORG_ID, booking.id, schemas.ReturnCreate(), now=day(5, 12))

    with pytest.raises(InvalidStatus):
        await bookings.mark_returned(db, ORG_ID, booking.id, schemas.ReturnCreate(), now=day(5, 13))


async def test_odometer_cannot_go_backwards(db, bike_factory):
    bike = await bike_factory()
    booking = await bookings.create_booking(db, ORG_ID, booking_request(bike.id, day(1), day(5)), now=day(1, 9))
    await bookings.deliver_bike(db, ORG_ID, booking.id, delivery(odometer_start=12000), now=day(1, 10))

    with pytest.raises(ValidationFailed):
        await bookings.mark_returned(
            db, ORG_ID, booking.id, schemas.ReturnCreate(odometer_end=11000), now=day(5, 12)
        )


async def test_early_return_frees_the_following_days(db, bike_factory):
    bike = await bike_factory()
    booking = await bookings.create_booking(db, ORG_ID, booking_request(bike.id, day(1), day(10)), now=day(1, 9))
    await bookings.mark_returned(db, ORG_ID, booking.id, schemas.ReturnCreate(), now=day(4, 12))

    second = await bookings.create_booking(db, ORG_ID, booking_request(bike.id, day(5), day(7)), now=day(4, 13))

    assert second.status == BookingStatus.UPCOMING


async def test_cancel_frees_the_bike(db, bike_factory):
    bike = await bike_factory()
    booking = await bookings.create_booking(db, ORG_ID, booking_request(bike.id, day(1), day(5)), now=day(1, 9))

    cancelled = await bookings.cancel_booking(db, ORG_ID, booking.id, now=day(2))

    assert cancelled.status == BookingStatus.CANCELLED
    assert (await tenancy.get_bike(db, ORG_ID, bike.id)).status == BikeStatus.AVAILABLE
    with pytest.raises(InvalidStatus):
        await bookings.cancel_booking(db, ORG_ID, booking.id, now=day(2))


async def test_deleted_booking_disappears(db, bike_factory):
    bike = await bike_factory()
    booking = await bookings.create_booking(db, ORG_ID, booking_request(bike.id, day(1), day(5)), now=day(1, 9))

    await bookings.delete_booking(db, ORG_ID, booking.id, now=day(2))

    with pytest.raises(NotFound):
        await tenancy.get_booking(db, ORG_ID, booking.id)
    assert await bookings.list_bookings(db, ORG_ID) == []
    assert (await tenancy.get_bike(db, ORG_ID, bike.id)).status == BikeStatus.AVAILABLE


async def test_returned_booking_cannot_be_deleted(db, bike_factory):
    bike = await bike_factory()
    booking = await bookings.create_booking(db, ORG_ID, booking_request(bike.id, day(1), day(5)), now=day(1, 9))
    await bookings.mark_returned(db, ORG_ID, booking.id, schemas.ReturnCreate(), now=day(5, 12))

    with pytest.raises(InvalidStatus):
        await bookings.delete_booking(db, ORG_ID, booking.id, now=day(6))


async def test_list_bookings_filters_by_status(db, bike_factory):
    bike = await bike_factory()
    active = await bookings.create_booking(db, ORG_ID, booking_request(bike.id, day(1), day(3)), now=day(1, 9))
    upcoming = await bookings.create_booking(db, ORG_ID, booking_request(bike.id, day(6), day(8)), now=day(1, 9))

    assert [b.id for b in await bookings.list_bookings(db, ORG_ID, status=BookingStatus.UPCOMING)] == [upcoming.id]
    assert [b.id for b in await bookings.list_bookings(db, ORG_ID)] == [upcoming.id, active.id]


async def test_record_payment_updates_paid_amount(db, bike_factory):
    bike = await bike_factory()
    booking = await bookings.create_booking(db, ORG_ID, booking_request(bike.id, day(1), day(5)), now=day(1, 9))

    payment = await bookings.record_payment(
        db, ORG_ID, booking.id, schemas.PaymentCreate(amount=750, method=PaymentMethod.UPI), now=day(2)
    )
    booking = await tenancy.get_booking(db, ORG_ID, booking.id)

    assert payment.method == PaymentMethod.UPI
    assert booking.paid_amount == 750
    assert booking.payment_method == PaymentMethod.UPI


async def test_payment_for_cancelled_booking_is_rejected(db, bike_factory):
    bike = await bike_factory()
    booking = await bookings.create_booking(db, ORG_ID, booking_request(bike.id, day(3), day(5)), now=day(1))
    await bookings.cancel_booking(db, ORG_ID, booking.id, now=day(1))

    with pytest.raises(InvalidStatus):
        await bookings.record_payment(db, ORG_ID, booking.id, schemas.PaymentCreate(amount=300), now=day(2))

    assert await bookings.list_payments(db, ORG_ID, booking.id) == []


async def test_balance_can_be_paid_after_return(db, bike_factory):
    bike = await bike_factory()
    booking = await bookings.create_booking(db, ORG_ID, booking_request(bike.id, day(1), day(2)), now=day(1, 9))
    await bookings.mark_returned(db, ORG_ID, booking.id, schemas.ReturnCreate(), now=day(2, 18))

    await bookings.record_payment(db, ORG_ID, booking.id, schemas.PaymentCreate(amount=1000), now=day(3))

    assert (await tenancy.get_booking(db, ORG_ID, booking.id)).paid_amount == 1000
