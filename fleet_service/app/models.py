from sqlalchemy import (
    Column, Integer, DateTime, String, Float, Boolean, Text, JSON, ForeignKey, Index, UniqueConstraint, Enum
)
from datetime import datetime

from .database import Base
from .enums import BikeStatus, BookingStatus, FuelLevel, PaymentMethod

# Один объект типа на несколько колонок, чтобы тип в postgres создавался один раз
fuel_level_enum = Enum(FuelLevel, name="fuel_level")
payment_method_enum = Enum(PaymentMethod, name="payment_method")


class Organization(Base):
    __tablename__ = "organizations"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=True)
    plan = Column(String, default="free", nullable=False)
    bikes_limit = Column(Integer, default=10, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class Bike(Base):
    __tablename__ = "bikes"
    __table_args__ = (
        UniqueConstraint("organization_id", "registration_number", name="uq_bikes_org_registration"),
        Index("ix_bikes_org_status", "organization_id", "status"),
    )

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    model = Column(String, nullable=True)
    registration_number = Column(String, nullable=False)
    year = Column(Integer, nullable=True)
    daily_rate = Column(Float, nullable=False)
    status = Column(Enum(BikeStatus, name="bike_status"), default=BikeStatus.AVAILABLE, nullable=False)
    is_deleted = Column(Boolean, default=False, nullable=False)
    deleted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (
        Index("ix_bookings_org_status", "organization_id", "status"),
        Index("ix_bookings_org_bike_range", "organization_id", "bike_id", "start_date", "end_date"),
    )

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False, index=True)
    bike_id = Column(Integer, ForeignKey("bikes.id"), nullable=False, index=True)
    customer_name = Column(String, nullable=False)
    phone = Column(String, nullable=False)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)
    status = Column(Enum(BookingStatus, name="booking_status"), default=BookingStatus.UPCOMING, nullable=False)
    notes = Column(Text, default="")

    # Деньги
    total_amount = Column(Float, nullable=False)
    paid_amount = Column(Float, default=0, nullable=False)
    payment_method = Column(payment_method_enum, nullable=True)
    payment_notes = Column(Text, nullable=True)
    security_deposit = Column(Float, nullable=True)
    late_fee = Column(Float, nullable=True)
    fuel_charge = Column(Float, nullable=True)
    damage_charge = Column(Float, nullable=True)
    extra_km_charge = Column(Float, nullable=True)

    # Выдача велосипеда
    delivered_at = Column(DateTime, nullable=True)
    delivered_by_id = Column(Integer, nullable=True)
    odometer_start = Column(Float, nullable=True)
    fuel_level_start = Column(fuel_level_enum, nullable=True)
    helmets_given = Column(Integer, nullable=True)
    existing_damages = Column(Text, nullable=True)
    id_verified = Column(Boolean, default=False, nullable=False)
    delivery_photos = Column(JSON, nullable=True)

    # Возврат велосипеда
    returned_at = Column(DateTime, nullable=True)
    received_by_id = Column(Integer, nullable=True)
    odometer_end = Column(Float, nullable=True)
    fuel_level_end = Column(fuel_level_enum, nullable=True)
    helmets_returned = Column(Integer, nullable=True)
    new_damages = Column(Text, nullable=True)

    is_deleted = Column(Boolean, default=False, nullable=False)
    deleted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False, index=True)
    amount = Column(Float, nullable=False)
    method = Column(payment_method_enum, nullable=False)
    date = Column(DateTime, nullable=False)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
