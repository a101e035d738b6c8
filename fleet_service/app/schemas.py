import re
from pydantic import BaseModel, Field, validator
from datetime import date, datetime
from typing import List, Optional

from .enums import BikeStatus, BookingStatus, FuelLevel, PaymentMethod

PHONE_PATTERN = re.compile(r"^[6-9]\d{9}$")


def normalize_phone(value: str) -> str:
    """Приводит индийский мобильный номер к формату +91XXXXXXXXXX."""
    cleaned = re.sub(r"[^\d+]", "", value or "")
    if cleaned.startswith("+91"):
        cleaned = cleaned[3:]
    elif cleaned.startswith("91") and len(cleaned) > 10:
        cleaned = cleaned[2:]
    elif cleaned.startswith("0"):
        cleaned = cleaned[1:]

    if not PHONE_PATTERN.match(cleaned):
        raise ValueError("Please enter a valid 10-digit Indian mobile number")
    return f"+91{cleaned}"


def normalize_registration(value: str) -> str:
    cleaned = re.sub(r"\s", "", value or "").upper()
    if not cleaned:
        raise ValueError("Registration number is required")
    if len(cleaned) > 20:
        raise ValueError("Registration number is too long")
    return cleaned


def check_year(value: Optional[int]) -> Optional[int]:
    if value is not None and not 1900 <= value <= date.today().year + 1:
        raise ValueError("Invalid manufacturing year")
    return value


# ---------- Bikes ----------

class BikeBase(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    model: Optional[str] = Field(None, max_length=100)
    registration_number: str
    year: Optional[int] = None
    daily_rate: float = Field(..., gt=0)

    @validator("registration_number")
    def normalize_registration_number(cls, v):
        return normalize_registration(v)

    @validator("year")
    def validate_year(cls, v):
        return check_year(v)


class BikeCreate(BikeBase):
    pass


class BikeUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=100)
    model: Optional[str] = Field(None, max_length=100)
    registration_number: Optional[str] = None
    year: Optional[int] = None
    daily_rate: Optional[float] = Field(None, gt=0)

    @validator("registration_number")
    def normalize_registration_number(cls, v):
        return normalize_registration(v) if v is not None else v

    @validator("year")
    def validate_year(cls, v):
        return check_year(v)


class Bike(BikeBase):
    id: int
    organization_id: int
    status: BikeStatus
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


# ---------- Bookings ----------

class BookingCreate(BaseModel):
    bike_id: int
    customer_name: str = Field(..., min_length=2, max_length=100)
    phone: str
    start_date: datetime
    end_date: datetime
    total_amount: Optional[float] = Field(None, gt=0)
    paid_amount: Optional[float] = Field(None, ge=0)
    notes: Optional[str] = Field(None, max_length=500)
    payment_method: Optional[PaymentMethod] = None
    payment_notes: Optional[str] = Field(None, max_length=500)

    @validator("phone")
    def validate_phone(cls, v):
        return normalize_phone(v)


class BookingUpdate(BaseModel):
    """Частичное обновление: меняются только переданные поля.

    Оплаченная сумма здесь не меняется, оплаты проводятся через платежи брони.
    """
    customer_name: Optional[str] = Field(None, min_length=2, max_length=100)
    phone: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    total_amount: Optional[float] = Field(None, gt=0)
    notes: Optional[str] = Field(None, max_length=500)

    @validator("phone")
    def validate_phone(cls, v):
        return normalize_phone(v) if v is not None else v


class DeliveryCreate(BaseModel):
    fuel_level_start: FuelLevel
    odometer_start: float = Field(..., ge=0)
    helmets_given: int = Field(0, ge=0, le=4)
    existing_damages: Optional[str] = Field(None, max_length=1000)
    id_verified: bool = False
    security_deposit: Optional[float] = Field(None, ge=0)
    photos: List[str] = []


class ReturnCreate(BaseModel):
    returned_at: Optional[datetime] = None
    odometer_end: Optional[float] = Field(None, ge=0)
    fuel_level_end: Optional[FuelLevel] = None
    helmets_returned: Optional[int] = Field(None, ge=0, le=4)
    new_damages: Optional[str] = Field(None, max_length=1000)
    # Явный штраф за просрочку заменяет расчетный
    late_fee: Optional[float] = Field(None, ge=0)
    fuel_charge: Optional[float] = Field(None, ge=0)
    damage_charge: Optional[float] = Field(None, ge=0)
    extra_km_charge: Optional[float] = Field(None, ge=0)
    fines_amount: Optional[float] = Field(None, ge=0)
    fines_note: Optional[str] = Field(None, max_length=500)
    additional_payment: Optional[float] = Field(None, ge=0)
    payment_method: Optional[PaymentMethod] = None


class Booking(BaseModel):
    id: int
    organization_id: int
    bike_id: int
    customer_name: str
    phone: str
    start_date: datetime
    end_date: datetime
    status: BookingStatus
    notes: Optional[str] = None
    total_amount: float
    paid_amount: float
    payment_method: Optional[PaymentMethod] = None
    payment_notes: Optional[str] = None
    security_deposit: Optional[float] = None
    late_fee: Optional[float] = None
    fuel_charge: Optional[float] = None
    damage_charge: Optional[float] = None
    extra_km_charge: Optional[float] = None
    delivered_at: Optional[datetime] = None
    odometer_start: Optional[float] = None
    fuel_level_start: Optional[FuelLevel] = None
    helmets_given: Optional[int] = None
    existing_damages: Optional[str] = None
    id_verified: bool = False
    delivery_photos: Optional[List[str]] = None
    returned_at: Optional[datetime] = None
    odometer_end: Optional[float] = None
    fuel_level_end: Optional[FuelLevel] = None
    helmets_returned: Optional[int] = None
    new_damages: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class BookingBrief(BaseModel):
    id: int
    bike_id: int
    customer_name: str
    phone: str
    start_date: datetime
    end_date: datetime
    status: BookingStatus

    class Config:
        from_attributes = True


# ---------- Payments ----------

class PaymentCreate(BaseModel):
    amount: float = Field(..., gt=0)
    method: PaymentMethod = PaymentMethod.CASH
    notes: Optional[str] = Field(None, max_length=500)


class Payment(PaymentCreate):
    id: int
    booking_id: int
    date: datetime

    class Config:
        from_attributes = True


# ---------- Return / availability ----------

class Settlement(BaseModel):
    overdue_days: int
    overdue_fee: float
    fuel_charge: float
    damage_charge: float
    extra_km_charge: float
    fines: float
    extra_charges: float
    distance_used: Optional[float] = None
    new_total: float
    new_paid: float
    balance_due: float

    class Config:
        from_attributes = True


class ReturnResult(BaseModel):
    message: str = "Marked as returned"
    booking: Booking
    bike: Bike
    settlement: Settlement


class Availability(BaseModel):
    bike_id: int
    bike_status: BikeStatus
    is_available_now: bool
    current_booking: Optional[BookingBrief] = None
    next_available_date: Optional[date] = None
    return_in_days: int = 0
    blocking_chain: List[BookingBrief] = []

    class Config:
        from_attributes = True


class BikeCounts(BaseModel):
    total: int
    available: int
    rented: int
    maintenance: int


class BookingCounts(BaseModel):
    active: int
    upcoming: int
    pending_returns: int
    due_today: int
    returned_today: int
    completed_this_month: int


class RevenueSummary(BaseModel):
    total: float
    this_month: float
    last_month: float
    # Неоплаченный остаток по незавершенным броням
    pending: float


class FleetSummary(BaseModel):
    bikes: BikeCounts
    bookings: BookingCounts
    revenue: RevenueSummary
    recent_bookings: List[BookingBrief]
    due_today_returns: List[BookingBrief]
    overdue_returns: List[BookingBrief]
