from enum import Enum


class BikeStatus(str, Enum):
    AVAILABLE = "AVAILABLE"
    RENTED = "RENTED"
    MAINTENANCE = "MAINTENANCE"


class BookingStatus(str, Enum):
    UPCOMING = "UPCOMING"
    ACTIVE = "ACTIVE"
    RETURNED = "RETURNED"
    CANCELLED = "CANCELLED"


class FuelLevel(str, Enum):
    FULL = "FULL"
    THREE_QUARTER = "THREE_QUARTER"
    HALF = "HALF"
    QUARTER = "QUARTER"
    LOW = "LOW"


class PaymentMethod(str, Enum):
    CASH = "CASH"
    UPI = "UPI"
    CARD = "CARD"
    BANK_TRANSFER = "BANK_TRANSFER"


# Брони, которые занимают велосипед (еще не завершены)
OPEN_BOOKING_STATUSES = (BookingStatus.UPCOMING, BookingStatus.ACTIVE)
TERMINAL_BOOKING_STATUSES = (BookingStatus.RETURNED, BookingStatus.CANCELLED)
