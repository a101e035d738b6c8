from typing import Optional

from fastapi import status


class FleetError(Exception):
    """Базовая ошибка предметной области: статус HTTP, код для фронтенда и детали."""

    status_code = status.HTTP_400_BAD_REQUEST
    code = "ERROR"
    message = "Request failed"

    def __init__(self, message: Optional[str] = None, details: Optional[dict] = None):
        self.message = message or self.message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict:
        payload = {"success": False, "error": self.message, "code": self.code}
        if self.details:
            payload["details"] = self.details
        return payload


class NotFound(FleetError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"

    def __init__(self, resource: str = "Resource"):
        super().__init__(f"{resource} not found")


class MissingFields(FleetError):
    code = "MISSING_FIELDS"
    message = "Missing required fields"

    def __init__(self, fields):
        super().__init__(
            f"Missing required fields: {', '.join(fields)}",
            details={"fields": list(fields)}
        )


class ValidationFailed(FleetError):
    code = "VALIDATION_ERROR"
    message = "Validation failed"


class InvalidDateRange(FleetError):
    code = "INVALID_DATE_RANGE"
    message = "End date must not be before start date"


class PastDate(FleetError):
    code = "PAST_DATE"
    message = "Start date cannot be in the past"


class BookingOverlap(FleetError):
    status_code = status.HTTP_409_CONFLICT
    code = "BOOKING_OVERLAP"
    message = "Bike already booked for selected date range"


class DuplicateRegistration(FleetError):
    status_code = status.HTTP_409_CONFLICT
    code = "ALREADY_EXISTS"
    message = "Bike with this registration number already exists"


class BikeInMaintenance(FleetError):
    status_code = status.HTTP_409_CONFLICT
    code = "BIKE_IN_MAINTENANCE"
    message = "Bike is under maintenance"


class BikeRented(FleetError):
    status_code = status.HTTP_409_CONFLICT
    code = "BIKE_RENTED"
    message = "Bike is currently rented"


class AlreadyDelivered(FleetError):
    status_code = status.HTTP_409_CONFLICT
    code = "ALREADY_DELIVERED"
    message = "Bike has already been delivered for this booking"


class InvalidStatus(FleetError):
    status_code = status.HTTP_409_CONFLICT
    code = "INVALID_STATUS"
    message = "Operation not allowed in current booking status"


class ActiveBookingsExist(FleetError):
    status_code = status.HTTP_409_CONFLICT
    code = "ACTIVE_BOOKINGS_EXIST"
    message = "Bike has active or upcoming bookings"


class BikeLimitReached(FleetError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "BIKE_LIMIT_REACHED"
    message = "Bike limit for current plan reached"
