from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from . import dates


@dataclass
class SettlementResult:
    overdue_days: int
    overdue_fee: float
    fuel_charge: float
    damage_charge: float
    extra_km_charge: float
    fines: float
    extra_charges: float
    distance_used: Optional[float]
    new_total: float
    new_paid: float

    @property
    def balance_due(self) -> float:
        return self.new_total - self.new_paid


def calculate_settlement(booking, daily_rate: float, return_data, returned_at: datetime) -> SettlementResult:
    """Расчет при возврате: просрочка, топливо, повреждения, перепробег и штрафы.

    Просрочка считается в календарных днях от запланированного дня окончания.
    """
    overdue_days = max(0, dates.days_between(booking.end_date, returned_at))
    if return_data.late_fee is not None:
        overdue_fee = return_data.late_fee
    else:
        overdue_fee = overdue_days * daily_rate

    fuel = return_data.fuel_charge or 0.0
    damage = return_data.damage_charge or 0.0
    extra_km = return_data.extra_km_charge or 0.0
    fines = return_data.fines_amount or 0.0
    extra_charges = overdue_fee + fuel + damage + extra_km + fines

    distance_used = None
    if return_data.odometer_end is not None and booking.odometer_start is not None:
        distance_used = return_data.odometer_end - booking.odometer_start

    return SettlementResult(
        overdue_days=overdue_days,
        overdue_fee=overdue_fee,
        fuel_charge=fuel,
        damage_charge=damage,
        extra_km_charge=extra_km,
        fines=fines,
        extra_charges=extra_charges,
        distance_used=distance_used,
        new_total=booking.total_amount + extra_charges,
        new_paid=booking.paid_amount + (return_data.additional_payment or 0.0)
    )
