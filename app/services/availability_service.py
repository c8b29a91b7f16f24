from datetime import date, datetime
from typing import Dict, Iterable, Union

from ..core.exceptions import InvalidArgument
from ..schemas.appointment import normalize_time, parse_appointment_date
from .scheduling_store import AppointmentStore

def resolve_date(value: Union[str, date, datetime, None]) -> date:
    """Turn a query value into a calendar date or raise InvalidArgument."""
    if value is None or (isinstance(value, str) and not value.strip()):
        raise InvalidArgument("Date parameter is required", field="date")
    try:
        return parse_appointment_date(value).date()
    except ValueError:
        raise InvalidArgument(f"Invalid date: {value!r}", field="date")

class AvailabilityEngine:
    """
    Computes free and booked slots for one doctor on one date.

    A template slot counts as booked when an active appointment starts at
    exactly that time; bookings are assumed to fill a single slot.
    """

    def __init__(self, store: AppointmentStore, working_hours: Iterable[str]):
        self.store = store
        self.working_hours = tuple(normalize_time(slot) for slot in working_hours)

    def get_availability(self, doctor_id: int, on_date) -> Dict:
        target = resolve_date(on_date)
        booked = self.store.find_active_for_doctor(doctor_id, target)
        taken_starts = {appointment.start_time for appointment in booked}

        return {
            "date": target,
            "doctor_id": doctor_id,
            "available_slots": [slot for slot in self.working_hours if slot not in taken_starts],
            "booked_slots": [
                {"start": appointment.start_time, "end": appointment.end_time}
                for appointment in booked
            ],
        }
