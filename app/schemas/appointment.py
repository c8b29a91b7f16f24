from datetime import date, datetime, timezone
from typing import List, Optional, Union
import re

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..models.appointment import AppointmentPriority, AppointmentStatus, AppointmentType

TIME_PATTERN = re.compile(r"^([0-1]?[0-9]|2[0-3]):([0-5][0-9])$")


def normalize_time(value: str) -> str:
    """Validate an ``H:MM``/``HH:MM`` string and return it zero-padded."""
    match = TIME_PATTERN.match(value.strip()) if isinstance(value, str) else None
    if not match:
        raise ValueError("Time must be in HH:MM format")
    return f"{int(match.group(1)):02d}:{match.group(2)}"


def to_minutes(value: str) -> int:
    hours, minutes = normalize_time(value).split(":")
    return int(hours) * 60 + int(minutes)


def parse_appointment_date(value: Union[str, date, datetime]) -> datetime:
    """
    Parse an ISO-8601 date or datetime into an aware UTC datetime.

    Date-only values mean midnight UTC; naive datetimes are taken as UTC.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip())
        except ValueError:
            raise ValueError("Appointment date must be a valid ISO-8601 date")
    else:
        raise ValueError("Appointment date must be a valid ISO-8601 date")

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class TimeSlot(BaseModel):
    start: str
    end: str

    @field_validator("start", "end", mode="before")
    @classmethod
    def _check_format(cls, value):
        return normalize_time(value)


class PrescriptionEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    medication: str = Field(min_length=1, max_length=200)
    dosage: Optional[str] = Field(default=None, max_length=100)
    frequency: Optional[str] = Field(default=None, max_length=100)
    duration: Optional[str] = Field(default=None, max_length=100)
    instructions: Optional[str] = Field(default=None, max_length=500)


class AppointmentCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    doctor_id: int = Field(alias="doctorId")
    appointment_date: datetime = Field(alias="appointmentDate")
    time_slot: TimeSlot = Field(alias="timeSlot")
    reason: str
    type: AppointmentType = AppointmentType.CONSULTATION
    priority: AppointmentPriority = AppointmentPriority.MEDIUM
    estimated_duration: int = Field(default=30, alias="estimatedDuration")

    @field_validator("appointment_date", mode="before")
    @classmethod
    def _parse_date(cls, value):
        return parse_appointment_date(value)


class AppointmentUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    appointment_date: Optional[datetime] = Field(default=None, alias="appointmentDate")
    time_slot: Optional[TimeSlot] = Field(default=None, alias="timeSlot")
    reason: Optional[str] = None
    type: Optional[AppointmentType] = None
    priority: Optional[AppointmentPriority] = None

    @field_validator("appointment_date", mode="before")
    @classmethod
    def _parse_date(cls, value):
        if value is None:
            return value
        return parse_appointment_date(value)


class AppointmentStatusUpdate(BaseModel):
    status: Optional[AppointmentStatus] = None
    notes: Optional[str] = None


class PrescriptionCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    entries: List[PrescriptionEntry] = Field(min_length=1)
    follow_up_date: Optional[date] = Field(default=None, alias="followUpDate")


class ParticipantSummary(BaseModel):
    id: int
    display_name: str
    phone_number: Optional[str] = None
    specialization: Optional[str] = None
    department: Optional[str] = None


class AppointmentNotes(BaseModel):
    patient: Optional[str] = None
    doctor: Optional[str] = None
    admin: Optional[str] = None


class AppointmentResponse(BaseModel):
    id: int
    patient_id: int
    doctor_id: int
    patient: Optional[ParticipantSummary] = None
    doctor: Optional[ParticipantSummary] = None
    appointment_date: date
    time_slot: TimeSlot
    status: AppointmentStatus
    type: AppointmentType
    priority: AppointmentPriority
    reason: str
    notes: AppointmentNotes
    prescription: List[PrescriptionEntry] = []
    estimated_duration: int
    cancelled_by: Optional[int] = None
    cancellation_reason: Optional[str] = None
    follow_up_date: Optional[date] = None
    reminder_sent: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_appointment(cls, appointment) -> "AppointmentResponse":
        return cls(
            id=appointment.id,
            patient_id=appointment.patient_id,
            doctor_id=appointment.doctor_id,
            patient=_participant(appointment.patient),
            doctor=_participant(appointment.doctor),
            appointment_date=appointment.appointment_date,
            time_slot=TimeSlot(start=appointment.start_time, end=appointment.end_time),
            status=appointment.status,
            type=appointment.type,
            priority=appointment.priority,
            reason=appointment.reason,
            notes=AppointmentNotes(
                patient=appointment.patient_notes,
                doctor=appointment.doctor_notes,
                admin=appointment.admin_notes,
            ),
            prescription=[PrescriptionEntry.model_validate(item) for item in appointment.prescription],
            estimated_duration=appointment.estimated_duration,
            cancelled_by=appointment.cancelled_by,
            cancellation_reason=appointment.cancellation_reason,
            follow_up_date=appointment.follow_up_date,
            reminder_sent=appointment.reminder_sent,
            created_at=appointment.created_at,
            updated_at=appointment.updated_at,
        )


def _participant(user) -> Optional[ParticipantSummary]:
    if user is None:
        return None
    return ParticipantSummary(
        id=user.id,
        display_name=user.display_name,
        phone_number=user.phone_number,
        specialization=user.specialization,
        department=user.department,
    )


class Pagination(BaseModel):
    current: int
    pages: int
    total: int
    has_next: bool
    has_prev: bool


class AppointmentListResponse(BaseModel):
    appointments: List[AppointmentResponse]
    pagination: Pagination


class AppointmentEnvelope(BaseModel):
    message: str
    appointment: AppointmentResponse


class AvailabilityResponse(BaseModel):
    date: date
    doctor_id: int
    available_slots: List[str]
    booked_slots: List[TimeSlot]


class ReminderResponse(BaseModel):
    appointment_id: int
    sent: bool
