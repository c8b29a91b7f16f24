from datetime import datetime, timezone
from typing import Callable, Optional
import logging

from sqlalchemy.orm import Session

from ..core.exceptions import (
    ConflictError, Forbidden, InvalidDoctor, InvalidTimeRange, InvalidTransition,
    NotFound, PastDate, SlotConflict, ValidationError
)
from ..core.security import UserRole
from ..models.appointment import (
    Appointment, AppointmentPriority, AppointmentStatus, AppointmentType, TERMINAL_STATUSES
)
from ..models.user import User
from ..schemas.appointment import TimeSlot, parse_appointment_date, to_minutes
from .notification_service import NotificationDispatcher, NotificationEvent
from .scheduling_store import AppointmentStore
from .user_service import UserDirectory

logger = logging.getLogger(__name__)

REASON_MIN_LENGTH = 10
REASON_MAX_LENGTH = 500
MIN_DURATION = 15
MAX_DURATION = 240

SLOT_TAKEN_MESSAGE = "Doctor is not available at the selected time slot"

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)

class BookingService:
    def __init__(
        self,
        db: Session,
        notifier: Optional[NotificationDispatcher] = None,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self.store = AppointmentStore(db)
        self.directory = UserDirectory(db)
        self.notifier = notifier
        self.now = now or _utcnow

    def book(
        self,
        patient_id: int,
        doctor_id: int,
        appointment_date,
        time_slot: TimeSlot,
        reason: str,
        type: AppointmentType = AppointmentType.CONSULTATION,
        priority: AppointmentPriority = AppointmentPriority.MEDIUM,
        estimated_duration: int = 30,
    ) -> Appointment:
        """Create a pending appointment for a patient."""
        if not self.directory.get_patient(patient_id):
            raise NotFound("Patient not found", field="patientId")
        if not self.directory.get_active_doctor(doctor_id):
            raise InvalidDoctor("Invalid or inactive doctor selected", field="doctorId")

        visit_date = self._validate_date(appointment_date)
        self._validate_time_slot(time_slot)
        reason = self._validate_reason(reason)
        if not MIN_DURATION <= estimated_duration <= MAX_DURATION:
            raise ValidationError(
                f"Estimated duration must be between {MIN_DURATION} and {MAX_DURATION} minutes",
                field="estimatedDuration",
            )

        # Short-circuit obviously taken slots; the unique index has the final word
        if self.store.has_active_overlap(doctor_id, visit_date, time_slot.start, time_slot.end):
            logger.info(f"Booking rejected by pre-check: doctor {doctor_id} {visit_date} {time_slot.start}")
            raise SlotConflict(SLOT_TAKEN_MESSAGE, field="timeSlot")

        appointment = Appointment(
            patient_id=patient_id,
            doctor_id=doctor_id,
            appointment_date=visit_date,
            start_time=time_slot.start,
            end_time=time_slot.end,
            status=AppointmentStatus.PENDING,
            type=AppointmentType(type),
            priority=AppointmentPriority(priority),
            reason=reason,
            estimated_duration=estimated_duration,
        )

        try:
            appointment = self.store.insert(appointment)
        except ConflictError:
            raise SlotConflict(SLOT_TAKEN_MESSAGE, field="timeSlot")

        logger.info(
            f"Appointment {appointment.id} booked: patient {patient_id}, doctor {doctor_id}, "
            f"{visit_date} {time_slot.start}-{time_slot.end}"
        )
        self._notify(appointment.id, NotificationEvent.CREATED)
        return appointment

    def update_appointment(
        self,
        appointment_id: int,
        caller: User,
        appointment_date=None,
        time_slot: Optional[TimeSlot] = None,
        reason: Optional[str] = None,
        type: Optional[AppointmentType] = None,
        priority: Optional[AppointmentPriority] = None,
    ) -> Appointment:
        """Reschedule an appointment and/or edit its descriptive fields."""
        appointment = self.store.find_by_id(appointment_id)
        if not appointment:
            raise NotFound("Appointment not found", field="id")

        can_update = (
            caller.role in (UserRole.ADMIN, UserRole.NURSE)
            or (
                caller.role == UserRole.PATIENT
                and caller.id == appointment.patient_id
                and appointment.status == AppointmentStatus.PENDING
            )
        )
        if not can_update:
            raise Forbidden("Not authorized to update this appointment or appointment cannot be modified")

        if (appointment_date is None) != (time_slot is None):
            raise ValidationError(
                "appointmentDate and timeSlot must be provided together",
                field="appointmentDate" if appointment_date is None else "timeSlot",
            )

        patch = {}
        moved = False
        if appointment_date is not None:
            if appointment.status in TERMINAL_STATUSES:
                raise InvalidTransition(
                    f"A {appointment.status.value} appointment cannot be rescheduled", field="status"
                )
            visit_date = self._validate_date(appointment_date)
            self._validate_time_slot(time_slot)

            if self.store.has_active_overlap(
                appointment.doctor_id, visit_date, time_slot.start, time_slot.end,
                exclude_id=appointment.id,
            ):
                raise SlotConflict(SLOT_TAKEN_MESSAGE, field="timeSlot")

            patch.update(
                appointment_date=visit_date,
                start_time=time_slot.start,
                end_time=time_slot.end,
            )
            moved = True

        if reason is not None:
            patch["reason"] = self._validate_reason(reason)
        if type is not None:
            patch["type"] = AppointmentType(type)
        if priority is not None:
            patch["priority"] = AppointmentPriority(priority)

        if not patch:
            return appointment

        try:
            updated = self.store.update(appointment.id, patch, expected_status=appointment.status)
        except ConflictError:
            raise SlotConflict(SLOT_TAKEN_MESSAGE, field="timeSlot")

        if updated is None:
            # Deleted or transitioned between our read and the write
            raise InvalidTransition("Appointment changed while it was being updated", field="status")

        if moved:
            logger.info(
                f"Appointment {updated.id} rescheduled to {updated.appointment_date} "
                f"{updated.start_time}-{updated.end_time} by user {caller.id}"
            )
            self._notify(updated.id, NotificationEvent.RESCHEDULED)
        return updated

    def _validate_date(self, value):
        try:
            when = parse_appointment_date(value)
        except ValueError as exc:
            raise ValidationError(str(exc), field="appointmentDate")
        if when <= self.now():
            raise PastDate("Appointment date must be in the future", field="appointmentDate")
        return when.date()

    def _validate_time_slot(self, time_slot: TimeSlot):
        if to_minutes(time_slot.start) >= to_minutes(time_slot.end):
            raise InvalidTimeRange("End time must be after start time", field="timeSlot")

    def _validate_reason(self, reason: str) -> str:
        reason = (reason or "").strip()
        if not REASON_MIN_LENGTH <= len(reason) <= REASON_MAX_LENGTH:
            raise ValidationError(
                f"Reason must be between {REASON_MIN_LENGTH} and {REASON_MAX_LENGTH} characters",
                field="reason",
            )
        return reason

    def _notify(self, appointment_id: int, event: NotificationEvent):
        if self.notifier is not None:
            self.notifier.dispatch(appointment_id, event)
