from datetime import date
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple
import logging
import math

from sqlalchemy.orm import Session

from ..core.exceptions import Forbidden, InvalidTransition, NotFound, ValidationError
from ..core.security import UserRole
from ..models.appointment import Appointment, AppointmentStatus
from ..models.user import User
from .notification_service import NotificationDispatcher, NotificationEvent
from .scheduling_store import AppointmentStore

logger = logging.getLogger(__name__)

class Actor(str, Enum):
    """Who is acting on an appointment, relative to that appointment."""
    ADMIN = "admin"
    NURSE = "nurse"
    DOCTOR_OWNER = "doctor-owner"
    PATIENT_OWNER = "patient-owner"

_STAFF = frozenset({Actor.ADMIN, Actor.NURSE})

TRANSITIONS: Dict[Tuple[AppointmentStatus, AppointmentStatus], FrozenSet[Actor]] = {
    (AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED): _STAFF | {Actor.DOCTOR_OWNER},
    (AppointmentStatus.PENDING, AppointmentStatus.CANCELLED): _STAFF | {Actor.DOCTOR_OWNER, Actor.PATIENT_OWNER},
    (AppointmentStatus.CONFIRMED, AppointmentStatus.CANCELLED): _STAFF | {Actor.DOCTOR_OWNER},
    (AppointmentStatus.CONFIRMED, AppointmentStatus.COMPLETED): frozenset({Actor.DOCTOR_OWNER}),
    (AppointmentStatus.PENDING, AppointmentStatus.NO_SHOW): _STAFF | {Actor.DOCTOR_OWNER},
    (AppointmentStatus.CONFIRMED, AppointmentStatus.NO_SHOW): _STAFF | {Actor.DOCTOR_OWNER},
}

# Author role -> (column, max length)
NOTE_FIELDS = {
    UserRole.PATIENT: ("patient_notes", 1000),
    UserRole.DOCTOR: ("doctor_notes", 1000),
    UserRole.ADMIN: ("admin_notes", 500),
    UserRole.NURSE: ("admin_notes", 500),
}

STATUS_EVENTS = {
    AppointmentStatus.CONFIRMED: NotificationEvent.CONFIRMED,
    AppointmentStatus.CANCELLED: NotificationEvent.CANCELLED,
    AppointmentStatus.COMPLETED: NotificationEvent.COMPLETED,
    AppointmentStatus.NO_SHOW: NotificationEvent.NO_SHOW,
}

def actor_for(caller: User, appointment: Appointment) -> Optional[Actor]:
    if caller.role == UserRole.ADMIN:
        return Actor.ADMIN
    if caller.role == UserRole.NURSE:
        return Actor.NURSE
    if caller.role == UserRole.DOCTOR and caller.id == appointment.doctor_id:
        return Actor.DOCTOR_OWNER
    if caller.role == UserRole.PATIENT and caller.id == appointment.patient_id:
        return Actor.PATIENT_OWNER
    return None

def can_access(caller: User, appointment: Appointment) -> bool:
    """Admins, nurses and the appointment's own doctor and patient may see it."""
    return actor_for(caller, appointment) is not None

class LifecycleManager:
    def __init__(self, db: Session, notifier: Optional[NotificationDispatcher] = None):
        self.store = AppointmentStore(db)
        self.notifier = notifier

    def get_appointment(self, appointment_id: int, caller: User) -> Appointment:
        appointment = self.store.find_by_id(appointment_id)
        if not appointment:
            raise NotFound("Appointment not found", field="id")
        if not can_access(caller, appointment):
            raise Forbidden("Access denied to this appointment")
        return appointment

    def list_appointments(
        self,
        caller: User,
        status: Optional[AppointmentStatus] = None,
        on_date: Optional[date] = None,
        doctor_id: Optional[int] = None,
        patient_id: Optional[int] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Tuple[List[Appointment], Dict]:
        """List appointments visible to the caller, one page at a time."""
        if page < 1:
            raise ValidationError("Page must be a positive integer", field="page")
        if limit < 1:
            raise ValidationError("Limit must be a positive integer", field="limit")

        filters = {"status": status, "appointment_date": on_date}

        if caller.role in (UserRole.ADMIN, UserRole.NURSE):
            filters["doctor_id"] = doctor_id
            filters["patient_id"] = patient_id
        elif caller.role == UserRole.DOCTOR:
            filters["doctor_id"] = caller.id
            filters["patient_id"] = patient_id
        else:
            filters["patient_id"] = caller.id

        items, total = self.store.find_by_query(filters, page=page, limit=limit)
        pages = math.ceil(total / limit) if total else 0
        pagination = {
            "current": page,
            "pages": pages,
            "total": total,
            "has_next": page < pages,
            "has_prev": page > 1,
        }
        return items, pagination

    def update_status(
        self,
        appointment_id: int,
        caller: User,
        status: Optional[AppointmentStatus] = None,
        notes: Optional[str] = None,
    ) -> Appointment:
        """Apply a status transition and/or write the caller's notes."""
        appointment = self.get_appointment(appointment_id, caller)
        actor = actor_for(caller, appointment)
        current = appointment.status

        patch = {}
        if status is not None:
            target = AppointmentStatus(status)
            allowed = TRANSITIONS.get((current, target))
            if allowed is None:
                raise InvalidTransition(
                    f"Cannot change status from {current.value} to {target.value}", field="status"
                )
            if actor not in allowed:
                raise Forbidden("Not authorized to update appointment status")

            patch["status"] = target
            if target == AppointmentStatus.CANCELLED:
                patch["cancelled_by"] = caller.id
                patch["cancellation_reason"] = notes

        if notes:
            column, max_length = NOTE_FIELDS[UserRole(caller.role)]
            if len(notes) > max_length:
                raise ValidationError(f"Notes cannot exceed {max_length} characters", field="notes")
            patch[column] = notes

        if not patch:
            raise ValidationError("Nothing to update: provide a status or notes", field="status")

        updated = self.store.update(appointment.id, patch, expected_status=current)
        if updated is None:
            raise InvalidTransition("Appointment status changed concurrently; reload and retry", field="status")

        if status is not None:
            logger.info(
                f"Appointment {updated.id} moved {current.value} -> {updated.status.value} by user {caller.id}"
            )
            self._notify(updated.id, STATUS_EVENTS[updated.status])
        return updated

    def add_prescription(
        self,
        appointment_id: int,
        caller: User,
        entries: List[Dict],
        follow_up_date: Optional[date] = None,
    ) -> Appointment:
        """Append medication entries; only the appointment's doctor may prescribe."""
        appointment = self.get_appointment(appointment_id, caller)
        if actor_for(caller, appointment) != Actor.DOCTOR_OWNER:
            raise Forbidden("Only the assigned doctor can add a prescription")
        if appointment.status in (AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW):
            raise InvalidTransition(
                f"Cannot prescribe on a {appointment.status.value} appointment", field="status"
            )
        if not entries:
            raise ValidationError("At least one prescription entry is required", field="entries")

        if follow_up_date is not None and follow_up_date <= appointment.appointment_date:
            raise ValidationError("Follow-up date must be after the appointment date", field="followUpDate")

        appointment = self.store.append_prescription(appointment, entries, follow_up_date=follow_up_date)
        logger.info(f"Added {len(entries)} prescription entries to appointment {appointment.id}")
        return appointment

    def send_reminder(self, appointment_id: int, caller: User) -> bool:
        """Queue a reminder once per appointment; returns False if already sent."""
        appointment = self.get_appointment(appointment_id, caller)
        if caller.role not in (UserRole.ADMIN, UserRole.NURSE):
            raise Forbidden("Only admins and nurses can send reminders")
        if not appointment.is_active:
            raise InvalidTransition(
                f"Cannot remind about a {appointment.status.value} appointment", field="status"
            )

        if not self.store.claim_reminder(appointment.id):
            return False
        self._notify(appointment.id, NotificationEvent.REMINDER)
        return True

    def purge(self, appointment_id: int, caller: User) -> None:
        if caller.role != UserRole.ADMIN:
            raise Forbidden("Admin access required")
        if not self.store.delete(appointment_id):
            raise NotFound("Appointment not found", field="id")
        logger.info(f"Appointment {appointment_id} deleted by admin {caller.id}")

    def _notify(self, appointment_id: int, event: NotificationEvent):
        if self.notifier is not None:
            self.notifier.dispatch(appointment_id, event)
