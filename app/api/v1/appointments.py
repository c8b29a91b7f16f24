from datetime import date
from typing import Optional, Tuple

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from ...core.config import settings
from ...core.database import get_db
from ...api.deps import get_current_user, get_patient_user, get_notifier, get_working_hours
from ...models.appointment import AppointmentStatus
from ...models.user import User
from ...schemas.appointment import (
    AppointmentCreate, AppointmentUpdate, AppointmentStatusUpdate, PrescriptionCreate,
    AppointmentEnvelope, AppointmentListResponse, AppointmentResponse,
    AvailabilityResponse, ReminderResponse
)
from ...services.availability_service import AvailabilityEngine
from ...services.booking_service import BookingService
from ...services.lifecycle_service import LifecycleManager
from ...services.notification_service import NotificationDispatcher
from ...services.scheduling_store import AppointmentStore
from ...services.user_service import UserDirectory
from ...core.exceptions import NotFound

router = APIRouter(prefix="/appointments", tags=["Appointments"])

@router.post("", response_model=AppointmentEnvelope, status_code=status.HTTP_201_CREATED)
def book_appointment(
    booking: AppointmentCreate,
    current_user: User = Depends(get_patient_user),
    db: Session = Depends(get_db),
    notifier: NotificationDispatcher = Depends(get_notifier)
):
    """Book a new appointment (patients only)."""
    booking_service = BookingService(db, notifier)
    appointment = booking_service.book(
        patient_id=current_user.id,
        doctor_id=booking.doctor_id,
        appointment_date=booking.appointment_date,
        time_slot=booking.time_slot,
        reason=booking.reason,
        type=booking.type,
        priority=booking.priority,
        estimated_duration=booking.estimated_duration,
    )

    return {
        "message": "Appointment booked successfully",
        "appointment": AppointmentResponse.from_appointment(appointment)
    }

@router.get("", response_model=AppointmentListResponse)
def list_appointments(
    status_filter: Optional[AppointmentStatus] = Query(default=None, alias="status"),
    on_date: Optional[date] = Query(default=None, alias="date"),
    doctor_id: Optional[int] = Query(default=None, alias="doctorId"),
    patient_id: Optional[int] = Query(default=None, alias="patientId"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """List appointments visible to the current user."""
    manager = LifecycleManager(db)
    appointments, pagination = manager.list_appointments(
        current_user,
        status=status_filter,
        on_date=on_date,
        doctor_id=doctor_id,
        patient_id=patient_id,
        page=page,
        limit=limit,
    )

    return {
        "appointments": [AppointmentResponse.from_appointment(a) for a in appointments],
        "pagination": pagination
    }

@router.get("/doctor/{doctor_id}/availability", response_model=AvailabilityResponse)
def get_availability(
    doctor_id: int,
    on_date: Optional[str] = Query(default=None, alias="date"),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    working_hours: Tuple[str, ...] = Depends(get_working_hours)
):
    """Free and booked slots for a doctor on a date."""
    if not UserDirectory(db).get_active_doctor(doctor_id):
        raise NotFound("Doctor not found", field="doctorId")

    engine = AvailabilityEngine(AppointmentStore(db), working_hours)
    return engine.get_availability(doctor_id, on_date)

@router.get("/{appointment_id}", response_model=AppointmentEnvelope)
def get_appointment(
    appointment_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Get a single appointment."""
    appointment = LifecycleManager(db).get_appointment(appointment_id, current_user)
    return {
        "message": "Appointment retrieved successfully",
        "appointment": AppointmentResponse.from_appointment(appointment)
    }

@router.patch("/{appointment_id}/status", response_model=AppointmentEnvelope)
def update_appointment_status(
    appointment_id: int,
    status_update: AppointmentStatusUpdate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    notifier: NotificationDispatcher = Depends(get_notifier)
):
    """Change appointment status and/or write notes."""
    manager = LifecycleManager(db, notifier)
    appointment = manager.update_status(
        appointment_id,
        current_user,
        status=status_update.status,
        notes=status_update.notes,
    )

    return {
        "message": "Appointment status updated successfully",
        "appointment": AppointmentResponse.from_appointment(appointment)
    }

@router.put("/{appointment_id}", response_model=AppointmentEnvelope)
def update_appointment(
    appointment_id: int,
    changes: AppointmentUpdate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    notifier: NotificationDispatcher = Depends(get_notifier)
):
    """Reschedule an appointment or edit its details."""
    booking_service = BookingService(db, notifier)
    appointment = booking_service.update_appointment(
        appointment_id,
        current_user,
        appointment_date=changes.appointment_date,
        time_slot=changes.time_slot,
        reason=changes.reason,
        type=changes.type,
        priority=changes.priority,
    )

    return {
        "message": "Appointment updated successfully",
        "appointment": AppointmentResponse.from_appointment(appointment)
    }

@router.post("/{appointment_id}/prescriptions", response_model=AppointmentEnvelope)
def add_prescription(
    appointment_id: int,
    prescription: PrescriptionCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Append prescription entries (assigned doctor only)."""
    appointment = LifecycleManager(db).add_prescription(
        appointment_id,
        current_user,
        [entry.model_dump() for entry in prescription.entries],
        follow_up_date=prescription.follow_up_date,
    )

    return {
        "message": "Prescription added successfully",
        "appointment": AppointmentResponse.from_appointment(appointment)
    }

@router.post("/{appointment_id}/reminder", response_model=ReminderResponse)
def send_reminder(
    appointment_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    notifier: NotificationDispatcher = Depends(get_notifier)
):
    """Queue a reminder for the appointment, at most once."""
    sent = LifecycleManager(db, notifier).send_reminder(appointment_id, current_user)
    return {"appointment_id": appointment_id, "sent": sent}

@router.delete("/{appointment_id}")
def delete_appointment(
    appointment_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Delete an appointment (admin only)."""
    LifecycleManager(db).purge(appointment_id, current_user)
    return {"message": "Appointment deleted successfully"}
