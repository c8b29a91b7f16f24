from sqlalchemy import (
    Column, Integer, String, ForeignKey, Date, DateTime, Boolean,
    CheckConstraint, Index, Enum as SQLEnum, text
)
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
import enum

from ..core.database import Base
from .user import User

class AppointmentStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    NO_SHOW = "no-show"

class AppointmentType(str, enum.Enum):
    CONSULTATION = "consultation"
    FOLLOW_UP = "follow-up"
    CHECK_UP = "check-up"
    EMERGENCY = "emergency"
    SURGERY = "surgery"

class AppointmentPriority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

# Active appointments hold their slot; terminal ones free it
ACTIVE_STATUSES = (AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED)
TERMINAL_STATUSES = (
    AppointmentStatus.CANCELLED,
    AppointmentStatus.COMPLETED,
    AppointmentStatus.NO_SHOW,
)

_ACTIVE_SLOT_PREDICATE = text("status IN ('pending', 'confirmed')")

def _enum_values(enum_cls):
    return [member.value for member in enum_cls]

class Appointment(Base):
    __tablename__ = "appointments"

    id = Column(Integer, primary_key=True, index=True)

    # Participants
    patient_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    doctor_id = Column(Integer, ForeignKey("users.id"), nullable=False)

    # Slot
    appointment_date = Column(Date, nullable=False)
    start_time = Column(String(5), nullable=False)  # HH:MM
    end_time = Column(String(5), nullable=False)  # HH:MM

    # Appointment details
    status = Column(
        SQLEnum(AppointmentStatus, values_callable=_enum_values),
        nullable=False,
        default=AppointmentStatus.PENDING,
    )
    type = Column(
        SQLEnum(AppointmentType, values_callable=_enum_values),
        nullable=False,
        default=AppointmentType.CONSULTATION,
    )
    priority = Column(
        SQLEnum(AppointmentPriority, values_callable=_enum_values),
        nullable=False,
        default=AppointmentPriority.MEDIUM,
    )
    reason = Column(String(500), nullable=False)
    estimated_duration = Column(Integer, nullable=False, default=30)  # minutes

    # Notes, each written only by its author role
    patient_notes = Column(String(1000), nullable=True)
    doctor_notes = Column(String(1000), nullable=True)
    admin_notes = Column(String(500), nullable=True)

    # Tracking
    cancelled_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    cancellation_reason = Column(String(500), nullable=True)
    follow_up_date = Column(Date, nullable=True)
    reminder_sent = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    # Relationships (display data is joined at read time, never copied)
    patient = relationship(User, foreign_keys=[patient_id], lazy="joined")
    doctor = relationship(User, foreign_keys=[doctor_id], lazy="joined")
    prescription = relationship(
        "PrescriptionItem",
        back_populates="appointment",
        order_by="PrescriptionItem.position",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        CheckConstraint("start_time < end_time", name="ck_appointments_time_order"),
        CheckConstraint(
            "estimated_duration >= 15 AND estimated_duration <= 240",
            name="ck_appointments_duration_range",
        ),
        # One active booking per doctor and slot, enforced by the database
        Index(
            "uq_appointments_active_slot",
            "doctor_id", "appointment_date", "start_time", "end_time",
            unique=True,
            postgresql_where=_ACTIVE_SLOT_PREDICATE,
            sqlite_where=_ACTIVE_SLOT_PREDICATE,
        ),
        Index("ix_appointments_patient_date", "patient_id", "appointment_date"),
        Index("ix_appointments_doctor_date", "doctor_id", "appointment_date"),
        Index("ix_appointments_status", "status"),
    )

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def __repr__(self):
        return (
            f"<Appointment(id={self.id}, patient_id={self.patient_id}, doctor_id={self.doctor_id}, "
            f"date='{self.appointment_date}', slot='{self.start_time}-{self.end_time}', status='{self.status}')>"
        )

class PrescriptionItem(Base):
    __tablename__ = "appointment_prescriptions"

    id = Column(Integer, primary_key=True, index=True)
    appointment_id = Column(
        Integer, ForeignKey("appointments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    position = Column(Integer, nullable=False)

    medication = Column(String(200), nullable=False)
    dosage = Column(String(100), nullable=True)
    frequency = Column(String(100), nullable=True)
    duration = Column(String(100), nullable=True)
    instructions = Column(String(500), nullable=True)

    created_at = Column(DateTime, server_default=func.now())

    appointment = relationship("Appointment", back_populates="prescription")

    def __repr__(self):
        return f"<PrescriptionItem(id={self.id}, appointment_id={self.appointment_id}, medication='{self.medication}')>"
