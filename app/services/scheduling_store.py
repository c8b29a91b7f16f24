from datetime import date
from typing import Any, Dict, List, Optional, Tuple
import logging

from sqlalchemy import update as sql_update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import ConflictError, StoreUnavailable
from ..models.appointment import ACTIVE_STATUSES, Appointment, PrescriptionItem

logger = logging.getLogger(__name__)

class AppointmentStore:
    """
    Persistence for appointments.

    The partial unique index on (doctor, date, start, end) for active
    statuses is what decides concurrent bookings; ``has_active_overlap`` is
    only a friendly pre-check. Each write is one statement plus commit.
    """

    def __init__(self, db: Session):
        self.db = db

    def insert(self, appointment: Appointment) -> Appointment:
        """Persist a new appointment; raises ConflictError on a taken slot."""
        try:
            self.db.add(appointment)
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            logger.warning(
                f"Slot already taken for doctor {appointment.doctor_id} on "
                f"{appointment.appointment_date} {appointment.start_time}-{appointment.end_time}"
            )
            raise ConflictError(str(exc.orig)) from exc
        except SQLAlchemyError as exc:
            self._unavailable(exc)

        self.db.refresh(appointment)
        return appointment

    def find_by_id(self, appointment_id: int) -> Optional[Appointment]:
        try:
            return self.db.get(Appointment, appointment_id, populate_existing=True)
        except SQLAlchemyError as exc:
            self._unavailable(exc)

    def find_by_query(
        self,
        filters: Dict[str, Any],
        page: int = 1,
        limit: int = 10,
    ) -> Tuple[List[Appointment], int]:
        """Return one page of matching appointments and the total count."""
        query = self.db.query(Appointment)

        if filters.get("status") is not None:
            query = query.filter(Appointment.status == filters["status"])
        if filters.get("appointment_date") is not None:
            query = query.filter(Appointment.appointment_date == filters["appointment_date"])
        if filters.get("doctor_id") is not None:
            query = query.filter(Appointment.doctor_id == filters["doctor_id"])
        if filters.get("patient_id") is not None:
            query = query.filter(Appointment.patient_id == filters["patient_id"])

        try:
            total = query.count()
            items = (
                query.order_by(Appointment.appointment_date.asc(), Appointment.start_time.asc(), Appointment.id.asc())
                .offset((page - 1) * limit)
                .limit(limit)
                .all()
            )
        except SQLAlchemyError as exc:
            self._unavailable(exc)

        return items, total

    def find_active_for_doctor(self, doctor_id: int, on_date: date) -> List[Appointment]:
        try:
            return (
                self.db.query(Appointment)
                .filter(
                    Appointment.doctor_id == doctor_id,
                    Appointment.appointment_date == on_date,
                    Appointment.status.in_(ACTIVE_STATUSES),
                )
                .order_by(Appointment.start_time.asc())
                .all()
            )
        except SQLAlchemyError as exc:
            self._unavailable(exc)

    def has_active_overlap(
        self,
        doctor_id: int,
        on_date: date,
        start: str,
        end: str,
        exclude_id: Optional[int] = None,
    ) -> bool:
        """True if an active appointment intersects [start, end) on that date."""
        # Zero-padded HH:MM strings order the same way as minutes
        query = self.db.query(Appointment.id).filter(
            Appointment.doctor_id == doctor_id,
            Appointment.appointment_date == on_date,
            Appointment.status.in_(ACTIVE_STATUSES),
            Appointment.start_time < end,
            Appointment.end_time > start,
        )
        if exclude_id is not None:
            query = query.filter(Appointment.id != exclude_id)

        try:
            return query.first() is not None
        except SQLAlchemyError as exc:
            self._unavailable(exc)

    def update(
        self,
        appointment_id: int,
        patch: Dict[str, Any],
        expected_status=None,
    ) -> Optional[Appointment]:
        """
        Apply ``patch`` in a single UPDATE statement.

        When ``expected_status`` is given the row is only changed if it still
        has that status. Returns None if nothing matched.
        """
        statement = sql_update(Appointment).where(Appointment.id == appointment_id)
        if expected_status is not None:
            statement = statement.where(Appointment.status == expected_status)
        statement = statement.values(**patch).execution_options(synchronize_session=False)

        try:
            result = self.db.execute(statement)
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            logger.warning(f"Update of appointment {appointment_id} collides with an active slot")
            raise ConflictError(str(exc.orig)) from exc
        except SQLAlchemyError as exc:
            self._unavailable(exc)

        if result.rowcount == 0:
            return None
        return self.find_by_id(appointment_id)

    def append_prescription(
        self,
        appointment: Appointment,
        entries: List[Dict[str, Any]],
        follow_up_date: Optional[date] = None,
    ) -> Appointment:
        """Append medication entries after any existing ones, in one commit with the follow-up date."""
        position = len(appointment.prescription)
        try:
            if follow_up_date is not None:
                appointment.follow_up_date = follow_up_date
            for offset, entry in enumerate(entries):
                self.db.add(PrescriptionItem(
                    appointment_id=appointment.id,
                    position=position + offset,
                    **entry
                ))
            self.db.commit()
        except SQLAlchemyError as exc:
            self._unavailable(exc)

        self.db.refresh(appointment)
        return appointment

    def claim_reminder(self, appointment_id: int) -> bool:
        """Flip reminder_sent from False to True; only one caller wins."""
        statement = (
            sql_update(Appointment)
            .where(Appointment.id == appointment_id, Appointment.reminder_sent.is_(False))
            .values(reminder_sent=True)
            .execution_options(synchronize_session=False)
        )
        try:
            result = self.db.execute(statement)
            self.db.commit()
        except SQLAlchemyError as exc:
            self._unavailable(exc)
        return result.rowcount == 1

    def delete(self, appointment_id: int) -> bool:
        try:
            appointment = self.db.get(Appointment, appointment_id)
            if appointment is None:
                return False
            self.db.delete(appointment)
            self.db.commit()
        except SQLAlchemyError as exc:
            self._unavailable(exc)
        return True

    def _unavailable(self, exc: SQLAlchemyError):
        self.db.rollback()
        logger.exception(f"Scheduling store failure: {exc}")
        raise StoreUnavailable() from exc
