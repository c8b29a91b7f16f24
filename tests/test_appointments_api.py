from datetime import timedelta

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Query

from app.models.appointment import AppointmentStatus

from .conftest import FUTURE_DATE, auth_headers, booking_payload


class TestBookAppointment:

    def test_book_appointment(self, client, patient, doctor, notifier):
        """Test booking an appointment."""
        response = client.post(
            "/api/v1/appointments",
            json=booking_payload(doctor),
            headers=auth_headers(patient)
        )
        assert response.status_code == 201

        data = response.json()
        appointment = data["appointment"]
        assert data["message"] == "Appointment booked successfully"
        assert appointment["status"] == "pending"
        assert appointment["type"] == "consultation"
        assert appointment["priority"] == "medium"
        assert appointment["time_slot"] == {"start": "09:00", "end": "09:30"}
        assert appointment["patient"]["display_name"] == "Pat Smith"
        assert appointment["doctor"]["specialization"] == "Cardiology"
        assert notifier.events == [(appointment["id"], "created")]

    def test_book_conflict(self, client, patient, doctor, make_user):
        """Test second booking of the same slot."""
        client.post("/api/v1/appointments", json=booking_payload(doctor), headers=auth_headers(patient))

        response = client.post(
            "/api/v1/appointments",
            json=booking_payload(doctor),
            headers=auth_headers(make_user("patient"))
        )
        assert response.status_code == 409

        detail = response.json()["detail"]
        assert detail["error"] == "slot_conflict"
        assert detail["field"] == "timeSlot"

    def test_book_short_reason(self, client, patient, doctor):
        """Test booking with a reason that is too short."""
        response = client.post(
            "/api/v1/appointments",
            json=booking_payload(doctor, reason="Too short"),
            headers=auth_headers(patient)
        )
        assert response.status_code == 400
        assert response.json()["detail"]["field"] == "reason"

    def test_book_past_date(self, client, patient, doctor):
        """Test booking in the past."""
        response = client.post(
            "/api/v1/appointments",
            json=booking_payload(doctor, on=FUTURE_DATE - timedelta(days=400)),
            headers=auth_headers(patient)
        )
        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "past_date"

    def test_book_invalid_time_range(self, client, patient, doctor):
        response = client.post(
            "/api/v1/appointments",
            json=booking_payload(doctor, start="10:00", end="09:30"),
            headers=auth_headers(patient)
        )
        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "invalid_time_range"

    def test_book_malformed_time(self, client, patient, doctor):
        """Test booking with a time that is not HH:MM."""
        response = client.post(
            "/api/v1/appointments",
            json=booking_payload(doctor, start="25:00"),
            headers=auth_headers(patient)
        )
        assert response.status_code == 422

        detail = response.json()["detail"]
        assert detail["error"] == "validation_error"
        assert detail["field"] == "timeSlot.start"

    def test_book_invalid_type(self, client, patient, doctor):
        response = client.post(
            "/api/v1/appointments",
            json=booking_payload(doctor, type="house-call"),
            headers=auth_headers(patient)
        )
        assert response.status_code == 422

    def test_book_inactive_doctor(self, client, patient, make_user):
        retired = make_user("doctor", is_active=False)

        response = client.post(
            "/api/v1/appointments",
            json=booking_payload(retired),
            headers=auth_headers(patient)
        )
        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "invalid_doctor"

    def test_only_patients_book(self, client, nurse, doctor):
        """Test booking as a non-patient."""
        response = client.post(
            "/api/v1/appointments",
            json=booking_payload(doctor),
            headers=auth_headers(nurse)
        )
        assert response.status_code == 403

    def test_book_invalid_token(self, client, doctor):
        response = client.post(
            "/api/v1/appointments",
            json=booking_payload(doctor),
            headers={"Authorization": "Bearer invalid_token"}
        )
        assert response.status_code == 401

    def test_book_deactivated_caller(self, client, make_user, doctor):
        suspended = make_user("patient", is_active=False)

        response = client.post(
            "/api/v1/appointments",
            json=booking_payload(doctor),
            headers=auth_headers(suspended)
        )
        assert response.status_code == 401


class TestAppointmentQueries:

    def test_list_own_appointments(self, client, patient, doctor, make_user, make_appointment):
        """Test that patients only see their own appointments."""
        make_appointment(patient, doctor, start="09:00", end="09:30")
        make_appointment(make_user("patient"), doctor, start="10:00", end="10:30")

        response = client.get("/api/v1/appointments", headers=auth_headers(patient))
        assert response.status_code == 200

        data = response.json()
        assert data["pagination"]["total"] == 1
        assert data["appointments"][0]["patient_id"] == patient.id

    def test_list_with_filters(self, client, admin, patient, doctor, make_appointment):
        make_appointment(patient, doctor, start="09:00", end="09:30")
        make_appointment(patient, doctor, start="10:00", end="10:30", status=AppointmentStatus.CANCELLED)

        response = client.get(
            "/api/v1/appointments",
            params={"status": "cancelled", "date": FUTURE_DATE.isoformat(), "doctorId": doctor.id},
            headers=auth_headers(admin)
        )
        assert response.status_code == 200

        data = response.json()
        assert [a["time_slot"]["start"] for a in data["appointments"]] == ["10:00"]

    def test_list_limit_bounds(self, client, admin):
        response = client.get("/api/v1/appointments", params={"limit": 101}, headers=auth_headers(admin))
        assert response.status_code == 422
        assert response.json()["detail"]["field"] == "limit"

    def test_store_failure_is_generic_503(self, client, admin, monkeypatch):
        """Database failures reach the caller as a generic 503 with no driver details."""
        def failing_count(self):
            raise OperationalError("SELECT count(*)", {}, Exception("could not connect to server"))

        monkeypatch.setattr(Query, "count", failing_count)

        response = client.get("/api/v1/appointments", headers=auth_headers(admin))
        assert response.status_code == 503
        assert response.json()["detail"] == {
            "error": "store_unavailable",
            "field": None,
            "message": "The scheduling store is temporarily unavailable"
        }
        assert "could not connect" not in response.text

    def test_get_appointment(self, client, doctor, patient, make_appointment):
        appointment = make_appointment(patient, doctor)

        response = client.get(f"/api/v1/appointments/{appointment.id}", headers=auth_headers(doctor))
        assert response.status_code == 200
        assert response.json()["appointment"]["id"] == appointment.id

    def test_get_appointment_forbidden(self, client, patient, doctor, make_user, make_appointment):
        appointment = make_appointment(patient, doctor)

        response = client.get(
            f"/api/v1/appointments/{appointment.id}",
            headers=auth_headers(make_user("patient"))
        )
        assert response.status_code == 403
        assert response.json()["detail"]["error"] == "forbidden"

    def test_get_missing_appointment(self, client, admin):
        response = client.get("/api/v1/appointments/9999", headers=auth_headers(admin))
        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "not_found"


class TestAppointmentChanges:

    def test_confirm_and_complete(self, client, nurse, patient, doctor, make_appointment, notifier):
        """Test the happy path through the lifecycle."""
        appointment = make_appointment(patient, doctor)

        confirm = client.patch(
            f"/api/v1/appointments/{appointment.id}/status",
            json={"status": "confirmed"},
            headers=auth_headers(nurse)
        )
        assert confirm.status_code == 200
        assert confirm.json()["appointment"]["status"] == "confirmed"

        complete = client.patch(
            f"/api/v1/appointments/{appointment.id}/status",
            json={"status": "completed", "notes": "Blood pressure normal"},
            headers=auth_headers(doctor)
        )
        assert complete.status_code == 200

        data = complete.json()["appointment"]
        assert data["status"] == "completed"
        assert data["notes"]["doctor"] == "Blood pressure normal"
        assert [event for _, event in notifier.events] == ["confirmed", "completed"]

    def test_patient_cannot_cancel_confirmed(self, client, patient, doctor, make_appointment):
        appointment = make_appointment(patient, doctor, status=AppointmentStatus.CONFIRMED)

        response = client.patch(
            f"/api/v1/appointments/{appointment.id}/status",
            json={"status": "cancelled", "notes": "Cannot make it"},
            headers=auth_headers(patient)
        )
        assert response.status_code == 403

    def test_invalid_transition(self, client, admin, patient, doctor, make_appointment):
        appointment = make_appointment(patient, doctor, status=AppointmentStatus.CANCELLED)

        response = client.patch(
            f"/api/v1/appointments/{appointment.id}/status",
            json={"status": "confirmed"},
            headers=auth_headers(admin)
        )
        assert response.status_code == 409
        assert response.json()["detail"]["error"] == "invalid_transition"

    def test_unknown_status_value(self, client, admin, patient, doctor, make_appointment):
        appointment = make_appointment(patient, doctor)

        response = client.patch(
            f"/api/v1/appointments/{appointment.id}/status",
            json={"status": "archived"},
            headers=auth_headers(admin)
        )
        assert response.status_code == 422

    def test_reschedule(self, client, patient, doctor, make_appointment, notifier):
        appointment = make_appointment(patient, doctor)
        new_date = FUTURE_DATE + timedelta(days=2)

        response = client.put(
            f"/api/v1/appointments/{appointment.id}",
            json={
                "appointmentDate": new_date.isoformat(),
                "timeSlot": {"start": "14:00", "end": "14:30"},
                "priority": "high"
            },
            headers=auth_headers(patient)
        )
        assert response.status_code == 200

        data = response.json()["appointment"]
        assert data["appointment_date"] == new_date.isoformat()
        assert data["time_slot"] == {"start": "14:00", "end": "14:30"}
        assert data["priority"] == "high"
        assert notifier.events == [(appointment.id, "rescheduled")]

    def test_reschedule_conflict(self, client, patient, doctor, make_user, make_appointment):
        make_appointment(make_user("patient"), doctor, start="14:00", end="14:30")
        appointment = make_appointment(patient, doctor)

        response = client.put(
            f"/api/v1/appointments/{appointment.id}",
            json={
                "appointmentDate": FUTURE_DATE.isoformat(),
                "timeSlot": {"start": "14:00", "end": "14:30"}
            },
            headers=auth_headers(patient)
        )
        assert response.status_code == 409

    def test_add_prescription(self, client, patient, doctor, make_appointment):
        appointment = make_appointment(patient, doctor, status=AppointmentStatus.CONFIRMED)

        response = client.post(
            f"/api/v1/appointments/{appointment.id}/prescriptions",
            json={"entries": [{"medication": "Metformin", "dosage": "500mg", "frequency": "twice daily"}]},
            headers=auth_headers(doctor)
        )
        assert response.status_code == 200
        assert response.json()["appointment"]["prescription"][0]["medication"] == "Metformin"

    def test_send_reminder(self, client, admin, patient, doctor, make_appointment):
        appointment = make_appointment(patient, doctor)

        first = client.post(f"/api/v1/appointments/{appointment.id}/reminder", headers=auth_headers(admin))
        second = client.post(f"/api/v1/appointments/{appointment.id}/reminder", headers=auth_headers(admin))

        assert first.json() == {"appointment_id": appointment.id, "sent": True}
        assert second.json() == {"appointment_id": appointment.id, "sent": False}

    def test_delete_appointment(self, client, admin, patient, doctor, make_appointment):
        appointment = make_appointment(patient, doctor)

        response = client.delete(f"/api/v1/appointments/{appointment.id}", headers=auth_headers(admin))
        assert response.status_code == 200

        response = client.get(f"/api/v1/appointments/{appointment.id}", headers=auth_headers(admin))
        assert response.status_code == 404

    def test_delete_requires_admin(self, client, patient, doctor, make_appointment):
        appointment = make_appointment(patient, doctor)

        response = client.delete(f"/api/v1/appointments/{appointment.id}", headers=auth_headers(patient))
        assert response.status_code == 403


class TestServiceEndpoints:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_unknown_route(self, client):
        response = client.get("/api/v1/nowhere")
        assert response.status_code == 404
        assert response.json()["error"] == "Not Found"
