import logging
import uuid
from datetime import date as Date, datetime, timezone
from typing import Callable, List, Optional

from errors import Forbidden, NotFound, ValidationError
from mongo import APPOINTMENTS, DocumentStore, Subscription, where
from workflow import StatusMachine

APPOINTMENT_STATUS = StatusMachine(
    "appointment",
    initial="pending",
    transitions={
        "pending": ("confirmed", "cancelled"),
        "confirmed": ("completed", "cancelled"),
        "completed": (),
        "cancelled": (),
    },
)

PERIODS = ("upcoming", "past", "today", "all")


def available_times() -> List[str]:
    """Bookable half-hour slots from 09:00 to 17:00."""
    times = []
    for hour in range(9, 18):
        times.append(f"{hour:02d}:00")
        if hour < 17:
            times.append(f"{hour:02d}:30")
    return times


def _parse_date(value: str) -> Date:
    try:
        return Date.fromisoformat(str(value)[:10])
    except ValueError:
        raise ValidationError(f"Invalid appointment date: {value!r}")


def filter_by_period(appointments: List[dict], period: str, today: Optional[Date] = None) -> List[dict]:
    if period not in PERIODS:
        raise ValidationError(f"period must be one of {', '.join(PERIODS)}")
    if period == "all":
        return list(appointments)
    today = today or Date.today()
    out = []
    for appointment in appointments:
        try:
            day = _parse_date(appointment.get("date") or "")
        except ValidationError:
            # undated or malformed records only show up under "all"
            continue
        if period == "upcoming" and day >= today:
            out.append(appointment)
        elif period == "past" and day < today:
            out.append(appointment)
        elif period == "today" and day == today:
            out.append(appointment)
    return out


def _by_schedule(appointments: List[dict]) -> List[dict]:
    return sorted(appointments, key=lambda a: (str(a.get("date", "")), str(a.get("time", "")).zfill(5)))


class AppointmentWorkflow:
    """
    Patients book, doctors move the booking through
    pending -> confirmed -> completed, with cancellation allowed from either
    non-terminal state. Nothing leaves completed or cancelled.
    """

    def __init__(self, store: DocumentStore):
        self.store = store

    def book_appointment(
        self,
        patient_id: str,
        doctor_id: str,
        date: str,
        time: str,
        reason: str,
        patient_name: str = "Unknown",
        doctor_name: Optional[str] = None,
    ) -> dict:
        missing = [name for name, value in (("doctor", doctor_id), ("date", date), ("time", time), ("reason", reason))
                   if not value or not str(value).strip()]
        if missing:
            raise ValidationError(f"Please fill all fields: {', '.join(missing)}")
        day = _parse_date(date)

        # Double bookings are allowed; the same doctor/date/time may repeat.
        appointment_id = f"apt{uuid.uuid4().hex[:12]}"
        appointment = {
            "patientId": patient_id,
            "patientName": patient_name or "Unknown",
            "doctorId": doctor_id,
            "doctorName": doctor_name,
            "date": day.isoformat(),
            "time": time.strip(),
            "reason": reason.strip(),
            "status": APPOINTMENT_STATUS.initial,
            "createdAt": datetime.now(timezone.utc),
        }
        self.store.set(APPOINTMENTS, appointment_id, appointment)
        logging.info(f"Appointment {appointment_id} booked with doctor {doctor_id}")
        return {"id": appointment_id, **appointment}

    def get(self, appointment_id: str) -> dict:
        appointment = self.store.get(APPOINTMENTS, appointment_id)
        if not appointment:
            raise NotFound(f"Appointment '{appointment_id}' not found")
        return appointment

    def set_status(self, appointment_id: str, new_status: str, doctor_id: Optional[str] = None) -> dict:
        appointment = self.get(appointment_id)
        if doctor_id is not None and appointment.get("doctorId") != doctor_id:
            raise Forbidden("This appointment belongs to another doctor")
        APPOINTMENT_STATUS.check(appointment.get("status") or APPOINTMENT_STATUS.initial, new_status)

        changes = {"status": new_status, "updatedAt": datetime.now(timezone.utc)}
        self.store.update(APPOINTMENTS, appointment_id, changes)
        logging.info(f"Appointment {appointment_id}: {appointment.get('status')} -> {new_status}")
        return {**appointment, **changes}

    def for_doctor(self, doctor_id: str) -> List[dict]:
        return _by_schedule(self.store.query(APPOINTMENTS, [where("doctorId", "==", doctor_id)]))

    def for_patient(self, patient_id: str) -> List[dict]:
        return _by_schedule(self.store.query(APPOINTMENTS, [where("patientId", "==", patient_id)]))

    def subscribe_for_doctor(self, doctor_id: str, on_change: Callable[[List[dict]], None]) -> Subscription:
        return self.store.subscribe(
            APPOINTMENTS, [where("doctorId", "==", doctor_id)], lambda docs: on_change(_by_schedule(docs))
        )

    def subscribe_for_patient(self, patient_id: str, on_change: Callable[[List[dict]], None]) -> Subscription:
        return self.store.subscribe(
            APPOINTMENTS, [where("patientId", "==", patient_id)], lambda docs: on_change(_by_schedule(docs))
        )
