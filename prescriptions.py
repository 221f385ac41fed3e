import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from errors import Forbidden, NotFound, ValidationError
from mongo import PRESCRIPTIONS, DocumentStore, Subscription, where
from workflow import StatusMachine

PRESCRIPTION_STATUS = StatusMachine(
    "prescription",
    initial="active",
    transitions={
        "active": ("fulfilled", "expired"),
        "fulfilled": (),
        "expired": (),
    },
)

MEDICINE_FIELDS = ("id", "name", "dosage", "frequency", "duration", "price")


def prescription_total(prescription: Dict[str, Any]) -> float:
    """Sum of medicine prices; a medicine without a price counts as 0."""
    return round(sum(float(m.get("price") or 0) for m in prescription.get("medicines", [])), 2)


def search(prescriptions: List[dict], status: Optional[str] = None, term: str = "") -> List[dict]:
    if status and status != "all" and status not in PRESCRIPTION_STATUS.states:
        raise ValidationError(f"Unknown prescription status '{status}'")
    term = term.strip().lower()
    out = []
    for p in prescriptions:
        if status and status != "all" and p.get("status") != status:
            continue
        if term:
            names = [str(p.get("patientName", ""))] + [str(m.get("name", "")) for m in p.get("medicines", [])]
            if not any(term in n.lower() for n in names):
                continue
        out.append(p)
    return out


def _newest_first(prescriptions: List[dict]) -> List[dict]:
    return sorted(prescriptions, key=lambda p: str(p.get("createdAt", "")), reverse=True)


def _with_total(prescription: dict) -> dict:
    return {**prescription, "total": prescription_total(prescription)}


class PrescriptionWorkflow:
    def __init__(self, store: DocumentStore):
        self.store = store

    def create_prescription(
        self,
        doctor_id: str,
        patient_name: str,
        medicines: List[Dict[str, Any]],
        instructions: str = "",
        patient_id: Optional[str] = None,
        doctor_name: Optional[str] = None,
    ) -> dict:
        if not patient_name or not patient_name.strip():
            raise ValidationError("Please enter a patient name")
        if not medicines:
            raise ValidationError("Please add at least one medicine")
        entries = []
        for medicine in medicines:
            if not str(medicine.get("name") or "").strip():
                raise ValidationError("Every medicine needs a name")
            entries.append({k: medicine.get(k) for k in MEDICINE_FIELDS if medicine.get(k) is not None})

        prescription_id = f"presc{uuid.uuid4().hex[:12]}"
        prescription = {
            "doctorId": doctor_id,
            "doctorName": doctor_name or "Dr. Unknown",
            "patientName": patient_name.strip(),
            # no account to link to yet; the id only ties this record together
            "patientId": patient_id or f"temp-{int(time.time() * 1000)}",
            "medicines": entries,
            "instructions": instructions or "",
            "status": PRESCRIPTION_STATUS.initial,
            "createdAt": datetime.now(timezone.utc),
        }
        self.store.set(PRESCRIPTIONS, prescription_id, prescription)
        logging.info(f"Prescription {prescription_id} created by doctor {doctor_id}")
        return _with_total({"id": prescription_id, **prescription})

    def get(self, prescription_id: str) -> dict:
        prescription = self.store.get(PRESCRIPTIONS, prescription_id)
        if not prescription:
            raise NotFound(f"Prescription '{prescription_id}' not found")
        return _with_total(prescription)

    def set_status(self, prescription_id: str, new_status: str, doctor_id: Optional[str] = None) -> dict:
        prescription = self.get(prescription_id)
        if doctor_id is not None and prescription.get("doctorId") != doctor_id:
            raise Forbidden("This prescription belongs to another doctor")
        PRESCRIPTION_STATUS.check(prescription.get("status") or PRESCRIPTION_STATUS.initial, new_status)

        changes = {"status": new_status, "updatedAt": datetime.now(timezone.utc)}
        self.store.update(PRESCRIPTIONS, prescription_id, changes)
        logging.info(f"Prescription {prescription_id} marked as {new_status}")
        return {**prescription, **changes}

    def for_doctor(self, doctor_id: str) -> List[dict]:
        docs = self.store.query(PRESCRIPTIONS, [where("doctorId", "==", doctor_id)])
        return [_with_total(p) for p in _newest_first(docs)]

    def for_patient(self, patient_id: str) -> List[dict]:
        docs = self.store.query(PRESCRIPTIONS, [where("patientId", "==", patient_id)])
        return [_with_total(p) for p in _newest_first(docs)]

    def subscribe_for_doctor(self, doctor_id: str, on_change: Callable[[List[dict]], None]) -> Subscription:
        return self.store.subscribe(
            PRESCRIPTIONS,
            [where("doctorId", "==", doctor_id)],
            lambda docs: on_change([_with_total(p) for p in _newest_first(docs)]),
        )

    def subscribe_for_patient(self, patient_id: str, on_change: Callable[[List[dict]], None]) -> Subscription:
        return self.store.subscribe(
            PRESCRIPTIONS,
            [where("patientId", "==", patient_id)],
            lambda docs: on_change([_with_total(p) for p in _newest_first(docs)]),
        )
