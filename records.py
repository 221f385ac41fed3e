from typing import Callable, List, Optional

from mongo import MEDICAL_RECORDS, DocumentStore, Subscription, where


def _newest_first(records: List[dict]) -> List[dict]:
    return sorted(records, key=lambda r: str(r.get("date") or ""), reverse=True)


def list_medical_records(store: DocumentStore, patient_id: str) -> List[dict]:
    return _newest_first(store.query(MEDICAL_RECORDS, [where("patientId", "==", patient_id)]))


def subscribe_medical_records(
    store: DocumentStore,
    patient_id: str,
    on_change: Callable[[List[dict]], None],
) -> Subscription:
    """Live view of one patient's records, newest first."""
    return store.subscribe(
        MEDICAL_RECORDS,
        [where("patientId", "==", patient_id)],
        lambda docs: on_change(_newest_first(docs)),
    )


def latest_vitals(records: List[dict]) -> Optional[dict]:
    # records arrive newest first
    for record in records:
        if record.get("type") == "vitals":
            return record.get("data")
    return None


def current_medications(records: List[dict]) -> List[dict]:
    medications = []
    for record in records:
        if record.get("type") == "prescription":
            medications.extend(record.get("medications") or [])
    return medications


def patient_summary(records: List[dict]) -> dict:
    return {
        "records": records,
        "latestVitals": latest_vitals(records),
        "currentMedications": current_medications(records),
    }
