from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from errors import NotFound, ValidationError
from mongo import USERS, DocumentStore, where

USER_TYPES = ("patient", "doctor")
READ_ONLY_FIELDS = ("uid", "email", "userType", "createdAt", "id")
HEALTH_STATUSES = ("critical", "stable", "recovering")


def validate_profile(name: str, user_type: str, license_number: Optional[str] = None) -> None:
    if user_type not in USER_TYPES:
        raise ValidationError(f"userType must be one of {', '.join(USER_TYPES)}")
    if not name or not name.strip():
        raise ValidationError("Name is required")
    if user_type == "doctor" and not (license_number or "").strip():
        raise ValidationError("A license number is required for doctors")


def create_profile(
    store: DocumentStore,
    uid: str,
    name: str,
    email: str,
    user_type: str,
    license_number: Optional[str] = None,
) -> dict:
    validate_profile(name, user_type, license_number)
    profile = {
        "uid": uid,
        "name": name.strip(),
        "email": email.strip().lower(),
        "userType": user_type,
        "licenseNumber": license_number.strip() if user_type == "doctor" else None,
        "createdAt": datetime.now(timezone.utc),
    }
    store.set(USERS, uid, profile)
    return {"id": uid, **profile}


def fetch_profile(store: DocumentStore, uid: str) -> Optional[dict]:
    return store.get(USERS, uid)


def update_profile(store: DocumentStore, uid: str, updates: Dict[str, Any]) -> dict:
    """Merge `updates` into the profile; identity fields stay as created."""
    changes = {k: v for k, v in updates.items() if k not in READ_ONLY_FIELDS and v is not None}
    if "name" in changes and not str(changes["name"]).strip():
        raise ValidationError("Name cannot be empty")
    if not store.get(USERS, uid):
        raise NotFound("Profile not found")
    if changes:
        changes["updatedAt"] = datetime.now(timezone.utc)
        store.set(USERS, uid, changes, merge=True)
    return store.get(USERS, uid)


def list_doctors(store: DocumentStore, specialization: Optional[str] = None) -> List[dict]:
    predicates = [where("userType", "==", "doctor")]
    if specialization:
        predicates.append(where("specialization", "==", specialization))
    return store.query(USERS, predicates)


def list_patients(store: DocumentStore, term: str = "", health_status: Optional[str] = None) -> List[dict]:
    """
    Patients whose name or email contains `term` (case-insensitive),
    optionally narrowed to one health status. "all" means no status filter.
    """
    if health_status and health_status != "all" and health_status not in HEALTH_STATUSES:
        raise ValidationError(f"health_status must be one of all, {', '.join(HEALTH_STATUSES)}")
    predicates = [where("userType", "==", "patient")]
    if health_status and health_status != "all":
        predicates.append(where("healthStatus", "==", health_status))
    needle = term.strip().lower()
    return [
        p for p in store.query(USERS, predicates)
        if needle in str(p.get("name", "")).lower() or needle in str(p.get("email", "")).lower()
    ]
