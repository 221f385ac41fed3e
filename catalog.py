from typing import Callable, List

from errors import NotFound
from mongo import MEDICINES, DocumentStore, Subscription


def list_medicines(store: DocumentStore) -> List[dict]:
    return sorted(store.query(MEDICINES), key=lambda m: str(m.get("name", "")).lower())


def get_medicine(store: DocumentStore, medicine_id: str) -> dict:
    medicine = store.get(MEDICINES, medicine_id)
    if not medicine:
        raise NotFound(f"Medicine '{medicine_id}' not found")
    return medicine


def subscribe_medicines(store: DocumentStore, on_change: Callable[[List[dict]], None]) -> Subscription:
    return store.subscribe(MEDICINES, [], on_change)
