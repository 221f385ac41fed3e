import itertools
import logging
import threading
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from pymongo import MongoClient
from pymongo.database import Database
from pymongo.errors import PyMongoError

from config import Settings
from errors import NotFound, StoreUnavailable, ValidationError

# Collection paths
USERS = "users"
APPOINTMENTS = "appointments"
PRESCRIPTIONS = "prescriptions"
MEDICINES = "medicines"
MEAL_PLANS = "mealPlans"
MEDICAL_RECORDS = "medicalRecords"
ACCOUNTS = "accounts"
SESSIONS = "sessions"


def cart_items_path(user_id: str) -> str:
    return f"carts/{user_id}/items"


Predicate = Tuple[str, str, Any]

_OPERATORS = {
    "==": "$eq",
    "!=": "$ne",
    "<": "$lt",
    "<=": "$lte",
    ">": "$gt",
    ">=": "$gte",
    "in": "$in",
    "not-in": "$nin",
}


def where(field: str, op: str, value: Any) -> Predicate:
    if op not in _OPERATORS:
        raise ValidationError(f"Unsupported query operator: {op}")
    return (field, op, value)


def get_database(settings: Settings) -> Database:
    client = MongoClient(settings.mongo_uri)
    return client[settings.mongo_db_name]


class Subscription:
    """Handle for a standing listener. Release it with unsubscribe() or a with-block."""

    def __init__(self, release: Callable[[], None]):
        self._release = release
        self.active = True

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        self._release()

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.unsubscribe()


class ListenerRegistry:
    def __init__(self):
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._entries: Dict[int, Any] = {}

    def add(self, entry: Any) -> Subscription:
        key = next(self._ids)
        with self._lock:
            self._entries[key] = entry
        return Subscription(lambda: self._remove(key))

    def _remove(self, key: int) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def entries(self) -> List[Any]:
        with self._lock:
            return list(self._entries.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class _Listener:
    def __init__(self, path: str, predicates: List[Predicate], on_change: Callable[[List[dict]], None]):
        self.path = path
        self.predicates = predicates
        self.on_change = on_change
        self.subscription: Optional[Subscription] = None
        # snapshots for one listener are queried and delivered one at a time
        self.lock = threading.RLock()

    @property
    def active(self) -> bool:
        return self.subscription is not None and self.subscription.active


@contextmanager
def _backend(operation: str):
    try:
        yield
    except PyMongoError as e:
        logging.error(f"Error in {operation}: {str(e)}")
        raise StoreUnavailable(f"Document store unavailable ({operation})") from e


class DocumentStore:
    """
    Record-level access to named collection paths.

    Paths are either a top-level collection ("appointments") or a collection
    nested under one record ("carts/<uid>/items"). Nested paths share one
    MongoDB collection per shape ("carts.items"), scoped by a parent field.
    Records come back as plain dicts with their key under "id".
    """

    def __init__(self, db: Database):
        self.db = db
        self._listeners = ListenerRegistry()

    # ---------- path helpers ----------
    @staticmethod
    def _resolve(path: str) -> Tuple[str, Optional[str]]:
        segments = path.strip("/").split("/")
        if not all(segments) or len(segments) % 2 == 0:
            raise ValidationError(f"Invalid collection path: {path}")
        collection = ".".join(segments[0::2])
        parent = "/".join(segments[:-1]) or None
        return collection, parent

    @staticmethod
    def _key(parent: Optional[str], record_id: str) -> str:
        if not record_id or "/" in record_id:
            raise ValidationError(f"Invalid record id: {record_id!r}")
        return f"{parent}/{record_id}" if parent else record_id

    @staticmethod
    def _to_record(doc: dict) -> dict:
        record = {k: v for k, v in doc.items() if k not in ("_id", "_parent")}
        record["id"] = str(doc["_id"]).rsplit("/", 1)[-1]
        return record

    @staticmethod
    def _filter(parent: Optional[str], predicates: Iterable[Predicate]) -> dict:
        clauses = [{"_parent": parent}] if parent else []
        for field, op, value in predicates:
            if op not in _OPERATORS:
                raise ValidationError(f"Unsupported query operator: {op}")
            clauses.append({field: {_OPERATORS[op]: value}})
        if not clauses:
            return {}
        if len(clauses) == 1:
            return clauses[0]
        return {"$and": clauses}

    # ---------- primitives ----------
    def get(self, path: str, record_id: str) -> Optional[dict]:
        collection, parent = self._resolve(path)
        with _backend(f"get {path}"):
            doc = self.db[collection].find_one({"_id": self._key(parent, record_id)})
        return self._to_record(doc) if doc else None

    def set(self, path: str, record_id: str, record: Dict[str, Any], merge: bool = False) -> None:
        collection, parent = self._resolve(path)
        key = self._key(parent, record_id)
        fields = {k: v for k, v in record.items() if k not in ("id", "_id")}
        if parent:
            fields["_parent"] = parent
        with _backend(f"set {path}"):
            if merge:
                self.db[collection].update_one({"_id": key}, {"$set": fields}, upsert=True)
            else:
                self.db[collection].replace_one({"_id": key}, {"_id": key, **fields}, upsert=True)
        self._notify(path)

    def update(self, path: str, record_id: str, partial: Dict[str, Any]) -> None:
        collection, parent = self._resolve(path)
        key = self._key(parent, record_id)
        fields = {k: v for k, v in partial.items() if k not in ("id", "_id", "_parent")}
        if not fields:
            raise ValidationError("Nothing to update")
        with _backend(f"update {path}"):
            result = self.db[collection].update_one({"_id": key}, {"$set": fields})
        if result.matched_count == 0:
            raise NotFound(f"No record '{record_id}' in {path}")
        self._notify(path)

    def delete(self, path: str, record_id: str) -> None:
        collection, parent = self._resolve(path)
        with _backend(f"delete {path}"):
            self.db[collection].delete_one({"_id": self._key(parent, record_id)})
        self._notify(path)

    def query(self, path: str, predicates: Iterable[Predicate] = ()) -> List[dict]:
        collection, parent = self._resolve(path)
        query_filter = self._filter(parent, predicates)
        with _backend(f"query {path}"):
            docs = list(self.db[collection].find(query_filter))
        return [self._to_record(d) for d in docs]

    # ---------- live views ----------
    def subscribe(
        self,
        path: str,
        predicates: Iterable[Predicate],
        on_change: Callable[[List[dict]], None],
    ) -> Subscription:
        """
        Register a standing query. The current snapshot is delivered right
        away, then a fresh full snapshot after every write to `path` made
        through this store.
        """
        _, parent = self._resolve(path)
        predicates = list(predicates or [])
        self._filter(parent, predicates)

        listener = _Listener(path.strip("/"), predicates, on_change)
        subscription = self._listeners.add(listener)
        with listener.lock:
            listener.subscription = subscription
            try:
                self._refresh(listener)
            except StoreUnavailable:
                subscription.unsubscribe()
                raise
        return subscription

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def _notify(self, path: str) -> None:
        path = path.strip("/")
        for listener in self._listeners.entries():
            if listener.path != path:
                continue
            try:
                self._refresh(listener)
            except StoreUnavailable:
                continue

    def _refresh(self, listener: _Listener) -> None:
        with listener.lock:
            if not listener.active:
                return
            self._dispatch(listener, self.query(listener.path, listener.predicates))

    @staticmethod
    def _dispatch(listener: _Listener, snapshot: List[dict]) -> None:
        try:
            listener.on_change(snapshot)
        except Exception:
            logging.exception(f"Listener on {listener.path} failed")
