import logging
import threading
from datetime import datetime
from typing import Any, Callable

import database.db as db
from backend.services.admission import ScannerIdentity

logger = logging.getLogger(__name__)

STUDENTS = "students"
USERS = "users"
SETTINGS = "settings"
SCAN_LOGS = "scan_logs"
STORE_KEYS = (STUDENTS, USERS, SETTINGS, SCAN_LOGS)

Subscriber = Callable[[Any], None]


class RecordStore:
    """
    Keyed access to the four collections with change notification.

    Subscribers for a key are called with the fresh collection after every
    write made through this store. A subscriber that raises is logged and
    skipped; it never fails the write.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[str, list[Subscriber]] = {key: [] for key in STORE_KEYS}

    def get(self, key: str, default: Any = None) -> Any:
        if key == STUDENTS:
            return db.get_all_students()
        if key == USERS:
            return db.get_all_users()
        if key == SETTINGS:
            return db.get_settings()
        if key == SCAN_LOGS:
            return db.get_scan_logs(limit=500)
        return default

    def put(self, key: str, records: Any) -> None:
        if key == STUDENTS:
            db.replace_students(list(records or []))
        elif key == SETTINGS:
            db.update_settings(dict(records or {}))
        else:
            # users carry password hashes and scan logs are append-only
            raise KeyError(f"{key!r} is not writable as a collection.")
        self.notify(key)

    def subscribe(self, key: str, callback: Subscriber) -> Callable[[], None]:
        if key not in self._subscribers:
            raise KeyError(f"Unknown store key {key!r}.")
        with self._lock:
            self._subscribers[key].append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers[key]:
                    self._subscribers[key].remove(callback)

        return unsubscribe

    def notify(self, key: str) -> None:
        with self._lock:
            callbacks = list(self._subscribers.get(key, []))
        if not callbacks:
            return
        value = self.get(key)
        for callback in callbacks:
            try:
                callback(value)
            except Exception:
                logger.exception("Store subscriber for %s failed", key)

    # Scan path

    def find_student(self, student_id: str) -> dict[str, Any] | None:
        return db.get_student_by_id(student_id)

    def process_scan(
        self,
        *,
        payload: str,
        scanner: ScannerIdentity,
        now: datetime | None = None,
        session_id: str | None = None,
    ) -> db.ScanResult:
        result = db.process_scan(
            payload=payload,
            scanner=scanner,
            now=now,
            session_id=session_id,
        )
        if result["decision_code"] == "APPROVED":
            self.notify(STUDENTS)
        self.notify(SCAN_LOGS)
        return result

    def run_term_reset(self, *, now: datetime | None = None) -> dict[str, Any]:
        result = db.run_term_reset(now=now)
        if result["applied"]:
            self.notify(STUDENTS)
            self.notify(SETTINGS)
        return result
