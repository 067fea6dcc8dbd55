import hashlib
import hmac
import logging
import secrets
import sqlite3
import time
from datetime import datetime, timezone
from typing import Any, Literal, TypedDict

from backend.config import (
    ADMIN_EMAIL,
    ADMIN_NAME,
    ADMIN_PASSWORD,
    ADMISSION_COOLDOWN_HOURS,
    DB_PATH,
    DEFAULT_TERM_MONTHS,
    MIGRATIONS_DIR,
)
from backend.services.admission import (
    RESOURCE_KINDS,
    AdmissionOutcome,
    DecisionCode,
    ResourceKind,
    Role,
    ScannerIdentity,
    capability_for,
    coerce_role,
    decide,
    log_type_for,
    resource_kind_for,
)
from backend.services.payments import apply_payment_toggle, empty_service_state
from backend.services.term import default_term_end, maybe_reset, term_end_for_date

logger = logging.getLogger(__name__)

PASSWORD_HASH_ALGO = "pbkdf2_sha256"
PASSWORD_HASH_ITERATIONS = 120_000
STUDENT_FILTERS = {"ALL", "PAID", "UNPAID", "TRANSPORT_ONLY", "MEAL_ONLY"}
STUDENT_COLUMNS = (
    "id",
    "name",
    "class_name",
    "admin_number",
    "gender",
    "drop_location",
    "bus_number",
    "bus_name",
    "guardian_name",
    "guardian_phone",
    "created_at",
)

StudentFilter = Literal["ALL", "PAID", "UNPAID", "TRANSPORT_ONLY", "MEAL_ONLY"]


class ValidationError(ValueError):
    """Rejected input; raised before anything is written."""


class ScanResult(TypedDict):
    decision_code: DecisionCode
    message: str
    resource_kind: ResourceKind | None
    remaining_hours: int | None
    expected_resource: str | None
    cue: str
    payload: str
    student: dict[str, Any] | None
    scan_log_id: int
    scanned_at: str


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_student_id() -> str:
    # base36 millis + random suffix, safe inside a QR code
    millis = int(time.time() * 1000)
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    stamp = ""
    while millis:
        millis, rem = divmod(millis, 36)
        stamp = digits[rem] + stamp
    return f"{stamp}{secrets.token_hex(5).upper()}"


def _generate_uid() -> str:
    return secrets.token_hex(12)


def _hash_password(password: str, *, salt: str | None = None) -> str:
    salt_value = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        PASSWORD_HASH_ITERATIONS,
    ).hex()
    return f"{PASSWORD_HASH_ALGO}${PASSWORD_HASH_ITERATIONS}${salt_value}${digest}"


def _verify_password(password: str, password_hash: str) -> bool:
    try:
        algo, rounds_text, salt_value, expected_digest = password_hash.split("$", 3)
        rounds = int(rounds_text)
    except (ValueError, TypeError):
        return False

    if algo != PASSWORD_HASH_ALGO or rounds <= 0:
        return False

    candidate_digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        rounds,
    ).hex()
    return hmac.compare_digest(candidate_digest, expected_digest)


def connect_db():
    conn = sqlite3.connect(str(DB_PATH), check_same_thread=False)
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def apply_migrations(conn: sqlite3.Connection) -> list[str]:
    """
    Apply every `database/migrations/*.sql` file not yet recorded in
    `schema_migrations`, in file-name order. Returns the versions applied.
    """
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )
    conn.commit()
    cur = conn.cursor()
    cur.execute("SELECT version FROM schema_migrations")
    done = {str(row[0]) for row in cur.fetchall()}

    applied: list[str] = []
    for path in sorted(MIGRATIONS_DIR.glob("*.sql")):
        version = path.stem
        if version in done:
            continue
        conn.executescript(path.read_text(encoding="utf-8"))
        conn.execute(
            "INSERT INTO schema_migrations (version, applied_at) VALUES (?, ?)",
            (version, utcnow().isoformat()),
        )
        conn.commit()
        applied.append(version)
        logger.info("Applied schema migration %s", version)
    return applied


def _ensure_default_admin(cursor: sqlite3.Cursor) -> None:
    email = (ADMIN_EMAIL or "").strip()
    password = (ADMIN_PASSWORD or "").strip()
    if not email or not password:
        return

    cursor.execute(
        """
        SELECT uid
        FROM users
        WHERE email = ? COLLATE NOCASE
        """,
        (email,),
    )
    if cursor.fetchone():
        return

    cursor.execute(
        """
        INSERT INTO users (uid, name, email, password_hash, role, assigned_bus, created_at)
        VALUES (?, ?, ?, ?, ?, NULL, ?)
        """,
        ("admin_master", ADMIN_NAME, email, _hash_password(password), Role.ADMIN.value, utcnow().isoformat()),
    )


def create_tables():
    conn = connect_db()
    apply_migrations(conn)
    cursor = conn.cursor()
    _ensure_default_admin(cursor)
    conn.commit()
    conn.close()


# -----------------------------
# Students
# -----------------------------
def _student_from_row(row: tuple) -> dict[str, Any]:
    student: dict[str, Any] = dict(zip(STUDENT_COLUMNS, row))
    for kind in RESOURCE_KINDS:
        student[kind] = empty_service_state()
    return student


def _load_students(
    cur: sqlite3.Cursor,
    *,
    student_id: str | None = None,
) -> list[dict[str, Any]]:
    columns = ", ".join(STUDENT_COLUMNS)
    if student_id is None:
        cur.execute(f"SELECT {columns} FROM students ORDER BY name COLLATE NOCASE, id")
    else:
        cur.execute(f"SELECT {columns} FROM students WHERE id = ?", (student_id,))
    students = [_student_from_row(row) for row in cur.fetchall()]
    if not students:
        return []

    by_id = {s["id"]: s for s in students}
    where = "" if student_id is None else "WHERE student_id = ?"
    params: tuple = () if student_id is None else (student_id,)

    cur.execute(
        f"""
        SELECT student_id, kind, is_paid, last_payment_date, last_scan_time
        FROM service_states
        {where}
        """,
        params,
    )
    for sid, kind, is_paid, last_payment_date, last_scan_time in cur.fetchall():
        target = by_id.get(sid)
        if target is None or kind not in RESOURCE_KINDS:
            continue
        target[kind].update(
            {
                "is_paid": bool(is_paid),
                "last_payment_date": last_payment_date,
                "last_scan_time": last_scan_time,
            }
        )

    cur.execute(
        f"""
        SELECT student_id, kind, paid_at, paid_at_ms
        FROM payment_history
        {where}
        ORDER BY id
        """,
        params,
    )
    for sid, kind, paid_at, paid_at_ms in cur.fetchall():
        target = by_id.get(sid)
        if target is None or kind not in RESOURCE_KINDS:
            continue
        target[kind]["history"].append({"date": paid_at, "timestamp": int(paid_at_ms)})

    return students


def _write_service_state(cur: sqlite3.Cursor, student_id: str, kind: str, state: dict[str, Any]) -> None:
    cur.execute(
        """
        INSERT INTO service_states (student_id, kind, is_paid, last_payment_date, last_scan_time)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT (student_id, kind) DO UPDATE SET
            is_paid = excluded.is_paid,
            last_payment_date = excluded.last_payment_date,
            last_scan_time = excluded.last_scan_time
        """,
        (
            student_id,
            kind,
            1 if state.get("is_paid") else 0,
            state.get("last_payment_date"),
            state.get("last_scan_time"),
        ),
    )


def _append_history(cur: sqlite3.Cursor, student_id: str, kind: str, event: dict[str, Any]) -> None:
    cur.execute(
        """
        INSERT INTO payment_history (student_id, kind, paid_at, paid_at_ms)
        VALUES (?, ?, ?, ?)
        """,
        (student_id, kind, event["date"], int(event["timestamp"])),
    )


def _insert_student_row(cur: sqlite3.Cursor, student: dict[str, Any]) -> None:
    cur.execute(
        f"""
        INSERT INTO students ({", ".join(STUDENT_COLUMNS)})
        VALUES ({", ".join("?" for _ in STUDENT_COLUMNS)})
        """,
        tuple(student.get(col) for col in STUDENT_COLUMNS),
    )


def _clean_registration(data: dict[str, Any]) -> dict[str, Any]:
    def text(key: str) -> str:
        return str(data.get(key) or "").strip()

    cleaned = {
        "name": text("name"),
        "class_name": text("class_name"),
        "admin_number": text("admin_number"),
        "gender": text("gender") or "Not Specified",
        "drop_location": text("drop_location"),
        "bus_number": text("bus_number") or None,
        "bus_name": text("bus_name") or None,
        "guardian_name": text("guardian_name") or None,
        "guardian_phone": text("guardian_phone") or None,
    }
    if not cleaned["name"] or not cleaned["class_name"] or not cleaned["admin_number"]:
        raise ValidationError("Name, class and admin number are required.")
    return cleaned


def _admin_number_taken(cur: sqlite3.Cursor, admin_number: str) -> bool:
    cur.execute(
        "SELECT 1 FROM students WHERE admin_number = ? COLLATE NOCASE LIMIT 1",
        (admin_number,),
    )
    return cur.fetchone() is not None


def _insert_student(
    cur: sqlite3.Cursor,
    cleaned: dict[str, Any],
    *,
    transport_paid: bool,
    meal_paid: bool,
    now: datetime,
) -> str:
    student_id = generate_student_id()
    row = {**cleaned, "id": student_id, "created_at": now.isoformat()}
    _insert_student_row(cur, row)
    for kind, paid in (("transport", transport_paid), ("meal", meal_paid)):
        state, appended = apply_payment_toggle(None, paid, now)
        _write_service_state(cur, student_id, kind, state)
        if appended:
            _append_history(cur, student_id, kind, state["history"][-1])
    return student_id


def add_student(data: dict[str, Any], *, now: datetime | None = None) -> dict[str, Any]:
    cleaned = _clean_registration(data)
    stamp = now or utcnow()

    conn = connect_db()
    cur = conn.cursor()
    try:
        if _admin_number_taken(cur, cleaned["admin_number"]):
            raise ValidationError(f"Admin number {cleaned['admin_number']} already exists.")
        student_id = _insert_student(
            cur,
            cleaned,
            transport_paid=bool(data.get("transport_paid")),
            meal_paid=bool(data.get("meal_paid")),
            now=stamp,
        )
        conn.commit()
        return _load_students(cur, student_id=student_id)[0]
    finally:
        conn.close()


def bulk_add_students(
    rows: list[dict[str, Any]],
    *,
    now: datetime | None = None,
) -> tuple[int, list[dict[str, str]]]:
    """
    Insert many registrations in one transaction. Invalid rows and rows whose
    admin number already exists (in the table or earlier in `rows`) are
    skipped and reported as `{"admin_number", "reason"}`.
    """
    stamp = now or utcnow()
    added = 0
    skipped: list[dict[str, str]] = []
    seen: set[str] = set()

    conn = connect_db()
    cur = conn.cursor()
    try:
        for data in rows:
            try:
                cleaned = _clean_registration(data)
            except ValidationError as exc:
                skipped.append({"admin_number": str(data.get("admin_number") or ""), "reason": str(exc)})
                continue
            key = cleaned["admin_number"].casefold()
            if key in seen or _admin_number_taken(cur, cleaned["admin_number"]):
                skipped.append({"admin_number": cleaned["admin_number"], "reason": "Admin number already exists."})
                continue
            seen.add(key)
            _insert_student(
                cur,
                cleaned,
                transport_paid=bool(data.get("transport_paid")),
                meal_paid=bool(data.get("meal_paid")),
                now=stamp,
            )
            added += 1
        conn.commit()
    finally:
        conn.close()
    return added, skipped


def get_student_by_id(student_id: str) -> dict[str, Any] | None:
    clean_id = (student_id or "").strip()
    if not clean_id:
        return None
    conn = connect_db()
    cur = conn.cursor()
    rows = _load_students(cur, student_id=clean_id)
    conn.close()
    return rows[0] if rows else None


def _matches_filter(student: dict[str, Any], student_filter: str) -> bool:
    transport_paid = bool(student["transport"]["is_paid"])
    meal_paid = bool(student["meal"]["is_paid"])
    if student_filter == "PAID":
        return transport_paid and meal_paid
    if student_filter == "UNPAID":
        return not transport_paid or not meal_paid
    if student_filter == "TRANSPORT_ONLY":
        return transport_paid
    if student_filter == "MEAL_ONLY":
        return meal_paid
    return True


def get_all_students(
    *,
    search: str | None = None,
    student_filter: str = "ALL",
    viewer: ScannerIdentity | None = None,
) -> list[dict[str, Any]]:
    conn = connect_db()
    cur = conn.cursor()
    students = _load_students(cur)
    conn.close()

    restricted_kind: ResourceKind | None = None
    if viewer is not None and not capability_for(viewer.get("role")).sees_all_services:
        restricted_kind = resource_kind_for(viewer)

    needle = (search or "").strip().lower()
    out: list[dict[str, Any]] = []
    for student in students:
        if restricted_kind is not None and not student[restricted_kind]["is_paid"]:
            continue
        if not _matches_filter(student, student_filter):
            continue
        if needle and not (
            needle in student["name"].lower()
            or needle in (student["class_name"] or "").lower()
            or needle in student["admin_number"].lower()
        ):
            continue
        out.append(student)
    return out


def delete_student(student_id: str) -> bool:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("DELETE FROM students WHERE id = ?", (student_id,))
    deleted = cur.rowcount > 0
    conn.commit()
    conn.close()
    return deleted


def set_service_paid(
    student_id: str,
    kind: ResourceKind,
    is_paid: bool,
    *,
    now: datetime | None = None,
) -> dict[str, Any] | None:
    if kind not in RESOURCE_KINDS:
        raise ValidationError(f"Unknown service {kind!r}.")

    conn = connect_db()
    cur = conn.cursor()
    try:
        rows = _load_students(cur, student_id=student_id)
        if not rows:
            return None
        state, appended = apply_payment_toggle(rows[0][kind], is_paid, now or utcnow())
        _write_service_state(cur, student_id, kind, state)
        if appended:
            _append_history(cur, student_id, kind, state["history"][-1])
        conn.commit()
        return _load_students(cur, student_id=student_id)[0]
    finally:
        conn.close()


def regenerate_student_id(student_id: str) -> str | None:
    """
    Give one student a fresh opaque id; QR codes printed with the old id stop
    resolving.
    """
    conn = connect_db()
    cur = conn.cursor()
    new_id = generate_student_id()
    cur.execute("UPDATE students SET id = ? WHERE id = ?", (new_id, student_id))
    changed = cur.rowcount > 0
    conn.commit()
    conn.close()
    return new_id if changed else None


def regenerate_all_student_ids() -> int:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("SELECT id FROM students")
    ids = [str(row[0]) for row in cur.fetchall()]
    for old_id in ids:
        cur.execute("UPDATE students SET id = ? WHERE id = ?", (generate_student_id(), old_id))
    conn.commit()
    conn.close()
    return len(ids)


def replace_students(students: list[dict[str, Any]], *, conn: sqlite3.Connection | None = None) -> None:
    """
    Overwrite the whole student collection (service state and history
    included) with `students`.
    """
    owns_conn = conn is None
    active_conn = conn or connect_db()
    cur = active_conn.cursor()
    try:
        cur.execute("DELETE FROM students")
        for student in students:
            row = {col: student.get(col) for col in STUDENT_COLUMNS}
            row["created_at"] = row["created_at"] or utcnow().isoformat()
            row["gender"] = row["gender"] or "Not Specified"
            row["class_name"] = row["class_name"] or ""
            row["drop_location"] = row["drop_location"] or ""
            _insert_student_row(cur, row)
            for kind in RESOURCE_KINDS:
                state = student.get(kind) or empty_service_state()
                _write_service_state(cur, row["id"], kind, state)
                for event in state.get("history") or []:
                    _append_history(cur, row["id"], kind, event)
        if owns_conn:
            active_conn.commit()
    except sqlite3.Error:
        if owns_conn:
            active_conn.rollback()
        raise
    finally:
        if owns_conn:
            active_conn.close()


def get_dashboard_summary() -> dict[str, int]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("SELECT COUNT(1) FROM students")
    total = int(cur.fetchone()[0] or 0)
    cur.execute(
        """
        SELECT kind, COUNT(1)
        FROM service_states
        WHERE is_paid = 1
        GROUP BY kind
        """
    )
    paid = {str(kind): int(count) for kind, count in cur.fetchall()}
    conn.close()

    transport_paid = paid.get("transport", 0)
    meal_paid = paid.get("meal", 0)
    return {
        "total": total,
        "transport_paid": transport_paid,
        "transport_pending": max(0, total - transport_paid),
        "meal_paid": meal_paid,
        "meal_pending": max(0, total - meal_paid),
    }


# -----------------------------
# Users
# -----------------------------
def _user_from_row(row: tuple) -> dict[str, Any]:
    uid, name, email, role, assigned_bus, created_at = row
    return {
        "uid": uid,
        "name": name,
        "email": email,
        "role": role,
        "assigned_bus": assigned_bus,
        "created_at": created_at,
    }


def get_all_users() -> list[dict[str, Any]]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT uid, name, email, role, assigned_bus, created_at
        FROM users
        ORDER BY name COLLATE NOCASE
        """
    )
    rows = cur.fetchall()
    conn.close()
    return [_user_from_row(r) for r in rows]


def get_user_by_uid(uid: str) -> dict[str, Any] | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT uid, name, email, role, assigned_bus, created_at
        FROM users
        WHERE uid = ?
        """,
        (uid,),
    )
    row = cur.fetchone()
    conn.close()
    return _user_from_row(row) if row else None


def get_user_by_email(email: str) -> dict[str, Any] | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT uid, name, email, role, assigned_bus, created_at
        FROM users
        WHERE email = ? COLLATE NOCASE
        """,
        ((email or "").strip(),),
    )
    row = cur.fetchone()
    conn.close()
    return _user_from_row(row) if row else None


def add_user(
    *,
    name: str,
    email: str,
    password: str,
    role: str,
    assigned_bus: str | None = None,
) -> dict[str, Any]:
    clean_name = (name or "").strip()
    clean_email = (email or "").strip()
    clean_password = (password or "").strip()
    typed_role = coerce_role(role)
    if not clean_name or not clean_email or not clean_password:
        raise ValidationError("Name, email and password are required.")
    if typed_role is None:
        raise ValidationError(f"Unknown role {role!r}.")
    clean_bus = (assigned_bus or "").strip() or None
    if clean_bus and capability_for(typed_role).info_only:
        raise ValidationError("Only operator roles can be assigned to a bus.")

    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute("SELECT 1 FROM users WHERE email = ? COLLATE NOCASE", (clean_email,))
        if cur.fetchone():
            raise ValidationError("Email already exists.")
        uid = _generate_uid()
        cur.execute(
            """
            INSERT INTO users (uid, name, email, password_hash, role, assigned_bus, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                uid,
                clean_name,
                clean_email,
                _hash_password(clean_password),
                typed_role.value,
                clean_bus,
                utcnow().isoformat(),
            ),
        )
        conn.commit()
    finally:
        conn.close()
    return get_user_by_uid(uid)


def remove_user(uid: str) -> bool:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("DELETE FROM users WHERE uid = ?", (uid,))
    deleted = cur.rowcount > 0
    conn.commit()
    conn.close()
    return deleted


def verify_user_credentials(email: str, password: str) -> dict[str, Any] | None:
    clean_email = (email or "").strip()
    clean_password = (password or "").strip()
    if not clean_email or not clean_password:
        return None

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT uid, name, email, role, assigned_bus, created_at, password_hash
        FROM users
        WHERE email = ? COLLATE NOCASE
        """,
        (clean_email,),
    )
    row = cur.fetchone()
    conn.close()

    if not row:
        return None
    if not _verify_password(clean_password, row[6]):
        return None
    return _user_from_row(row[:6])


def update_password(uid: str, new_password: str) -> bool:
    clean_password = (new_password or "").strip()
    if not clean_password:
        raise ValidationError("Password is required.")
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        "UPDATE users SET password_hash = ? WHERE uid = ?",
        (_hash_password(clean_password), uid),
    )
    changed = cur.rowcount > 0
    conn.commit()
    conn.close()
    return changed


def scanner_identity(user: dict[str, Any]) -> ScannerIdentity:
    return {
        "uid": str(user.get("uid") or ""),
        "email": str(user.get("email") or ""),
        "name": str(user.get("name") or ""),
        "role": str(user.get("role") or ""),
        "assigned_bus": user.get("assigned_bus"),
    }


# -----------------------------
# Settings / term
# -----------------------------
def _settings_from_row(row: tuple) -> dict[str, Any]:
    return {
        "term_end_date": row[0],
        "term_reset_processed": bool(row[1]),
        "updated_at": row[2],
    }


def _read_settings(cur: sqlite3.Cursor) -> dict[str, Any] | None:
    cur.execute("SELECT term_end_date, term_reset_processed, updated_at FROM app_settings WHERE id = 1")
    row = cur.fetchone()
    return _settings_from_row(row) if row else None


def _write_settings(cur: sqlite3.Cursor, settings: dict[str, Any]) -> None:
    cur.execute(
        """
        INSERT INTO app_settings (id, term_end_date, term_reset_processed, updated_at)
        VALUES (1, ?, ?, ?)
        ON CONFLICT (id) DO UPDATE SET
            term_end_date = excluded.term_end_date,
            term_reset_processed = excluded.term_reset_processed,
            updated_at = excluded.updated_at
        """,
        (
            settings["term_end_date"],
            1 if settings.get("term_reset_processed") else 0,
            utcnow().isoformat(),
        ),
    )


def get_settings(*, now: datetime | None = None) -> dict[str, Any]:
    """
    Return the settings row, creating the default (term ends a few months
    from now, not processed) on first read.
    """
    conn = connect_db()
    cur = conn.cursor()
    try:
        settings = _read_settings(cur)
        if settings is None:
            term_end = default_term_end(now or utcnow(), DEFAULT_TERM_MONTHS)
            _write_settings(cur, {"term_end_date": term_end.isoformat(), "term_reset_processed": False})
            conn.commit()
            settings = _read_settings(cur)
        return settings
    finally:
        conn.close()


def update_settings(settings: dict[str, Any]) -> dict[str, Any]:
    current = get_settings()
    merged = {**current, **{k: v for k, v in settings.items() if k in {"term_end_date", "term_reset_processed"}}}
    conn = connect_db()
    cur = conn.cursor()
    _write_settings(cur, merged)
    conn.commit()
    out = _read_settings(cur)
    conn.close()
    return out


def set_term_end(day: str) -> dict[str, Any]:
    """
    Start a new term ending on `day` (YYYY-MM-DD); re-arms the reset sweep.
    """
    try:
        term_end = term_end_for_date(day)
    except ValueError:
        raise ValidationError("Term end date must be YYYY-MM-DD.")
    return update_settings({"term_end_date": term_end.isoformat(), "term_reset_processed": False})


def run_term_reset(*, now: datetime | None = None) -> dict[str, Any]:
    stamp = now or utcnow()

    conn = connect_db()
    cur = conn.cursor()
    try:
        conn.execute("BEGIN IMMEDIATE")
        # read under the write lock so concurrent sweeps see each other
        settings = _read_settings(cur)
        if settings is None:
            term_end = default_term_end(stamp, DEFAULT_TERM_MONTHS)
            settings = {"term_end_date": term_end.isoformat(), "term_reset_processed": False}
            _write_settings(cur, settings)
        students = _load_students(cur)
        result = maybe_reset(settings, students, stamp)
        if result["applied"]:
            for student in result["students"]:
                for kind in RESOURCE_KINDS:
                    _write_service_state(cur, student["id"], kind, student[kind])
            _write_settings(cur, result["settings"])
            logger.info("Term reset applied; %s student(s) set unpaid", result["students_changed"])
        conn.commit()
    except sqlite3.Error:
        conn.rollback()
        raise
    finally:
        conn.close()

    return {"applied": result["applied"], "students_changed": result["students_changed"]}


# -----------------------------
# Scan processing
# -----------------------------
def _insert_scan_log(
    cur: sqlite3.Cursor,
    *,
    scanned_at: str,
    payload: str,
    student: dict[str, Any] | None,
    outcome: AdmissionOutcome,
    scanner: ScannerIdentity,
    session_id: str | None,
) -> int:
    cur.execute(
        """
        INSERT INTO scan_logs (
            scanned_at,
            payload,
            student_id,
            student_name,
            class_name,
            drop_location,
            scan_type,
            decision_code,
            status,
            message,
            remaining_hours,
            scanned_by,
            scanned_by_name,
            session_id
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            scanned_at,
            payload,
            student["id"] if student else None,
            student["name"] if student else "Unknown",
            (student.get("class_name") or "-") if student else "-",
            (student.get("drop_location") or "-") if student else "-",
            log_type_for(outcome),
            outcome["decision_code"],
            outcome["cue"],
            outcome["message"],
            outcome["remaining_hours"],
            scanner["email"],
            scanner["name"],
            session_id,
        ),
    )
    return int(cur.lastrowid)


def process_scan(
    *,
    payload: str,
    scanner: ScannerIdentity,
    now: datetime | None = None,
    session_id: str | None = None,
    window_hours: int = ADMISSION_COOLDOWN_HOURS,
    conn: sqlite3.Connection | None = None,
) -> ScanResult:
    """
    Decide one decoded payload and persist its effects.

    - A scan log row is written for every outcome.
    - `last_scan_time` moves only on APPROVED.
    - Read, decision and writes share one IMMEDIATE transaction so scanning
      stations on the same database file cannot admit the same student twice.
    """
    owns_conn = conn is None
    active_conn = conn or connect_db()
    cur = active_conn.cursor()
    stamp = now or utcnow()
    scanned_at = stamp.isoformat()
    student_id = (payload or "").strip()

    try:
        active_conn.execute("BEGIN IMMEDIATE")
        rows = _load_students(cur, student_id=student_id) if student_id else []
        student = rows[0] if rows else None

        outcome = decide(student_id, student, scanner, stamp, window_hours=window_hours)

        if outcome["decision_code"] == "APPROVED" and student is not None:
            kind = outcome["resource_kind"]
            state = dict(student[kind])
            state["last_scan_time"] = scanned_at
            _write_service_state(cur, student["id"], kind, state)
            student[kind] = state

        log_id = _insert_scan_log(
            cur,
            scanned_at=scanned_at,
            payload=student_id,
            student=student,
            outcome=outcome,
            scanner=scanner,
            session_id=session_id,
        )
        active_conn.commit()
    except sqlite3.Error:
        active_conn.rollback()
        raise
    finally:
        if owns_conn:
            active_conn.close()

    logger.info(
        "Scan %s by %s: %s (%s)",
        student_id or "<empty>",
        scanner["email"] or "<unknown>",
        outcome["decision_code"],
        outcome["message"],
    )
    return {
        "decision_code": outcome["decision_code"],
        "message": outcome["message"],
        "resource_kind": outcome["resource_kind"],
        "remaining_hours": outcome["remaining_hours"],
        "expected_resource": outcome["expected_resource"],
        "cue": outcome["cue"],
        "payload": student_id,
        "student": student,
        "scan_log_id": log_id,
        "scanned_at": scanned_at,
    }


# -----------------------------
# Scan logs
# -----------------------------
SCAN_LOG_COLUMNS = (
    "id",
    "scanned_at",
    "payload",
    "student_id",
    "student_name",
    "class_name",
    "drop_location",
    "scan_type",
    "decision_code",
    "status",
    "message",
    "remaining_hours",
    "scanned_by",
    "scanned_by_name",
    "session_id",
)


def _build_scan_logs_where_clause(
    *,
    decision_code: DecisionCode | None = None,
    scanned_by: str | None = None,
    search: str | None = None,
) -> tuple[str, list[Any]]:
    where = ["1=1"]
    params: list[Any] = []

    if decision_code is not None:
        where.append("decision_code = ?")
        params.append(decision_code)
    if scanned_by is not None:
        where.append("scanned_by = ? COLLATE NOCASE")
        params.append(scanned_by)
    if search:
        needle = f"%{search}%"
        where.append("(student_name LIKE ? OR scanned_by_name LIKE ? OR status LIKE ?)")
        params.extend([needle, needle, needle])

    return " AND ".join(where), params


def get_scan_logs(
    *,
    decision_code: DecisionCode | None = None,
    scanned_by: str | None = None,
    search: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[dict[str, Any]]:
    """
    Newest first.
    """
    where_sql, params = _build_scan_logs_where_clause(
        decision_code=decision_code,
        scanned_by=scanned_by,
        search=search,
    )
    safe_limit = max(1, min(int(limit), 500))
    safe_offset = max(0, int(offset))

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT {", ".join(SCAN_LOG_COLUMNS)}
        FROM scan_logs
        WHERE {where_sql}
        ORDER BY id DESC
        LIMIT ?
        OFFSET ?
        """,
        [*params, safe_limit, safe_offset],
    )
    rows = cur.fetchall()
    conn.close()
    return [dict(zip(SCAN_LOG_COLUMNS, row)) for row in rows]


def get_scan_logs_total(
    *,
    decision_code: DecisionCode | None = None,
    scanned_by: str | None = None,
    search: str | None = None,
) -> int:
    where_sql, params = _build_scan_logs_where_clause(
        decision_code=decision_code,
        scanned_by=scanned_by,
        search=search,
    )
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(f"SELECT COUNT(1) FROM scan_logs WHERE {where_sql}", params)
    row = cur.fetchone()
    conn.close()
    return int(row[0] or 0) if row else 0
