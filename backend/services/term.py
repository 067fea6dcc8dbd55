import copy
from datetime import datetime, time, timedelta, timezone
from typing import Any, TypedDict

from backend.services.admission import RESOURCE_KINDS, as_utc


class TermResetResult(TypedDict):
    applied: bool
    students: list[dict[str, Any]]
    settings: dict[str, Any]
    students_changed: int


def _parse_term_end(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return as_utc(value)
    if not value:
        return None
    try:
        return as_utc(datetime.fromisoformat(str(value)))
    except ValueError:
        return None


def maybe_reset(
    settings: dict[str, Any],
    students: list[dict[str, Any]],
    now: datetime,
) -> TermResetResult:
    """
    Term reset sweep.

    Runs only when `now` is past `term_end_date` and the term has not been
    processed yet. Every paid service is set unpaid; payment history and
    `last_payment_date` are kept. The inputs are never modified.
    """
    term_end = _parse_term_end(settings.get("term_end_date"))
    already_processed = bool(settings.get("term_reset_processed"))

    if term_end is None or already_processed or as_utc(now) <= term_end:
        return {
            "applied": False,
            "students": students,
            "settings": settings,
            "students_changed": 0,
        }

    changed = 0
    updated_students: list[dict[str, Any]] = []
    for student in students:
        updated = copy.deepcopy(student)
        touched = False
        for kind in RESOURCE_KINDS:
            service = updated.get(kind) or {}
            if service.get("is_paid"):
                service["is_paid"] = False
                updated[kind] = service
                touched = True
        if touched:
            changed += 1
        updated_students.append(updated)

    updated_settings = dict(settings)
    updated_settings["term_reset_processed"] = True
    return {
        "applied": True,
        "students": updated_students,
        "settings": updated_settings,
        "students_changed": changed,
    }


def term_end_for_date(day: str) -> datetime:
    """
    A term ends at the last millisecond of the chosen day (UTC).
    """
    parsed = datetime.strptime(day.strip(), "%Y-%m-%d").date()
    return datetime.combine(parsed, time(23, 59, 59, 999000), tzinfo=timezone.utc)


def default_term_end(now: datetime, months: int) -> datetime:
    """
    `now` shifted forward by whole calendar months, clamped to the last day of
    the target month.
    """
    month_index = now.month - 1 + months
    year = now.year + month_index // 12
    month = month_index % 12 + 1
    first_of_next = datetime(year + (month // 12), month % 12 + 1, 1, tzinfo=now.tzinfo)
    last_day = (first_of_next - timedelta(days=1)).day
    return now.replace(year=year, month=month, day=min(now.day, last_day))
