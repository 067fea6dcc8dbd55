import csv
import io
from typing import Any, TypedDict

TRUTHY_PAID_VALUES = {"yes", "true", "paid"}
MIN_COLUMNS = 5


class ImportRow(TypedDict):
    line: int
    name: str
    gender: str
    class_name: str
    drop_location: str
    admin_number: str
    transport_paid: bool
    meal_paid: bool
    bus_number: str | None
    bus_name: str | None


def _is_paid(value: str | None) -> bool:
    return bool(value) and value.strip().lower() in TRUTHY_PAID_VALUES


def _cell(parts: list[str], idx: int) -> str:
    return parts[idx].strip() if len(parts) > idx else ""


def parse_student_csv(text: str) -> list[ImportRow]:
    """
    Columns: name, gender, class, drop location, admin number,
    transport paid, meal paid[, bus number, bus name].

    A first line mentioning "name" is treated as a header. Blank lines and
    rows with fewer than five columns are skipped.
    """
    if not text or not text.strip():
        return []

    lines = text.splitlines()
    start = 1 if "name" in lines[0].lower() else 0

    rows: list[ImportRow] = []
    reader = csv.reader(io.StringIO("\n".join(lines[start:])))
    for offset, parts in enumerate(reader):
        if not any(p.strip() for p in parts):
            continue
        if len(parts) < MIN_COLUMNS:
            continue
        rows.append(
            {
                "line": start + offset + 1,
                "name": _cell(parts, 0),
                "gender": _cell(parts, 1),
                "class_name": _cell(parts, 2),
                "drop_location": _cell(parts, 3),
                "admin_number": _cell(parts, 4),
                "transport_paid": _is_paid(_cell(parts, 5)),
                "meal_paid": _is_paid(_cell(parts, 6)),
                "bus_number": _cell(parts, 7) or None,
                "bus_name": _cell(parts, 8) or None,
            }
        )
    return rows


def to_registration(row: ImportRow) -> dict[str, Any]:
    return {
        "name": row["name"],
        "gender": row["gender"],
        "class_name": row["class_name"],
        "drop_location": row["drop_location"],
        "admin_number": row["admin_number"],
        "bus_number": row["bus_number"],
        "bus_name": row["bus_name"],
        "transport_paid": row["transport_paid"],
        "meal_paid": row["meal_paid"],
    }
