from datetime import datetime
from typing import Any


def empty_service_state() -> dict[str, Any]:
    return {
        "is_paid": False,
        "last_payment_date": None,
        "history": [],
        "last_scan_time": None,
    }


def apply_payment_toggle(
    state: dict[str, Any] | None,
    is_paid: bool,
    now: datetime,
) -> tuple[dict[str, Any], bool]:
    """
    Returns (new_state, history_appended).

    Only a transition from unpaid to paid appends to history and moves
    `last_payment_date`; history is never shortened.
    """
    current = dict(state or empty_service_state())
    history = list(current.get("history") or [])
    was_paid = bool(current.get("is_paid"))

    if is_paid and not was_paid:
        stamp = now.isoformat()
        history.append({"date": stamp, "timestamp": int(now.timestamp() * 1000)})
        current.update(
            {
                "is_paid": True,
                "last_payment_date": stamp,
                "history": history,
            }
        )
        return current, True

    current["is_paid"] = bool(is_paid)
    current["history"] = history
    return current, False
