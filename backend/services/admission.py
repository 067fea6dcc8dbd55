from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, TypedDict

from backend.config import ADMISSION_COOLDOWN_HOURS

ResourceKind = Literal["transport", "meal"]
RESOURCE_KINDS: tuple[ResourceKind, ...] = ("transport", "meal")

DecisionCode = Literal[
    "APPROVED",
    "NOT_FOUND",
    "INFO_ONLY",
    "WRONG_RESOURCE",
    "NOT_ELIGIBLE",
    "REPEATED",
]
DECISION_CODES: tuple[DecisionCode, ...] = (
    "APPROVED",
    "NOT_FOUND",
    "INFO_ONLY",
    "WRONG_RESOURCE",
    "NOT_ELIGIBLE",
    "REPEATED",
)

# approved | blocked (repeat / wrong bus) | denied
FeedbackCue = Literal["approved", "blocked", "denied"]


class Role(str, Enum):
    ADMIN = "ADMIN"
    SUPERVISOR = "SUPERVISOR"
    DRIVER = "DRIVER"
    STAFF = "STAFF"


@dataclass(frozen=True)
class RoleCapability:
    info_only: bool
    can_manage: bool
    sees_all_services: bool
    default_kind: ResourceKind | None


ROLE_CAPABILITIES: dict[Role, RoleCapability] = {
    Role.ADMIN: RoleCapability(info_only=True, can_manage=True, sees_all_services=True, default_kind=None),
    Role.SUPERVISOR: RoleCapability(info_only=True, can_manage=False, sees_all_services=True, default_kind=None),
    Role.DRIVER: RoleCapability(info_only=False, can_manage=False, sees_all_services=False, default_kind="transport"),
    Role.STAFF: RoleCapability(info_only=False, can_manage=False, sees_all_services=False, default_kind="meal"),
}


class ScannerIdentity(TypedDict):
    uid: str
    email: str
    name: str
    role: str
    assigned_bus: str | None


class CooldownVerdict(TypedDict):
    blocked: bool
    remaining_hours: int


class AdmissionOutcome(TypedDict):
    decision_code: DecisionCode
    message: str
    resource_kind: ResourceKind | None
    remaining_hours: int | None
    expected_resource: str | None
    cue: FeedbackCue


def coerce_role(value: str | Role | None) -> Role | None:
    if isinstance(value, Role):
        return value
    normalized = (value or "").strip().upper()
    try:
        return Role(normalized)
    except ValueError:
        return None


def capability_for(role: str | Role | None) -> RoleCapability:
    """
    Unknown roles get the most restrictive capability: a meal operator that
    manages nothing.
    """
    typed = coerce_role(role)
    if typed is None:
        return ROLE_CAPABILITIES[Role.STAFF]
    return ROLE_CAPABILITIES[typed]


def normalize_resource(value: str | None) -> str | None:
    cleaned = (value or "").strip()
    return cleaned.casefold() if cleaned else None


def resource_kind_for(scanner: ScannerIdentity) -> ResourceKind | None:
    """
    Which service a scanner checks. Info-only roles check none; a bus
    assignment always means transport; otherwise the role's default.
    """
    capability = capability_for(scanner.get("role"))
    if capability.info_only:
        return None
    if normalize_resource(scanner.get("assigned_bus")):
        return "transport"
    return capability.default_kind


def is_resource_restricted(scanner: ScannerIdentity) -> bool:
    if capability_for(scanner.get("role")).info_only:
        return False
    return normalize_resource(scanner.get("assigned_bus")) is not None


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def elapsed_whole_hours(last_scan_time: datetime, now: datetime) -> int:
    seconds = (as_utc(now) - as_utc(last_scan_time)).total_seconds()
    if seconds <= 0:
        return 0
    return int(seconds // 3600)


def evaluate_cooldown(
    last_scan_time: datetime | None,
    now: datetime,
    window_hours: int = ADMISSION_COOLDOWN_HOURS,
) -> CooldownVerdict:
    if last_scan_time is None:
        return {"blocked": False, "remaining_hours": 0}

    elapsed = elapsed_whole_hours(last_scan_time, now)
    if elapsed < window_hours:
        return {"blocked": True, "remaining_hours": window_hours - elapsed}
    return {"blocked": False, "remaining_hours": 0}


def cue_for(decision_code: DecisionCode) -> FeedbackCue:
    if decision_code in {"APPROVED", "INFO_ONLY"}:
        return "approved"
    if decision_code in {"REPEATED", "WRONG_RESOURCE"}:
        return "blocked"
    return "denied"


def _build_outcome(
    decision_code: DecisionCode,
    message: str,
    *,
    resource_kind: ResourceKind | None = None,
    remaining_hours: int | None = None,
    expected_resource: str | None = None,
) -> AdmissionOutcome:
    return {
        "decision_code": decision_code,
        "message": message,
        "resource_kind": resource_kind,
        "remaining_hours": remaining_hours,
        "expected_resource": expected_resource,
        "cue": cue_for(decision_code),
    }


def _parse_timestamp(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        return None


def decide(
    payload: str,
    student: dict[str, Any] | None,
    scanner: ScannerIdentity,
    now: datetime,
    *,
    window_hours: int = ADMISSION_COOLDOWN_HOURS,
) -> AdmissionOutcome:
    """
    Admission decision for one decoded payload.

    Precedence, first match wins:
      1. no student           -> NOT_FOUND
      2. info-only scanner    -> INFO_ONLY
      3. bus mismatch         -> WRONG_RESOURCE
      4. service not paid     -> NOT_ELIGIBLE
      5. cooldown blocked     -> REPEATED
      6. otherwise            -> APPROVED

    `payload` is only used for the lookup by the caller; the decision never
    reads or writes anything outside its arguments.
    """
    kind = resource_kind_for(scanner)

    if student is None:
        return _build_outcome("NOT_FOUND", "ID Invalid / Not Found", resource_kind=kind)

    if kind is None:
        return _build_outcome("INFO_ONLY", "Record Found")

    if is_resource_restricted(scanner):
        student_bus = (student.get("bus_number") or "").strip()
        if normalize_resource(student_bus) != normalize_resource(scanner.get("assigned_bus")):
            expected = student_bus or None
            label = expected or "no bus"
            return _build_outcome(
                "WRONG_RESOURCE",
                f"Wrong Bus: assigned to {label}",
                resource_kind=kind,
                expected_resource=expected,
            )

    service = student.get(kind) or {}
    if not service.get("is_paid"):
        return _build_outcome("NOT_ELIGIBLE", "Access Denied", resource_kind=kind)

    verdict = evaluate_cooldown(
        _parse_timestamp(service.get("last_scan_time")),
        now,
        window_hours,
    )
    if verdict["blocked"]:
        remaining = verdict["remaining_hours"]
        return _build_outcome(
            "REPEATED",
            f"Repeated: Wait {remaining}h",
            resource_kind=kind,
            remaining_hours=remaining,
        )

    return _build_outcome("APPROVED", "Approved", resource_kind=kind)


def log_type_for(outcome: AdmissionOutcome) -> str:
    kind = outcome["resource_kind"]
    if outcome["decision_code"] == "INFO_ONLY" or kind is None:
        return "QUERY"
    return kind.upper()
