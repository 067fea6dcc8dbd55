import os
import secrets
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]

DB_PATH = Path(os.getenv("EDUPAY_DB_PATH", BASE_DIR / "database" / "edupay.db"))
MIGRATIONS_DIR = BASE_DIR / "database" / "migrations"
ADMIN_EMAIL = os.getenv("EDUPAY_ADMIN_EMAIL", "admin@school.com").strip() or "admin@school.com"
ADMIN_NAME = os.getenv("EDUPAY_ADMIN_NAME", "System Admin").strip() or "System Admin"
ADMIN_PASSWORD = os.getenv("EDUPAY_ADMIN_PASSWORD", "password").strip() or "password"
ADMIN_PIN = os.getenv("EDUPAY_ADMIN_PIN", "2026").strip()
SIGNING_KEY = os.getenv("EDUPAY_SIGNING_KEY", "").strip() or secrets.token_urlsafe(32)
AUTH_TOKEN_TTL_SECONDS = int(os.getenv("EDUPAY_AUTH_TOKEN_TTL_SECONDS", "43200"))
LOG_LEVEL = os.getenv("EDUPAY_LOG_LEVEL", "INFO").strip().upper() or "INFO"


def _parse_bool(value: str | None, fallback: bool) -> bool:
    if value is None:
        return fallback
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return fallback


def _parse_csv(value: str | None, fallback: list[str]) -> list[str]:
    if not value:
        return fallback
    parsed = [item.strip() for item in value.split(",") if item.strip()]
    return parsed or fallback


def _parse_float(value: str | None, fallback: float) -> float:
    if not value:
        return fallback
    try:
        return float(value)
    except ValueError:
        return fallback


def _parse_facing(value: str | None) -> str:
    normalized = (value or "").strip().lower()
    if normalized in {"user", "front"}:
        return "user"
    return "environment"


CORS_ALLOW_ORIGINS = _parse_csv(
    os.getenv("EDUPAY_CORS_ALLOW_ORIGINS"),
    ["http://localhost:5173", "http://127.0.0.1:5173"],
)
CORS_ALLOW_CREDENTIALS = _parse_bool(os.getenv("EDUPAY_CORS_ALLOW_CREDENTIALS"), True)

# Admission rules
ADMISSION_COOLDOWN_HOURS = max(
    1,
    int(os.getenv("EDUPAY_ADMISSION_COOLDOWN_HOURS", "12")),
)
DEFAULT_TERM_MONTHS = max(1, int(os.getenv("EDUPAY_DEFAULT_TERM_MONTHS", "3")))

# Scanner station
SCAN_DISPLAY_SECONDS = max(0.0, _parse_float(os.getenv("EDUPAY_SCAN_DISPLAY_SECONDS"), 2.5))
CAMERA_INDEX = int(os.getenv("EDUPAY_CAMERA_INDEX", "0"))
CAMERA_FACING = _parse_facing(os.getenv("EDUPAY_CAMERA_FACING"))
CAMERA_FPS = max(1, int(os.getenv("EDUPAY_CAMERA_FPS", "10")))
SCANNER_EMAIL = os.getenv("EDUPAY_SCANNER_EMAIL", "").strip()
AUDIO_FEEDBACK_ENABLED = _parse_bool(os.getenv("EDUPAY_AUDIO_FEEDBACK"), True)
