from fastapi import APIRouter

from backend.config import (
    ADMISSION_COOLDOWN_HOURS,
    CAMERA_FACING,
    CAMERA_FPS,
    SCAN_DISPLAY_SECONDS,
)

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/config/scanning")
def scanning_config():
    return {
        "admission_cooldown_hours": ADMISSION_COOLDOWN_HOURS,
        "scan_display_seconds": SCAN_DISPLAY_SECONDS,
        "camera_facing": CAMERA_FACING,
        "camera_fps": CAMERA_FPS,
    }
