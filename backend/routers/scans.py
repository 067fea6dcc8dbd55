import logging
import sqlite3
import threading

from fastapi import APIRouter, Depends, File, Header, HTTPException, Query, UploadFile
from pydantic import BaseModel

from backend.security import require_scanner, require_user
from backend.services.admission import DECISION_CODES, ScannerIdentity
from database.db import get_scan_logs, get_scan_logs_total, process_scan
from scanner.capture import decode_qr_image

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_user)])

# X-Session-Id values with a scan currently being decided
_IN_FLIGHT: set[str] = set()
_IN_FLIGHT_LOCK = threading.Lock()


class ScanRequest(BaseModel):
    payload: str


def _claim_session(session_id: str | None) -> bool:
    if not session_id:
        return True
    with _IN_FLIGHT_LOCK:
        if session_id in _IN_FLIGHT:
            return False
        _IN_FLIGHT.add(session_id)
        return True


def _release_session(session_id: str | None) -> None:
    if not session_id:
        return
    with _IN_FLIGHT_LOCK:
        _IN_FLIGHT.discard(session_id)


def _run_scan(payload: str, scanner: ScannerIdentity, session_id: str | None):
    clean_session = (session_id or "").strip() or None
    if not _claim_session(clean_session):
        raise HTTPException(status_code=409, detail="A scan is already being processed for this session.")
    try:
        return process_scan(payload=payload, scanner=scanner, session_id=clean_session)
    except sqlite3.Error:
        logger.exception("Scan could not be recorded")
        raise HTTPException(status_code=503, detail="Scan could not be saved. Please scan again.")
    finally:
        _release_session(clean_session)


@router.post("/scan")
def scan_payload(
    body: ScanRequest,
    scanner: ScannerIdentity = Depends(require_scanner),
    x_session_id: str | None = Header(default=None),
):
    return _run_scan(body.payload, scanner, x_session_id)


@router.post("/scan/frame")
async def scan_frame(
    file: UploadFile = File(...),
    scanner: ScannerIdentity = Depends(require_scanner),
    x_session_id: str | None = Header(default=None),
):
    if file.content_type not in ("image/jpeg", "image/png"):
        raise HTTPException(status_code=400, detail="Upload JPG/PNG only.")

    data = await file.read()
    valid, text = decode_qr_image(data)
    if not valid:
        raise HTTPException(status_code=400, detail="Invalid image data.")
    if not text:
        return {"decoded": False}

    return {"decoded": True, **_run_scan(text, scanner, x_session_id)}


@router.get("/scan-logs")
def list_scan_logs(
    decision_code: str | None = None,
    scanned_by: str | None = None,
    search: str | None = None,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
):
    clean_decision = decision_code.strip().upper() if decision_code else None
    if clean_decision and clean_decision not in DECISION_CODES:
        raise HTTPException(status_code=400, detail="Invalid decision_code filter.")
    clean_scanned_by = scanned_by.strip() if scanned_by else None
    clean_search = search.strip() if search else None

    rows = get_scan_logs(
        decision_code=clean_decision,
        scanned_by=clean_scanned_by,
        search=clean_search,
        limit=limit,
        offset=offset,
    )
    total = get_scan_logs_total(
        decision_code=clean_decision,
        scanned_by=clean_scanned_by,
        search=clean_search,
    )
    return {
        "rows": rows,
        "total": total,
        "limit": limit,
        "offset": offset,
    }
