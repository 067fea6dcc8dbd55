import logging
import signal
import threading

from backend.config import AUDIO_FEEDBACK_ENABLED, LOG_LEVEL, SCANNER_EMAIL
from database.db import create_tables, get_user_by_email, scanner_identity
from database.store import SCAN_LOGS, RecordStore
from scanner.capture import CameraCapture
from scanner.feedback import AudioFeedback
from scanner.session import ScanSession

logger = logging.getLogger(__name__)


def _print_latest_log(logs) -> None:
    if not logs:
        return
    latest = logs[0]
    print(
        f"[scan] {latest['scanned_at']} {latest['scan_type']:<9} "
        f"{latest['decision_code']:<14} {latest['student_name']} - {latest['message']}"
    )


def _print_state(session: ScanSession) -> None:
    if session.state == "error":
        print(f"[scan] camera error ({session.error_reason}): {session.error}")


def run_station(email: str = SCANNER_EMAIL) -> int:
    create_tables()
    user = get_user_by_email(email) if email else None
    if user is None:
        logger.error("Scanner account %r not found; set EDUPAY_SCANNER_EMAIL.", email)
        return 2

    store = RecordStore()
    store.run_term_reset()
    unsubscribe = store.subscribe(SCAN_LOGS, _print_latest_log)
    session = ScanSession(
        store=store,
        scanner=scanner_identity(user),
        capture=CameraCapture(),
        feedback=AudioFeedback(enabled=AUDIO_FEEDBACK_ENABLED),
        on_change=_print_state,
    )

    stop = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: stop.set())

    session.start()
    print(f"[scan] scanning as {user['email']} ({user['role']}); Ctrl+C to stop, Enter to retry camera")
    try:
        while not stop.wait(0.5):
            if session.state == "error":
                # retry on demand only
                input()
                session.retry()
    except (EOFError, KeyboardInterrupt):
        pass
    finally:
        session.close()
        unsubscribe()
    return 0


if __name__ == "__main__":
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
    )
    raise SystemExit(run_station())
