import logging
import sqlite3
import threading
import uuid
from datetime import datetime
from typing import Any, Callable, Literal, Protocol

from backend.config import CAMERA_FACING, CAMERA_FPS, SCAN_DISPLAY_SECONDS
from backend.services.admission import FeedbackCue, ScannerIdentity
from database.db import ScanResult, utcnow
from scanner.capture import CaptureError

logger = logging.getLogger(__name__)

SessionState = Literal[
    "idle",
    "starting",
    "streaming",
    "deciding",
    "displaying",
    "error",
    "closed",
]

STORE_ERROR_MESSAGE = "Scan could not be saved. Please scan again."


class Capture(Protocol):
    @property
    def is_scanning(self) -> bool: ...

    def start(self, facing, config, on_decode, on_error=None, on_failure=None) -> None: ...

    def pause(self, freeze_frame: bool = True) -> None: ...

    def resume(self) -> None: ...

    def stop(self) -> None: ...

    def clear(self) -> None: ...


class ScanProcessor(Protocol):
    def process_scan(self, *, payload, scanner, now=None, session_id=None) -> ScanResult: ...


class Timer(Protocol):
    def start(self) -> None: ...

    def cancel(self) -> None: ...


class ScanSession:
    """
    One operator scanning with one camera.

        idle -> starting -> streaming -> deciding -> displaying -> streaming
        starting/streaming -> error -> (retry) starting
        any -> closed

    At most one decode-to-outcome cycle is in flight: payloads decoded while a
    cycle runs are dropped, not queued. The cycle's lock is only released by
    the display timer, so a single QR code held in front of the camera is
    processed once per display window.
    """

    def __init__(
        self,
        *,
        store: ScanProcessor,
        scanner: ScannerIdentity,
        capture: Capture,
        feedback=None,
        display_seconds: float = SCAN_DISPLAY_SECONDS,
        timer_factory: Callable[[float, Callable[[], None]], Timer] = threading.Timer,
        clock: Callable[[], datetime] = utcnow,
        facing: str = CAMERA_FACING,
        fps: int = CAMERA_FPS,
        session_id: str | None = None,
        on_change: Callable[["ScanSession"], None] | None = None,
    ):
        self.store = store
        self.scanner = scanner
        self.capture = capture
        self.feedback = feedback
        self.display_seconds = display_seconds
        self.timer_factory = timer_factory
        self.clock = clock
        self.facing = facing
        self.fps = fps
        self.session_id = session_id or uuid.uuid4().hex
        self.on_change = on_change

        self.state: SessionState = "idle"
        self.outcome: ScanResult | None = None
        self.cue: FeedbackCue | None = None
        self.error: str | None = None
        self.error_reason: str | None = None
        self.dropped_payloads = 0

        self._cycle_lock = threading.Lock()
        self._state_lock = threading.RLock()
        self._timer: Timer | None = None

    # -----------------------------
    # Lifecycle
    # -----------------------------
    def start(self) -> SessionState:
        with self._state_lock:
            if self.state not in {"idle", "error"}:
                return self.state
            self.error = None
            self.error_reason = None
            self._set_state("starting")
            try:
                self.capture.start(
                    self.facing,
                    {"fps": self.fps},
                    self.handle_decoded,
                    self._ignore_decode_miss,
                    self._handle_capture_failure,
                )
            except CaptureError as exc:
                logger.warning("Scanner start failed (%s): %s", exc.reason, exc)
                self.error = str(exc)
                self.error_reason = exc.reason
                self._set_state("error")
                return self.state
            self._set_state("streaming")
            return self.state

    def retry(self) -> SessionState:
        with self._state_lock:
            if self.state != "error":
                return self.state
            self.error = None
            self.error_reason = None
            self._release_camera()
            self._set_state("idle")
        return self.start()

    def close(self) -> None:
        with self._state_lock:
            if self.state == "closed":
                return
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self.outcome = None
            self.cue = None
            self._set_state("closed")
        # outside the lock: stop() joins a reader that may be waiting on it
        self._release_camera()

    # -----------------------------
    # Scan cycle
    # -----------------------------
    def handle_decoded(self, payload: str) -> bool:
        """
        Capture callback. Returns True when the payload started a cycle,
        False when it was dropped.
        """
        if not self._cycle_lock.acquire(blocking=False):
            self.dropped_payloads += 1
            return False

        with self._state_lock:
            if self.state != "streaming":
                self._cycle_lock.release()
                self.dropped_payloads += 1
                return False
            self._set_state("deciding")
            self.capture.pause(True)

        result: ScanResult | None = None
        try:
            result = self.store.process_scan(
                payload=payload,
                scanner=self.scanner,
                now=self.clock(),
                session_id=self.session_id,
            )
        except sqlite3.Error:
            logger.exception("Failed to record scan for payload %r", payload)
        except Exception:
            logger.exception("Scan processing failed for payload %r", payload)

        with self._state_lock:
            # closed or failed while deciding: nothing to display
            if self.state != "deciding":
                return True
            self.outcome = result
            if result is None:
                self.cue = "denied"
                self.error = STORE_ERROR_MESSAGE
            else:
                self.cue = result["cue"]
                self.error = None if result["decision_code"] == "APPROVED" else result["message"]
            self._set_state("displaying")
            self._play(self.cue)
            self._timer = self.timer_factory(self.display_seconds, self._rearm)
            if hasattr(self._timer, "daemon"):
                self._timer.daemon = True
            self._timer.start()
        return True

    def _rearm(self) -> None:
        with self._state_lock:
            if self.state != "displaying":
                return
            self._timer = None
            self.outcome = None
            self.cue = None
            self.error = None
            self._set_state("streaming")
            self._cycle_lock.release()
            try:
                self.capture.resume()
            except Exception as exc:
                logger.warning("Failed to resume scanner, restarting: %s", exc)
                self._release_camera()
                self._set_state("idle")
                self.start()

    # -----------------------------
    # Helpers
    # -----------------------------
    def _ignore_decode_miss(self, _reason: str) -> None:
        return None

    def _handle_capture_failure(self, exc: CaptureError) -> None:
        with self._state_lock:
            if self.state in {"closed", "error"}:
                return
            logger.error("Capture failure (%s): %s", exc.reason, exc)
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._release_camera()
            self.outcome = None
            self.cue = None
            self.error = str(exc)
            self.error_reason = exc.reason
            if self._cycle_lock.locked():
                self._cycle_lock.release()
            self._set_state("error")

    def _release_camera(self) -> None:
        try:
            if self.capture.is_scanning:
                self.capture.stop()
            self.capture.clear()
        except Exception:
            logger.exception("Failed to release camera")

    def _play(self, cue: FeedbackCue | None) -> None:
        if self.feedback is None or cue is None:
            return
        try:
            self.feedback.play(cue)
        except Exception as exc:
            logger.warning("Audio feedback failed: %s", exc)

    def _set_state(self, state: SessionState) -> None:
        self.state = state
        if self.on_change is None:
            return
        try:
            self.on_change(self)
        except Exception:
            logger.exception("Session change listener failed")

    def view(self) -> dict[str, Any]:
        with self._state_lock:
            return {
                "state": self.state,
                "session_id": self.session_id,
                "outcome": self.outcome,
                "cue": self.cue,
                "error": self.error,
                "error_reason": self.error_reason,
            }
