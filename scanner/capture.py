import logging
import os
import sys
import threading
import time
from pathlib import Path
from typing import Any, Callable, Literal

import cv2  # type: ignore
import numpy as np  # type: ignore

from backend.config import CAMERA_FPS, CAMERA_INDEX

logger = logging.getLogger(__name__)

CaptureFailure = Literal["permission_denied", "not_found", "other"]

MAX_CONSECUTIVE_READ_FAILURES = 30

_FAILURE_MESSAGES: dict[str, str] = {
    "permission_denied": "Camera permission denied. Please allow access and retry.",
    "not_found": "No camera found on this device.",
    "other": "Failed to start camera.",
}


class CaptureError(RuntimeError):
    def __init__(self, reason: CaptureFailure, detail: str = ""):
        self.reason: CaptureFailure = reason
        self.detail = detail
        message = _FAILURE_MESSAGES[reason]
        if reason == "other" and detail:
            message = f"{message} {detail}"
        super().__init__(message)


def _video_device_path(device_index: int) -> Path:
    return Path(f"/dev/video{device_index}")


def classify_capture_failure(device_index: int, exc: BaseException | None = None) -> CaptureError:
    if isinstance(exc, CaptureError):
        return exc
    if isinstance(exc, PermissionError):
        return CaptureError("permission_denied", str(exc))
    if isinstance(exc, FileNotFoundError):
        return CaptureError("not_found", str(exc))
    if sys.platform.startswith("linux"):
        device = _video_device_path(device_index)
        if not device.exists():
            return CaptureError("not_found", str(device))
        if not os.access(device, os.R_OK):
            return CaptureError("permission_denied", str(device))
    return CaptureError("other", str(exc) if exc else f"Cannot open camera device {device_index}.")


def decode_qr(frame, detector=None) -> str | None:
    """
    Decoded text of the QR code in `frame`, or None when no code is readable.
    """
    if frame is None:
        return None
    active = detector or cv2.QRCodeDetector()
    try:
        data, _points, _straight = active.detectAndDecode(frame)
    except cv2.error:
        return None
    text = (data or "").strip()
    return text or None


def decode_qr_image(data: bytes) -> tuple[bool, str | None]:
    """
    Returns (image_valid, decoded_text) for an encoded JPEG/PNG.
    """
    if not data:
        return False, None
    img_array = np.frombuffer(data, np.uint8)
    frame = cv2.imdecode(img_array, cv2.IMREAD_COLOR)
    if frame is None:
        return False, None
    return True, decode_qr(frame)


def render_qr_png(text: str, *, scale: int = 8, border: int = 4) -> bytes:
    encoder = cv2.QRCodeEncoder.create()
    qr = encoder.encode(text)
    qr = cv2.copyMakeBorder(qr, border, border, border, border, cv2.BORDER_CONSTANT, value=255)
    h, w = qr.shape[:2]
    qr = cv2.resize(qr, (w * scale, h * scale), interpolation=cv2.INTER_NEAREST)
    ok, buf = cv2.imencode(".png", qr)
    if not ok:
        raise RuntimeError("Failed to encode QR image.")
    return buf.tobytes()


class CameraCapture:
    """
    Camera + QR decoder running on a daemon reader thread.

    `on_decode(text)` fires for every frame with a readable code while not
    paused; `on_error(reason)` for frames without one (callers usually ignore
    it); `on_failure(CaptureError)` once if the device stops delivering frames.
    """

    def __init__(
        self,
        device_index: int = CAMERA_INDEX,
        *,
        video_capture_factory: Callable[[int], Any] | None = None,
        detector=None,
    ):
        self.device_index = device_index
        self._factory = video_capture_factory or cv2.VideoCapture
        self._detector = detector or cv2.QRCodeDetector()
        self._camera = None
        self._thread: threading.Thread | None = None
        self._running = threading.Event()
        self._paused = threading.Event()
        self._lock = threading.Lock()
        self._on_decode: Callable[[str], None] | None = None
        self._on_error: Callable[[str], None] | None = None
        self._on_failure: Callable[[CaptureError], None] | None = None
        self._frame_interval = 1.0 / CAMERA_FPS
        self.frozen_frame = None
        self.last_frame = None

    @property
    def is_scanning(self) -> bool:
        return self._running.is_set()

    @property
    def is_paused(self) -> bool:
        return self._paused.is_set()

    def start(
        self,
        facing: str,
        config: dict[str, Any],
        on_decode: Callable[[str], None],
        on_error: Callable[[str], None] | None = None,
        on_failure: Callable[[CaptureError], None] | None = None,
    ) -> None:
        if self.is_scanning:
            self.stop()

        fps = max(1, int(config.get("fps", CAMERA_FPS)))
        self._frame_interval = 1.0 / fps

        try:
            camera = self._factory(self.device_index)
        except Exception as exc:
            raise classify_capture_failure(self.device_index, exc) from exc
        if camera is None or not camera.isOpened():
            if camera is not None:
                camera.release()
            raise classify_capture_failure(self.device_index)

        # OpenCV cannot pick a lens by facing; the device index decides.
        logger.info("Camera %s opened (facing=%s, fps=%s)", self.device_index, facing, fps)

        with self._lock:
            self._camera = camera
            self._on_decode = on_decode
            self._on_error = on_error
            self._on_failure = on_failure
            self.frozen_frame = None
        self._paused.clear()
        self._running.set()
        self._thread = threading.Thread(target=self._read_loop, name="qr-capture", daemon=True)
        self._thread.start()

    def pause(self, freeze_frame: bool = True) -> None:
        self._paused.set()
        if freeze_frame:
            self.frozen_frame = self.last_frame

    def resume(self) -> None:
        if not self.is_scanning:
            raise CaptureError("other", "Scanner is not running.")
        self.frozen_frame = None
        self._paused.clear()

    def stop(self) -> None:
        self._running.clear()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=2.0)
        self._thread = None
        with self._lock:
            camera = self._camera
            self._camera = None
        if camera is not None:
            camera.release()
        self._paused.clear()

    def clear(self) -> None:
        with self._lock:
            self._on_decode = None
            self._on_error = None
            self._on_failure = None
        self.frozen_frame = None
        self.last_frame = None

    def _read_loop(self) -> None:
        failures = 0
        while self._running.is_set():
            if self._paused.is_set():
                time.sleep(self._frame_interval)
                continue

            with self._lock:
                camera = self._camera
            if camera is None:
                break

            ok, frame = camera.read()
            if not ok:
                failures += 1
                if failures >= MAX_CONSECUTIVE_READ_FAILURES:
                    logger.error("Camera %s stopped delivering frames", self.device_index)
                    self._running.clear()
                    callback = self._on_failure
                    if callback is not None:
                        callback(CaptureError("other", "Camera stopped delivering frames."))
                    break
                time.sleep(self._frame_interval)
                continue

            failures = 0
            self.last_frame = frame
            text = decode_qr(frame, self._detector)
            if text:
                callback = self._on_decode
                if callback is not None and not self._paused.is_set():
                    try:
                        callback(text)
                    except Exception:
                        logger.exception("Decode callback failed")
            elif self._on_error is not None:
                self._on_error("no_code")
            time.sleep(self._frame_interval)
