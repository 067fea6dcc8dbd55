import io
import sys
import threading

import pytest

from scanner.capture import CameraCapture, CaptureError, classify_capture_failure, decode_qr_image, render_qr_png
from scanner.feedback import AudioFeedback


class FakeCamera:
    def __init__(self, opened=True):
        self.opened = opened
        self.released = False

    def isOpened(self):
        return self.opened

    def read(self):
        return True, object()

    def release(self):
        self.released = True


class FakeDetector:
    def __init__(self, text):
        self.text = text

    def detectAndDecode(self, frame):
        return self.text, None, None


def test_failure_classification():
    assert classify_capture_failure(0, PermissionError("denied")).reason == "permission_denied"
    assert classify_capture_failure(0, FileNotFoundError("gone")).reason == "not_found"
    original = CaptureError("other", "x")
    assert classify_capture_failure(0, original) is original


def test_start_raises_when_device_does_not_open():
    camera = FakeCamera(opened=False)
    capture = CameraCapture(97, video_capture_factory=lambda _idx: camera, detector=FakeDetector(""))
    with pytest.raises(CaptureError) as exc_info:
        capture.start("environment", {"fps": 30}, lambda _text: None)
    assert camera.released is True
    assert capture.is_scanning is False
    if sys.platform.startswith("linux"):
        assert exc_info.value.reason == "not_found"
        assert str(exc_info.value) == "No camera found on this device."


def test_factory_permission_error_is_classified():
    def factory(_idx):
        raise PermissionError("not allowed")

    capture = CameraCapture(0, video_capture_factory=factory, detector=FakeDetector(""))
    with pytest.raises(CaptureError) as exc_info:
        capture.start("user", {}, lambda _text: None)
    assert exc_info.value.reason == "permission_denied"


def test_reader_delivers_decoded_text_until_paused():
    camera = FakeCamera()
    decoded = []
    got_one = threading.Event()

    def on_decode(text):
        decoded.append(text)
        capture.pause(True)
        got_one.set()

    capture = CameraCapture(0, video_capture_factory=lambda _idx: camera, detector=FakeDetector("stu_1"))
    capture.start("environment", {"fps": 50}, on_decode)
    try:
        assert got_one.wait(2.0)
        assert capture.is_paused is True
        assert capture.frozen_frame is not None
        capture.resume()
    finally:
        capture.stop()
        capture.clear()

    assert decoded[0] == "stu_1"
    assert camera.released is True
    assert capture.is_scanning is False


def test_resume_requires_running_capture():
    capture = CameraCapture(0, video_capture_factory=lambda _idx: FakeCamera(), detector=FakeDetector(""))
    with pytest.raises(CaptureError):
        capture.resume()


def test_qr_png_decodes_back_to_text():
    png = render_qr_png("k3x9q2m1a4b5c6d7")
    assert png[:8] == b"\x89PNG\r\n\x1a\n"
    valid, text = decode_qr_image(png)
    assert valid is True
    assert text == "k3x9q2m1a4b5c6d7"


def test_decode_rejects_non_image_bytes():
    assert decode_qr_image(b"not an image") == (False, None)


def test_feedback_patterns():
    for cue, expected in (("approved", 1), ("blocked", 2), ("denied", 3)):
        out = io.StringIO()
        AudioFeedback(stream=out)._beep(cue)
        assert out.getvalue() == "\a" * expected


def test_feedback_disabled_or_broken_stream_never_raises():
    out = io.StringIO()
    AudioFeedback(enabled=False, stream=out).play("approved")
    assert out.getvalue() == ""

    closed = io.StringIO()
    closed.close()
    AudioFeedback(stream=closed)._beep("denied")


def test_reader_survives_failing_decode_callback():
    camera = FakeCamera()
    calls = []
    second = threading.Event()

    def on_decode(text):
        calls.append(text)
        if len(calls) == 1:
            raise RuntimeError("handler blew up")
        capture.pause(True)
        second.set()

    capture = CameraCapture(0, video_capture_factory=lambda _idx: camera, detector=FakeDetector("stu_1"))
    capture.start("environment", {"fps": 50}, on_decode)
    try:
        assert second.wait(2.0)
        assert capture.is_scanning is True
    finally:
        capture.stop()
        capture.clear()

    assert calls[:2] == ["stu_1", "stu_1"]
