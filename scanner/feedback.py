import logging
import sys
import threading
import time
from typing import TextIO

from backend.services.admission import FeedbackCue

logger = logging.getLogger(__name__)

# bells per cue, gap between bells in seconds
BEEP_PATTERNS: dict[str, tuple[int, float]] = {
    "approved": (1, 0.0),
    "blocked": (2, 0.15),
    "denied": (3, 0.1),
}


class AudioFeedback:
    """Terminal-bell cues; playback runs on a daemon thread and never raises."""

    def __init__(self, enabled: bool = True, stream: TextIO | None = None):
        self.enabled = enabled
        self.stream = stream

    def play(self, cue: FeedbackCue) -> None:
        if not self.enabled:
            return
        try:
            threading.Thread(target=self._beep, args=(cue,), name="scan-beep", daemon=True).start()
        except RuntimeError as exc:
            logger.warning("Audio feedback unavailable: %s", exc)

    def _beep(self, cue: str) -> None:
        count, gap = BEEP_PATTERNS.get(cue, BEEP_PATTERNS["denied"])
        out = self.stream or sys.stdout
        try:
            for idx in range(count):
                out.write("\a")
                out.flush()
                if gap and idx < count - 1:
                    time.sleep(gap)
        except (OSError, ValueError) as exc:
            logger.warning("Audio feedback failed: %s", exc)
