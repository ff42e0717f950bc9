"""
haptics.py - Repeating vibration pattern driver

There is no vibration motor on a desktop, so the actuator is whatever pulse
callable it is given. The default buzzes the PC speaker on Windows and only
logs elsewhere.
"""

import logging
import threading
import time
from typing import Callable, Optional, Sequence

try:
    import winsound
except ImportError:
    winsound = None

logger = logging.getLogger(__name__)

# Pause then pulse, in milliseconds
DEFAULT_PATTERN = (500, 1000)


def default_pulse(duration_ms: int):
    """Low buzz for duration_ms (blocking)"""
    if winsound:
        winsound.Beep(150, duration_ms)
    else:
        logger.debug(f"Vibration pulse {duration_ms}ms")
        time.sleep(duration_ms / 1000)


class PatternVibrator:
    """
    Plays a waveform of alternating off/on durations, forever, until cancel().

    pattern is (off_ms, on_ms, off_ms, on_ms, ...), starting with a pause,
    the same shape as a phone vibration waveform.
    """

    def __init__(self, pulse: Callable[[int], None] = default_pulse):
        self.pulse = pulse
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_vibrating(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start_repeating_vibration(self, pattern: Sequence[int] = DEFAULT_PATTERN) -> "PatternVibrator":
        pattern = tuple(int(ms) for ms in pattern)
        if not pattern or any(ms < 0 for ms in pattern) or sum(pattern) == 0:
            raise ValueError(f"Invalid vibration pattern: {pattern}")

        self.cancel()
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._run, args=(pattern, self._stop), name="vibration", daemon=True
        )
        self._thread.start()
        logger.info(f"Vibration started with pattern {pattern}")
        return self

    def cancel(self, timeout: float = 2.0):
        thread, self._thread = self._thread, None
        self._stop.set()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
            if thread.is_alive():
                logger.warning("Vibration thread did not stop in time")

    def _run(self, pattern: Sequence[int], stop: threading.Event):
        idx = 0
        while not stop.is_set():
            # Even positions are pauses, every cycle, even for odd-length patterns
            pos = idx % len(pattern)
            duration = pattern[pos]
            if pos % 2 == 0:
                # Pause; wakes early on cancel
                stop.wait(duration / 1000)
            elif duration:
                try:
                    self.pulse(duration)
                except Exception as e:
                    logger.error(f"Vibration pulse failed: {e}")
                    break
            idx += 1
