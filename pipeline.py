"""
pipeline.py - Wires detection, the alarm FSM and the effects together

Two worker threads ("lanes"):

- processing lane: takes the newest frame, runs the detector, posts a
  PresenceResult message
- state lane: the only thread that touches the FSM, the alarm session and
  the presentation surface; consumes messages in FIFO order

Frames are never queued: a single slot holds the newest unprocessed frame and
anything it replaces is dropped.
"""

import logging
import queue
import threading
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from alarm_state import AlarmEvent, AlarmSignal, AlarmState, AlarmStateMachine
from color_detector import DEFAULT_STRIDE, ColorRange, Frame, detect
from errors import FrameSourceError

logger = logging.getLogger(__name__)


# =============================================================================
# MESSAGES
# =============================================================================

@dataclass(frozen=True)
class PresenceResult:
    """Detector verdict for one frame, stamped with the slot epoch it was taken in"""
    present: bool
    sequence: int
    epoch: int = 0


@dataclass(frozen=True)
class StopCommand:
    """User pressed stop"""


_ARM = object()
_SHUTDOWN = object()


# =============================================================================
# BACKPRESSURE
# =============================================================================

class LatestFrameSlot:
    """
    Holds at most one pending frame; a newer frame replaces an older one.

    epoch counts clear() calls. take_stamped() returns a frame together with
    the epoch it was put in, so results from frames that predate a clear()
    can be recognized later.
    """

    def __init__(self):
        self._cond = threading.Condition()
        self._frame: Optional[Frame] = None
        self._closed = False
        self.epoch = 0
        self.dropped = 0

    def put(self, frame: Frame) -> bool:
        with self._cond:
            if self._closed:
                return False
            if self._frame is not None:
                self.dropped += 1
            self._frame = frame
            self._cond.notify()
            return True

    def take(self, timeout: Optional[float] = None) -> Optional[Frame]:
        """Wait for a frame; None on timeout or once closed"""
        return self.take_stamped(timeout)[0]

    def take_stamped(self, timeout: Optional[float] = None) -> Tuple[Optional[Frame], int]:
        with self._cond:
            self._cond.wait_for(lambda: self._frame is not None or self._closed, timeout)
            frame, self._frame = self._frame, None
            return frame, self.epoch

    def clear(self) -> int:
        """Drop the pending frame and start a new epoch"""
        with self._cond:
            if self._frame is not None:
                self.dropped += 1
            self._frame = None
            self.epoch += 1
            return self.epoch

    def close(self):
        with self._cond:
            self._closed = True
            self._frame = None
            self._cond.notify_all()


# =============================================================================
# COORDINATOR
# =============================================================================

class SentinelPipeline:
    """
    Frame source -> detector -> alarm FSM -> effector / surface.

    Nothing runs until authorize() is called (camera permission granted).
    source needs acquire() / release(), surface needs
    set_preview_visible(bool); both are optional.
    """

    def __init__(self, effector, color_range: Optional[ColorRange] = None,
                 stride: int = DEFAULT_STRIDE, surface=None, source=None,
                 on_error: Optional[Callable[[Exception], None]] = None,
                 detector: Callable[[Frame, ColorRange, int], bool] = detect,
                 shutdown_timeout: float = 2.0):
        self.color_range = color_range or ColorRange.green()
        self.stride = stride
        self.surface = surface
        self.source = source
        self.on_error = on_error
        self.detector = detector
        self.shutdown_timeout = shutdown_timeout

        self.state_machine = AlarmStateMachine(effector)
        self.state_machine.add_listener(self._on_signal)

        self._slot = LatestFrameSlot()
        self._inbox: "queue.Queue" = queue.Queue()
        self._stopping = threading.Event()
        self._lock = threading.RLock()
        self._running = False
        self._closed = False
        self._sequence = 0
        self._frames_analyzed = 0
        self._processing_thread: Optional[threading.Thread] = None
        self._state_thread: Optional[threading.Thread] = None

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    @property
    def state(self) -> AlarmState:
        return self.state_machine.state

    @property
    def is_running(self) -> bool:
        return self._running and not self._stopping.is_set()

    @property
    def frames_analyzed(self) -> int:
        return self._frames_analyzed

    @property
    def frames_dropped(self) -> int:
        return self._slot.dropped

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    def authorize(self) -> bool:
        """Start consuming frames. Returns False if the source is unavailable."""
        with self._lock:
            if self._running or self._closed:
                # False once the lanes have stopped, even if never shut down
                return self.is_running
            try:
                if self.source is not None:
                    self.source.acquire()
            except FrameSourceError as e:
                logger.error(f"Frame source unavailable: {e}")
                self._report(e)
                return False

            self._running = True
            self._processing_thread = threading.Thread(
                target=self._processing_loop, name="sentinel-processing", daemon=True
            )
            self._state_thread = threading.Thread(
                target=self._state_loop, name="sentinel-state", daemon=True
            )
            self._processing_thread.start()
            self._state_thread.start()
            self._inbox.put(_ARM)
            return True

    def submit_frame(self, frame: Frame) -> bool:
        """Offer a frame for analysis; False if it was not accepted"""
        if not self.is_running:
            return False
        return self._slot.put(frame)

    def request_stop(self):
        """Silence the alarm (no-op while monitoring)"""
        if not self.is_running:
            logger.debug("Stop requested while pipeline is not running")
            return
        self._inbox.put(StopCommand())

    def shutdown(self, timeout: Optional[float] = None):
        """Stop both lanes, release the frame source and any live alarm"""
        timeout = self.shutdown_timeout if timeout is None else timeout
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._begin_stop()

        state_thread = self._state_thread
        for thread in (self._processing_thread, state_thread):
            if thread is not None and thread is not threading.current_thread():
                thread.join(timeout)
                if thread.is_alive():
                    logger.warning(f"{thread.name} did not stop within {timeout}s")

        if state_thread is None:
            # Lanes never started; clean up here
            self._release()
        logger.info("Pipeline shut down")

    def __enter__(self) -> "SentinelPipeline":
        self.authorize()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.shutdown()

    # -------------------------------------------------------------------------
    # Lanes
    # -------------------------------------------------------------------------

    def _processing_loop(self):
        while not self._stopping.is_set():
            frame, epoch = self._slot.take_stamped(timeout=0.1)
            if frame is None:
                continue
            try:
                present = self.detector(frame, self.color_range, self.stride)
            except Exception as e:
                logger.error(f"Error analyzing frame: {e}", exc_info=True)
                continue
            finally:
                # Drop our reference right after analysis
                frame = None

            self._sequence += 1
            self._frames_analyzed += 1
            self._inbox.put(PresenceResult(
                present=bool(present), sequence=self._sequence, epoch=epoch
            ))

    def _state_loop(self):
        try:
            while True:
                message = self._inbox.get()
                if message is _SHUTDOWN:
                    break
                self._dispatch(message)
        finally:
            self._release()

    def _dispatch(self, message):
        if message is _ARM:
            self.state_machine.arm()
        elif isinstance(message, StopCommand):
            self.state_machine.handle(AlarmEvent.STOP_COMMAND)
        elif isinstance(message, PresenceResult):
            if self._stopping.is_set():
                return
            if message.epoch < self._slot.epoch:
                logger.debug(f"Dropping stale result #{message.sequence}")
                return
            self.state_machine.on_presence(message.present)
        else:
            logger.warning(f"Unknown message on state lane: {message!r}")

    def _on_signal(self, signal: AlarmSignal, state: AlarmState):
        if signal is AlarmSignal.TRIGGER:
            logger.warning("Target color lost, alarm triggered")
            self._set_preview_visible(False)
        elif signal is AlarmSignal.ARM:
            self._set_preview_visible(True)
        elif signal is AlarmSignal.REARM:
            self._set_preview_visible(True)
            self._reacquire()

    def _reacquire(self):
        # Frames captured while the alarm was up are stale, including any
        # still being analyzed or already queued behind the stop command
        self._slot.clear()
        if self.source is None:
            return
        try:
            self.source.acquire()
            logger.info("Frame source re-acquired, monitoring resumed")
        except FrameSourceError as e:
            logger.error(f"Could not resume monitoring: {e}")
            self._report(e)
            self._begin_stop()

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _begin_stop(self):
        self._stopping.set()
        self._slot.close()
        self._inbox.put(_SHUTDOWN)

    def _release(self):
        self.state_machine.close()
        if self.source is not None:
            try:
                self.source.release()
            except Exception as e:
                logger.error(f"Failed to release frame source: {e}", exc_info=True)

    def _set_preview_visible(self, visible: bool):
        if self.surface is not None:
            self.surface.set_preview_visible(visible)

    def _report(self, error: Exception):
        if self.on_error is None:
            return
        try:
            self.on_error(error)
        except Exception as e:
            logger.error(f"Error callback failed: {e}", exc_info=True)
