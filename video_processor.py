"""
video_processor.py - WebRTC adapters for the presence sentinel

This module contains the pieces that sit between streamlit-webrtc and the
pipeline:
- WebRtcFrameSource: the browser camera stream as a frame source
- OverlaySurface: preview vs. alarm screen, drawn on the outgoing video
- SentinelVideoProcessor: feeds frames to the pipeline
- SentinelAudioProcessor: streams the alert sound back to the browser
"""

import logging
import threading
import time
from typing import Optional

import av
import cv2
import numpy as np
from streamlit_webrtc import AudioProcessorBase, VideoProcessorBase

from alarm_effector import AlarmEffector
from alarm_state import AlarmState
from audio_manager import AudioFrameGenerator, SoundFileDevice, ToneRinger
from color_detector import Frame
from config import SentinelSettings, load_settings
from errors import FrameSourceError
from haptics import PatternVibrator
from pipeline import SentinelPipeline

logger = logging.getLogger(__name__)


# =============================================================================
# COLLABORATORS
# =============================================================================

class WebRtcFrameSource:
    """
    The browser's camera track.

    Frames are pushed by streamlit-webrtc, so acquiring only checks that the
    stream is (still) playing. The browser owns the permission prompt.
    """

    def __init__(self):
        self._playing = threading.Event()
        self.acquired = False

    @property
    def is_playing(self) -> bool:
        return self._playing.is_set()

    def set_playing(self, playing: bool):
        if playing:
            self._playing.set()
        else:
            self._playing.clear()

    def acquire(self):
        if not self._playing.is_set():
            raise FrameSourceError("Camera stream is not playing (permission denied or stream closed)")
        self.acquired = True

    def release(self):
        self.acquired = False


class OverlaySurface:
    """Shows the camera preview while monitoring, an alarm screen otherwise"""

    def __init__(self):
        self._preview_visible = threading.Event()
        self._preview_visible.set()

    @property
    def preview_visible(self) -> bool:
        return self._preview_visible.is_set()

    @property
    def stop_control_visible(self) -> bool:
        return not self._preview_visible.is_set()

    def set_preview_visible(self, visible: bool):
        if visible:
            self._preview_visible.set()
        else:
            self._preview_visible.clear()

    def render(self, img: np.ndarray) -> np.ndarray:
        """Draw onto a copy of a BGR image"""
        frame = img.copy()
        if self.preview_visible:
            cv2.putText(frame, "MONITORING", (10, 30), cv2.FONT_HERSHEY_SIMPLEX, 0.8, (0, 255, 0), 2)
            return frame
        return self._draw_alarm_screen(frame)

    def _draw_alarm_screen(self, frame: np.ndarray) -> np.ndarray:
        h, w = frame.shape[:2]

        # Hide the preview behind a flashing red/black screen
        color = (0, 0, 255) if int(time.time() * 2) % 2 == 0 else (0, 0, 0)
        cv2.rectangle(frame, (0, 0), (w, h), color, -1)

        cv2.putText(frame, "GREEN LOST", (w // 2 - 150, h // 2),
                    cv2.FONT_HERSHEY_SIMPLEX, 1.6, (255, 255, 255), 4)
        cv2.putText(frame, "Press STOP to silence", (w // 2 - 140, h // 2 + 50),
                    cv2.FONT_HERSHEY_SIMPLEX, 0.8, (255, 255, 0), 2)
        return frame


def build_effector(settings: SentinelSettings, output: AudioFrameGenerator) -> AlarmEffector:
    return AlarmEffector(
        audio=SoundFileDevice(output),
        fallback_audio=ToneRinger(output, frequency=settings.fallback_tone_hz),
        haptics=PatternVibrator(),
        sound_id=settings.alert_sound,
        vibration_pattern=settings.vibration_pattern,
    )


# =============================================================================
# WEBRTC PROCESSORS
# =============================================================================

class SentinelVideoProcessor(VideoProcessorBase):
    """
    Receives camera frames from streamlit-webrtc.

    The first frame to arrive is the authorization signal: the browser only
    sends frames once camera permission is granted.
    """

    def __init__(self, output: Optional[AudioFrameGenerator] = None,
                 settings: Optional[SentinelSettings] = None):
        super().__init__()
        self.settings = settings or load_settings()
        self.output = output or AudioFrameGenerator(self.settings.audio_sample_rate)
        self.source = WebRtcFrameSource()
        self.surface = OverlaySurface()
        self.last_error: Optional[Exception] = None

        self.pipeline = SentinelPipeline(
            effector=build_effector(self.settings, self.output),
            color_range=self.settings.color_range,
            stride=self.settings.probe_stride,
            surface=self.surface,
            source=self.source,
            on_error=self._on_error,
            shutdown_timeout=self.settings.shutdown_timeout,
        )

    @property
    def state(self) -> AlarmState:
        return self.pipeline.state

    def stop_alarm(self):
        """Stop control pressed"""
        self.pipeline.request_stop()

    def _on_error(self, error: Exception):
        self.last_error = error

    def recv(self, frame: av.VideoFrame) -> av.VideoFrame:
        try:
            img = frame.to_ndarray(format="bgr24")
            self.source.set_playing(True)

            if not self.pipeline.is_running and self.last_error is None:
                self.pipeline.authorize()
            self.pipeline.submit_frame(Frame.from_bgr(img))

            new_frame = av.VideoFrame.from_ndarray(self.surface.render(img), format="bgr24")
            new_frame.pts = frame.pts
            new_frame.time_base = frame.time_base
            return new_frame

        except Exception as e:
            logger.error(f"Error processing frame: {e}", exc_info=True)
            # Return original frame on error to prevent freeze
            return frame

    def on_ended(self):
        logger.info("Camera track ended")
        self.source.set_playing(False)
        self.pipeline.shutdown()


class SentinelAudioProcessor(AudioProcessorBase):
    """Replaces the outgoing audio with the alert sound (or silence)"""

    def __init__(self, output: AudioFrameGenerator):
        super().__init__()
        self.output = output

    def recv(self, frame: av.AudioFrame) -> av.AudioFrame:
        return self.output.get_next_frame()
