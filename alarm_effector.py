"""
alarm_effector.py - Starts and stops the alarm's sound and vibration

activate() never fails outright: if the alert sound cannot be played the
fallback ringer takes over, and a broken vibrator only costs the vibration.
deactivate() always tries to release both devices.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional, Sequence

from errors import AudioUnavailableError
from haptics import DEFAULT_PATTERN

logger = logging.getLogger(__name__)


@dataclass
class AlarmSession:
    """Handles of a ringing alarm"""
    audio: Optional[object] = None
    vibration: Optional[object] = None
    used_fallback: bool = False
    released: bool = field(default=False, repr=False)


class AlarmEffector:
    """
    Drives the audio device and haptic actuator.

    audio / fallback_audio provide start_looping_sound(resource_id) -> handle
    with handle.stop(); haptics provides start_repeating_vibration(pattern)
    -> handle with handle.cancel().
    """

    def __init__(self, audio, fallback_audio, haptics, sound_id: str,
                 vibration_pattern: Sequence[int] = DEFAULT_PATTERN):
        self.audio = audio
        self.fallback_audio = fallback_audio
        self.haptics = haptics
        self.sound_id = sound_id
        self.vibration_pattern = tuple(vibration_pattern)

    def activate(self) -> AlarmSession:
        session = AlarmSession()
        session.audio, session.used_fallback = self._start_audio()

        try:
            session.vibration = self.haptics.start_repeating_vibration(self.vibration_pattern)
        except Exception as e:
            logger.error(f"Vibration unavailable, alarm continues with sound only: {e}")

        logger.info(f"Alarm activated (fallback={session.used_fallback})")
        return session

    def _start_audio(self):
        try:
            return self.audio.start_looping_sound(self.sound_id), False
        except AudioUnavailableError as e:
            logger.error(f"Alert sound failed, using fallback ring: {e}")
        except Exception as e:
            logger.error(f"Audio device error, using fallback ring: {e}", exc_info=True)

        try:
            return self.fallback_audio.start_looping_sound(self.sound_id), True
        except Exception as e:
            # Nothing audible left; the stop control still shows the alarm
            logger.critical(f"Fallback ring failed too: {e}", exc_info=True)
            return None, True

    def deactivate(self, session: AlarmSession):
        if session.released:
            logger.warning("Alarm session already released")
            return
        session.released = True

        if session.audio is not None:
            try:
                session.audio.stop()
            except Exception as e:
                logger.error(f"Failed to stop alarm sound: {e}", exc_info=True)

        if session.vibration is not None:
            try:
                session.vibration.cancel()
            except Exception as e:
                logger.error(f"Failed to cancel vibration: {e}", exc_info=True)

        logger.info("Alarm deactivated")
