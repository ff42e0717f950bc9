"""
audio_manager.py - Alert sound output over WebRTC

AudioFrameGenerator turns whatever is currently playing into 20ms
AudioFrames for the browser. Two devices feed it:

- SoundFileDevice: loops the configured alert sound file (primary path)
- ToneRinger: loops a synthesized beep (fallback path, no file I/O)
"""
import logging
import threading
from pathlib import Path
from typing import Dict, Optional, Union

import av
import numpy as np
from pydub import AudioSegment
from pydub.generators import Sine

from errors import AudioUnavailableError

logger = logging.getLogger(__name__)

AUDIO_DIR = Path(__file__).parent / "assets" / "audio"


class AudioFrameGenerator:
    """
    Generates AudioFrames for WebRTC streaming.
    Loops the current segment at 48kHz stereo, or yields silence.
    """
    def __init__(self, sample_rate: int = 48000):
        self.sample_rate = sample_rate
        self.channels = 2 # Stereo

        self.lock = threading.Lock()
        self.current_audio: Optional[AudioSegment] = None
        self.position_ms = 0

        self.frame_duration_ms = 20
        self.samples_per_frame = int(self.sample_rate * (self.frame_duration_ms / 1000))

    @property
    def is_playing(self) -> bool:
        with self.lock:
            return self.current_audio is not None

    def normalize(self, audio: AudioSegment) -> AudioSegment:
        """Convert to the output format (rate, stereo, 16-bit)"""
        return audio.set_frame_rate(self.sample_rate).set_channels(self.channels).set_sample_width(2)

    def play(self, audio: AudioSegment):
        """Loop audio from the start until stop() is called"""
        if len(audio) == 0:
            raise ValueError("Cannot loop an empty audio segment")
        with self.lock:
            self.current_audio = self.normalize(audio)
            self.position_ms = 0

    def stop(self):
        with self.lock:
            self.current_audio = None
            self.position_ms = 0

    def get_next_frame(self) -> av.AudioFrame:
        """
        Produce the next 20ms audio frame.
        Called by the WebRTC audio processor callback.
        """
        with self.lock:
            if self.current_audio is None:
                return self._create_silence()

            end_pos = self.position_ms + self.frame_duration_ms
            chunk = self.current_audio[self.position_ms:end_pos]

            # Wrap around at the end of the segment
            if len(chunk) < self.frame_duration_ms:
                self.position_ms = 0
                chunk = self.current_audio[0:self.frame_duration_ms]
            else:
                self.position_ms = end_pos

            samples = np.frombuffer(chunk.raw_data, dtype=np.int16)
            return self._to_frame(samples)

    def _create_silence(self) -> av.AudioFrame:
        total_samples = self.samples_per_frame * self.channels
        return self._to_frame(np.zeros(total_samples, dtype=np.int16))

    def _to_frame(self, samples: np.ndarray) -> av.AudioFrame:
        # Packed s16 stereo: PyAV wants interleaved samples as (1, samples * channels)
        frame = av.AudioFrame.from_ndarray(samples.reshape(1, -1), format='s16', layout='stereo')
        frame.sample_rate = self.sample_rate
        frame.pts = None # Allow streamer to handle timing
        return frame


class SoundFileDevice:
    """Primary audio device: loops a sound file from assets/audio"""

    def __init__(self, output: AudioFrameGenerator, audio_dir: Union[str, Path] = AUDIO_DIR):
        self.output = output
        self.audio_dir = Path(audio_dir)
        self._audio_cache: Dict[str, AudioSegment] = {}

    def resolve(self, resource_id: str) -> Path:
        path = Path(resource_id)
        if not path.is_absolute():
            path = self.audio_dir / path
        return path

    def load(self, resource_id: str) -> AudioSegment:
        path = self.resolve(resource_id)
        key = str(path)
        if key in self._audio_cache:
            return self._audio_cache[key]

        if not path.is_file():
            raise AudioUnavailableError(f"Alert sound not found: {path}")
        try:
            logger.info(f"Loading alert sound: {path.name}")
            audio = self.output.normalize(AudioSegment.from_file(key))
        except Exception as e:
            raise AudioUnavailableError(f"Cannot decode {path.name}: {e}") from e

        self._audio_cache[key] = audio
        return audio

    def start_looping_sound(self, resource_id: str) -> "SoundFileDevice":
        audio = self.load(resource_id)
        try:
            self.output.play(audio)
        except ValueError as e:
            raise AudioUnavailableError(str(e)) from e
        logger.info(f"Looping alert sound {resource_id}")
        return self

    def stop(self):
        self.output.stop()


class ToneRinger:
    """Fallback audio device: a synthesized beep-pause ring"""

    def __init__(self, output: AudioFrameGenerator, frequency: int = 1000,
                 beep_ms: int = 500, gap_ms: int = 250):
        self.output = output
        self.frequency = frequency
        self.beep_ms = beep_ms
        self.gap_ms = gap_ms

    def ring_segment(self) -> AudioSegment:
        beep = Sine(self.frequency).to_audio_segment(duration=self.beep_ms)
        return beep + AudioSegment.silent(duration=self.gap_ms, frame_rate=beep.frame_rate)

    def start_looping_sound(self, resource_id: Optional[str] = None) -> "ToneRinger":
        # resource_id is ignored; the ring is always synthesized
        self.output.play(self.ring_segment())
        logger.info(f"Ringing fallback tone at {self.frequency}Hz")
        return self

    def stop(self):
        self.output.stop()
