"""
config.py - Settings for the presence sentinel

Values come from config.json next to this file (or $SENTINEL_CONFIG), with
built-in defaults when the file is missing. Call load_dotenv() before
load_settings() to pick up a .env file.
"""

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple, Union

from color_detector import ColorRange

logger = logging.getLogger(__name__)

CONFIG_PATH = Path(__file__).parent / "config.json"

DEFAULTS = {
    "HUE_MIN": 80.0,
    "HUE_MAX": 160.0,
    "SATURATION_MIN": 0.3,
    "VALUE_MIN": 0.3,
    "PROBE_STRIDE": 10,
    "ALERT_SOUND": "alarm.wav",
    "VIBRATION_PATTERN_MS": [500, 1000],
    "FALLBACK_TONE_HZ": 1000,
    "AUDIO_SAMPLE_RATE": 48000,
    "SHUTDOWN_TIMEOUT_SEC": 2.0,
}


def load_config(path: Optional[Union[str, Path]] = None) -> dict:
    """Load configuration from config.json, falling back to defaults"""
    config_path = Path(path or os.environ.get("SENTINEL_CONFIG") or CONFIG_PATH)
    config = dict(DEFAULTS)
    try:
        with open(config_path, 'r') as f:
            config.update(json.load(f))
    except FileNotFoundError:
        logger.warning(f"{config_path.name} not found, using defaults")
    return config


@dataclass(frozen=True)
class SentinelSettings:
    color_range: ColorRange
    probe_stride: int
    alert_sound: str
    vibration_pattern: Tuple[int, ...]
    fallback_tone_hz: int
    audio_sample_rate: int
    shutdown_timeout: float


def load_settings(path: Optional[Union[str, Path]] = None) -> SentinelSettings:
    config = load_config(path)

    stride = int(config["PROBE_STRIDE"])
    if stride < 1:
        raise ValueError(f"PROBE_STRIDE must be >= 1, got {stride}")

    return SentinelSettings(
        color_range=ColorRange(
            hue_min=float(config["HUE_MIN"]),
            hue_max=float(config["HUE_MAX"]),
            saturation_min=float(config["SATURATION_MIN"]),
            value_min=float(config["VALUE_MIN"]),
        ),
        probe_stride=stride,
        alert_sound=os.environ.get("SENTINEL_ALERT_SOUND") or str(config["ALERT_SOUND"]),
        vibration_pattern=tuple(int(ms) for ms in config["VIBRATION_PATTERN_MS"]),
        fallback_tone_hz=int(config["FALLBACK_TONE_HZ"]),
        audio_sample_rate=int(config["AUDIO_SAMPLE_RATE"]),
        shutdown_timeout=float(config["SHUTDOWN_TIMEOUT_SEC"]),
    )


def log_level() -> int:
    """Root log level from $LOG_LEVEL (default INFO)"""
    return getattr(logging, os.environ.get("LOG_LEVEL", "INFO").upper(), logging.INFO)
