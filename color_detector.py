"""
color_detector.py - Probe-grid color presence detection

Answers one question per frame: is the target color anywhere on the probe
grid? The grid is a fixed stride over the frame, so the cost per frame does
not depend on the camera resolution.
"""

import logging
from dataclasses import dataclass
from typing import Iterator, Optional, Tuple

import cv2
import numpy as np

logger = logging.getLogger(__name__)

DEFAULT_STRIDE = 10


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass(frozen=True)
class ColorRange:
    """Acceptance region of the target color in HSV space"""
    hue_min: float
    hue_max: float
    saturation_min: float
    value_min: float

    def __post_init__(self):
        if not 0.0 <= self.hue_min <= self.hue_max <= 360.0:
            raise ValueError(
                f"Hue range must satisfy 0 <= min <= max <= 360, got {self.hue_min}..{self.hue_max}"
            )
        for name in ("saturation_min", "value_min"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be within [0, 1], got {value}")

    @classmethod
    def green(cls) -> "ColorRange":
        return cls(hue_min=80.0, hue_max=160.0, saturation_min=0.3, value_min=0.3)

    def contains(self, hue: float, saturation: float, value: float) -> bool:
        return (
            self.hue_min <= hue <= self.hue_max
            and saturation >= self.saturation_min
            and value >= self.value_min
        )


@dataclass(frozen=True, eq=False)
class Frame:
    """
    A decoded video frame.

    pixels is an (height, width, 3) uint8 array; order says whether the
    channels are RGB or BGR (PyAV and OpenCV hand out BGR).
    """
    pixels: np.ndarray
    order: str = "rgb"

    def __post_init__(self):
        if self.order not in ("rgb", "bgr"):
            raise ValueError(f"Unsupported channel order: {self.order}")
        if self.pixels.ndim != 3 or self.pixels.shape[2] != 3:
            raise ValueError(f"Expected an HxWx3 array, got shape {self.pixels.shape}")
        # Analysis never writes to the buffer; the caller's array stays writeable
        view = self.pixels.view()
        view.flags.writeable = False
        object.__setattr__(self, "pixels", view)

    @classmethod
    def from_bgr(cls, pixels: np.ndarray) -> "Frame":
        return cls(pixels=pixels, order="bgr")

    @property
    def width(self) -> int:
        return self.pixels.shape[1]

    @property
    def height(self) -> int:
        return self.pixels.shape[0]

    def pixel(self, x: int, y: int) -> Tuple[int, int, int]:
        """RGB triple at column x, row y"""
        a, b, c = (int(v) for v in self.pixels[y, x])
        return (a, b, c) if self.order == "rgb" else (c, b, a)


# =============================================================================
# SAMPLING
# =============================================================================

def iter_probe_points(width: int, height: int, stride: int = DEFAULT_STRIDE) -> Iterator[Tuple[int, int]]:
    """
    Yield probe coordinates (x, y) in row-major order.

    Covers every stride-th column of every stride-th row, starting at the
    origin. Dimensions that are not multiples of the stride are fine; a
    zero-sized frame yields nothing.
    """
    if stride < 1:
        raise ValueError(f"stride must be >= 1, got {stride}")
    for y in range(0, max(height, 0), stride):
        for x in range(0, max(width, 0), stride):
            yield x, y


def _to_hsv(pixels: np.ndarray, order: str) -> np.ndarray:
    # float32 input in [0, 1] makes OpenCV return hue in degrees, S and V in [0, 1]
    scaled = np.ascontiguousarray(pixels).astype(np.float32) / 255.0
    code = cv2.COLOR_RGB2HSV if order == "rgb" else cv2.COLOR_BGR2HSV
    return cv2.cvtColor(scaled, code)


def probe_hsv(frame: Frame, stride: int = DEFAULT_STRIDE) -> np.ndarray:
    """
    HSV values of the whole probe grid.

    Element [row, col] belongs to pixel (col * stride, row * stride). Hue is in
    degrees [0, 360), saturation and value in [0, 1].
    """
    return _to_hsv(frame.pixels[::stride, ::stride], frame.order)


# =============================================================================
# DETECTION
# =============================================================================

def find_first_match(frame: Frame, color_range: ColorRange,
                     stride: int = DEFAULT_STRIDE) -> Optional[Tuple[int, int]]:
    """
    Coordinates of the first probe (in sampling order) inside color_range.

    Sampled rows are converted to HSV one at a time as the walk reaches them,
    so a match early in the frame skips converting the rest.
    """
    if frame.width == 0 or frame.height == 0:
        return None

    row, row_y = None, None
    for x, y in iter_probe_points(frame.width, frame.height, stride):
        if y != row_y:
            row, row_y = _to_hsv(frame.pixels[y:y + 1, ::stride], frame.order)[0], y
        hue, saturation, value = row[x // stride]
        if color_range.contains(float(hue), float(saturation), float(value)):
            return x, y
    return None


def detect(frame: Frame, color_range: ColorRange, stride: int = DEFAULT_STRIDE) -> bool:
    """True if the target color is present on the probe grid"""
    match = find_first_match(frame, color_range, stride)
    if match is not None:
        logger.debug(f"Target color found at probe {match}")
    return match is not None
