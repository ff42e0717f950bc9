"""
errors.py - Exception types raised at the sentinel's boundaries
"""


class SentinelError(Exception):
    """Base class for all sentinel errors"""


class AudioUnavailableError(SentinelError):
    """The primary alert sound could not be loaded or started"""


class FrameSourceError(SentinelError):
    """Frames cannot be obtained (no permission, stream gone, re-acquire failed)"""
