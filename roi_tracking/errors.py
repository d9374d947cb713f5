# errors.py
"""Exception taxonomy shared by the whole tracking stack."""
from __future__ import annotations


class TrackingError(Exception):
    """Base class for everything the tracker raises on purpose."""


# ------------------------- Fatal -------------------------
class ConfigError(TrackingError):
    """Bad or missing configuration (calibration files, ROI ids, windows)."""


class MissingCalibrationFile(ConfigError):
    def __init__(self, path: str) -> None:
        super().__init__(f"Calibration file not found: {path}")
        self.path = path


class CalibrationFileError(ConfigError):
    """A calibration matrix exists but is unreadable or has the wrong shape."""


class HardwareError(TrackingError, RuntimeError):
    """Acquisition / ROI-write failure reported by the frame grabber."""

    def __init__(self, message: str, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code


class StreamEnded(HardwareError):
    """A finite frame source (e.g. a video file) has no more frames."""


class CommError(TrackingError, OSError):
    """The serial link refused or failed a write."""


# ----------------------- Recoverable ----------------------
class FrameTimeoutError(TrackingError, TimeoutError):
    """No frame arrived within the acquisition timeout."""


class NoBlobFound(TrackingError):
    """Nothing survived thresholding + erosion inside the window."""

    def __init__(self, roi_id: int) -> None:
        super().__init__(f"No blob found in ROI {roi_id}")
        self.roi_id = roi_id


class InsufficientViews(TrackingError):
    def __init__(self, collected: int, required: int) -> None:
        super().__init__(
            f"Calibration needs at least {required} views, got {collected}"
        )
        self.collected = collected
        self.required = required
