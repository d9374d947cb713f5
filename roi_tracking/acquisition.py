# acquisition.py
"""Frame-grabber boundary: tagged frames and the driver interface."""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable, Tuple

import numpy as np

from roi_tracking.window import TrackingWindow

# The grabber's image tag carries the ROI id in its high 16 bits.
_ROI_TAG_SHIFT = 16
_ROI_TAG_MASK = 0xFFFF


def decode_roi_id(tag: int) -> int:
    return (int(tag) >> _ROI_TAG_SHIFT) & _ROI_TAG_MASK


def encode_roi_tag(roi_id: int, low: int = 0) -> int:
    return ((int(roi_id) & _ROI_TAG_MASK) << _ROI_TAG_SHIFT) | (int(low) & 0xFFFF)


@dataclass(frozen=True)
class Frame:
    """
    One tagged image.  ``image`` is lent by the grabber and is only valid
    for the iteration that acquired it; do not keep references to it.
    """
    tag: int
    image_number: int
    timestamp: int
    image: np.ndarray

    @property
    def roi_id(self) -> int:
        return decode_roi_id(self.tag)


class FrameGrabber(ABC):
    """What the tracking loop needs from an acquisition driver."""

    def open(self) -> None:
        """Allocate driver resources. Raises HardwareError."""

    def start(self, windows: Iterable[TrackingWindow]) -> None:
        """
        Program timing for every window, flush buffered ROIs and begin
        acquiring in the given order.  Raises HardwareError.
        """
        for win in windows:
            win.flush(self)

    @abstractmethod
    def acquire_tagged_frame(self, timeout: float) -> Frame:
        """Block up to `timeout` s. Raises FrameTimeoutError / HardwareError / StreamEnded."""

    @abstractmethod
    def write_roi(self, roi_id: int, offset: Tuple[int, int], size: Tuple[int, int]) -> None:
        """Program one hardware ROI. Raises HardwareError."""

    def last_error_description(self) -> str:
        return ""

    def close(self) -> None:
        """Release driver resources."""

    # ---------------- Context ----------------
    def __enter__(self) -> "FrameGrabber":
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
