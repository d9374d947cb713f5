# camera.py
"""VideoCapture-backed frame grabber that emulates hardware ROIs.

Each acquired frame is read from an ordinary OpenCV source (device index or
video file), converted to gray, and cropped to the ROI that is next in the
acquisition sequence, just like a ROI-sequencing frame grabber hands back one
small tagged image per ROI.  Useful for replaying recordings and for running
the tracker on a webcam.
"""
from __future__ import annotations

import time
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import cv2
import numpy as np

from roi_tracking.acquisition import Frame, FrameGrabber, encode_roi_tag
from roi_tracking.config import SensorConfig
from roi_tracking.errors import FrameTimeoutError, HardwareError, StreamEnded
from roi_tracking.window import TrackingWindow


class VideoCaptureGrabber(FrameGrabber):
    def __init__(
        self,
        source: int | str,
        sensor: SensorConfig,
        *,
        use_v4l2: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.source = source
        self.sensor = sensor
        self.use_v4l2 = use_v4l2
        self.cap: Optional[cv2.VideoCapture] = None
        self._clock = clock

        # Exposed runtime-queryable values
        self.actual_width: int = 0
        self.actual_height: int = 0
        self.actual_fps: float = 0.0
        self.actual_fourcc_str: str = ""

        # Emulated sequencer state
        self._rois: Dict[int, Tuple[int, int, int, int]] = {}
        self._sequence: List[int] = []
        self._seq_idx = 0
        self._image_number = 0
        self._last_error = ""

    # ------------------------------------------------------------------ #
    #   I N T E R N A L   H E L P E R S
    # ------------------------------------------------------------------ #
    @staticmethod
    def _get_fourcc_str(fourcc_val: int) -> str:
        if fourcc_val == 0:
            return ""
        return "".join(chr((fourcc_val >> (8 * i)) & 0xFF) for i in range(4))

    @property
    def _is_file(self) -> bool:
        return isinstance(self.source, str) and not self.source.isdigit()

    def _fail(self, message: str) -> HardwareError:
        self._last_error = message
        print(f"[Grabber] {message}")
        return HardwareError(message)

    # ------------------------------------------------------------------ #
    #   P U B L I C   A P I
    # ------------------------------------------------------------------ #
    def open(self) -> None:
        if self.is_opened():
            return
        src = int(self.source) if isinstance(self.source, str) and self.source.isdigit() else self.source
        backend = cv2.CAP_V4L2 if self.use_v4l2 and isinstance(src, int) else cv2.CAP_ANY
        self.cap = cv2.VideoCapture(src, backend)
        if not self.cap or not self.cap.isOpened():
            self.cap = None
            raise self._fail(f"Could not open source {self.source!r}")

        if isinstance(src, int):
            self.cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.sensor.width)
            self.cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.sensor.height)
            # Exposure in 1/10 000 s units on V4L2 devices.
            self.cap.set(cv2.CAP_PROP_EXPOSURE, self.sensor.exposure_us / 100.0)

        self.actual_fourcc_str = self._get_fourcc_str(int(self.cap.get(cv2.CAP_PROP_FOURCC)))
        self.actual_width = int(self.cap.get(cv2.CAP_PROP_FRAME_WIDTH))
        self.actual_height = int(self.cap.get(cv2.CAP_PROP_FRAME_HEIGHT))
        self.actual_fps = self.cap.get(cv2.CAP_PROP_FPS)
        print(
            f"[Grabber] {self.actual_width}x{self.actual_height}@{self.actual_fps:.1f} FPS "
            f"(FOURCC='{self.actual_fourcc_str}')"
        )
        if (self.actual_width, self.actual_height) != (self.sensor.width, self.sensor.height):
            size = f"{self.actual_width}x{self.actual_height}"
            self.close()
            raise self._fail(
                f"Source delivers {size}, sensor configured as "
                f"{self.sensor.width}x{self.sensor.height}"
            )

    def start(self, windows: Iterable[TrackingWindow]) -> None:
        if not self.is_opened():
            raise self._fail("start() called before open()")
        windows = list(windows)
        self._sequence = [w.roi_id for w in windows]
        self._seq_idx = 0
        # OpenCV added CAP_PROP_READ_TIMEOUT_MSEC in 4.6
        if hasattr(cv2, "CAP_PROP_READ_TIMEOUT_MSEC"):
            frame_ms = max(w.frame_time for w in windows) / 1000.0
            self.cap.set(cv2.CAP_PROP_READ_TIMEOUT_MSEC, max(frame_ms * 4.0, 100.0))
        super().start(windows)
        print(f"[Grabber] Acquiring ROI sequence {self._sequence}")

    def write_roi(self, roi_id: int, offset: Tuple[int, int], size: Tuple[int, int]) -> None:
        x, y = offset
        w, h = size
        if x < 0 or y < 0 or x + w > self.sensor.width or y + h > self.sensor.height:
            raise self._fail(f"ROI {roi_id} ({x},{y},{w},{h}) outside the sensor")
        self._rois[roi_id] = (x, y, w, h)

    def acquire_tagged_frame(self, timeout: float) -> Frame:
        if not self.is_opened():
            raise self._fail("Capture device is not open")
        if not self._sequence:
            raise self._fail("Acquisition has not been started")

        ok, full = self.cap.read()
        if not ok or full is None:
            if self._is_file:
                raise StreamEnded(f"End of {self.source}")
            self._last_error = f"No frame within {timeout:.3f} s"
            raise FrameTimeoutError(self._last_error)

        if full.ndim == 3 and full.shape[2] == 4:
            gray = cv2.cvtColor(full, cv2.COLOR_BGRA2GRAY)
        elif full.ndim == 3 and full.shape[2] == 3:
            gray = cv2.cvtColor(full, cv2.COLOR_BGR2GRAY)
        else:
            gray = full.reshape(full.shape[0], full.shape[1])

        roi_id = self._sequence[self._seq_idx]
        self._seq_idx = (self._seq_idx + 1) % len(self._sequence)
        try:
            x, y, w, h = self._rois[roi_id]
        except KeyError:
            raise self._fail(f"ROI {roi_id} was never programmed") from None

        view: np.ndarray = gray[y:y + h, x:x + w]
        view.flags.writeable = False
        self._image_number += 1
        ts = int(round(self._clock() / self.sensor.timestamp_scale_s))
        return Frame(
            tag=encode_roi_tag(roi_id),
            image_number=self._image_number,
            timestamp=ts,
            image=view,
        )

    def last_error_description(self) -> str:
        return self._last_error

    def is_opened(self) -> bool:
        return bool(self.cap and self.cap.isOpened())

    def close(self) -> None:
        if self.cap:
            print("[Grabber] Releasing capture device")
            self.cap.release()
            self.cap = None
