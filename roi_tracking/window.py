# window.py
"""Per-ROI tracking state: the hardware window and the software blob box.

Two rectangles are tracked per ROI.  The *hardware* ROI (``roi_*``) is what
gets programmed into the camera and can only be placed on a coarse grid:
offsets and widths are multiples of 4 and the width is at least 8 px.  The
*software* blob box (``blob_*``) gives pixel-exact control inside it.

Once a window is built the blob box is always stored relative to the
window's own offset.  Full-frame coordinates appear only when the window is
created and when the blob center is projected into the world.

Moving the hardware ROI is a two-step commit: ``recenter_roi`` only buffers
the new placement, ``flush`` writes it to the grabber.  The camera is never
asked which ROI is active; this object is the only source of truth.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable, Iterator, List, Optional, Sequence, Tuple

from roi_tracking.common import BlobBox, Point2D
from roi_tracking.config import SensorConfig, WindowConfig
from roi_tracking.errors import ConfigError

if TYPE_CHECKING:
    from roi_tracking.acquisition import FrameGrabber

MAX_ROI = 8          # hardware ROI slots
ROI_ALIGN = 4        # offset / width granularity
ROI_MIN_WIDTH = 8


def snap_down(value: int, align: int = ROI_ALIGN) -> int:
    return (int(value) // align) * align


def _place(center: float, size: int, limit: int) -> int:
    """Offset that centers `size` on `center`, clamped to [0, limit - size] and snapped."""
    target = int(math.floor(center - size / 2.0))
    target = max(0, min(target, limit - size))
    return snap_down(target)


@dataclass
class TrackingWindow:
    roi_id: int
    roi_offset_x: int
    roi_offset_y: int
    roi_width: int
    roi_height: int
    sensor_width: int
    sensor_height: int
    blob_min_x: int = 0
    blob_min_y: int = 0
    blob_max_x: int = 0
    blob_max_y: int = 0
    frame_time: float = 50_000.0
    exposure: float = 20_000.0
    roi_pending: bool = True

    def __post_init__(self) -> None:
        if not 0 <= self.roi_id < MAX_ROI:
            raise ConfigError(f"ROI id {self.roi_id} outside 0..{MAX_ROI - 1}")
        if self.roi_width < ROI_MIN_WIDTH or self.roi_width % ROI_ALIGN:
            raise ConfigError(
                f"ROI {self.roi_id}: width {self.roi_width} must be a multiple of "
                f"{ROI_ALIGN} and >= {ROI_MIN_WIDTH}"
            )
        if self.roi_height < 1:
            raise ConfigError(f"ROI {self.roi_id}: height must be positive")
        if self.roi_width > self.sensor_width or self.roi_height > self.sensor_height:
            raise ConfigError(
                f"ROI {self.roi_id}: {self.roi_width}x{self.roi_height} does not fit "
                f"the {self.sensor_width}x{self.sensor_height} sensor"
            )
        if self.roi_offset_x % ROI_ALIGN or self.roi_offset_y % ROI_ALIGN:
            raise ConfigError(f"ROI {self.roi_id}: offset must be a multiple of {ROI_ALIGN}")
        if (
            self.roi_offset_x < 0
            or self.roi_offset_y < 0
            or self.roi_offset_x + self.roi_width > self.sensor_width
            or self.roi_offset_y + self.roi_height > self.sensor_height
        ):
            raise ConfigError(f"ROI {self.roi_id}: window lies outside the sensor")

    # ------------------------------------------------------------------ #
    #   C O N S T R U C T I O N
    # ------------------------------------------------------------------ #
    @classmethod
    def from_full_frame(
        cls,
        roi_id: int,
        blob_box: Tuple[int, int, int, int],
        roi_size: Tuple[int, int],
        sensor_size: Tuple[int, int],
        frame_time: float = 50_000.0,
        exposure: float = 20_000.0,
    ) -> "TrackingWindow":
        """
        Build a window from a best-guess blob box (x, y, w, h) in full-frame
        pixels: the ROI is centered on the blob, then the blob is converted to
        ROI-relative form.
        """
        x, y, w, h = (int(v) for v in blob_box)
        if w <= 0 or h <= 0:
            raise ConfigError(f"ROI {roi_id}: initial blob box must have a positive size")
        roi_w, roi_h = roi_size
        sensor_w, sensor_h = sensor_size
        if roi_w > sensor_w or roi_h > sensor_h:
            raise ConfigError(f"ROI {roi_id}: {roi_w}x{roi_h} does not fit the sensor")

        win = cls(
            roi_id=roi_id,
            roi_offset_x=_place(x + w / 2.0, roi_w, sensor_w),
            roi_offset_y=_place(y + h / 2.0, roi_h, sensor_h),
            roi_width=roi_w,
            roi_height=roi_h,
            sensor_width=sensor_w,
            sensor_height=sensor_h,
            frame_time=frame_time,
            exposure=exposure,
        )
        min_x, min_y = win.to_roi_relative((x, y))
        win.blob_min_x, win.blob_min_y = int(min_x), int(min_y)
        win.blob_max_x, win.blob_max_y = int(min_x) + w, int(min_y) + h
        return win

    @classmethod
    def from_config(cls, cfg: WindowConfig, sensor: SensorConfig) -> "TrackingWindow":
        return cls.from_full_frame(
            cfg.roi_id,
            cfg.blob_box,
            (cfg.roi_width, cfg.roi_height),
            (sensor.width, sensor.height),
            frame_time=sensor.frame_time_us,
            exposure=sensor.exposure_us,
        )

    # ------------------------------------------------------------------ #
    #   C O O R D I N A T E   F R A M E S
    # ------------------------------------------------------------------ #
    @property
    def roi_offset(self) -> Tuple[int, int]:
        return self.roi_offset_x, self.roi_offset_y

    @property
    def roi_size(self) -> Tuple[int, int]:
        return self.roi_width, self.roi_height

    @property
    def blob_box(self) -> BlobBox:
        return BlobBox(self.blob_min_x, self.blob_min_y, self.blob_max_x, self.blob_max_y)

    def set_blob(self, box: BlobBox) -> None:
        self.blob_min_x, self.blob_min_y = box.min_x, box.min_y
        self.blob_max_x, self.blob_max_y = box.max_x, box.max_y

    def to_roi_relative(self, point: Sequence[float]) -> Point2D:
        return Point2D(point[0] - self.roi_offset_x, point[1] - self.roi_offset_y)

    def to_full_frame(self, point: Sequence[float]) -> Point2D:
        return Point2D(point[0] + self.roi_offset_x, point[1] + self.roi_offset_y)

    def blob_center(self) -> Point2D:
        return self.blob_box.center

    def blob_center_full_frame(self) -> Point2D:
        return self.to_full_frame(self.blob_center())

    # ------------------------------------------------------------------ #
    #   R O I   P L A C E M E N T
    # ------------------------------------------------------------------ #
    def recenter_roi(self) -> Tuple[int, int]:
        """
        Re-place the hardware ROI so the blob sits in its middle.

        The blob box is shifted by the same amount so its full-frame position
        does not change; calling this again without new blob motion is a no-op.
        Near the sensor edge the ROI is clamped instead of failing.
        """
        cx, cy = self.blob_center_full_frame()
        new_x = _place(cx, self.roi_width, self.sensor_width)
        new_y = _place(cy, self.roi_height, self.sensor_height)
        dx = new_x - self.roi_offset_x
        dy = new_y - self.roi_offset_y
        if dx or dy:
            self.blob_min_x -= dx
            self.blob_max_x -= dx
            self.blob_min_y -= dy
            self.blob_max_y -= dy
            self.roi_offset_x = new_x
            self.roi_offset_y = new_y
            self.roi_pending = True
        return new_x, new_y

    def flush(self, grabber: "FrameGrabber") -> bool:
        """Write a buffered ROI placement to the grabber. True if anything was sent."""
        if not self.roi_pending:
            return False
        grabber.write_roi(self.roi_id, self.roi_offset, self.roi_size)
        self.roi_pending = False
        return True


class WindowTable:
    """ROI id -> window, with explicit presence for each hardware slot."""

    def __init__(self, windows: Iterable[TrackingWindow], max_roi: int = MAX_ROI) -> None:
        self._slots: List[Optional[TrackingWindow]] = [None] * max_roi
        self._order: List[int] = []
        for win in windows:
            if not 0 <= win.roi_id < max_roi:
                raise ConfigError(f"ROI id {win.roi_id} outside 0..{max_roi - 1}")
            if self._slots[win.roi_id] is not None:
                raise ConfigError(f"ROI id {win.roi_id} configured twice")
            self._slots[win.roi_id] = win
            self._order.append(win.roi_id)
        if not self._order:
            raise ConfigError("At least one tracking window is required")

    @classmethod
    def from_config(cls, windows: Iterable[WindowConfig], sensor: SensorConfig) -> "WindowTable":
        return cls(TrackingWindow.from_config(w, sensor) for w in windows)

    def get(self, roi_id: int) -> TrackingWindow:
        if not 0 <= roi_id < len(self._slots) or self._slots[roi_id] is None:
            raise ConfigError(
                f"Frame tagged with ROI {roi_id}, but only {self._order} are configured"
            )
        return self._slots[roi_id]  # type: ignore[return-value]

    def find(self, roi_id: int) -> Optional[TrackingWindow]:
        if 0 <= roi_id < len(self._slots):
            return self._slots[roi_id]
        return None

    @property
    def sequence(self) -> List[int]:
        """ROI ids in acquisition order."""
        return list(self._order)

    def __iter__(self) -> Iterator[TrackingWindow]:
        for rid in self._order:
            yield self._slots[rid]  # type: ignore[misc]

    def __len__(self) -> int:
        return len(self._order)
