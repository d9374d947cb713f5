# loop.py
"""Grabber -> blob locator -> ROI recenter -> world projection -> serial glue.

One iteration handles exactly one tagged frame:

1. acquire the next frame (bounded wait; a timeout skips the iteration)
2. decode ROI id and timestamp from the frame tag
3. look up the window (an unknown ROI id is fatal)
4. locate the blob in the window
5. recenter the hardware ROI (buffered)
6. flush the buffered ROI to the grabber
7. project the blob center to world coordinates, optionally Kalman-filtered
8. send ``(roi_id, x, y, timestamp)`` over the link
9. advance the expected image number

Iterations never overlap, and the quit check only runs between them.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol, Set, Tuple

import cv2
import numpy as np

from roi_tracking.acquisition import Frame, FrameGrabber
from roi_tracking.blob import BlobLocator
from roi_tracking.camera_model import CameraModel
from roi_tracking.common import BlobBox, WorldReport
from roi_tracking.config import (
    BlobConfig,
    LoopConfig,
    LostBlobPolicy,
    SensorConfig,
    TrackerConfig,
)
from roi_tracking.errors import (
    ConfigError,
    FrameTimeoutError,
    HardwareError,
    NoBlobFound,
    StreamEnded,
)
from roi_tracking.live_tuning import RuntimeParamWatcher
from roi_tracking.tracker import MotionPredictor
from roi_tracking.window import TrackingWindow, WindowTable


class Link(Protocol):
    def send(self, roi_id: int, x: float, y: float, timestamp: int) -> None: ...


@dataclass
class LoopStats:
    iterations: int = 0
    frames: int = 0
    timeouts: int = 0
    misses: int = 0
    dropped: int = 0
    emitted: int = 0
    busy_s: float = 0.0

    @property
    def avg_iteration_s(self) -> float:
        return self.busy_s / self.iterations if self.iterations else 0.0

    def summary(self) -> str:
        return (
            f"average time {self.avg_iteration_s:g} s, total number of images: {self.frames} "
            f"(emitted={self.emitted}, misses={self.misses}, "
            f"timeouts={self.timeouts}, dropped={self.dropped})"
        )


class TrackingLoop:
    """The main high-level orchestrator."""

    def __init__(
        self,
        grabber: FrameGrabber,
        windows: WindowTable,
        model: CameraModel,
        link: Link,
        *,
        sensor_cfg: SensorConfig,
        blob_cfg: BlobConfig,
        tracker_cfg: TrackerConfig,
        loop_cfg: LoopConfig,
        should_quit: Optional[Callable[[], bool]] = None,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self.grabber = grabber
        self.windows = windows
        self.model = model
        self.link = link
        self.sensor_cfg = sensor_cfg
        self.tracker_cfg = tracker_cfg
        self.loop_cfg = loop_cfg
        self._clock = clock

        self.locator = BlobLocator(blob_cfg)
        self.depth = loop_cfg.known_depth if loop_cfg.known_depth is not None else model.default_depth
        if not self.depth > 0:
            raise ConfigError(f"Tracking depth must be positive, got {self.depth}")

        self.predictors: Dict[int, MotionPredictor] = {}
        if tracker_cfg.enabled:
            for win in windows:
                self.predictors[win.roi_id] = self._make_predictor(win)

        if should_quit is not None:
            self.should_quit = should_quit
        elif loop_cfg.show_display:
            self.should_quit = lambda: (cv2.waitKey(1) & 0xFF) == ord("q")
        else:
            self.should_quit = lambda: False

        self.watcher = (
            RuntimeParamWatcher(loop_cfg.runtime_params_path)
            if loop_cfg.runtime_params_path
            else None
        )

        # Runtime bookkeeping
        self.stats = LoopStats()
        self.expected_image_number: Optional[int] = None
        self.last_world: Dict[int, Tuple[float, float]] = {}
        self.last_reports: Dict[int, WorldReport] = {}
        self._lost: Set[int] = set()
        self._apply_runtime_params(force=True)

    def _make_predictor(self, win: TrackingWindow) -> MotionPredictor:
        # Each ROI is revisited once per pass over the acquisition sequence.
        nominal_dt = win.frame_time * 1e-6 * len(self.windows)
        wx, wy, _ = self.model.pixel_to_world(win.blob_center_full_frame(), self.depth)
        return MotionPredictor(self.tracker_cfg, nominal_dt, initial_state=(wx, wy, 0.0, 0.0))

    # ---------------------------------------------------------------------
    #                         Setup / teardown
    # ---------------------------------------------------------------------
    def setup(self) -> None:
        """Open the grabber and flush every window's initial ROI."""
        self.grabber.open()
        self.grabber.start(self.windows)
        if self.loop_cfg.show_display:
            for win in self.windows:
                cv2.namedWindow(self._window_name(win.roi_id), cv2.WINDOW_NORMAL)
        print(f"[Loop] Tracking ROIs {self.windows.sequence} at depth {self.depth:.4g}")

    def cleanup(self) -> None:
        print("[Loop] Cleaning up...")
        self.grabber.close()
        if self.loop_cfg.show_display:
            cv2.destroyAllWindows()
        print(f"[Loop] {self.stats.summary()}")

    # ---------------------------------------------------------------------
    #                          Live tuning
    # ---------------------------------------------------------------------
    @staticmethod
    def _number(key: str, value, *, integer: bool = False):
        """`value` as a number, or None (with a warning) if it is not one."""
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not np.isfinite(value):
            print(f"[Runtime] {key} must be a number, got {value!r}; keeping the old value")
            return None
        if integer and value != int(value):
            print(f"[Runtime] {key} must be an integer, got {value!r}; keeping the old value")
            return None
        return int(value) if integer else float(value)

    def _apply_runtime_params(self, force: bool = False) -> None:
        if self.watcher is None:
            return
        if not self.watcher.maybe_reload() and not force:
            return
        threshold = self._number("threshold", self.watcher.get("threshold"), integer=True)
        if threshold is not None:
            if 0 <= threshold <= 255:
                self.locator.cfg.threshold = threshold
            else:
                print(f"[Runtime] threshold {threshold} outside 0..255, keeping "
                      f"{self.locator.cfg.threshold}")

        noise = {}
        for key in ("process_noise_var", "measurement_noise_var"):
            value = self._number(key, self.watcher.get(key))
            if value is not None and not value > 0:
                print(f"[Runtime] {key} must be positive, got {value}; keeping the old value")
                value = None
            noise[key] = value
        for predictor in self.predictors.values():
            predictor.apply_tuning(**noise)

        policy = self.watcher.get("lost_blob_policy")
        if policy is not None:
            try:
                self.loop_cfg.lost_blob_policy = LostBlobPolicy(policy)
            except ValueError:
                print(f"[Runtime] Unknown lost_blob_policy {policy!r}, keeping "
                      f"{self.loop_cfg.lost_blob_policy.value}")

    # ---------------------------------------------------------------------
    #                        Drawing / UI helpers
    # ---------------------------------------------------------------------
    @staticmethod
    def _window_name(roi_id: int) -> str:
        return f"ROI {roi_id}"

    def _show(self, win: TrackingWindow, image: np.ndarray, box: Optional[BlobBox]) -> None:
        disp = cv2.cvtColor(image, cv2.COLOR_GRAY2BGR) if image.ndim == 2 else image.copy()
        if box is not None:
            cv2.rectangle(disp, (box.min_x, box.min_y), (box.max_x - 1, box.max_y - 1), (0, 255, 0), 1)
        cv2.imshow(self._window_name(win.roi_id), disp)

    # ---------------------------------------------------------------------
    #                          Per-frame logic
    # ---------------------------------------------------------------------
    def _check_sequence(self, image_number: int) -> None:
        expected = self.expected_image_number
        if expected is None or image_number <= expected:
            return
        gap = image_number - expected
        self.stats.dropped += gap
        print(f"[Loop] Lost {gap} image(s) before #{image_number}")
        if self.loop_cfg.abort_on_dropped_frames:
            raise HardwareError(f"Lost {gap} image(s) before #{image_number}")

    def _on_miss(
        self, roi_id: int, t_s: float
    ) -> Tuple[Optional[Tuple[float, float]], bool]:
        """World position to emit for a frame with no blob, per the lost-blob policy."""
        self.stats.misses += 1
        if roi_id not in self._lost:
            self._lost.add(roi_id)
            print(f"[Loop] ROI {roi_id}: blob lost ({self.loop_cfg.lost_blob_policy.value})")

        predictor = self.predictors.get(roi_id)
        if predictor is not None and predictor.tracking:
            x, y, _, _ = predictor.step(None, t_s)
            if self.loop_cfg.lost_blob_policy is LostBlobPolicy.PREDICT:
                return (x, y), True

        if self.loop_cfg.lost_blob_policy is LostBlobPolicy.SKIP:
            return None, False
        return self.last_world.get(roi_id), False

    def process_frame(self, frame: Frame) -> WorldReport:
        """Steps 2-9 for one acquired frame."""
        roi_id = frame.roi_id
        ts = frame.timestamp
        t_s = ts * self.sensor_cfg.timestamp_scale_s
        win = self.windows.get(roi_id)
        self._check_sequence(frame.image_number)

        box: Optional[BlobBox]
        try:
            box = self.locator.locate(win, frame.image)
        except NoBlobFound:
            box = None

        if self.loop_cfg.show_display:
            self._show(win, self.locator.roi_view(win, frame.image), box)

        pixel = world = None
        filtered = False
        if box is not None:
            if roi_id in self._lost:
                self._lost.discard(roi_id)
                print(f"[Loop] ROI {roi_id}: blob reacquired")
            win.recenter_roi()
            pixel = win.blob_center_full_frame()
            wx, wy, _ = self.model.pixel_to_world(pixel, self.depth)
            world = (wx, wy)
            predictor = self.predictors.get(roi_id)
            if predictor is not None:
                x, y, _, _ = predictor.step(world, t_s)
                world, filtered = (x, y), True
        else:
            world, filtered = self._on_miss(roi_id, t_s)

        win.flush(self.grabber)

        if world is not None:
            self.link.send(roi_id, world[0], world[1], ts)
            self.stats.emitted += 1
            if box is not None or filtered:
                self.last_world[roi_id] = world

        self.expected_image_number = frame.image_number + 1
        self.stats.frames += 1
        report = WorldReport(
            roi_id=roi_id,
            image_number=frame.image_number,
            timestamp=ts,
            pixel_px=(pixel.x, pixel.y) if pixel is not None else None,
            world_xy=world,
            blob_found=box is not None,
            filtered=filtered,
        )
        self.last_reports[roi_id] = report
        return report

    def step(self) -> Optional[WorldReport]:
        """One full iteration. Returns None when the frame timed out."""
        tic = self._clock()
        try:
            self._apply_runtime_params()
            try:
                frame = self.grabber.acquire_tagged_frame(self.loop_cfg.acquire_timeout_s)
            except FrameTimeoutError as exc:
                self.stats.timeouts += 1
                print(f"[Loop] Frame timeout: {exc}")
                return None
            report = self.process_frame(frame)
            # The image belongs to the grabber; drop it before the next grab.
            del frame
            return report
        finally:
            self.stats.iterations += 1
            self.stats.busy_s += self._clock() - tic

    # ---------------------------------------------------------------------
    #                             Public run()
    # ---------------------------------------------------------------------
    def run(self) -> LoopStats:
        """
        Loop until quit, `max_iterations` or end of stream.  Fatal errors
        (ConfigError, HardwareError, CommError) propagate after cleanup.
        """
        try:
            self.setup()
            limit = self.loop_cfg.max_iterations
            while limit is None or self.stats.iterations < limit:
                if self.should_quit():
                    break
                try:
                    self.step()
                except StreamEnded as exc:
                    print(f"[Loop] {exc}")
                    break
        except KeyboardInterrupt:
            print("\n[Loop] Stopped by user.")
        finally:
            self.cleanup()
        return self.stats
