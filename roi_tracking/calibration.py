# calibration.py
"""Chessboard calibration: collect corner views, estimate the camera model.

World frame of a board
----------------------
The distance between two neighbouring corners is one unit.  x runs left to
right across the columns, y runs bottom to top along the rows, and the
origin sits on the first corner ``cv2.findChessboardCorners`` reports::

      (0, 0) o-------o (1, 0)
             |       |
     (0, -1) o-------o (1, -1)

Corners come back in row-major order, so corner ``i`` maps to
``(i % cols, -(i // cols), 0)``.

Interactive keys (preview window focused)
-----------------------------------------
``i``  discard the view that was just captured
``q``  stop collecting
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Protocol, Sequence, Tuple

import cv2
import numpy as np

from roi_tracking.camera_model import CameraModel
from roi_tracking.config import CalibrationConfig
from roi_tracking.errors import ConfigError, InsufficientViews


class FrameSource(Protocol):
    def read(self) -> Tuple[bool, Optional[np.ndarray]]: ...


CornerFinder = Callable[[np.ndarray], Optional[np.ndarray]]


@dataclass(frozen=True, eq=False)
class View:
    """
    Pixel corners (N, 1, 2) and their world locations (N, 3), float32.
    `image` is the frame the board was found in, kept only on request.
    """
    pixel: np.ndarray
    world: np.ndarray
    image: Optional[np.ndarray] = None


def world_grid(
    grid: Tuple[int, int],
    origin: Tuple[float, float] = (0.0, 0.0),
    theta: float = 0.0,
) -> np.ndarray:
    """
    World coordinates of the inner corners of a (cols, rows) board, optionally
    rotated by `theta` radians in the board plane and moved to `origin`.
    """
    cols, rows = grid
    i = np.arange(cols * rows)
    x = (i % cols).astype(np.float64)
    y = -(i // cols).astype(np.float64)
    if theta or origin != (0.0, 0.0):
        c, s = math.cos(theta), math.sin(theta)
        x, y = c * x - s * y + origin[0], s * x + c * y + origin[1]
    return np.stack([x, y, np.zeros_like(x)], axis=1).astype(np.float32)


def _to_gray(frame: np.ndarray) -> np.ndarray:
    if frame.ndim == 3 and frame.shape[2] == 4:
        return cv2.cvtColor(frame, cv2.COLOR_BGRA2GRAY)
    if frame.ndim == 3 and frame.shape[2] == 3:
        return cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)
    return frame


class ChessboardCalibrator:
    WINDOW = "calibration"

    def __init__(
        self,
        cfg: CalibrationConfig,
        *,
        preview: bool = True,
        finder: CornerFinder | None = None,
        wait_key: Callable[[int], int] | None = None,
        origin: Tuple[float, float] = (0.0, 0.0),
        theta: float = 0.0,
        keep_images: bool = False,
    ):
        self.cfg = cfg
        self.preview = preview
        self.keep_images = keep_images
        self._find = finder or self._find_corners
        self._wait_key = wait_key or cv2.waitKey
        self.world = world_grid(cfg.grid, origin, theta)
        self.last_image_size: Optional[Tuple[int, int]] = None

    # ------------------------------------------------------------------ #
    #   C O R N E R S
    # ------------------------------------------------------------------ #
    def _find_corners(self, gray: np.ndarray) -> Optional[np.ndarray]:
        found, corners = cv2.findChessboardCorners(
            gray,
            self.cfg.grid,
            flags=cv2.CALIB_CB_ADAPTIVE_THRESH | cv2.CALIB_CB_NORMALIZE_IMAGE,
        )
        if not found:
            return None
        criteria = (
            cv2.TERM_CRITERIA_EPS | cv2.TERM_CRITERIA_MAX_ITER,
            self.cfg.subpix_max_iter,
            self.cfg.subpix_eps,
        )
        return cv2.cornerSubPix(
            gray, corners, self.cfg.subpix_window, self.cfg.subpix_zero_zone, criteria
        )

    def _show(self, frame: np.ndarray, corners: Optional[np.ndarray]) -> None:
        disp = cv2.cvtColor(frame, cv2.COLOR_GRAY2BGR) if frame.ndim == 2 else frame.copy()
        if corners is not None:
            cv2.drawChessboardCorners(disp, self.cfg.grid, corners, True)
        cv2.imshow(self.WINDOW, disp)

    # ------------------------------------------------------------------ #
    #   C O L L E C T
    # ------------------------------------------------------------------ #
    def collect_views(
        self, source: FrameSource, target_count: int, interactive: bool = False
    ) -> List[View]:
        """
        Grab frames until `target_count` boards were seen, the source runs dry
        or the user quits.  Returns whatever was collected; check the length.
        """
        views: List[View] = []
        poll_keys = self.preview or interactive
        n_points = self.cfg.grid[0] * self.cfg.grid[1]
        if self.preview:
            cv2.namedWindow(self.WINDOW, cv2.WINDOW_AUTOSIZE)

        try:
            while len(views) < target_count:
                ok, frame = source.read()
                if not ok or frame is None:
                    print("[Calib] Source exhausted")
                    break
                gray = _to_gray(frame)
                self.last_image_size = (gray.shape[1], gray.shape[0])

                corners = self._find(gray)
                found = corners is not None and len(corners) == n_points
                if found:
                    views.append(
                        View(
                            pixel=np.asarray(corners, dtype=np.float32).reshape(-1, 1, 2),
                            world=self.world.copy(),
                            image=frame.copy() if self.keep_images else None,
                        )
                    )
                    print(f"[Calib] Board {len(views)}/{target_count} captured")

                if self.preview:
                    self._show(frame, corners if found else None)
                if not poll_keys:
                    continue

                if found and interactive:
                    key = self._wait_key(0) & 0xFF
                    if key == ord("i"):
                        views.pop()
                        print("[Calib] Discarded last board")
                    elif key == ord("q"):
                        break
                elif (self._wait_key(5) & 0xFF) == ord("q"):
                    break
        finally:
            if self.preview:
                cv2.destroyWindow(self.WINDOW)

        if len(views) < target_count:
            print(f"[Calib] Only got {len(views)} of {target_count} boards")
        return views

    @staticmethod
    def save_views(views: Sequence[View], directory: str | Path) -> List[Path]:
        """Write the kept board images as ``view_00.png``, ``view_01.png``, ..."""
        out_dir = Path(directory).expanduser()
        out_dir.mkdir(parents=True, exist_ok=True)
        written: List[Path] = []
        for idx, view in enumerate(views):
            if view.image is None:
                continue
            path = out_dir / f"view_{idx:02d}.png"
            if not cv2.imwrite(str(path), view.image):
                raise ConfigError(f"Could not write {path}")
            written.append(path)
        print(f"[Calib] Saved {len(written)} board images to {out_dir}")
        return written

    # ------------------------------------------------------------------ #
    #   E S T I M A T E
    # ------------------------------------------------------------------ #
    def compute_intrinsics(
        self, views: Sequence[View], image_size: Tuple[int, int]
    ) -> Tuple[np.ndarray, np.ndarray, float]:
        """Zhang calibration over all views -> (intrinsic 3x3, distortion 4x1, rms px)."""
        if len(views) < self.cfg.min_views:
            raise InsufficientViews(len(views), self.cfg.min_views)
        if len(views) < self.cfg.recommended_views:
            print(
                f"[Calib] Warning: {len(views)} views, "
                f"{self.cfg.recommended_views}+ give a more stable estimate"
            )

        rms, intrinsic, dist, _, _ = cv2.calibrateCamera(
            [v.world for v in views],
            [v.pixel for v in views],
            tuple(int(s) for s in image_size),
            None,
            None,
            flags=cv2.CALIB_FIX_K3,
        )
        distortion = np.asarray(dist, dtype=np.float64).ravel()[:4].reshape(4, 1)
        print(f"[Calib] Intrinsics from {len(views)} views, RMS reprojection {rms:.3f} px")
        return np.asarray(intrinsic, dtype=np.float64), distortion, float(rms)

    def compute_extrinsics(
        self, view: View, intrinsic: np.ndarray, distortion: np.ndarray
    ) -> Tuple[np.ndarray, np.ndarray]:
        """Pose of the board in `view` -> (rotation 3x3, translation 3x1)."""
        ok, rvec, tvec = cv2.solvePnP(view.world, view.pixel, intrinsic, distortion)
        if not ok:
            raise ConfigError("Could not solve the board pose for the extrinsic view")
        rotation, _ = cv2.Rodrigues(rvec)
        return rotation, np.asarray(tvec, dtype=np.float64).reshape(3, 1)

    def calibrate(
        self,
        source: FrameSource,
        target_count: int,
        *,
        interactive: bool = False,
        image_size: Optional[Tuple[int, int]] = None,
        save: bool = True,
        views_dir: str | Path | None = None,
    ) -> CameraModel:
        """
        Collect, estimate intrinsics, take the extrinsics from the *last* view
        (leave the board on the tracking plane for the final capture) and
        optionally write the four matrices to the configured paths.
        With `views_dir` (and `keep_images`) the board images are saved too.
        """
        views = self.collect_views(source, target_count, interactive)
        if views_dir is not None:
            self.save_views(views, views_dir)
        size = image_size or self.last_image_size
        if size is None:
            raise InsufficientViews(0, self.cfg.min_views)
        intrinsic, distortion, _ = self.compute_intrinsics(views, size)
        rotation, translation = self.compute_extrinsics(views[-1], intrinsic, distortion)
        model = CameraModel(intrinsic, distortion, rotation, translation)
        if save:
            model.save(
                self.cfg.intrinsic_path,
                self.cfg.distortion_path,
                self.cfg.rotation_path,
                self.cfg.translation_path,
            )
            print(f"[Calib] Saved camera model ({self.cfg.intrinsic_path}, ...)")
        return model
