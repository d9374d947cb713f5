# camera_model.py
"""Calibrated pin-hole camera model: pixel <-> world projection.

The model is the four matrices produced by calibration:

* ``intrinsic``   3x3 camera matrix (fx, fy, cx, cy)
* ``distortion``  Brown-Conrady coefficients (k1, k2, p1, p2[, k3 ...])
* ``rotation``    3x3, world -> camera
* ``translation`` 3x1, world -> camera

Each matrix lives in its own file.  ``.npy`` files go through numpy, anything
else (``.xml``, ``.yml``, ``.yaml``, ``.json``) through ``cv2.FileStorage`` so
that matrices written by older OpenCV tooling load unchanged.
"""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

import cv2
import numpy as np

from roi_tracking.common import Point2D, Point3D
from roi_tracking.config import CalibrationConfig
from roi_tracking.errors import CalibrationFileError, MissingCalibrationFile

_DISTORTION_SIZES = (4, 5, 8, 12, 14)


# ------------------------------------------------------------------ #
#   M A T R I X   I / O
# ------------------------------------------------------------------ #
def load_matrix(path: str | Path) -> np.ndarray:
    """Load one matrix; raise a ConfigError subclass on any failure."""
    p = Path(path).expanduser()
    if not p.is_file():
        raise MissingCalibrationFile(str(p))

    if p.suffix.lower() == ".npy":
        try:
            return np.asarray(np.load(p, allow_pickle=False), dtype=np.float64)
        except (OSError, ValueError) as exc:
            raise CalibrationFileError(f"Cannot read {p}: {exc}") from exc

    try:
        fs = cv2.FileStorage(str(p), cv2.FILE_STORAGE_READ)
        try:
            if not fs.isOpened():
                raise CalibrationFileError(f"Cannot open {p}")
            node = fs.getFirstTopLevelNode()
            mat = None if node.empty() else node.mat()
        finally:
            fs.release()
    except cv2.error as exc:
        raise CalibrationFileError(f"Cannot parse {p}: {exc}") from exc

    if mat is None or mat.size == 0:
        raise CalibrationFileError(f"{p} does not contain a matrix")
    return np.asarray(mat, dtype=np.float64)


def save_matrix(path: str | Path, matrix: np.ndarray, name: str = "matrix") -> None:
    p = Path(path).expanduser()
    p.parent.mkdir(parents=True, exist_ok=True)
    if p.suffix.lower() == ".npy":
        np.save(p, np.asarray(matrix, dtype=np.float64))
        return
    fs = cv2.FileStorage(str(p), cv2.FILE_STORAGE_WRITE)
    try:
        fs.write(name, np.asarray(matrix, dtype=np.float64))
    finally:
        fs.release()


# ------------------------------------------------------------------ #
#   V A L I D A T I O N
# ------------------------------------------------------------------ #
def _frozen(arr: np.ndarray) -> np.ndarray:
    out = np.array(arr, dtype=np.float64, copy=True)
    out.setflags(write=False)
    return out


def _check_finite(name: str, arr: np.ndarray) -> None:
    if not np.all(np.isfinite(arr)):
        raise CalibrationFileError(f"{name} contains non-finite values")


def _as_intrinsic(value) -> np.ndarray:
    arr = np.asarray(value, dtype=np.float64)
    if arr.size != 9:
        raise CalibrationFileError(f"intrinsic must be 3x3, got shape {arr.shape}")
    arr = arr.reshape(3, 3)
    _check_finite("intrinsic", arr)
    if arr[0, 0] <= 0 or arr[1, 1] <= 0:
        raise CalibrationFileError("intrinsic focal lengths must be positive")
    return arr


def _as_distortion(value) -> np.ndarray:
    arr = np.asarray(value, dtype=np.float64).reshape(-1, 1)
    if arr.shape[0] not in _DISTORTION_SIZES:
        raise CalibrationFileError(
            f"distortion must have one of {_DISTORTION_SIZES} coefficients, "
            f"got {arr.shape[0]}"
        )
    _check_finite("distortion", arr)
    return arr


def _as_rotation(value) -> np.ndarray:
    arr = np.asarray(value, dtype=np.float64)
    if arr.size == 3:  # Rodrigues vector
        arr, _ = cv2.Rodrigues(arr.reshape(3, 1))
    if arr.size != 9:
        raise CalibrationFileError(f"rotation must be 3x3, got shape {arr.shape}")
    arr = arr.reshape(3, 3)
    _check_finite("rotation", arr)
    if not np.allclose(arr.T @ arr, np.eye(3), atol=1e-4):
        raise CalibrationFileError("rotation is not orthonormal")
    return arr


def _as_translation(value) -> np.ndarray:
    arr = np.asarray(value, dtype=np.float64)
    if arr.size != 3:
        raise CalibrationFileError(f"translation must be 3x1, got shape {arr.shape}")
    arr = arr.reshape(3, 1)
    _check_finite("translation", arr)
    return arr


# ------------------------------------------------------------------ #
#   M O D E L
# ------------------------------------------------------------------ #
@dataclass(frozen=True, eq=False)
class CameraModel:
    intrinsic: np.ndarray
    distortion: np.ndarray
    rotation: np.ndarray
    translation: np.ndarray

    def __post_init__(self) -> None:
        # All four are validated together; a half-built model never exists.
        object.__setattr__(self, "intrinsic", _frozen(_as_intrinsic(self.intrinsic)))
        object.__setattr__(self, "distortion", _frozen(_as_distortion(self.distortion)))
        object.__setattr__(self, "rotation", _frozen(_as_rotation(self.rotation)))
        object.__setattr__(self, "translation", _frozen(_as_translation(self.translation)))

    # ---------------- Persistence ----------------
    @classmethod
    def load(
        cls,
        intrinsic_path: str | Path,
        distortion_path: str | Path,
        rotation_path: str | Path,
        translation_path: str | Path,
    ) -> "CameraModel":
        return cls(
            intrinsic=load_matrix(intrinsic_path),
            distortion=load_matrix(distortion_path),
            rotation=load_matrix(rotation_path),
            translation=load_matrix(translation_path),
        )

    @classmethod
    def from_config(cls, cfg: CalibrationConfig) -> "CameraModel":
        return cls.load(
            cfg.intrinsic_path, cfg.distortion_path, cfg.rotation_path, cfg.translation_path
        )

    def save(
        self,
        intrinsic_path: str | Path,
        distortion_path: str | Path,
        rotation_path: str | Path,
        translation_path: str | Path,
    ) -> None:
        save_matrix(intrinsic_path, self.intrinsic, "intrinsic")
        save_matrix(distortion_path, self.distortion, "distortion")
        save_matrix(rotation_path, self.rotation, "rotation")
        save_matrix(translation_path, self.translation, "translation")

    # ---------------- Projection -----------------
    @property
    def default_depth(self) -> float:
        """Camera-frame depth of the world origin (the calibration plane)."""
        return float(self.translation[2, 0])

    def undistort(self, pixel: Sequence[float]) -> Point2D:
        """Pixel -> normalized image coordinates (x/z, y/z)."""
        src = np.array([[[float(pixel[0]), float(pixel[1])]]], dtype=np.float64)
        out = cv2.undistortPoints(src, self.intrinsic, self.distortion, P=np.eye(3))
        xn, yn = out.reshape(2)
        return Point2D(float(xn), float(yn))

    def pixel_to_world(self, pixel: Sequence[float], known_depth: float) -> Point3D:
        """
        Back-project a pixel at a known camera-frame depth.

        Monocular back-projection is underdetermined, so the depth has to come
        from outside (e.g. the object moves in a fixed plane).
        """
        if not known_depth > 0:
            raise ValueError(f"known_depth must be > 0, got {known_depth}")
        xn, yn = self.undistort(pixel)
        cam = known_depth * np.array([[xn], [yn], [1.0]])
        world = self.rotation.T @ (cam - self.translation)
        return Point3D(*(float(v) for v in world.ravel()))

    def world_to_pixel(self, point: Sequence[float]) -> Point2D:
        obj = np.asarray(point, dtype=np.float64).reshape(1, 3)
        rvec, _ = cv2.Rodrigues(self.rotation)
        img, _ = cv2.projectPoints(obj, rvec, self.translation, self.intrinsic, self.distortion)
        u, v = img.reshape(2)
        return Point2D(float(u), float(v))
