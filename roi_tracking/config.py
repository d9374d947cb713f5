# config.py
"""Typed configuration blobs for the whole system."""
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple


# ---------------------- Sensor ----------------------
@dataclass
class SensorConfig:
    width: int = 1024
    height: int = 1024
    exposure_us: float = 20_000.0    # shutter speed
    frame_time_us: float = 50_000.0  # pause between images (1 / fps)
    timestamp_scale_s: float = 1e-6  # hardware timestamp tick -> seconds


# ---------------------- Windows ---------------------
@dataclass
class WindowConfig:
    roi_id: int
    # Initial best-guess blob box in *full-frame* pixels: (x, y, w, h)
    blob_box: Tuple[int, int, int, int]
    roi_width: int = 64
    roi_height: int = 64


def default_windows() -> List[WindowConfig]:
    return [
        WindowConfig(roi_id=0, blob_box=(434, 572, 30, 30)),
        WindowConfig(roi_id=1, blob_box=(592, 583, 30, 30)),
    ]


# ----------------------- Blob -----------------------
@dataclass
class BlobConfig:
    threshold: int = 254              # foreground is strictly above this
    dark_blob: bool = False           # track a dark object on a bright field
    erode_kernel: int = 3
    erode_iterations: int = 1
    min_area: int = 1                 # surviving pixels needed to count
    search_margin: Optional[int] = None  # px around last box; None = whole ROI


# ---------------------- Tracker ---------------------
class LostBlobPolicy(str, Enum):
    PREDICT = "predict"   # dead-reckon with the Kalman filter
    HOLD = "hold"         # re-send the last world position
    SKIP = "skip"         # send nothing this frame


@dataclass
class TrackerConfig:
    enabled: bool = True
    gravity: float = -9.81            # world y axis points up
    process_noise_var: float = 1e-1
    measurement_noise_var: float = 1e-5
    initial_covariance: float = 100.0  # "don't trust the initial guess"


# ---------------------- Serial ----------------------
@dataclass
class SerialConfig:
    port: Optional[str] = None        # e.g. "/dev/ttyUSB0" or "COM5"
    baudrate: int = 115_200
    timeout: float = 1.0


# -------------------- Calibration -------------------
@dataclass
class CalibrationConfig:
    intrinsic_path: str = "TrackCamIntrinsics.xml"
    distortion_path: str = "TrackCamDistortion.xml"
    rotation_path: str = "TrackCamRotation.xml"
    translation_path: str = "TrackCamTranslation.xml"
    grid: Tuple[int, int] = (9, 6)    # inner corners (cols, rows)
    min_views: int = 3
    recommended_views: int = 10
    subpix_window: Tuple[int, int] = (5, 5)
    subpix_zero_zone: Tuple[int, int] = (-1, -1)
    subpix_max_iter: int = 30
    subpix_eps: float = 0.1


# ----------------------- Loop -----------------------
@dataclass
class LoopConfig:
    acquire_timeout_s: float = 5.0
    known_depth: Optional[float] = None  # None -> camera model's translation z
    lost_blob_policy: LostBlobPolicy = LostBlobPolicy.PREDICT
    max_iterations: Optional[int] = None
    abort_on_dropped_frames: bool = False
    show_display: bool = False
    runtime_params_path: Optional[str] = None
