# roi_tracking/__init__.py
"""ROI-tracking package – re-export high-level API."""
from .loop import TrackingLoop, LoopStats                # noqa: F401
from .camera_model import CameraModel                    # noqa: F401
from .calibration import ChessboardCalibrator, View      # noqa: F401
from .window import TrackingWindow, WindowTable          # noqa: F401
from .blob import BlobLocator                            # noqa: F401
from .tracker import MotionPredictor                     # noqa: F401
from .config import (                                    # noqa: F401
    SensorConfig, WindowConfig, BlobConfig, TrackerConfig,
    SerialConfig, CalibrationConfig, LoopConfig, LostBlobPolicy,
)
