# main.py
"""
Entry-point for the ROI tracking controller.

Run
---
    roi-track --source 0 --port /dev/ttyUSB0 \
        --calib-dir calib/ --window 0 434 572 30 30 --window 1 592 583 30 30

Press ``q`` in a debug window (``--display``) or Ctrl-C to stop.  The average
iteration time and frame count are printed on exit.

Live-tuning
-----------
Pass ``--runtime-params runtime_params.json`` and edit the file while the
tracker runs; threshold, noise terms and the lost-blob policy are picked up
on the next iteration (see ``roi_tracking/live_tuning.py``).

Exit status
-----------
0 clean stop, 2 configuration error, 4 serial error, otherwise the frame
grabber's error code (3 if it did not report one).
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import List, Optional, Sequence

from roi_tracking.camera import VideoCaptureGrabber
from roi_tracking.camera_model import CameraModel
from roi_tracking.config import (
    BlobConfig,
    CalibrationConfig,
    LoopConfig,
    LostBlobPolicy,
    SensorConfig,
    SerialConfig,
    TrackerConfig,
    WindowConfig,
    default_windows,
)
from roi_tracking.errors import CommError, ConfigError, HardwareError
from roi_tracking.loop import TrackingLoop
from roi_tracking.serial_link import ConsoleLink, SerialLink
from roi_tracking.window import WindowTable

EXIT_CONFIG = 2
EXIT_HARDWARE = 3
EXIT_COMM = 4


def _build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Closed-loop ROI blob tracker.")
    ap.add_argument("--source", default="0", help="camera index or video file (default 0)")
    ap.add_argument("--v4l2", action="store_true", help="use the V4L2 backend for camera indices")
    ap.add_argument("--sensor", type=int, nargs=2, metavar=("W", "H"), default=(1024, 1024))
    ap.add_argument("--roi-size", type=int, nargs=2, metavar=("W", "H"), default=(64, 64))
    ap.add_argument(
        "--window", type=int, nargs=5, action="append", metavar=("ROI", "X", "Y", "W", "H"),
        help="initial full-frame blob box per ROI (repeatable)",
    )
    ap.add_argument("--exposure-us", type=float, default=20_000.0)
    ap.add_argument("--frame-time-us", type=float, default=50_000.0)
    ap.add_argument("--threshold", type=int, default=254)
    ap.add_argument("--dark", action="store_true", help="track a dark blob on a bright field")
    ap.add_argument("--search-margin", type=int, default=None)
    ap.add_argument("--calib-dir", type=Path, default=Path("."))
    ap.add_argument("--calib-ext", default=".xml", help=".xml, .yml or .npy")
    ap.add_argument("--depth", type=float, default=None, help="camera-frame depth of the tracking plane")
    ap.add_argument("--no-kalman", action="store_true")
    ap.add_argument(
        "--lost-blob", choices=[p.value for p in LostBlobPolicy], default=LostBlobPolicy.PREDICT.value
    )
    ap.add_argument("--port", default=None, help="serial port; omit to print records")
    ap.add_argument("--baud", type=int, default=115_200)
    ap.add_argument("--timeout", type=float, default=5.0, help="frame timeout in seconds")
    ap.add_argument("--max-iterations", type=int, default=None)
    ap.add_argument("--abort-on-drop", action="store_true")
    ap.add_argument("--display", action="store_true", help="show per-ROI debug windows")
    ap.add_argument("--runtime-params", default=None)
    return ap


def calibration_config(calib_dir: Path, ext: str) -> CalibrationConfig:
    return CalibrationConfig(
        intrinsic_path=str(calib_dir / f"TrackCamIntrinsics{ext}"),
        distortion_path=str(calib_dir / f"TrackCamDistortion{ext}"),
        rotation_path=str(calib_dir / f"TrackCamRotation{ext}"),
        translation_path=str(calib_dir / f"TrackCamTranslation{ext}"),
    )


# ────────────────────────────────────────────────────────────────────────────
#   M A I N
# ────────────────────────────────────────────────────────────────────────────
def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _build_parser().parse_args(argv)

    print("Initializing ROI Tracking System…")

    # -------------------- Config blobs --------------------
    sensor_cfg = SensorConfig(
        width=args.sensor[0],
        height=args.sensor[1],
        exposure_us=args.exposure_us,
        frame_time_us=args.frame_time_us,
    )
    roi_w, roi_h = args.roi_size
    windows: List[WindowConfig] = (
        [WindowConfig(r, (x, y, w, h), roi_w, roi_h) for r, x, y, w, h in args.window]
        if args.window
        else [WindowConfig(w.roi_id, w.blob_box, roi_w, roi_h) for w in default_windows()]
    )
    blob_cfg = BlobConfig(
        threshold=args.threshold, dark_blob=args.dark, search_margin=args.search_margin
    )
    trk_cfg = TrackerConfig(enabled=not args.no_kalman)
    ser_cfg = SerialConfig(port=args.port, baudrate=args.baud)
    cal_cfg = calibration_config(args.calib_dir, args.calib_ext)
    loop_cfg = LoopConfig(
        acquire_timeout_s=args.timeout,
        known_depth=args.depth,
        lost_blob_policy=LostBlobPolicy(args.lost_blob),
        max_iterations=args.max_iterations,
        abort_on_dropped_frames=args.abort_on_drop,
        show_display=args.display,
        runtime_params_path=args.runtime_params,
    )

    # ------------------------ Banner ----------------------
    print(
        f"Sensor: {sensor_cfg.width}x{sensor_cfg.height}, "
        f"exposure={sensor_cfg.exposure_us:g}us, frame={sensor_cfg.frame_time_us:g}us"
    )
    print(
        f"Blob: threshold={blob_cfg.threshold}, dark={blob_cfg.dark_blob}, "
        f"ROIs={[w.roi_id for w in windows]} ({roi_w}x{roi_h})"
    )
    print(f"Kalman: {'on' if trk_cfg.enabled else 'off'}, lost blob -> {loop_cfg.lost_blob_policy.value}")
    print(f"Serial: {ser_cfg.port or 'DISABLED (printing records)'}")

    # ------------------------ Run -------------------------
    grabber = VideoCaptureGrabber(args.source, sensor_cfg, use_v4l2=args.v4l2)
    try:
        model = CameraModel.from_config(cal_cfg)
        table = WindowTable.from_config(windows, sensor_cfg)
        link = (
            SerialLink(ser_cfg.port, ser_cfg.baudrate, ser_cfg.timeout)
            if ser_cfg.port
            else ConsoleLink()
        )
        with link:
            loop = TrackingLoop(
                grabber,
                table,
                model,
                link,
                sensor_cfg=sensor_cfg,
                blob_cfg=blob_cfg,
                tracker_cfg=trk_cfg,
                loop_cfg=loop_cfg,
            )
            loop.run()
    except ConfigError as exc:
        print(f"[Main] Configuration error: {exc}", file=sys.stderr)
        return EXIT_CONFIG
    except CommError as exc:
        print(f"[Main] Serial error: {exc}", file=sys.stderr)
        return EXIT_COMM
    except HardwareError as exc:
        detail = grabber.last_error_description() or str(exc)
        print(f"[Main] Hardware error: {detail}", file=sys.stderr)
        return exc.code if exc.code else EXIT_HARDWARE

    print("Main program finished.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
