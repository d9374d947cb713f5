# calibrate.py
"""
Chessboard calibration for the tracking camera.

Hold the board in front of the camera in varied poses; leave it lying on the
tracking plane for the final capture, its pose defines the world frame.

Keys (calibration window focused):
    i : discard the board just captured (``--interactive`` only)
    q : stop collecting

Run:
    roi-calibrate --source 0 --grid 9 6 --views 12 --out-dir calib/
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Optional, Sequence

import cv2

from cli.main import EXIT_CONFIG, calibration_config
from roi_tracking.calibration import ChessboardCalibrator
from roi_tracking.errors import ConfigError, InsufficientViews

EXIT_INSUFFICIENT_VIEWS = 5


def main(argv: Optional[Sequence[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Chessboard camera calibration.")
    ap.add_argument("--source", default="0", help="camera index or video file (default 0)")
    ap.add_argument("--grid", type=int, nargs=2, metavar=("COLS", "ROWS"), default=(9, 6),
                    help="inner corners per row / column")
    ap.add_argument("--views", type=int, default=10, help="boards to collect")
    ap.add_argument("--interactive", action="store_true", help="confirm each board with a key")
    ap.add_argument("--no-preview", action="store_true")
    ap.add_argument("--out-dir", type=Path, default=Path("."))
    ap.add_argument("--ext", default=".xml", help=".xml, .yml or .npy")
    ap.add_argument("--save-views", type=Path, default=None, metavar="DIR",
                    help="also write every accepted board image to DIR")
    args = ap.parse_args(argv)

    cal_cfg = calibration_config(args.out_dir, args.ext)
    cal_cfg.grid = (args.grid[0], args.grid[1])

    src = int(args.source) if args.source.isdigit() else args.source
    cap = cv2.VideoCapture(src)
    if not cap.isOpened():
        print(f"[Calib] Could not open source {args.source!r}", file=sys.stderr)
        return EXIT_CONFIG

    calibrator = ChessboardCalibrator(
        cal_cfg, preview=not args.no_preview, keep_images=args.save_views is not None
    )
    try:
        model = calibrator.calibrate(
            cap, args.views, interactive=args.interactive, views_dir=args.save_views
        )
    except InsufficientViews as exc:
        print(f"[Calib] {exc}", file=sys.stderr)
        return EXIT_INSUFFICIENT_VIEWS
    except ConfigError as exc:
        print(f"[Calib] {exc}", file=sys.stderr)
        return EXIT_CONFIG
    finally:
        cap.release()

    print("[Calib] Intrinsics:\n", model.intrinsic)
    print("[Calib] Distortion:", model.distortion.ravel())
    print("[Calib] Default tracking depth:", model.default_depth)
    return 0


if __name__ == "__main__":
    sys.exit(main())
