from pathlib import Path

import pytest
import serial

from cli import calibrate, main
from conftest import SceneGrabber, blank, with_square
from roi_tracking import serial_link
from roi_tracking.acquisition import FrameGrabber
from roi_tracking.config import CalibrationConfig
from roi_tracking.errors import HardwareError


def test_calibration_paths(tmp_path):
    cfg = main.calibration_config(tmp_path, ".npy")
    assert isinstance(cfg, CalibrationConfig)
    assert Path(cfg.intrinsic_path) == tmp_path / "TrackCamIntrinsics.npy"
    assert Path(cfg.translation_path) == tmp_path / "TrackCamTranslation.npy"


def test_missing_calibration_exits_with_config_error(tmp_path, capsys):
    code = main.main(["--source", "clip.avi", "--calib-dir", str(tmp_path), "--max-iterations", "1"])
    assert code == main.EXIT_CONFIG
    assert "Calibration file not found" in capsys.readouterr().err


def test_duplicate_window_ids_exit_with_config_error(tmp_path, flat_model):
    flat_model.save(*(tmp_path / f"TrackCam{n}.npy" for n in ("Intrinsics", "Distortion", "Rotation", "Translation")))
    code = main.main(
        [
            "--calib-dir", str(tmp_path), "--calib-ext", ".npy", "--sensor", "256", "256",
            "--window", "0", "100", "100", "5", "5", "--window", "0", "150", "150", "5", "5",
        ]
    )
    assert code == main.EXIT_CONFIG


def test_calibrate_with_unreadable_source(tmp_path):
    code = calibrate.main(["--source", str(tmp_path / "missing.avi"), "--out-dir", str(tmp_path)])
    assert code == main.EXIT_CONFIG


def _write_calibration(directory, model):
    model.save(*(directory / f"TrackCam{n}.npy" for n in ("Intrinsics", "Distortion", "Rotation", "Translation")))


def _track_args(calib_dir, *extra):
    return [
        "--calib-dir", str(calib_dir), "--calib-ext", ".npy", "--sensor", "256", "256",
        "--roi-size", "32", "32", "--window", "0", "110", "110", "5", "5", *extra,
    ]


class FaultyGrabber(FrameGrabber):
    code = None

    def __init__(self, source, sensor, *, use_v4l2=False):
        self.closed = False

    def open(self):
        raise HardwareError("sensor fault", code=self.code)

    def acquire_tagged_frame(self, timeout):
        raise AssertionError("never opened")

    def write_roi(self, roi_id, offset, size):
        pass

    def last_error_description(self):
        return "grabber reports sensor fault"

    def close(self):
        self.closed = True


@pytest.mark.parametrize("code, expected", [(17, 17), (None, main.EXIT_HARDWARE), (0, main.EXIT_HARDWARE)])
def test_hardware_error_exit_code(tmp_path, flat_model, monkeypatch, capsys, code, expected):
    _write_calibration(tmp_path, flat_model)
    monkeypatch.setattr(FaultyGrabber, "code", code)
    monkeypatch.setattr(main, "VideoCaptureGrabber", FaultyGrabber)

    assert main.main(_track_args(tmp_path)) == expected
    assert "grabber reports sensor fault" in capsys.readouterr().err


def test_serial_error_exit_code(tmp_path, flat_model, monkeypatch):
    def refuse(**kwargs):
        raise serial.SerialException("port busy")

    _write_calibration(tmp_path, flat_model)
    monkeypatch.setattr(main, "VideoCaptureGrabber", FaultyGrabber)
    monkeypatch.setattr(serial_link.serial, "Serial", refuse)

    assert main.main(_track_args(tmp_path, "--port", "/dev/ttyUSB9")) == main.EXIT_COMM


def test_clean_run_prints_records_and_summary(tmp_path, flat_model, monkeypatch, capsys):
    events = [(0, with_square(blank(), 110, 110, 5), k + 1, k * 50_000) for k in range(2)]
    _write_calibration(tmp_path, flat_model)
    monkeypatch.setattr(main, "VideoCaptureGrabber", lambda *a, **kw: SceneGrabber(events))

    assert main.main(_track_args(tmp_path, "--no-kalman")) == 0

    out = capsys.readouterr().out
    assert "[Serial] 0,-0.310000,-0.310000,50000" in out
    assert "average time" in out
    assert "total number of images: 2" in out
