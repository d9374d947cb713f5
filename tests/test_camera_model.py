import cv2
import numpy as np
import pytest

from roi_tracking.camera_model import CameraModel, load_matrix, save_matrix
from roi_tracking.errors import CalibrationFileError, ConfigError, MissingCalibrationFile


@pytest.fixture
def tilted_model() -> CameraModel:
    rotation, _ = cv2.Rodrigues(np.array([[0.1], [-0.2], [0.05]]))
    return CameraModel(
        intrinsic=[[820.0, 0.0, 500.0], [0.0, 815.0, 520.0], [0.0, 0.0, 1.0]],
        distortion=[-0.08, 0.02, 0.001, -0.0005],
        rotation=rotation,
        translation=[1.5, -2.0, 40.0],
    )


@pytest.mark.parametrize("pixel", [(500.0, 520.0), (300.5, 700.25), (880.0, 150.0)])
@pytest.mark.parametrize("depth", [5.0, 40.0])
def test_pixel_world_round_trip(tilted_model, pixel, depth):
    world = tilted_model.pixel_to_world(pixel, depth)
    back = tilted_model.world_to_pixel(world)
    assert back.x == pytest.approx(pixel[0], abs=1e-3)
    assert back.y == pytest.approx(pixel[1], abs=1e-3)


def test_pixel_to_world_matches_pinhole(flat_model):
    world = flat_model.pixel_to_world((178.0, 78.0), 10.0)
    # (u - cx) / f * z - tx
    assert world.x == pytest.approx(1.0)
    assert world.y == pytest.approx(-1.0)
    assert world.z == pytest.approx(0.0)


def test_default_depth_is_translation_z(flat_model):
    assert flat_model.default_depth == pytest.approx(10.0)


def test_depth_must_be_positive(flat_model):
    with pytest.raises(ValueError):
        flat_model.pixel_to_world((10, 10), 0.0)


def test_model_is_read_only(flat_model):
    with pytest.raises(ValueError):
        flat_model.intrinsic[0, 0] = 1.0


@pytest.mark.parametrize(
    "kwargs",
    [
        dict(intrinsic=np.eye(2)),
        dict(distortion=np.zeros(3)),
        dict(rotation=np.ones((3, 3))),
        dict(translation=[0.0, 1.0]),
        dict(intrinsic=[[np.nan, 0, 1], [0, 1, 1], [0, 0, 1]]),
    ],
)
def test_invalid_matrices_are_config_errors(kwargs):
    args = dict(
        intrinsic=np.eye(3),
        distortion=np.zeros(4),
        rotation=np.eye(3),
        translation=np.zeros(3),
    )
    args.update(kwargs)
    with pytest.raises(CalibrationFileError):
        CameraModel(**args)


def test_rotation_accepts_rodrigues_vector():
    model = CameraModel(np.eye(3), np.zeros(5), [0.0, 0.0, np.pi / 2], [0, 0, 1])
    np.testing.assert_allclose(model.rotation @ [1.0, 0.0, 0.0], [0.0, 1.0, 0.0], atol=1e-9)
    assert model.distortion.shape == (5, 1)


def test_missing_file_is_config_error(tmp_path):
    with pytest.raises(MissingCalibrationFile) as info:
        load_matrix(tmp_path / "nope.xml")
    assert isinstance(info.value, ConfigError)


def test_garbage_file_is_config_error(tmp_path):
    bad = tmp_path / "bad.npy"
    bad.write_text("not numpy")
    with pytest.raises(CalibrationFileError):
        load_matrix(bad)


@pytest.mark.parametrize("ext", [".npy", ".xml", ".yml"])
def test_save_and_load(tmp_path, tilted_model, ext):
    paths = [tmp_path / f"{name}{ext}" for name in ("A", "k", "R", "T")]
    tilted_model.save(*paths)
    loaded = CameraModel.load(*paths)
    np.testing.assert_allclose(loaded.intrinsic, tilted_model.intrinsic)
    np.testing.assert_allclose(loaded.distortion, tilted_model.distortion)
    np.testing.assert_allclose(loaded.rotation, tilted_model.rotation)
    np.testing.assert_allclose(loaded.translation, tilted_model.translation)


def test_partial_calibration_set_fails(tmp_path, tilted_model):
    save_matrix(tmp_path / "A.npy", tilted_model.intrinsic)
    save_matrix(tmp_path / "k.npy", tilted_model.distortion)
    save_matrix(tmp_path / "R.npy", tilted_model.rotation)
    with pytest.raises(MissingCalibrationFile):
        CameraModel.load(tmp_path / "A.npy", tmp_path / "k.npy", tmp_path / "R.npy", tmp_path / "T.npy")


def test_undistort_uses_only_core_opencv_api(flat_model, monkeypatch):
    monkeypatch.delattr(cv2, "undistortPointsIter", raising=False)
    assert flat_model.undistort((178.0, 78.0)) == pytest.approx((0.1, -0.1))
    world = flat_model.pixel_to_world((178.0, 78.0), 10.0)
    assert (world.x, world.y) == pytest.approx((1.0, -1.0))
