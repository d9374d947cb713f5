import numpy as np
import pytest

from roi_tracking.config import TrackerConfig
from roi_tracking.tracker import MotionPredictor, TrackState

G = -9.81


def test_prediction_follows_projectile_motion():
    pred = MotionPredictor(TrackerConfig(gravity=G), 1.0, initial_state=(0.0, 10.0, 2.0, 0.0))
    x, y, vx, vy = pred.predict()

    assert x == pytest.approx(2.0)
    assert y == pytest.approx(10.0 + 0.5 * G)
    assert vx == pytest.approx(2.0)
    assert vy == pytest.approx(G)


def test_predict_with_explicit_dt():
    pred = MotionPredictor(TrackerConfig(gravity=0.0), 1.0, initial_state=(1.0, 1.0, 4.0, -2.0))
    x, y, _, _ = pred.predict(0.25)
    assert (x, y) == pytest.approx((2.0, 0.5))


def test_starts_uninitialized_with_given_state():
    pred = MotionPredictor(TrackerConfig(), 0.1, initial_state=(1.0, 2.0, 0.0, 0.0))
    assert pred.state is TrackState.UNINITIALIZED
    assert not pred.tracking
    assert pred.estimate == (1.0, 2.0, 0.0, 0.0)
    np.testing.assert_allclose(pred.covariance, np.eye(4) * 100.0)


def _trajectory(t):
    return 0.5 + 1.5 * t, 2.0 + 3.0 * t + 0.5 * G * t * t


def test_converges_on_ballistic_measurements():
    dt = 0.05
    pred = MotionPredictor(TrackerConfig(gravity=G), dt)
    for k in range(40):
        est = pred.step(_trajectory(k * dt), k * dt)

    t = 39 * dt
    x, y, vx, vy = est
    assert pred.tracking
    assert pred.age_frames == 40
    assert (x, y) == pytest.approx(_trajectory(t), abs=1e-3)
    assert vx == pytest.approx(1.5, abs=0.1)
    assert vy == pytest.approx(3.0 + G * t, abs=0.1)


def test_missing_measurement_dead_reckons():
    dt = 0.05
    pred = MotionPredictor(TrackerConfig(gravity=G), dt)
    for k in range(10):
        pred.step(_trajectory(k * dt), k * dt)
    x0, y0, vx0, vy0 = pred.estimate
    cov0 = pred.covariance

    x1, y1, vx1, vy1 = pred.step(None, 10 * dt)

    assert x1 == pytest.approx(x0 + vx0 * dt)
    assert y1 == pytest.approx(y0 + vy0 * dt + 0.5 * G * dt * dt)
    assert vy1 == pytest.approx(vy0 + G * dt)
    assert np.trace(pred.covariance) > np.trace(cov0)
    assert pred.age_frames == 10


def test_step_clamps_large_gaps():
    dt = 0.05
    pred = MotionPredictor(TrackerConfig(gravity=0.0), dt, initial_state=(0.0, 0.0, 1.0, 0.0))
    pred.step(None, 0.0)
    x, _, _, _ = pred.step(None, 5.0)
    # first step uses the nominal dt, the second is clamped to 2 * nominal
    assert x == pytest.approx(3 * dt)


def test_filters_do_not_share_covariance():
    cfg = TrackerConfig()
    a = MotionPredictor(cfg, 0.1)
    b = MotionPredictor(cfg, 0.1)
    assert a.kf.P is not b.kf.P

    a.step((1.0, 1.0), 0.0)
    np.testing.assert_allclose(b.covariance, np.eye(4) * cfg.initial_covariance)
    assert not b.tracking


def test_apply_tuning():
    pred = MotionPredictor(TrackerConfig(), 0.1)
    pred.apply_tuning(process_noise_var=0.5, measurement_noise_var=-1.0)
    np.testing.assert_allclose(pred.kf.Q, np.eye(4) * 0.5)
    np.testing.assert_allclose(pred.kf.R, np.eye(2) * 1e-5)


def test_update_nominal_dt():
    pred = MotionPredictor(TrackerConfig(gravity=0.0), 0.1, initial_state=(0.0, 0.0, 2.0, 0.0))
    pred.update_nominal_dt(0.5)
    assert pred.predict()[0] == pytest.approx(1.0)


def test_predict_without_dt_returns_to_nominal():
    pred = MotionPredictor(TrackerConfig(gravity=0.0), 1.0, initial_state=(0.0, 0.0, 1.0, 0.0))
    assert pred.predict(0.1)[0] == pytest.approx(0.1)
    assert pred.predict()[0] == pytest.approx(1.1)


def test_step_does_not_change_nominal_model():
    pred = MotionPredictor(TrackerConfig(gravity=0.0), 0.1, initial_state=(0.0, 0.0, 1.0, 0.0))
    pred.step(None, 0.0)
    pred.step(None, 0.06)
    x0 = pred.estimate[0]
    assert pred.predict()[0] == pytest.approx(x0 + 0.1)


def test_first_fix_seeds_position_without_initial_guess():
    pred = MotionPredictor(TrackerConfig(), 0.1)
    assert pred.correct((3.0, -4.0)) == (3.0, -4.0, 0.0, 0.0)
    assert pred.tracking

    pred.predict()
    x, y, _, _ = pred.correct((3.0, -4.0))
    assert (x, y) == pytest.approx((3.0, -4.0), abs=1e-3)


def test_initial_guess_is_fused_not_replaced():
    pred = MotionPredictor(TrackerConfig(measurement_noise_var=1.0, initial_covariance=1.0), 0.1,
                           initial_state=(0.0, 0.0, 0.0, 0.0))
    x, _, _, _ = pred.correct((2.0, 0.0))
    assert 0.0 < x < 2.0
