import cv2
import numpy as np
import pytest

from roi_tracking import camera
from roi_tracking.acquisition import Frame, FrameGrabber, decode_roi_id, encode_roi_tag
from roi_tracking.camera import VideoCaptureGrabber
from roi_tracking.config import SensorConfig
from roi_tracking.errors import FrameTimeoutError, HardwareError, StreamEnded
from roi_tracking.window import TrackingWindow

SIZE = 128


class FakeCapture:
    def __init__(self, frames, width=SIZE, height=SIZE):
        self.frames = list(frames)
        self.props = {
            cv2.CAP_PROP_FRAME_WIDTH: width,
            cv2.CAP_PROP_FRAME_HEIGHT: height,
            cv2.CAP_PROP_FPS: 30.0,
            cv2.CAP_PROP_FOURCC: 0,
        }
        self.set_calls = []
        self.released = False

    def isOpened(self):
        return not self.released

    def get(self, prop):
        return self.props.get(prop, 0.0)

    def set(self, prop, value):
        self.set_calls.append((prop, value))
        return True

    def read(self):
        if not self.frames:
            return False, None
        return True, self.frames.pop(0)

    def release(self):
        self.released = True


@pytest.fixture
def install_capture(monkeypatch):
    def install(cap):
        monkeypatch.setattr(camera.cv2, "VideoCapture", lambda src, backend=None: cap)
        return cap
    return install


def gradient_frame():
    """BGR frame whose gray value encodes the column index."""
    gray = np.tile(np.arange(SIZE, dtype=np.uint8), (SIZE, 1))
    return cv2.cvtColor(gray, cv2.COLOR_GRAY2BGR)


def windows():
    return [
        TrackingWindow.from_full_frame(0, (20, 20, 4, 4), (16, 16), (SIZE, SIZE)),
        TrackingWindow.from_full_frame(1, (80, 40, 4, 4), (16, 16), (SIZE, SIZE)),
    ]


def test_roi_tag_bits():
    tag = encode_roi_tag(3, low=0x1234)
    assert tag == 0x00031234
    assert decode_roi_id(tag) == 3
    assert decode_roi_id(0xFFFF0000) == 0xFFFF


def test_frame_roi_id():
    frame = Frame(tag=encode_roi_tag(5), image_number=1, timestamp=0, image=np.zeros((2, 2)))
    assert frame.roi_id == 5


def test_start_flushes_pending_windows():
    class Recorder(FrameGrabber):
        def __init__(self):
            self.writes = []

        def acquire_tagged_frame(self, timeout):
            raise FrameTimeoutError("idle")

        def write_roi(self, roi_id, offset, size):
            self.writes.append(roi_id)

    wins = windows()
    wins[1].roi_pending = False
    grabber = Recorder()
    grabber.start(wins)
    assert grabber.writes == [0]
    assert not wins[0].roi_pending


def test_round_robin_crops(install_capture):
    install_capture(FakeCapture([gradient_frame() for _ in range(3)]))
    grabber = VideoCaptureGrabber("clip.avi", SensorConfig(width=SIZE, height=SIZE), clock=lambda: 1.5)
    wins = windows()
    with grabber:
        grabber.start(wins)
        frames = [grabber.acquire_tagged_frame(0.1) for _ in range(3)]
        with pytest.raises(StreamEnded):
            grabber.acquire_tagged_frame(0.1)

    assert [f.roi_id for f in frames] == [0, 1, 0]
    assert [f.image_number for f in frames] == [1, 2, 3]
    assert frames[0].timestamp == 1_500_000
    for frame, win in zip(frames, (wins[0], wins[1], wins[0])):
        assert frame.image.shape == (16, 16)
        assert frame.image[0, 0] == win.roi_offset_x
        assert not frame.image.flags.writeable
    assert not grabber.is_opened()


def test_device_settings_are_applied(install_capture):
    cap = install_capture(FakeCapture([]))
    sensor = SensorConfig(width=SIZE, height=SIZE, exposure_us=500.0)
    grabber = VideoCaptureGrabber("0", sensor)
    grabber.open()

    assert (cv2.CAP_PROP_FRAME_WIDTH, SIZE) in cap.set_calls
    assert (cv2.CAP_PROP_EXPOSURE, 5.0) in cap.set_calls
    grabber.start(windows())
    # A live camera that stops delivering is a timeout, not the end of the stream.
    with pytest.raises(FrameTimeoutError):
        grabber.acquire_tagged_frame(0.1)
    grabber.close()


def test_size_mismatch_is_hardware_error(install_capture):
    cap = install_capture(FakeCapture([], width=640, height=480))
    grabber = VideoCaptureGrabber("clip.avi", SensorConfig(width=SIZE, height=SIZE))

    with pytest.raises(HardwareError):
        grabber.open()
    assert "640x480" in grabber.last_error_description()
    assert cap.released


def test_acquire_before_start(install_capture):
    install_capture(FakeCapture([gradient_frame()]))
    grabber = VideoCaptureGrabber("clip.avi", SensorConfig(width=SIZE, height=SIZE))
    grabber.open()
    with pytest.raises(HardwareError):
        grabber.acquire_tagged_frame(0.1)


def test_roi_outside_sensor(install_capture):
    install_capture(FakeCapture([]))
    grabber = VideoCaptureGrabber("clip.avi", SensorConfig(width=SIZE, height=SIZE))
    with pytest.raises(HardwareError):
        grabber.write_roi(0, (120, 0), (16, 16))
