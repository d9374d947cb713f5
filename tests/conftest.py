"""Shared fixtures: a simple camera model and fake collaborators."""
from __future__ import annotations

from typing import Dict, List, Tuple

import numpy as np
import pytest

from roi_tracking.acquisition import Frame, FrameGrabber, encode_roi_tag
from roi_tracking.camera_model import CameraModel
from roi_tracking.errors import StreamEnded

SENSOR = 256
FOCAL = 500.0
DEPTH = 10.0


@pytest.fixture
def flat_model() -> CameraModel:
    """Camera looking straight down the world z axis, no distortion.

    A pixel u maps to world x = (u - 128) / 50 at the default depth.
    """
    return CameraModel(
        intrinsic=[[FOCAL, 0.0, SENSOR / 2], [0.0, FOCAL, SENSOR / 2], [0.0, 0.0, 1.0]],
        distortion=np.zeros(4),
        rotation=np.eye(3),
        translation=[0.0, 0.0, DEPTH],
    )


def blank(size: int = SENSOR) -> np.ndarray:
    return np.zeros((size, size), dtype=np.uint8)


def with_square(img: np.ndarray, x: int, y: int, side: int, value: int = 255) -> np.ndarray:
    img = img.copy()
    img[y:y + side, x:x + side] = value
    return img


class SceneGrabber(FrameGrabber):
    """
    Replays full-sensor scenes and crops each one to the ROI most recently
    written for the frame's ROI id, like the hardware would.
    Events are (roi_id, full_frame, image_number, timestamp) or exceptions.
    """

    def __init__(self, events: List[object]):
        self.events = list(events)
        self.rois: Dict[int, Tuple[int, int, int, int]] = {}
        self.writes: List[Tuple[int, Tuple[int, int], Tuple[int, int]]] = []
        self.opened = False
        self.closed = False

    def open(self) -> None:
        self.opened = True

    def write_roi(self, roi_id, offset, size) -> None:
        self.rois[roi_id] = (offset[0], offset[1], size[0], size[1])
        self.writes.append((roi_id, tuple(offset), tuple(size)))

    def acquire_tagged_frame(self, timeout: float) -> Frame:
        if not self.events:
            raise StreamEnded("scene exhausted")
        event = self.events.pop(0)
        if isinstance(event, Exception):
            raise event
        roi_id, full, number, ts = event
        x, y, w, h = self.rois.get(roi_id, (0, 0, 32, 32))
        view = full[y:y + h, x:x + w]
        view.flags.writeable = False
        return Frame(tag=encode_roi_tag(roi_id), image_number=number, timestamp=ts, image=view)

    def close(self) -> None:
        self.closed = True


class RecordingLink:
    def __init__(self):
        self.sent: List[Tuple[int, float, float, int]] = []

    def send(self, roi_id, x, y, timestamp) -> None:
        self.sent.append((roi_id, x, y, timestamp))
