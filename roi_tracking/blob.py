# blob.py
"""Threshold + erode blob locator working in ROI-relative pixels."""
from __future__ import annotations

from typing import Tuple

import cv2
import numpy as np

from roi_tracking.common import BlobBox
from roi_tracking.config import BlobConfig
from roi_tracking.errors import HardwareError, NoBlobFound
from roi_tracking.window import TrackingWindow


class BlobLocator:
    def __init__(self, cfg: BlobConfig):
        self.cfg = cfg
        self._kernel = cv2.getStructuringElement(
            cv2.MORPH_RECT, (cfg.erode_kernel, cfg.erode_kernel)
        )

    # ------------------------------------------------------------------ #
    #   I N T E R N A L   H E L P E R S
    # ------------------------------------------------------------------ #
    @staticmethod
    def _to_gray(image: np.ndarray) -> np.ndarray:
        if image.ndim == 3 and image.shape[2] == 4:
            return cv2.cvtColor(image, cv2.COLOR_BGRA2GRAY)
        if image.ndim == 3 and image.shape[2] == 3:
            return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
        if image.ndim == 3:
            return image[:, :, 0]
        return image

    @staticmethod
    def roi_view(window: TrackingWindow, image: np.ndarray) -> np.ndarray:
        """The window's readout, either as delivered or cropped from a full frame."""
        h, w = image.shape[:2]
        if (w, h) == window.roi_size:
            return image
        if w >= window.sensor_width and h >= window.sensor_height:
            x, y = window.roi_offset
            return image[y:y + window.roi_height, x:x + window.roi_width]
        # The grabber returned something that is neither the programmed ROI
        # nor a full frame; the hardware ROI is not what we think it is.
        raise HardwareError(
            f"ROI {window.roi_id}: got a {w}x{h} image for a "
            f"{window.roi_width}x{window.roi_height} window"
        )

    def _search_region(self, window: TrackingWindow) -> Tuple[int, int, int, int]:
        w, h = window.roi_size
        margin = self.cfg.search_margin
        if margin is None:
            return 0, 0, w, h
        box = window.blob_box
        x0 = max(0, box.min_x - margin)
        y0 = max(0, box.min_y - margin)
        x1 = min(w, box.max_x + margin)
        y1 = min(h, box.max_y + margin)
        if x1 <= x0 or y1 <= y0:
            return 0, 0, w, h
        return x0, y0, x1, y1

    # ------------------------------------------------------------------ #
    #   P U B L I C   A P I
    # ------------------------------------------------------------------ #
    def binarize(self, image: np.ndarray) -> np.ndarray:
        """Foreground mask (uint8, 0/255) after thresholding and erosion."""
        gray = self._to_gray(image)
        if gray.dtype not in (np.uint8, np.float32):
            gray = gray.astype(np.float32)
        ttype = cv2.THRESH_BINARY_INV if self.cfg.dark_blob else cv2.THRESH_BINARY
        _, mask = cv2.threshold(gray, float(self.cfg.threshold), 255, ttype)
        mask = mask.astype(np.uint8, copy=False)
        if self.cfg.erode_iterations > 0:
            mask = cv2.erode(mask, self._kernel, iterations=self.cfg.erode_iterations)
        return mask

    def locate(self, window: TrackingWindow, image: np.ndarray) -> BlobBox:
        """
        Find the blob inside `window` and store its new (ROI-relative) box.

        Raises NoBlobFound when nothing survives erosion; the window is left
        untouched in that case.
        """
        roi = self.roi_view(window, image)
        x0, y0, x1, y1 = self._search_region(window)
        mask = self.binarize(roi[y0:y1, x0:x1])

        pts = cv2.findNonZero(mask)
        if pts is None or len(pts) < max(1, self.cfg.min_area):
            raise NoBlobFound(window.roi_id)

        bx, by, bw, bh = cv2.boundingRect(pts)
        box = BlobBox(x0 + bx, y0 + by, x0 + bx + bw, y0 + by + bh)
        window.set_blob(box)
        return box
