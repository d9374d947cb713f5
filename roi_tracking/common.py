# common.py
"""Objects that are shared across multiple modules."""
from dataclasses import dataclass
from typing import NamedTuple, Optional, Tuple


class Point2D(NamedTuple):
    x: float
    y: float


class Point3D(NamedTuple):
    x: float
    y: float
    z: float


@dataclass(frozen=True)
class BlobBox:
    """Blob bounding box; min inclusive, max exclusive."""
    min_x: int
    min_y: int
    max_x: int
    max_y: int

    @property
    def center(self) -> Point2D:
        return Point2D((self.min_x + self.max_x) / 2.0, (self.min_y + self.max_y) / 2.0)

    @property
    def width(self) -> int:
        return self.max_x - self.min_x

    @property
    def height(self) -> int:
        return self.max_y - self.min_y


@dataclass(frozen=True)
class WorldReport:
    """
    A single-iteration snapshot of one window.
    `pixel_px` is the blob center in full-frame pixels, `world_xy` is what was
    (or would have been) sent over the link.
    """
    roi_id: int
    image_number: int
    timestamp: int
    pixel_px: Optional[Tuple[float, float]]
    world_xy: Optional[Tuple[float, float]]
    blob_found: bool
    filtered: bool
