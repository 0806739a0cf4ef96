# src/fiducial_omr/tools/geometry.py
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Tuple

import numpy as np

Point = Tuple[float, float]


class CornerRole(str, Enum):
    TOP_LEFT = "top_left"
    TOP_RIGHT = "top_right"
    BOTTOM_LEFT = "bottom_left"
    BOTTOM_RIGHT = "bottom_right"


class FiducialKind(str, Enum):
    L_SHAPED = "l_shaped"
    RECTANGULAR = "rectangular"


@dataclass(frozen=True)
class Rect:
    x: int
    y: int
    w: int
    h: int

    @property
    def area(self) -> int:
        return self.w * self.h

    @property
    def center(self) -> Point:
        return (self.x + self.w / 2.0, self.y + self.h / 2.0)

    @property
    def aspect(self) -> float:
        return self.w / float(self.h) if self.h else 0.0

    @classmethod
    def from_fractions(cls, box: Tuple[float, float, float, float], width: int, height: int) -> "Rect":
        fx, fy, fw, fh = box
        return cls(int(fx * width), int(fy * height), int(fw * width), int(fh * height))

    def clip(self, width: int, height: int) -> "Rect":
        """Clamp to an image of the given size (may become empty)."""
        x0 = min(max(self.x, 0), width)
        y0 = min(max(self.y, 0), height)
        x1 = min(max(self.x + self.w, 0), width)
        y1 = min(max(self.y + self.h, 0), height)
        return Rect(x0, y0, max(0, x1 - x0), max(0, y1 - y0))

    def inset(self, left: int, top: int, right: int, bottom: int) -> "Rect":
        return Rect(self.x + left, self.y + top,
                    max(0, self.w - left - right), max(0, self.h - top - bottom))

    def crop(self, image: np.ndarray) -> np.ndarray:
        """Copy of the clamped sub-image."""
        h, w = image.shape[:2]
        r = self.clip(w, h)
        return image[r.y:r.y + r.h, r.x:r.x + r.w].copy()


@dataclass(frozen=True)
class Fiducial:
    kind: FiducialKind
    box: Rect
    role: Optional[CornerRole] = None

    @property
    def center(self) -> Point:
        return self.box.center


@dataclass(frozen=True)
class Blob:
    x: float        # centroid
    y: float
    area: float
    box: Rect


@dataclass(frozen=True)
class Quadrilateral:
    top_left: Optional[Point] = None
    top_right: Optional[Point] = None
    bottom_left: Optional[Point] = None
    bottom_right: Optional[Point] = None

    @property
    def is_valid(self) -> bool:
        return None not in (self.top_left, self.top_right, self.bottom_left, self.bottom_right)

    @classmethod
    def from_size(cls, width: int, height: int) -> "Quadrilateral":
        """Corners of a width x height image, in destination convention."""
        return cls((0.0, 0.0), (width - 1.0, 0.0), (0.0, height - 1.0), (width - 1.0, height - 1.0))

    @classmethod
    def from_roles(cls, points: Iterable[Tuple[CornerRole, Point]]) -> "Quadrilateral":
        return cls(**{role.value: (float(p[0]), float(p[1])) for role, p in points})

    def corners(self) -> List[Point]:
        """TL, TR, BR, BL (clockwise), the order homographies expect."""
        if not self.is_valid:
            raise ValueError("Quadrilateral is missing one or more corners")
        return [self.top_left, self.top_right, self.bottom_right, self.bottom_left]

    def as_array(self) -> np.ndarray:
        return np.array(self.corners(), dtype=np.float32)

    def spread(self) -> Tuple[float, float]:
        """Width and height of the bounding box of the present corners."""
        pts = [p for p in (self.top_left, self.top_right, self.bottom_left, self.bottom_right) if p is not None]
        if not pts:
            return 0.0, 0.0
        xs = [p[0] for p in pts]
        ys = [p[1] for p in pts]
        return max(xs) - min(xs), max(ys) - min(ys)

    def expanded(self, margin: float) -> "Quadrilateral":
        """Push every corner outward by margin along both axes."""
        tl, tr, br, bl = self.corners()
        return Quadrilateral(
            top_left=(tl[0] - margin, tl[1] - margin),
            top_right=(tr[0] + margin, tr[1] - margin),
            bottom_left=(bl[0] - margin, bl[1] + margin),
            bottom_right=(br[0] + margin, br[1] + margin),
        )


def order_points(points) -> Quadrilateral:
    """
    Order four arbitrary points into a Quadrilateral.
    Top-left has the smallest x+y, bottom-right the largest;
    top-right has the smallest y-x, bottom-left the largest.
    """
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    if pts.shape[0] != 4:
        raise ValueError(f"Expected 4 points, got {pts.shape[0]}")
    s = pts.sum(axis=1)
    d = pts[:, 1] - pts[:, 0]
    tl, br = pts[np.argmin(s)], pts[np.argmax(s)]
    tr, bl = pts[np.argmin(d)], pts[np.argmax(d)]
    return Quadrilateral(
        top_left=(float(tl[0]), float(tl[1])),
        top_right=(float(tr[0]), float(tr[1])),
        bottom_left=(float(bl[0]), float(bl[1])),
        bottom_right=(float(br[0]), float(br[1])),
    )


@dataclass(frozen=True)
class Region:
    """A located page region: the crop handed to a decoder, and where it came from."""
    image: np.ndarray
    box: Rect
    tier: str
    warped: bool = False
