# src/fiducial_omr/tools/perspective.py
from __future__ import annotations

from typing import Optional, Tuple

import cv2
import numpy as np

from ..pipeline_defaults import RegionSettings
from .geometry import Quadrilateral


def homography_from_quad(quad: Quadrilateral, size: Tuple[int, int]) -> np.ndarray:
    """3x3 matrix mapping quad (TL, TR, BR, BL) onto a (width, height) rectangle."""
    w, h = size
    src = quad.as_array()
    dst = Quadrilateral.from_size(w, h).as_array()
    return cv2.getPerspectiveTransform(src, dst)


class PerspectiveCorrector:
    """Warps a quadrilateral of the source raster to an upright rectangle."""

    def __init__(self, settings: Optional[RegionSettings] = None):
        self.settings = settings or RegionSettings()

    def correct(self, image: np.ndarray, quad: Quadrilateral, target_size: Tuple[int, int]) -> np.ndarray:
        """
        Returns a raster of exactly target_size (width, height).
        Raises ValueError if quad is not valid.
        """
        if not quad.is_valid:
            raise ValueError("Perspective correction needs all four corners")
        w, h = int(target_size[0]), int(target_size[1])
        if w <= 0 or h <= 0:
            raise ValueError(f"Invalid target size {target_size}")

        H = homography_from_quad(quad, (w, h))
        if image.shape[1] == w and image.shape[0] == h and np.allclose(H, np.eye(3), atol=1e-9):
            # already canonical
            return image.copy()
        fill = (255,) * (image.shape[2] if image.ndim == 3 else 1)
        return cv2.warpPerspective(image, H, (w, h), flags=cv2.INTER_LINEAR,
                                   borderMode=cv2.BORDER_CONSTANT, borderValue=fill)

    def block_target_size(self, quad: Quadrilateral) -> Tuple[int, int]:
        """
        Destination size for the answer block: the larger of the average edge
        length and the marker bounding box plus margins, with floors for
        implausibly small blocks.
        """
        s = self.settings
        tl, tr, br, bl = (np.array(p, dtype=np.float64) for p in quad.corners())
        avg_w = (np.linalg.norm(tr - tl) + np.linalg.norm(br - bl)) / 2.0
        avg_h = (np.linalg.norm(bl - tl) + np.linalg.norm(br - tr)) / 2.0
        span_w, span_h = quad.spread()

        w = int(round(max(avg_w, span_w + 2 * s.block_margin)))
        h = int(round(max(avg_h, span_h + 2 * s.block_margin)))
        if w < s.block_min_width:
            w = s.block_floor_width
        if h < s.block_min_height:
            h = s.block_floor_height
        return w, h

    def correct_block(self, image: np.ndarray, quad: Quadrilateral) -> np.ndarray:
        size = self.block_target_size(quad)
        return self.correct(image, quad.expanded(self.settings.block_margin), size)
