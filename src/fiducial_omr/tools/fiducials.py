# src/fiducial_omr/tools/fiducials.py
from __future__ import annotations

import logging
from typing import Dict, List, Optional

import cv2
import numpy as np

from ..pipeline_defaults import MarkerSettings
from .geometry import CornerRole, Fiducial, FiducialKind, Point, Quadrilateral, Rect, order_points

logger = logging.getLogger(__name__)


def _role_for(cx: float, cy: float, mid_x: float, mid_y: float) -> CornerRole:
    top = cy < mid_y
    left = cx < mid_x
    if top:
        return CornerRole.TOP_LEFT if left else CornerRole.TOP_RIGHT
    return CornerRole.BOTTOM_LEFT if left else CornerRole.BOTTOM_RIGHT


def _keep_most_extreme(candidates: List[Fiducial], mid_x: float, mid_y: float) -> List[Fiducial]:
    """One fiducial per corner role: the one farthest from (mid_x, mid_y)."""
    best: Dict[CornerRole, Fiducial] = {}
    best_d: Dict[CornerRole, float] = {}
    for f in candidates:
        cx, cy = f.center
        d = (cx - mid_x) ** 2 + (cy - mid_y) ** 2
        if f.role not in best or d > best_d[f.role]:
            best[f.role] = f
            best_d[f.role] = d
    return [best[r] for r in CornerRole if r in best]


class FiducialDetector:
    """Finds L-shaped page markers and rectangular answer-block markers in a binary mask."""

    def __init__(self, settings: Optional[MarkerSettings] = None):
        self.settings = settings or MarkerSettings()

    def _approx_vertices(self, contour: np.ndarray) -> int:
        peri = cv2.arcLength(contour, True)
        approx = cv2.approxPolyDP(contour, self.settings.approx_epsilon * peri, True)
        return len(approx)

    # -------------------------
    # L-shaped page markers
    # -------------------------

    def detect_l_markers(self, mask: np.ndarray) -> List[Fiducial]:
        s = self.settings
        h, w = mask.shape[:2]
        contours, _ = cv2.findContours(mask, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)

        found: List[Fiducial] = []
        for c in contours:
            area = cv2.contourArea(c)
            if area < s.l_min_area or area > s.l_max_area:
                continue
            if not (s.l_min_vertices <= self._approx_vertices(c) <= s.l_max_vertices):
                continue
            x, y, bw, bh = cv2.boundingRect(c)
            aspect = bw / float(bh) if bh else 0.0
            if aspect < s.l_min_aspect or aspect > s.l_max_aspect:
                continue
            hull_area = cv2.contourArea(cv2.convexHull(c))
            if hull_area <= 0:
                continue
            solidity = area / hull_area
            if solidity < s.l_min_solidity or solidity > s.l_max_solidity:
                continue

            box = Rect(x, y, bw, bh)
            cx, cy = box.center
            # exterior: near a vertical edge AND near a horizontal edge
            if min(cx, w - cx) > s.l_exterior_ratio * w or min(cy, h - cy) > s.l_exterior_ratio * h:
                continue
            found.append(Fiducial(FiducialKind.L_SHAPED, box, _role_for(cx, cy, w / 2.0, h / 2.0)))

        markers = _keep_most_extreme(found, w / 2.0, h / 2.0)
        logger.debug("L markers: %d candidates, %d kept", len(found), len(markers))
        return markers

    @staticmethod
    def page_corners(markers: List[Fiducial]) -> Quadrilateral:
        """
        Quadrilateral of L-marker centres; invalid unless all four corners were seen.
        Four markers without roles are ordered by position.
        """
        if len(markers) == 4 and any(m.role is None for m in markers):
            return order_points([m.center for m in markers])
        return Quadrilateral.from_roles((m.role, m.center) for m in markers if m.role is not None)

    # -------------------------
    # Rectangular block markers
    # -------------------------

    def detect_rect_markers(self, mask: np.ndarray) -> List[Fiducial]:
        s = self.settings
        h, w = mask.shape[:2]
        contours, _ = cv2.findContours(mask, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)

        boxes: List[Rect] = []
        for c in contours:
            area = cv2.contourArea(c)
            if area < s.rect_min_area or area > s.rect_max_area:
                continue
            if self._approx_vertices(c) != 4:
                continue
            x, y, bw, bh = cv2.boundingRect(c)
            aspect = bw / float(bh) if bh else 0.0
            if aspect < s.rect_min_aspect or aspect > s.rect_max_aspect:
                continue
            box = Rect(x, y, bw, bh)
            if box.center[1] <= s.rect_min_y_ratio * h:
                continue
            boxes.append(box)

        if not boxes:
            return []
        xs = [b.center[0] for b in boxes]
        ys = [b.center[1] for b in boxes]
        mid_x = (min(xs) + max(xs)) / 2.0
        mid_y = (min(ys) + max(ys)) / 2.0
        tagged = [Fiducial(FiducialKind.RECTANGULAR, b, _role_for(b.center[0], b.center[1], mid_x, mid_y))
                  for b in boxes]
        markers = _keep_most_extreme(tagged, mid_x, mid_y)
        logger.debug("rect markers: %d candidates, %d kept", len(boxes), len(markers))
        return markers

    @staticmethod
    def answer_block_corners(markers: List[Fiducial]) -> Optional[Quadrilateral]:
        """
        Corners of the answer block from >= 2 rectangular markers.
        Missing corners are completed from the two adjacent corners when both
        exist, otherwise offset from one neighbour by the average marker spacing.
        Returns None with fewer than two markers.
        """
        if len(markers) < 2:
            return None
        pts: Dict[CornerRole, Point] = {m.role: m.center for m in markers if m.role is not None}
        if len(pts) < 2:
            return None

        xs = [p[0] for p in pts.values()]
        ys = [p[1] for p in pts.values()]
        TL, TR, BL, BR = (CornerRole.TOP_LEFT, CornerRole.TOP_RIGHT,
                          CornerRole.BOTTOM_LEFT, CornerRole.BOTTOM_RIGHT)

        widths = [abs(pts[b][0] - pts[a][0]) for a, b in ((TL, TR), (BL, BR)) if a in pts and b in pts]
        heights = [abs(pts[b][1] - pts[a][1]) for a, b in ((TL, BL), (TR, BR)) if a in pts and b in pts]
        avg_w = sum(widths) / len(widths) if widths else max(xs) - min(xs)
        avg_h = sum(heights) / len(heights) if heights else max(ys) - min(ys)

        # role -> (horizontal neighbour, vertical neighbour, x sign, y sign)
        layout = {
            TL: (TR, BL, -1, -1),
            TR: (TL, BR, +1, -1),
            BL: (BR, TL, -1, +1),
            BR: (BL, TR, +1, +1),
        }
        for role in (TL, TR, BL, BR):
            if role in pts:
                continue
            horiz, vert, sx, sy = layout[role]
            if horiz in pts and vert in pts:
                # x from the vertical neighbour, y from the horizontal one
                pts[role] = (pts[vert][0], pts[horiz][1])
            elif horiz in pts:
                hx, hy = pts[horiz]
                pts[role] = (hx + sx * avg_w, hy)
            elif vert in pts:
                vx, vy = pts[vert]
                pts[role] = (vx, vy + sy * avg_h)
        return Quadrilateral.from_roles(pts.items())
