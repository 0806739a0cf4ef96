# src/fiducial_omr/tools/regions.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

import cv2
import numpy as np

from ..pipeline_defaults import RegionSettings
from .diagnostics import Diagnostics
from .fiducials import FiducialDetector
from .geometry import Fiducial, Rect, Region
from .perspective import PerspectiveCorrector

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LocateContext:
    page: np.ndarray                 # corrected page raster
    mask: np.ndarray                 # its binary mask
    rect_markers: Sequence[Fiducial] = ()


@dataclass(frozen=True)
class IdentityBoxes:
    student: Rect
    test: Rect
    tier: str


# ------------------------------------------------------------------------------
# Answer block tiers
# ------------------------------------------------------------------------------

class FiducialQuadTier:
    """Perspective-correct the block spanned by the rectangular markers."""
    name = "fiducial"

    def __init__(self, settings: RegionSettings, corrector: PerspectiveCorrector):
        self.settings = settings
        self.corrector = corrector

    def locate(self, ctx: LocateContext) -> Optional[Region]:
        quad = FiducialDetector.answer_block_corners(list(ctx.rect_markers))
        if quad is None or not quad.is_valid:
            return None
        spread_w, spread_h = quad.spread()
        if spread_w < self.settings.min_marker_spread_w or spread_h < self.settings.min_marker_spread_h:
            logger.debug("marker spread %.0fx%.0f too small", spread_w, spread_h)
            return None
        block = self.corrector.correct_block(ctx.page, quad)
        xs = [p[0] for p in quad.corners()]
        ys = [p[1] for p in quad.corners()]
        box = Rect(int(min(xs)), int(min(ys)), int(max(xs) - min(xs)), int(max(ys) - min(ys)))
        return Region(block, box, self.name, warped=True)


class BorderedContourTier:
    """Largest plausible bordered rectangle in the lower-middle of the page."""
    name = "border"

    def __init__(self, settings: RegionSettings, approx_epsilon: float = 0.02):
        self.settings = settings
        self.approx_epsilon = approx_epsilon

    def locate(self, ctx: LocateContext) -> Optional[Region]:
        s = self.settings
        h, w = ctx.mask.shape[:2]
        page_area = float(w * h)
        contours, _ = cv2.findContours(ctx.mask, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)

        best: Optional[Rect] = None
        best_score = 0.0
        for c in contours:
            ratio = cv2.contourArea(c) / page_area
            if ratio < s.border_min_area_ratio or ratio > s.border_max_area_ratio:
                continue
            peri = cv2.arcLength(c, True)
            n = len(cv2.approxPolyDP(c, self.approx_epsilon * peri, True))
            if n < s.border_min_vertices or n > s.border_max_vertices:
                continue
            x, y, bw, bh = cv2.boundingRect(c)
            y_ratio = y / float(h)
            if y_ratio < s.border_min_y_ratio or y_ratio > s.border_max_y_ratio:
                continue
            score = ratio * (1.0 - abs(y_ratio - s.border_target_y_ratio))
            if score > best_score:
                best, best_score = Rect(x, y, bw, bh), score

        if best is None:
            return None
        p = s.border_padding
        box = best.inset(p, p, p, p).clip(w, h)
        return Region(box.crop(ctx.page), box, self.name)


class HeuristicCropTier:
    """Fixed fractional crop; always answers."""
    name = "heuristic"

    def __init__(self, settings: RegionSettings):
        self.settings = settings

    def locate(self, ctx: LocateContext) -> Optional[Region]:
        h, w = ctx.page.shape[:2]
        box = Rect.from_fractions(self.settings.heuristic_answer_box, w, h).clip(w, h)
        if box.area == 0:
            return None
        return Region(box.crop(ctx.page), box, self.name)


# ------------------------------------------------------------------------------
# Identity box tiers
# ------------------------------------------------------------------------------

def _corner_hits(junctions: np.ndarray, box: Rect, window: int) -> int:
    h, w = junctions.shape[:2]
    hits = 0
    for cx, cy in ((box.x, box.y), (box.x + box.w - 1, box.y),
                   (box.x, box.y + box.h - 1), (box.x + box.w - 1, box.y + box.h - 1)):
        r = Rect(cx - window, cy - window, 2 * window + 1, 2 * window + 1).clip(w, h)
        if r.area and np.count_nonzero(junctions[r.y:r.y + r.h, r.x:r.x + r.w]):
            hits += 1
    return hits


class LineMaskBoxTier:
    """
    Bordered id boxes from morphological line masks.
    Horizontal and vertical openings of the ink mask keep only long strokes;
    their union draws the box frames and their intersection marks the corners.
    """
    name = "line_mask"

    def __init__(self, settings: RegionSettings):
        self.settings = settings

    def find_boxes(self, band_mask: np.ndarray) -> List[Rect]:
        s = self.settings
        h, w = band_mask.shape[:2]
        hk = max(15, int(w * s.box_h_kernel_ratio))
        vk = max(15, int(h * s.box_v_kernel_ratio))
        horiz = cv2.morphologyEx(band_mask, cv2.MORPH_OPEN, cv2.getStructuringElement(cv2.MORPH_RECT, (hk, 1)))
        vert = cv2.morphologyEx(band_mask, cv2.MORPH_OPEN, cv2.getStructuringElement(cv2.MORPH_RECT, (1, vk)))
        frames = cv2.bitwise_or(horiz, vert)
        junctions = cv2.bitwise_and(horiz, vert)

        contours, _ = cv2.findContours(frames, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
        boxes: List[Rect] = []
        for c in contours:
            box = Rect(*cv2.boundingRect(c))
            if box.area < s.box_min_area_ratio * w * h:
                continue
            if box.w < s.box_min_aspect * box.h:
                continue
            if box.x > s.box_max_x_ratio * w:
                continue
            if not (s.box_width_range[0] * w <= box.w <= s.box_width_range[1] * w):
                continue
            if not (s.box_height_range[0] * h <= box.h <= s.box_height_range[1] * h):
                continue
            if _corner_hits(junctions, box, s.box_corner_window) < s.box_min_corner_hits:
                continue
            boxes.append(box)
        # largest first; x breaks ties
        boxes.sort(key=lambda b: (-b.area, b.x))
        return boxes

    def locate(self, band_mask: np.ndarray) -> Optional[IdentityBoxes]:
        boxes = self.find_boxes(band_mask)
        if len(boxes) < 2:
            return None
        return IdentityBoxes(student=boxes[0], test=boxes[1], tier=self.name)


class TemplateBoxTier:
    name = "template"

    def __init__(self, settings: RegionSettings):
        self.settings = settings

    def locate(self, band_mask: np.ndarray) -> Optional[IdentityBoxes]:
        h, w = band_mask.shape[:2]
        return IdentityBoxes(
            student=Rect.from_fractions(self.settings.template_student_box, w, h).clip(w, h),
            test=Rect.from_fractions(self.settings.template_test_box, w, h).clip(w, h),
            tier=self.name,
        )


# ------------------------------------------------------------------------------
# Locator
# ------------------------------------------------------------------------------

class RegionLocator:
    """Runs ordered tier lists; the first tier that answers wins."""

    def __init__(self, answer_tiers: Sequence, identity_tiers: Sequence,
                 settings: Optional[RegionSettings] = None,
                 diagnostics: Optional[Diagnostics] = None):
        self.answer_tiers = list(answer_tiers)
        self.identity_tiers = list(identity_tiers)
        self.settings = settings or RegionSettings()
        self.diagnostics = diagnostics or Diagnostics()

    @classmethod
    def default(cls, settings: Optional[RegionSettings] = None,
                corrector: Optional[PerspectiveCorrector] = None,
                diagnostics: Optional[Diagnostics] = None,
                approx_epsilon: float = 0.02) -> "RegionLocator":
        s = settings or RegionSettings()
        corrector = corrector or PerspectiveCorrector(s)
        return cls(
            answer_tiers=[FiducialQuadTier(s, corrector), BorderedContourTier(s, approx_epsilon), HeuristicCropTier(s)],
            identity_tiers=[LineMaskBoxTier(s), TemplateBoxTier(s)],
            settings=s,
            diagnostics=diagnostics,
        )

    def locate_answer_block(self, page: np.ndarray, mask: np.ndarray,
                            rect_markers: Sequence[Fiducial] = ()) -> Region:
        ctx = LocateContext(page=page, mask=mask, rect_markers=tuple(rect_markers))
        for tier in self.answer_tiers:
            region = tier.locate(ctx)
            if region is not None:
                self.diagnostics.event("answer_block", tier=tier.name, box=region.box)
                return region
            self.diagnostics.event("answer_tier_failed", tier=tier.name)
        # every list ends in a tier that always answers unless the page is empty
        h, w = page.shape[:2]
        return Region(page.copy(), Rect(0, 0, w, h), "page")

    def identity_band(self, page: np.ndarray) -> Rect:
        h, w = page.shape[:2]
        top, bottom = self.settings.identity_band
        return Rect(0, int(top * h), w, max(0, int(bottom * h) - int(top * h))).clip(w, h)

    def locate_identity_boxes(self, band_mask: np.ndarray) -> IdentityBoxes:
        for tier in self.identity_tiers:
            boxes = tier.locate(band_mask)
            if boxes is not None:
                self.diagnostics.event("identity_boxes", tier=boxes.tier,
                                       student=boxes.student, test=boxes.test)
                return boxes
            self.diagnostics.event("identity_tier_failed", tier=tier.name)
        h, w = band_mask.shape[:2]
        whole = Rect(0, 0, w, h)
        return IdentityBoxes(whole, whole, "band")

    def inner_box(self, box: Rect) -> Rect:
        top, side, bottom = self.settings.box_inner_margins
        return box.inset(side, top, side, bottom)
