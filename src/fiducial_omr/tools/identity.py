# src/fiducial_omr/tools/identity.py
from __future__ import annotations

import logging
import math
from typing import List, Optional, Sequence

import cv2
import numpy as np

from ..pipeline_defaults import GridSpec, IdentitySettings
from ..results import DecodeResult, IdentityResult
from .diagnostics import Diagnostics
from .geometry import Rect
from .grid_decoder import GridDecoder
from .overlay import overlay_grid
from .preprocess import Preprocessor
from .regions import RegionLocator

logger = logging.getLogger(__name__)


class IdentityDecoder:
    """Student id (10 digits) and test id (4 digits) from the identity band of a corrected page."""

    def __init__(self,
                 settings: Optional[IdentitySettings] = None,
                 locator: Optional[RegionLocator] = None,
                 preprocessor: Optional[Preprocessor] = None,
                 diagnostics: Optional[Diagnostics] = None):
        self.settings = settings or IdentitySettings()
        self.locator = locator or RegionLocator.default()
        self.preprocessor = preprocessor or Preprocessor()
        self.diagnostics = diagnostics or Diagnostics()
        self.student_decoder = GridDecoder(self.settings.student)
        self.test_decoder = GridDecoder(self.settings.test)

    def decode(self, page: np.ndarray) -> IdentityResult:
        s = self.settings
        band = self.locator.identity_band(page)
        if band.area == 0:
            return IdentityResult(DecodeResult.empty(s.student.columns),
                                  DecodeResult.empty(s.test.columns), tier="none")

        mask = self.preprocessor.binarize_identity(band.crop(page))
        boxes = self.locator.locate_identity_boxes(mask)
        student_box = self.locator.inner_box(boxes.student)
        test_box = self.locator.inner_box(boxes.test)

        student = self.student_decoder.decode(student_box.crop(mask))
        test = self.test_decoder.decode(test_box.crop(mask))
        tier = boxes.tier

        if self.diagnostics.wants_images:
            self.diagnostics.snapshot("identity_student", overlay_grid(student_box.crop(mask), student))
            self.diagnostics.snapshot("identity_test", overlay_grid(test_box.crop(mask), test))

        if student.confidence < s.weak_confidence:
            alt_student, alt_test = self.decode_by_columns(mask)
            if alt_student.confidence > student.confidence:
                student = alt_student
                tier += "+columns"
            if alt_test.confidence > test.confidence:
                test = alt_test

        self.diagnostics.event("identity", tier=tier, student=student.text, test=test.text,
                               student_confidence=round(student.confidence, 3),
                               test_confidence=round(test.confidence, 3))
        return IdentityResult(student=student, test=test, tier=tier)

    # -------------------------
    # Column-detection pass
    # -------------------------

    def find_digit_columns(self, mask: np.ndarray) -> List[List[Rect]]:
        """
        Circular bubble outlines grouped into columns by x position.
        Returns columns left to right, each sorted top to bottom.
        """
        s = self.settings
        h, w = mask.shape[:2]
        x_lo, x_hi = s.column_x_range[0] * w, s.column_x_range[1] * w

        contours, _ = cv2.findContours(mask, cv2.RETR_LIST, cv2.CHAIN_APPROX_SIMPLE)
        bubbles: List[Rect] = []
        for c in contours:
            area = cv2.contourArea(c)
            if area < s.bubble_min_area or area > s.bubble_max_area:
                continue
            box = Rect(*cv2.boundingRect(c))
            if not (s.bubble_min_size <= box.w <= s.bubble_max_size and s.bubble_min_size <= box.h <= s.bubble_max_size):
                continue
            peri = cv2.arcLength(c, True)
            if peri <= 0 or 4.0 * math.pi * area / (peri * peri) < s.bubble_min_circularity:
                continue
            if not (x_lo <= box.center[0] <= x_hi):
                continue
            bubbles.append(box)
        if not bubbles:
            return []

        bubbles.sort(key=lambda b: (b.center[0], b.center[1]))
        gap = max(4.0, 0.5 * float(np.median([b.w for b in bubbles])))
        columns: List[List[Rect]] = [[bubbles[0]]]
        for b in bubbles[1:]:
            if b.center[0] - columns[-1][-1].center[0] > gap:
                columns.append([b])
            else:
                columns[-1].append(b)

        kept = [sorted(col, key=lambda b: (b.center[1], b.center[0]))
                for col in columns if len(col) >= s.column_min_bubbles]
        logger.debug("column pass: %d bubbles, %d columns", len(bubbles), len(kept))
        return kept

    def digit_in_column(self, mask: np.ndarray, column: Sequence[Rect], rows: int) -> Optional[int]:
        """Row index of the filled bubble, judged by the fill of each bubble's centre."""
        s = self.settings
        ys = [b.center[1] for b in column]
        top, bottom = min(ys), max(ys)
        if rows < 2 or bottom <= top:
            return None
        pitch = (bottom - top) / float(rows - 1)

        h, w = mask.shape[:2]
        fills = [0.0] * rows
        for b in column:
            r = int(round((b.center[1] - top) / pitch))
            r = min(max(r, 0), rows - 1)
            core = Rect(b.x + b.w // 4, b.y + b.h // 4, max(1, b.w // 2), max(1, b.h // 2)).clip(w, h)
            if core.area == 0:
                continue
            fill = np.count_nonzero(mask[core.y:core.y + core.h, core.x:core.x + core.w]) / float(core.area)
            fills[r] = max(fills[r], fill)

        order = sorted(range(rows), key=lambda i: -fills[i])
        best, second = fills[order[0]], fills[order[1]]
        if best >= s.center_fill_floor and best > s.center_fill_ratio * second:
            return order[0]
        return None

    def _columns_to_result(self, mask: np.ndarray, columns: Sequence[Sequence[Rect]], spec: GridSpec) -> DecodeResult:
        symbols: List[Optional[str]] = []
        rows: List[Optional[int]] = []
        for i in range(spec.columns):
            row = self.digit_in_column(mask, columns[i], spec.rows) if i < len(columns) else None
            rows.append(row)
            symbols.append(None if row is None else spec.symbols[row])
        return DecodeResult(symbols=tuple(symbols), rows=tuple(rows))

    def decode_by_columns(self, mask: np.ndarray):
        """Student id from the first columns found, test id from the ones after it."""
        s = self.settings
        columns = self.find_digit_columns(mask)
        student = self._columns_to_result(mask, columns[:s.student.columns], s.student)
        test = self._columns_to_result(mask, columns[s.student.columns:s.student.columns + s.test.columns], s.test)
        self.diagnostics.event("identity_columns", columns=len(columns),
                               student=student.text, test=test.text)
        return student, test
