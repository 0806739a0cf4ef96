# src/fiducial_omr/tools/answers.py
from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from ..pipeline_defaults import AnswerSettings
from ..results import BLANK, MULTIPLE, AnswerResult
from .diagnostics import Diagnostics
from .geometry import Rect
from .grid_decoder import pick_by_margin
from .overlay import overlay_rows
from .preprocess import Preprocessor

logger = logging.getLogger(__name__)


def _density(mask: np.ndarray, box: Rect) -> float:
    h, w = mask.shape[:2]
    r = box.clip(w, h)
    if r.area == 0:
        return 0.0
    return float(np.count_nonzero(mask[r.y:r.y + r.h, r.x:r.x + r.w])) / r.area


def _separation(densities: Sequence[float], chosen: Sequence[int]) -> float:
    """1 - strongest unselected / weakest selected, clamped to [0, 1]."""
    weakest = min(densities[i] for i in chosen)
    others = [d for i, d in enumerate(densities) if i not in chosen]
    strongest_other = max(others) if others else 0.0
    if weakest <= 0:
        return 0.0
    return float(min(1.0, max(0.0, 1.0 - strongest_other / weakest)))


class AnswerDecoder:
    """
    Reads the answer block: one printed rectangle per question row, four
    choice bubbles inside it, column blocks of rows_per_block questions.
    """

    def __init__(self,
                 settings: Optional[AnswerSettings] = None,
                 preprocessor: Optional[Preprocessor] = None,
                 diagnostics: Optional[Diagnostics] = None,
                 approx_epsilon: float = 0.02):
        self.settings = settings or AnswerSettings()
        self.preprocessor = preprocessor or Preprocessor()
        self.diagnostics = diagnostics or Diagnostics()
        self.approx_epsilon = approx_epsilon

    # -------------------------
    # Row rectangles
    # -------------------------

    def detect_rows(self, mask: np.ndarray) -> List[Rect]:
        s = self.settings
        contours, _ = cv2.findContours(mask, cv2.RETR_TREE, cv2.CHAIN_APPROX_SIMPLE)
        found: List[Tuple[float, Rect]] = []
        for c in contours:
            area = cv2.contourArea(c)
            if area < s.row_min_area or area > s.row_max_area:
                continue
            box = Rect(*cv2.boundingRect(c))
            if box.w < s.row_min_width or box.h < s.row_min_height or box.h > s.row_max_height:
                continue
            if box.aspect < s.row_min_aspect:
                continue
            peri = cv2.arcLength(c, True)
            n = len(cv2.approxPolyDP(c, self.approx_epsilon * peri, True))
            if n < s.row_min_vertices or n > s.row_max_vertices:
                continue
            found.append((area, box))

        # outer and inner edge of one printed rectangle: keep the larger
        found.sort(key=lambda t: (-t[0], t[1].y, t[1].x))
        kept: List[Rect] = []
        for _, box in found:
            if any(abs(box.y - k.y) < s.dedupe_dy and abs(box.x - k.x) < s.dedupe_dx for k in kept):
                continue
            kept.append(box)
        kept.sort(key=lambda b: (b.y, b.x))
        return kept

    def number_rows(self, rows: Sequence[Rect], width: int) -> Dict[int, Rect]:
        """
        Question number (1-based) for each row rectangle.
        Rows whose tops lie within y_tolerance of the previous row share a
        row index; the column block comes from the rectangle's centre.
        """
        s = self.settings
        groups: List[List[Rect]] = []
        for box in sorted(rows, key=lambda b: (b.y, b.x)):
            if groups and box.y - groups[-1][-1].y <= s.y_tolerance:
                groups[-1].append(box)
            else:
                groups.append([box])

        block_w = width / float(s.column_blocks)
        numbered: Dict[int, Rect] = {}
        for row_idx, group in enumerate(groups[:s.rows_per_block]):
            for box in group:
                block = min(max(int(box.center[0] // block_w), 0), s.column_blocks - 1)
                q = block * s.rows_per_block + row_idx + 1
                if q > s.questions:
                    continue
                if q not in numbered or box.w > numbered[q].w:
                    numbered[q] = box
        if len(groups) > s.rows_per_block:
            logger.debug("ignoring %d extra row groups", len(groups) - s.rows_per_block)
        return numbered

    # -------------------------
    # Choice sampling
    # -------------------------

    def choice_densities(self, mask: np.ndarray, row: Rect, split_ratio: float) -> List[float]:
        n = len(self.settings.choices)
        pad_y = row.h // 4
        start = row.x + row.w * split_ratio
        section = (row.w - row.w * split_ratio) / float(n)
        pad_x = section / 5.0
        out: List[float] = []
        for i in range(n):
            x0 = int(round(start + i * section + pad_x))
            x1 = int(round(start + (i + 1) * section - pad_x))
            out.append(_density(mask, Rect(x0, row.y + pad_y, max(1, x1 - x0), max(1, row.h - 2 * pad_y))))
        return out

    def decode_row(self, mask: np.ndarray, row: Rect) -> Tuple[str, float]:
        """
        Answer letter, MULTIPLE or blank, plus its confidence.

        The label split kept is the one whose windows sit best on the bubbles
        (largest total fill); a split that cuts a bubble in half loses ink in
        that window, so a double mark cannot be read as a single letter.
        """
        s = self.settings
        best: Optional[List[float]] = None
        best_fill = -1.0
        for ratio in s.label_split_ratios:
            dens = self.choice_densities(mask, row, ratio)
            total = sum(dens)
            if total > best_fill:
                best, best_fill = dens, total
        if best is None:
            return BLANK, 0.0

        filled = [i for i, d in enumerate(best) if d >= s.fill_threshold]
        if len(filled) >= 2:
            return MULTIPLE, _separation(best, filled)

        idx = pick_by_margin(best, s.fill_threshold, s.margin, s.strong_fill)
        if idx is None:
            return BLANK, 0.0
        return s.choices[idx], _separation(best, [idx])

    def decode(self, block: np.ndarray) -> AnswerResult:
        s = self.settings
        answers = [BLANK] * s.questions
        confidences = [0.0] * s.questions

        mask = self.preprocessor.otsu(block)
        rows = self.detect_rows(mask)
        numbered = self.number_rows(rows, mask.shape[1])
        for q, box in sorted(numbered.items()):
            answers[q - 1], confidences[q - 1] = self.decode_row(mask, box)

        self.diagnostics.event("answers", rows=len(rows), questions=len(numbered),
                               answered=sum(1 for a in answers if a))
        if self.diagnostics.wants_images:
            self.diagnostics.snapshot("answer_rows", overlay_rows(block, numbered, answers))
        return AnswerResult(answers=tuple(answers), confidences=tuple(confidences), rows_found=len(rows))
