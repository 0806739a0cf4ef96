# src/fiducial_omr/tools/grid_decoder.py
from __future__ import annotations

import logging
from typing import List, Optional, Sequence, Tuple

import cv2
import numpy as np

from ..pipeline_defaults import GridSpec
from ..results import DecodeResult, GridGeometry
from .geometry import Blob, Rect

logger = logging.getLogger(__name__)

# Sample points inside a cell, as fractions of its width / height
_SAMPLE_FX = (1.0 / 3.0, 1.0 / 2.0, 2.0 / 3.0)
_SAMPLE_FY = (1.0 / 4.0, 1.0 / 2.0, 3.0 / 4.0)


# ------------------------------------------------------------------------------
# Scoring primitives
# ------------------------------------------------------------------------------

def pick_by_margin(values: Sequence[float],
                   floor: float,
                   margin: float,
                   strong: float) -> Optional[int]:
    """
    values: one score per candidate (higher is darker).
    Returns: winning index or None (blank/ambiguous).

    The best candidate must reach `floor`, and then either beat the runner-up
    by `margin` (relative) or be at least `strong` while still strictly ahead.
    Ties resolve to the lower index.
    """
    arr = np.asarray(values, dtype=np.float64)
    if arr.size == 0:
        return None

    order = np.argsort(-arr, kind="stable")
    best_idx = int(order[0])
    top = float(arr[best_idx])
    second = float(arr[order[1]]) if arr.size > 1 else 0.0

    if top < floor or top <= second:
        return None
    if top >= second * (1.0 + margin):
        return best_idx
    if top >= strong:
        return best_idx
    return None


def sample_density(mask: np.ndarray, cell: Rect) -> float:
    """Mean foreground fraction of a 3x3 lattice of small patches inside cell."""
    h, w = mask.shape[:2]
    pw = max(1, int(cell.w / 4))
    ph = max(1, int(cell.h / 4))
    fills: List[float] = []
    for fy in _SAMPLE_FY:
        for fx in _SAMPLE_FX:
            cx = cell.x + fx * cell.w
            cy = cell.y + fy * cell.h
            patch = Rect(int(round(cx - pw / 2.0)), int(round(cy - ph / 2.0)), pw, ph).clip(w, h)
            if patch.area == 0:
                continue
            roi = mask[patch.y:patch.y + patch.h, patch.x:patch.x + patch.w]
            fills.append(float(np.count_nonzero(roi)) / patch.area)
    return float(np.mean(fills)) if fills else 0.0


def extract_blobs(mask: np.ndarray, spec: GridSpec) -> List[Blob]:
    """Bubble-like connected components after a light erosion, sorted by (x, y)."""
    work = mask
    if spec.erosion_ksize and spec.erosion_ksize > 1:
        kernel = cv2.getStructuringElement(cv2.MORPH_ELLIPSE, (spec.erosion_ksize, spec.erosion_ksize))
        work = cv2.erode(mask, kernel)

    n, _, stats, centroids = cv2.connectedComponentsWithStats(work, connectivity=8)
    blobs: List[Blob] = []
    for i in range(1, n):
        x, y, bw, bh, area = (int(v) for v in stats[i])
        if area < spec.min_area or area > spec.max_area:
            continue
        aspect = bw / float(bh) if bh else 0.0
        if aspect < spec.min_aspect or aspect > spec.max_aspect:
            continue
        cx, cy = centroids[i]
        blobs.append(Blob(float(cx), float(cy), float(area), Rect(x, y, bw, bh)))
    blobs.sort(key=lambda b: (b.x, b.y))
    return blobs


# ------------------------------------------------------------------------------
# Decoder
# ------------------------------------------------------------------------------

class GridDecoder:
    """
    Decodes one bubble grid (columns x rows, one mark per column) from a binary
    mask whose foreground is ink. The same decoder serves the student id and
    test id grids; GridSpec carries what differs between them.
    """

    def __init__(self, spec: Optional[GridSpec] = None):
        self.spec = spec or GridSpec()

    def find_origin(self, blobs: Sequence[Blob], width: int, slot_height: float) -> Tuple[float, float]:
        """
        Left edge of column 0 and the column pitch.

        With a label margin, the leftmost bubble-like blob past the margin is
        taken as column 0 when it lies within one nominal pitch of the margin;
        the pitch is then chosen so the grid spans to the right edge. Otherwise
        the margin itself is the origin.
        """
        s = self.spec
        if s.label_margin_ratio <= 0:
            return 0.0, width / float(s.columns)

        margin_x = s.label_margin_ratio * width
        nominal_pitch = (width - margin_x) / float(s.columns)
        candidates = [
            b for b in blobs
            if b.x > margin_x
            and b.area >= s.min_origin_area
            and int(b.y // slot_height) >= s.first_row_slot
        ]
        if candidates:
            left = min(b.x for b in candidates)
            if left <= margin_x + nominal_pitch:
                pitch = (width - left) / (s.columns - 0.5)
                return left - pitch / 2.0, pitch
        return margin_x, nominal_pitch

    def _score(self, blob: Blob, dx: float, dy: float, geo: GridGeometry) -> float:
        s = self.spec
        penalty = 1.0
        if blob.area > s.merge_area_hard:
            penalty = s.merge_penalty_hard
        elif blob.area > s.merge_area:
            penalty = s.merge_penalty
        return blob.area / (dy / geo.slot_height + 0.1) / (dx / geo.pitch + 0.3) * penalty

    def _pick_blob(self, candidates: List[Tuple[float, int]]) -> Optional[int]:
        """Slot of the winning blob, or None when a different row scores too close."""
        if not candidates:
            return None
        ranked = sorted(candidates, key=lambda c: -c[0])
        best_score, best_slot = ranked[0]
        for score, slot in ranked[1:]:
            if slot != best_slot and score >= (1.0 - self.spec.tie_margin) * best_score:
                return None
        return best_slot

    def column_densities(self, mask: np.ndarray, geo: GridGeometry, col: int) -> List[float]:
        """Density for every digit slot of one column, top to bottom."""
        return [sample_density(mask, geo.cell_rect(col, slot))
                for slot in range(geo.first_row_slot, geo.row_slots)]

    def decode(self, mask: np.ndarray) -> DecodeResult:
        s = self.spec
        if mask is None or mask.size == 0 or mask.shape[0] == 0 or mask.shape[1] == 0:
            return DecodeResult.empty(s.columns)

        h, w = mask.shape[:2]
        slot_h = h / float(s.row_slots)
        blobs = extract_blobs(mask, s)
        origin, pitch = self.find_origin(blobs, w, slot_h)
        geo = GridGeometry(origin_x=origin, pitch=pitch, slot_height=slot_h,
                           columns=s.columns, row_slots=s.row_slots, first_row_slot=s.first_row_slot)

        # blob -> (column, slot) with a distance-weighted score
        per_col: List[List[Tuple[float, int]]] = [[] for _ in range(s.columns)]
        for b in blobs:
            slot = min(int(b.y // slot_h), s.row_slots - 1)
            if slot < s.first_row_slot:
                continue
            col = int((b.x - origin) // pitch)
            col = min(max(col, 0), s.columns - 1)
            dx = abs(b.x - geo.column_center(col))
            if dx > s.max_col_offset * pitch:
                continue
            dy = abs(b.y - geo.slot_center(slot))
            per_col[col].append((self._score(b, dx, dy, geo), slot))

        symbols: List[Optional[str]] = []
        rows: List[Optional[int]] = []
        for col in range(s.columns):
            slot = self._pick_blob(per_col[col])
            if slot is not None:
                row = slot - s.first_row_slot
            else:
                dens = self.column_densities(mask, geo, col)
                row = pick_by_margin(dens, s.density_floor, s.density_margin, s.density_strong)
                if row is not None:
                    logger.debug("column %d resolved by density (row %d, %.3f)", col, row, dens[row])
            if row is None:
                symbols.append(None)
                rows.append(None)
            else:
                symbols.append(s.symbols[min(row, s.rows - 1)])
                rows.append(row)

        return DecodeResult(symbols=tuple(symbols), rows=tuple(rows), geometry=geo)
