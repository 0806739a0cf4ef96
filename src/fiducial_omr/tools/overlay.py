# src/fiducial_omr/tools/overlay.py
from __future__ import annotations

from typing import Dict, Iterable, Sequence, Tuple

import cv2 as cv
import numpy as np

from ..results import DecodeResult
from .geometry import Fiducial, Rect


def as_bgr(img: np.ndarray) -> np.ndarray:
    """Copy of img as 3-channel BGR so coloured overlays show on masks too."""
    if img.ndim == 2:
        return cv.cvtColor(img, cv.COLOR_GRAY2BGR)
    return img.copy()


def draw_zone_rect(img_bgr: np.ndarray, rect: Rect,
                   color=(0, 255, 0), thickness: int = 2) -> None:
    cv.rectangle(img_bgr, (rect.x, rect.y), (rect.x + rect.w - 1, rect.y + rect.h - 1), color, thickness)


def draw_cells(img_bgr: np.ndarray, rects: Iterable[Rect],
               color=(255, 0, 0), thickness: int = 1, shape: str | None = None) -> None:
    """
    Draw each cell. With shape == "circle" draw inscribed circles, else rectangles.
    """
    for r in rects:
        if shape == "circle":
            cx, cy = r.x + r.w // 2, r.y + r.h // 2
            rad = int(round(0.45 * min(r.w, r.h)))
            cv.circle(img_bgr, (cx, cy), max(1, rad), color, thickness)
        else:
            draw_zone_rect(img_bgr, r, color=color, thickness=thickness)


def put_label(img_bgr: np.ndarray, text: str, org: Tuple[int, int], scale: float = 0.6) -> None:
    x, y = int(org[0]), int(org[1])
    cv.putText(img_bgr, text, (x, y), cv.FONT_HERSHEY_SIMPLEX, scale, (0, 0, 0), 3, cv.LINE_AA)
    cv.putText(img_bgr, text, (x, y), cv.FONT_HERSHEY_SIMPLEX, scale, (0, 255, 255), 2, cv.LINE_AA)


def overlay_grid(img: np.ndarray, result: DecodeResult) -> np.ndarray:
    """Grid cells as the decoder placed them, with the chosen cell of every column circled."""
    out = as_bgr(img)
    geo = result.geometry
    if geo is None:
        return out
    cells = [geo.cell_rect(c, s) for c in range(geo.columns) for s in range(geo.first_row_slot, geo.row_slots)]
    draw_cells(out, cells, color=(255, 0, 0), thickness=1)
    for col, row in enumerate(result.rows):
        if row is None:
            continue
        draw_cells(out, [geo.cell_rect(col, row + geo.first_row_slot)], color=(0, 255, 0), thickness=2, shape="circle")
    return out


def overlay_rows(block: np.ndarray, rows: Dict[int, Rect], answers: Sequence[str]) -> np.ndarray:
    """Numbered row rectangles with the decoded answer next to each."""
    out = as_bgr(block)
    for q, r in sorted(rows.items()):
        ans = answers[q - 1] if q - 1 < len(answers) else ""
        color = (0, 255, 0) if ans and len(ans) == 1 else (0, 0, 255)
        draw_zone_rect(out, r, color=color, thickness=2)
        put_label(out, f"{q}:{ans or '-'}", (r.x + 2, r.y + r.h - 4), scale=0.4)
    return out


def overlay_fiducials(page: np.ndarray, markers: Iterable[Fiducial]) -> np.ndarray:
    out = as_bgr(page)
    for m in markers:
        draw_zone_rect(out, m.box, color=(0, 0, 255), thickness=2)
        if m.role is not None:
            put_label(out, m.role.value, (m.box.x, max(12, m.box.y - 4)), scale=0.4)
    return out
