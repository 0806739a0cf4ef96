# src/fiducial_omr/visualize_core.py

from __future__ import annotations
import logging
import os
from typing import Optional

import cv2
import numpy as np

from .results import ProcessResult
from .tools.diagnostics import Diagnostics
from .tools.overlay import as_bgr, put_label

logger = logging.getLogger(__name__)


def _ensure_dir(path: str) -> None:
    if path and not os.path.isdir(path):
        os.makedirs(path, exist_ok=True)


class DirectoryDiagnostics(Diagnostics):
    """
    Writes every snapshot as a numbered PNG into `out_dir`, optionally under a
    per-sheet prefix so a batch can share one directory.
    """

    def __init__(self, out_dir: str, prefix: str = "", logger: Optional[logging.Logger] = None):
        super().__init__(logger)
        self.out_dir = out_dir
        self.prefix = prefix
        self._count = 0
        _ensure_dir(out_dir)

    @property
    def wants_images(self) -> bool:
        return True

    def with_prefix(self, prefix: str) -> "DirectoryDiagnostics":
        return DirectoryDiagnostics(self.out_dir, prefix, self.logger)

    def snapshot(self, name: str, image: np.ndarray) -> None:
        self._count += 1
        stem = f"{self.prefix}_" if self.prefix else ""
        path = os.path.join(self.out_dir, f"{stem}{self._count:02d}_{name}.png")
        if not cv2.imwrite(path, image):
            self.logger.warning("Could not write debug image %s", path)


def annotate_result(page: np.ndarray, result: ProcessResult) -> np.ndarray:
    """Summary banner (ids, tier, marker counts) across the top of a page copy."""
    out = as_bgr(page)
    if result.success:
        lines = [
            f"student {result.student_id}  test {result.test_id}",
            f"answer tier {result.answer_tier}  id tier {result.identity_tier}",
            f"L markers {result.l_markers_found}  rect markers {result.rect_markers_found}",
        ]
    else:
        lines = [f"FAILED: {result.error}"]
    for i, line in enumerate(lines):
        put_label(out, line, (10, 24 + 22 * i))
    return out
