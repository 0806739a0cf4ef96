# src/fiducial_omr/pipeline_core.py
from __future__ import annotations

import logging
import time
from typing import Optional

import numpy as np

from .errors import DeadlineExceeded, InvalidImageError
from .pipeline_defaults import DEFAULTS, PipelineConfig
from .results import ProcessResult
from .tools.answers import AnswerDecoder
from .tools.diagnostics import Diagnostics
from .tools.fiducials import FiducialDetector
from .tools.identity import IdentityDecoder
from .tools.overlay import overlay_fiducials
from .tools.perspective import PerspectiveCorrector
from .tools.preprocess import Preprocessor, ensure_image
from .tools.regions import RegionLocator

logger = logging.getLogger(__name__)


class _Clock:
    def __init__(self, deadline_seconds: Optional[float]):
        self.start = time.perf_counter()
        self.deadline_seconds = deadline_seconds

    @property
    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.start) * 1000.0

    def check(self, stage: str) -> None:
        if self.deadline_seconds is None:
            return
        if time.perf_counter() - self.start > self.deadline_seconds:
            raise DeadlineExceeded(f"Deadline of {self.deadline_seconds:.3f}s exceeded before {stage}")


class SheetPipeline:
    """
    One sheet in, one ProcessResult out.

      1) binarize, find L markers, warp the page to canonical size
         (or keep the original when fewer than four are found)
      2) re-binarize the corrected page, find the answer-block markers
      3) locate the answer block (fiducial -> border -> heuristic)
      4) decode identity grids and answers

    Holds only immutable configuration; one instance may be shared by
    sequential calls, use one per worker for parallel batches.
    """

    def __init__(self, config: Optional[PipelineConfig] = None,
                 diagnostics: Optional[Diagnostics] = None):
        self.config = config or DEFAULTS
        self.diagnostics = diagnostics or Diagnostics()
        c = self.config
        self.preprocessor = Preprocessor(c.preprocess)
        self.detector = FiducialDetector(c.markers)
        self.corrector = PerspectiveCorrector(c.regions)
        self.locator = RegionLocator.default(c.regions, self.corrector, self.diagnostics,
                                             approx_epsilon=c.markers.approx_epsilon)
        self.identity = IdentityDecoder(c.identity, self.locator, self.preprocessor, self.diagnostics)
        self.answers = AnswerDecoder(c.answers, self.preprocessor, self.diagnostics,
                                     approx_epsilon=c.markers.approx_epsilon)

    def process(self, image: Optional[np.ndarray]) -> ProcessResult:
        clock = _Clock(self.config.deadline_seconds)
        try:
            return self._process(image, clock)
        except InvalidImageError as e:
            logger.error("Invalid image: %s", e)
            return ProcessResult.failure(str(e), clock.elapsed_ms)
        except DeadlineExceeded as e:
            logger.warning("%s", e)
            return ProcessResult.failure(str(e), clock.elapsed_ms)
        except Exception as e:
            logger.exception("Sheet processing failed")
            return ProcessResult.failure(f"{type(e).__name__}: {e}", clock.elapsed_ms)

    def _process(self, image: Optional[np.ndarray], clock: _Clock) -> ProcessResult:
        image = ensure_image(image)
        diag = self.diagnostics

        # 1) page correction
        mask = self.preprocessor.normalize(image)
        l_markers = self.detector.detect_l_markers(mask)
        quad = self.detector.page_corners(l_markers)
        diag.event("l_markers", found=len(l_markers))
        if quad.is_valid:
            page = self.corrector.correct(image, quad, self.config.canonical_size)
        else:
            page = image.copy()
        if diag.wants_images:
            diag.snapshot("page_markers", overlay_fiducials(image, l_markers))
            diag.snapshot("page", page)
        clock.check("answer block markers")

        # 2) answer-block markers on the corrected page
        page_mask = self.preprocessor.normalize_deskewed(page)
        rect_markers = self.detector.detect_rect_markers(page_mask)
        diag.event("rect_markers", found=len(rect_markers))
        clock.check("region location")

        # 3) answer block
        block = self.locator.locate_answer_block(page, page_mask, rect_markers)
        if diag.wants_images:
            diag.snapshot("answer_block", block.image)
        clock.check("identity decoding")

        # 4) decoding
        ident = self.identity.decode(page)
        clock.check("answer decoding")
        ans = self.answers.decode(block.image)

        result = ProcessResult(
            student_id=ident.student_id,
            test_id=ident.test_id,
            answers=ans.answers,
            confidences=ans.confidences,
            l_markers_found=len(l_markers),
            rect_markers_found=len(rect_markers),
            duration_ms=clock.elapsed_ms,
            success=True,
            error=None,
            student_confidence=ident.student.confidence,
            test_confidence=ident.test.confidence,
            page_corrected=quad.is_valid,
            answer_tier=block.tier,
            identity_tier=ident.tier,
            answer_rows_found=ans.rows_found,
        )
        logger.info("Processed sheet: student=%s test=%s tier=%s in %.0f ms",
                    result.student_id, result.test_id, result.answer_tier, result.duration_ms)
        return result


def process_image(image: np.ndarray, config: Optional[PipelineConfig] = None,
                  diagnostics: Optional[Diagnostics] = None) -> ProcessResult:
    """Convenience wrapper for one-off calls."""
    return SheetPipeline(config, diagnostics).process(image)
