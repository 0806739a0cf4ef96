import cv2
import numpy as np
import pytest

from fiducial_omr.pipeline_defaults import RegionSettings
from fiducial_omr.tools.diagnostics import RecordingDiagnostics
from fiducial_omr.tools.geometry import CornerRole, Fiducial, FiducialKind, Rect
from fiducial_omr.tools.identity import IdentityDecoder
from fiducial_omr.tools.perspective import PerspectiveCorrector
from fiducial_omr.tools.preprocess import Preprocessor
from fiducial_omr.tools.regions import LineMaskBoxTier, RegionLocator

from synthetic import (
    CANON_H,
    CANON_W,
    MARKER_CENTERS,
    PAD,
    STUDENT_BOX,
    TEST_BOX,
    blank_page,
    digit_row,
    render_sheet,
)

ROLES = (CornerRole.TOP_LEFT, CornerRole.TOP_RIGHT, CornerRole.BOTTOM_LEFT, CornerRole.BOTTOM_RIGHT)


def _markers(centers, size=30):
    return [Fiducial(FiducialKind.RECTANGULAR, Rect(cx - size // 2, cy - size // 2, size, size), role)
            for (cx, cy), role in zip(centers, ROLES)]


class SpyCorrector(PerspectiveCorrector):
    def __init__(self):
        super().__init__(RegionSettings())
        self.calls = 0

    def correct_block(self, image, quad):
        self.calls += 1
        return super().correct_block(image, quad)


def _canonical_page(**kwargs):
    """render_sheet already places the L markers on the canonical corners: cropping the pad is the warp."""
    return render_sheet(**kwargs)[PAD:PAD + CANON_H, PAD:PAD + CANON_W].copy()


# ------------------------------------------------------------------------------
# Answer block tiers
# ------------------------------------------------------------------------------

def test_fiducial_tier_warps_block():
    page = blank_page(CANON_W, CANON_H)
    diag = RecordingDiagnostics()
    locator = RegionLocator.default(diagnostics=diag)
    mask = Preprocessor().normalize_deskewed(page)
    region = locator.locate_answer_block(page, mask, _markers(MARKER_CENTERS))
    assert region.tier == "fiducial"
    assert region.warped
    assert region.image.shape == (760, 960, 3)
    assert diag.last("answer_block")["tier"] == "fiducial"


def test_clustered_markers_fall_through_to_border():
    page = blank_page(CANON_W, CANON_H)
    cv2.rectangle(page, (30, 460), (969, 1349), (0, 0, 0), 3)
    clustered = _markers([(100, 700), (200, 700), (100, 800), (200, 800)])

    spy = SpyCorrector()
    diag = RecordingDiagnostics()
    locator = RegionLocator.default(corrector=spy, diagnostics=diag)
    mask = Preprocessor().normalize_deskewed(page)
    region = locator.locate_answer_block(page, mask, clustered)

    assert region.tier == "border"
    assert spy.calls == 0
    assert not region.warped
    assert region.box.x == pytest.approx(34, abs=3)
    assert region.box.y == pytest.approx(464, abs=3)
    assert region.box.w == pytest.approx(930, abs=6)
    assert region.box.h == pytest.approx(880, abs=6)
    assert ("answer_tier_failed", {"tier": "fiducial"}) in diag.events


def test_blank_page_uses_heuristic_crop():
    page = blank_page(CANON_W, CANON_H)
    locator = RegionLocator.default()
    region = locator.locate_answer_block(page, Preprocessor().normalize_deskewed(page), [])
    assert region.tier == "heuristic"
    assert region.box.x == 20
    assert region.box.w == pytest.approx(960, abs=1)
    assert region.box.y == pytest.approx(441, abs=1)
    assert region.image.shape[:2] == (region.box.h, region.box.w)


def test_locator_tiers_are_pluggable():
    class Nothing:
        name = "nothing"

        def locate(self, ctx):
            return None

    page = blank_page(50, 40)
    locator = RegionLocator([Nothing()], [])
    region = locator.locate_answer_block(page, np.zeros((40, 50), dtype=np.uint8))
    assert region.tier == "page"
    assert region.box == Rect(0, 0, 50, 40)


# ------------------------------------------------------------------------------
# Identity boxes
# ------------------------------------------------------------------------------

def _band_mask(page):
    locator = RegionLocator.default()
    band = locator.identity_band(page)
    return band, Preprocessor().binarize_identity(band.crop(page))


def test_identity_band_is_fraction_of_page():
    band = RegionLocator.default().identity_band(blank_page(CANON_W, CANON_H))
    assert band == Rect(0, 280, 1000, 336)


def test_line_mask_finds_student_box_first():
    band, mask = _band_mask(_canonical_page())
    boxes = LineMaskBoxTier(RegionSettings()).locate(mask)
    assert boxes is not None
    assert boxes.tier == "line_mask"
    sx, sy, sw, sh = STUDENT_BOX
    tx, _, tw, _ = TEST_BOX
    # the threshold halo around the 3 px frame puts the box on its outer edge
    assert boxes.student.x == pytest.approx(sx - 2, abs=2)
    assert boxes.student.y == pytest.approx(sy - band.y - 2, abs=3)
    assert boxes.student.w == pytest.approx(sw + 5, abs=3)
    assert boxes.student.h == pytest.approx(sh + 5, abs=4)
    assert boxes.test.x == pytest.approx(tx - 2, abs=2)
    assert boxes.test.w == pytest.approx(tw + 5, abs=3)


def test_missing_frames_fall_back_to_template():
    locator = RegionLocator.default()
    boxes = locator.locate_identity_boxes(np.zeros((336, 1000), dtype=np.uint8))
    assert boxes.tier == "template"
    assert boxes.student.x == 0
    assert boxes.test.x > boxes.student.x


def test_inner_box_strips_border():
    inner = RegionLocator.default().inner_box(Rect(10, 20, 100, 200))
    assert inner == Rect(13, 32, 94, 185)


# ------------------------------------------------------------------------------
# Identity decoding
# ------------------------------------------------------------------------------

def test_identity_decoder_reads_both_ids():
    diag = RecordingDiagnostics()
    result = IdentityDecoder(diagnostics=diag).decode(_canonical_page(student_id="2024001357", test_id="0042"))
    assert result.student_id == "2024001357"
    assert result.test_id == "0042"
    assert result.tier == "line_mask"
    assert result.student.confidence == 1.0
    assert "identity_student" in diag.snapshots
    assert diag.last("identity")["student"] == "2024001357"


def test_identity_on_blank_page_is_unresolved():
    result = IdentityDecoder().decode(blank_page(CANON_W, CANON_H))
    assert result.student_id == "?" * 10
    assert result.test_id == "?" * 4


def _ring_columns(digits, width=1000, height=280, x0=50, pitch_x=28, y0=40, pitch_y=22):
    mask = np.zeros((height, width), dtype=np.uint8)
    for col, d in enumerate(digits):
        cx = x0 + col * pitch_x
        for row in range(10):
            cv2.circle(mask, (cx, y0 + row * pitch_y), 8, 255, 2)
        cv2.circle(mask, (cx, y0 + digit_row(d) * pitch_y), 8, 255, -1)
    return mask


def test_column_pass_reads_rings_and_fills():
    mask = _ring_columns("2024001357" + "0042")
    decoder = IdentityDecoder()
    columns = decoder.find_digit_columns(mask)
    assert len(columns) == 14
    student, test = decoder.decode_by_columns(mask)
    assert student.text == "2024001357"
    assert test.text == "0042"


def test_column_pass_without_columns_is_unresolved():
    student, test = IdentityDecoder().decode_by_columns(np.zeros((280, 1000), dtype=np.uint8))
    assert student.text == "?" * 10
    assert test.text == "?" * 4
