import numpy as np
import pytest

from fiducial_omr.pipeline_core import SheetPipeline, process_image
from fiducial_omr.pipeline_defaults import apply_overrides
from fiducial_omr.results import MULTIPLE
from fiducial_omr.tools.diagnostics import RecordingDiagnostics

from synthetic import SAMPLE_ANSWERS, render_sheet

EXPECTED_ANSWERS = tuple(MULTIPLE if len(a) > 1 else a for a in SAMPLE_ANSWERS)


def _without_timing(result):
    d = result.to_dict()
    d.pop("duration_ms")
    return d


def test_reads_complete_sheet(sample_sheet):
    result = process_image(sample_sheet)
    assert result.success, result.error
    assert result.error is None
    assert result.l_markers_found == 4
    assert result.rect_markers_found == 4
    assert result.page_corrected
    assert result.answer_tier == "fiducial"
    assert result.identity_tier == "line_mask"
    assert result.student_id == "2024001357"
    assert result.test_id == "0042"
    assert result.answers == EXPECTED_ANSWERS
    assert len(result.confidences) == 60
    assert result.answer_rows_found == 60
    assert result.duration_ms > 0


def test_three_l_markers_keep_original_page():
    img = render_sheet(answers=SAMPLE_ANSWERS, l_markers=("tl", "tr", "bl"))
    result = process_image(img)
    assert result.success, result.error
    assert result.l_markers_found == 3
    assert not result.page_corrected
    assert result.rect_markers_found == 4
    assert result.answers == EXPECTED_ANSWERS


def test_missing_rect_markers_do_not_fail_the_sheet():
    result = process_image(render_sheet(rect_markers=False))
    assert result.success, result.error
    assert result.rect_markers_found == 0
    assert result.answer_tier != "fiducial"
    assert len(result.answers) == 60


@pytest.mark.parametrize("image", [None, np.zeros((0, 0, 3), dtype=np.uint8)])
def test_invalid_images_give_failure_results(image):
    result = process_image(image)
    assert not result.success
    assert result.error
    assert result.answers == ()
    assert result.student_id == ""


def test_deadline_is_reported_as_failure(sample_sheet):
    config = apply_overrides(deadline_seconds=0.0)
    result = SheetPipeline(config).process(sample_sheet)
    assert not result.success
    assert "Deadline" in result.error


def test_unexpected_errors_are_contained(sample_sheet, monkeypatch):
    pipeline = SheetPipeline()

    def boom(block):
        raise RuntimeError("decoder exploded")

    monkeypatch.setattr(pipeline.answers, "decode", boom)
    result = pipeline.process(sample_sheet)
    assert not result.success
    assert "decoder exploded" in result.error


def test_pipeline_is_deterministic(sample_sheet):
    pipeline = SheetPipeline()
    first = pipeline.process(sample_sheet)
    second = pipeline.process(sample_sheet.copy())
    assert _without_timing(first) == _without_timing(second)


def test_diagnostics_receive_events_and_snapshots(sample_sheet):
    diag = RecordingDiagnostics()
    SheetPipeline(diagnostics=diag).process(sample_sheet)
    names = diag.names()
    for expected in ("l_markers", "rect_markers", "answer_block", "identity", "answers"):
        assert expected in names
    assert diag.last("l_markers")["found"] == 4
    assert diag.snapshots["page"].shape[:2] == (1400, 1000)
    assert diag.snapshots["answer_block"].shape[:2] == (760, 960)
