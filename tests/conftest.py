import cv2
import pytest

from synthetic import SAMPLE_ANSWERS, render_sheet


@pytest.fixture(scope="session")
def sample_sheet():
    return render_sheet(student_id="2024001357", test_id="0042", answers=SAMPLE_ANSWERS)


@pytest.fixture
def sheet_png(tmp_path, sample_sheet):
    path = tmp_path / "sheet_001.png"
    assert cv2.imwrite(str(path), sample_sheet)
    return path
