# src/fiducial_omr/grade_core.py
from __future__ import annotations
from enum import Enum
from typing import List, Optional, Sequence, Tuple
import csv
import logging
import os

from .pipeline_core import SheetPipeline
from .pipeline_defaults import PipelineConfig
from .results import MULTIPLE, ProcessResult
from .tools.image_io import expand_inputs, load_pages
from .visualize_core import DirectoryDiagnostics, annotate_result

logger = logging.getLogger(__name__)

VALID_CHOICES = "ABCD"


class AnswerStatus(str, Enum):
    VALID = "VALID"
    UNCERTAIN = "UNCERTAIN"
    MULTIPLE = "MULTIPLE"
    EMPTY = "EMPTY"


# ------------------------------------------------------------------------------
# Key handling & scoring
# ------------------------------------------------------------------------------

def parse_key(raw: str, limit: Optional[int] = None) -> List[str]:
    """Keep answer letters only (A-D, case-insensitive); everything else is layout."""
    key = [c.upper() for c in raw if c.upper() in VALID_CHOICES]
    return key[:limit] if limit else key


def load_key_txt(path: str, limit: Optional[int] = None) -> List[str]:
    with open(path, "r", encoding="utf-8") as f:
        return parse_key(f.read(), limit)


def score_against_key(selections: Sequence[Optional[str]], key: Sequence[str]) -> Tuple[int, int]:
    correct = 0
    total = min(len(selections), len(key))
    for i in range(total):
        if selections[i] and selections[i] == key[i]:
            correct += 1
    return correct, total


def answer_statuses(result: ProcessResult, uncertain_below: float = 0.7) -> List[AnswerStatus]:
    out: List[AnswerStatus] = []
    for ans, conf in zip(result.answers, result.confidences):
        if not ans:
            out.append(AnswerStatus.EMPTY)
        elif ans == MULTIPLE:
            out.append(AnswerStatus.MULTIPLE)
        elif conf < uncertain_below:
            out.append(AnswerStatus.UNCERTAIN)
        else:
            out.append(AnswerStatus.VALID)
    return out


def key_to_string(key: Sequence[Optional[str]], length: int) -> str:
    """Answer string with '_' where the key has no entry."""
    return "".join((key[i] if i < len(key) and key[i] else "_") for i in range(length))


# ------------------------------------------------------------------------------
# CSV export
# ------------------------------------------------------------------------------

def csv_header(questions: int, with_key: bool) -> List[str]:
    header = ["file", "success", "error", "StudentID", "TestID"] \
             + [f"Q{i+1}" for i in range(questions)]
    if with_key:
        header += ["score", "total"]
    header += ["l_markers", "rect_markers", "answer_tier", "duration_ms"]
    return header


def csv_row(label: str, result: ProcessResult, questions: int,
            key: Optional[Sequence[str]] = None) -> List[object]:
    answers = list(result.answers[:questions]) + [""] * max(0, questions - len(result.answers))
    row: List[object] = [label, int(result.success), result.error or "",
                         result.student_id, result.test_id] + answers
    if key is not None:
        if result.success:
            correct, total = score_against_key(answers, key)
            row += [correct, total]
        else:
            row += ["", ""]
    row += [result.l_markers_found, result.rect_markers_found, result.answer_tier,
            f"{result.duration_ms:.1f}"]
    return row


def grade_images(
    inputs: Sequence[str],
    out_csv: str,
    config: Optional[PipelineConfig] = None,
    key_txt: Optional[str] = None,
    debug_dir: Optional[str] = None,
    dpi: int = 300,
) -> Tuple[str, List[ProcessResult]]:
    """
    Process every page of every input and write one CSV row per page.

    Behavior:
      - If key is provided: limit output columns and scoring to the first len(key) questions.
      - If no key: output every question.
    Returns the CSV path and the per-page results.
    """
    pipeline = SheetPipeline(config)
    total_q = pipeline.config.answers.questions
    key: Optional[List[str]] = load_key_txt(key_txt, total_q) if key_txt else None
    q_out = len(key) if key else total_q

    sink = DirectoryDiagnostics(debug_dir) if debug_dir else None
    results: List[ProcessResult] = []

    out_dir = os.path.dirname(out_csv)
    if out_dir:
        os.makedirs(out_dir, exist_ok=True)
    with open(out_csv, "w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(csv_header(q_out, key is not None))
        for idx, (label, img) in enumerate(load_pages(expand_inputs(inputs), dpi=dpi), start=1):
            if sink is not None:
                page_sink = sink.with_prefix(f"page{idx:03d}")
                result = SheetPipeline(pipeline.config, page_sink).process(img)
                page_sink.snapshot("summary", annotate_result(img, result))
            else:
                result = pipeline.process(img)
            if not result.success:
                logger.warning("%s: %s", label, result.error)
            writer.writerow(csv_row(label, result, q_out, key))
            results.append(result)

    return out_csv, results
