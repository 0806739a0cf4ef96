# src/fiducial_omr/results.py
from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional, Tuple

from .tools.geometry import Rect

UNRESOLVED = "?"          # rendered in place of an undecided grid column
MULTIPLE = "MULTIPLE"     # more than one bubble filled for a question
BLANK = ""


@dataclass(frozen=True)
class GridGeometry:
    """Where a GridDecoder placed the grid inside its sub-image."""
    origin_x: float
    pitch: float
    slot_height: float
    columns: int
    row_slots: int
    first_row_slot: int

    def column_center(self, col: int) -> float:
        return self.origin_x + (col + 0.5) * self.pitch

    def slot_center(self, slot: int) -> float:
        return (slot + 0.5) * self.slot_height

    def cell_rect(self, col: int, slot: int) -> Rect:
        return Rect(int(round(self.origin_x + col * self.pitch)),
                    int(round(slot * self.slot_height)),
                    max(1, int(round(self.pitch))),
                    max(1, int(round(self.slot_height))))


@dataclass(frozen=True)
class DecodeResult:
    symbols: Tuple[Optional[str], ...]
    rows: Tuple[Optional[int], ...] = ()
    geometry: Optional[GridGeometry] = None

    @property
    def resolved(self) -> int:
        return sum(1 for s in self.symbols if s is not None)

    @property
    def unresolved(self) -> int:
        return len(self.symbols) - self.resolved

    @property
    def confidence(self) -> float:
        return self.resolved / len(self.symbols) if self.symbols else 0.0

    @property
    def text(self) -> str:
        return "".join(UNRESOLVED if s is None else s for s in self.symbols)

    @classmethod
    def empty(cls, columns: int) -> "DecodeResult":
        return cls(symbols=(None,) * columns, rows=(None,) * columns)


@dataclass(frozen=True)
class IdentityResult:
    student: DecodeResult
    test: DecodeResult
    tier: str = ""

    @property
    def student_id(self) -> str:
        return self.student.text

    @property
    def test_id(self) -> str:
        return self.test.text


@dataclass(frozen=True)
class AnswerResult:
    answers: Tuple[str, ...]
    confidences: Tuple[float, ...]
    rows_found: int = 0


@dataclass(frozen=True)
class ProcessResult:
    student_id: str = ""
    test_id: str = ""
    answers: Tuple[str, ...] = ()
    confidences: Tuple[float, ...] = ()
    l_markers_found: int = 0
    rect_markers_found: int = 0
    duration_ms: float = 0.0
    success: bool = False
    error: Optional[str] = None

    student_confidence: float = 0.0
    test_confidence: float = 0.0
    page_corrected: bool = False
    answer_tier: str = ""
    identity_tier: str = ""
    answer_rows_found: int = 0

    @classmethod
    def failure(cls, message: str, duration_ms: float = 0.0) -> "ProcessResult":
        return cls(success=False, error=message, duration_ms=duration_ms)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["answers"] = list(self.answers)
        d["confidences"] = list(self.confidences)
        return d
