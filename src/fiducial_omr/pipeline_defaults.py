# src/fiducial_omr/pipeline_defaults.py
from __future__ import annotations

from dataclasses import dataclass, field, is_dataclass, replace
from typing import Optional, Tuple

# Single source of truth for every tunable constant in the pipeline.
# Pixel values refer to the canonical page (canonical_size) unless noted.


@dataclass(frozen=True)
class PreprocessSettings:
    blur_ksize: int = 5              # Gaussian kernel for the page pass
    block_size: int = 15             # adaptive threshold neighbourhood
    bias: float = 4.0                # constant subtracted from the local mean
    deskewed_block_size: int = 11    # second pass on the corrected page
    deskewed_bias: float = 2.0
    answer_blur_ksize: int = 3       # answer block uses blur + inverse Otsu
    identity_block_size: int = 15    # identity band: adaptive, no blur
    identity_bias: float = 5.0


@dataclass(frozen=True)
class MarkerSettings:
    approx_epsilon: float = 0.02     # polygon approximation, fraction of perimeter

    # L-shaped page markers
    l_min_area: float = 500.0
    l_max_area: float = 10000.0
    l_min_vertices: int = 5
    l_max_vertices: int = 8
    l_min_aspect: float = 0.5
    l_max_aspect: float = 2.0
    l_min_solidity: float = 0.30     # area / convex hull area
    l_max_solidity: float = 0.75
    l_exterior_ratio: float = 0.25   # centre must sit this close to two page edges

    # rectangular answer-block markers
    rect_min_area: float = 100.0
    rect_max_area: float = 3000.0
    rect_min_aspect: float = 0.75    # w / h: near-square or wider than tall
    rect_max_aspect: float = 2.0
    rect_min_y_ratio: float = 0.20   # below the header band


@dataclass(frozen=True)
class RegionSettings:
    # fiducial tier
    min_marker_spread_w: float = 400.0
    min_marker_spread_h: float = 300.0
    block_margin: int = 30
    block_min_width: int = 800       # narrower blocks are warped to block_floor_width
    block_floor_width: int = 900
    block_min_height: int = 600
    block_floor_height: int = 800

    # bordered-contour tier
    border_min_area_ratio: float = 0.20
    border_max_area_ratio: float = 0.70
    border_min_vertices: int = 4
    border_max_vertices: int = 8
    border_min_y_ratio: float = 0.20
    border_max_y_ratio: float = 0.50
    border_target_y_ratio: float = 0.35
    border_padding: int = 5

    # heuristic tier: (x, y, w, h) as fractions of the page
    heuristic_answer_box: Tuple[float, float, float, float] = (0.02, 0.315, 0.96, 0.635)

    # identity band, (top, bottom) as fractions of page height
    identity_band: Tuple[float, float] = (0.20, 0.44)

    # line-mask identity boxes
    box_h_kernel_ratio: float = 0.08     # horizontal opening length / band width
    box_v_kernel_ratio: float = 0.25     # vertical opening length / band height
    box_min_area_ratio: float = 0.02
    box_min_aspect: float = 0.6          # width >= box_min_aspect * height
    box_max_x_ratio: float = 0.6
    box_width_range: Tuple[float, float] = (0.05, 0.45)
    box_height_range: Tuple[float, float] = (0.25, 1.0)
    box_corner_window: int = 6
    box_min_corner_hits: int = 3

    # template identity boxes: (x, y, w, h) as fractions of the band
    template_student_box: Tuple[float, float, float, float] = (0.0, 0.0, 0.30, 1.0)
    template_test_box: Tuple[float, float, float, float] = (0.30, 0.0, 0.20, 1.0)

    # border stroke stripped from identity boxes: (top, side, bottom) px
    box_inner_margins: Tuple[int, int, int] = (12, 3, 3)


@dataclass(frozen=True)
class GridSpec:
    columns: int = 10
    symbols: str = "1234567890"      # one symbol per logical row, top to bottom
    row_slots: int = 12              # slot grid laid over the sub-image height
    first_row_slot: int = 1          # slots above this hold the printed header

    erosion_ksize: int = 2
    min_area: float = 15.0
    max_area: float = 600.0
    min_aspect: float = 0.5
    max_aspect: float = 2.0

    label_margin_ratio: float = 0.20  # left fraction reserved for row labels
    min_origin_area: float = 30.0

    max_col_offset: float = 0.7       # |dx| limit, in column pitches
    merge_area: float = 200.0         # larger blobs are probably merged marks
    merge_penalty: float = 0.6
    merge_area_hard: float = 250.0
    merge_penalty_hard: float = 0.3
    tie_margin: float = 0.10          # runner-up within this fraction => ambiguous

    density_floor: float = 0.10       # mean foreground fraction to count as a mark
    density_margin: float = 0.05      # relative lead over the runner-up
    density_strong: float = 0.35      # above this, any strict lead is enough

    @property
    def rows(self) -> int:
        return len(self.symbols)


@dataclass(frozen=True)
class IdentitySettings:
    student: GridSpec = field(default_factory=lambda: GridSpec(columns=10))
    test: GridSpec = field(default_factory=lambda: GridSpec(columns=4))
    weak_confidence: float = 0.5      # below this the column pass is tried

    # column-detection pass
    bubble_min_area: float = 20.0
    bubble_max_area: float = 800.0
    bubble_min_size: int = 5
    bubble_max_size: int = 40
    bubble_min_circularity: float = 0.4
    column_x_range: Tuple[float, float] = (0.03, 0.45)
    column_min_bubbles: int = 3
    center_fill_floor: float = 0.10
    center_fill_ratio: float = 2.0


@dataclass(frozen=True)
class AnswerSettings:
    questions: int = 60
    column_blocks: int = 4
    rows_per_block: int = 15
    choices: str = "ABCD"

    row_min_area: float = 3000.0
    row_max_area: float = 100000.0
    row_min_width: int = 150
    row_min_height: int = 20
    row_max_height: int = 100
    row_min_aspect: float = 2.0
    row_min_vertices: int = 4
    row_max_vertices: int = 8

    dedupe_dy: int = 10
    dedupe_dx: int = 50
    y_tolerance: int = 20

    label_split_ratios: Tuple[float, ...] = (0.08, 0.10, 0.12, 0.14)
    fill_threshold: float = 0.40      # window density counted as a filled bubble
    margin: float = 0.15              # relative lead for a single answer
    strong_fill: float = 0.55


@dataclass(frozen=True)
class PipelineConfig:
    canonical_size: Tuple[int, int] = (1000, 1400)   # (width, height)
    preprocess: PreprocessSettings = field(default_factory=PreprocessSettings)
    markers: MarkerSettings = field(default_factory=MarkerSettings)
    regions: RegionSettings = field(default_factory=RegionSettings)
    identity: IdentitySettings = field(default_factory=IdentitySettings)
    answers: AnswerSettings = field(default_factory=AnswerSettings)
    deadline_seconds: Optional[float] = None


DEFAULTS = PipelineConfig()


def apply_overrides(config: Optional[PipelineConfig] = None, **fields) -> PipelineConfig:
    """
    Produce an overridden immutable config without mutating DEFAULTS.

    Top-level fields are replaced as given; a section name may also be passed
    as a dict, e.g. apply_overrides(answers={"fill_threshold": 0.5}), nested
    sections too: apply_overrides(identity={"student": {"columns": 8}}).
    """
    base = DEFAULTS if config is None else config
    return _merged(base, fields)


def _merged(section, fields: dict):
    """replace() that descends into nested sections given as dicts."""
    changes = {}
    for name, value in fields.items():
        current = getattr(section, name)
        if isinstance(value, dict) and is_dataclass(current):
            changes[name] = _merged(current, value)
        else:
            changes[name] = value
    return replace(section, **changes)
