from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import List, Optional

import typer
import yaml
from rich import print as rprint
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .config_io import dump_config, load_config
from .errors import OMRError
from .grade_core import answer_statuses, grade_images, key_to_string, load_key_txt, score_against_key
from .pipeline_core import SheetPipeline
from .pipeline_defaults import DEFAULTS, PipelineConfig
from .tools.image_io import imread_any
from .visualize_core import DirectoryDiagnostics, annotate_result

app = typer.Typer(
    no_args_is_help=True,
    add_completion=False,
    help="fiducial-omr: read student id, test id and answers from photographed bubble sheets.",
)


def _load_config_or_exit(config: Optional[str]) -> PipelineConfig:
    if not config:
        return DEFAULTS
    try:
        return load_config(config)
    except (OSError, ValueError) as e:
        rprint(f"[red]Could not load config {config}:[/red] {e}")
        raise typer.Exit(code=2)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
):
    """
    Batch and single-sheet OMR processing.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
        force=True,
    )


# ------------------------------- SCAN --------------------------------
@app.command()
def scan(
    inputs: List[str] = typer.Argument(..., help="Sheet images, PDFs, or directories of them"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Config file (.yaml/.yml or .json), YAML recommended"),
    key_txt: Optional[str] = typer.Option(None, "--key-txt", "-k",
        help="Answer key file (A/B/C/D, any layout). If provided, only first len(key) questions are output and scored."),
    out_csv: str = typer.Option("results.csv", "--out-csv", "-o", help="Output CSV of per-sheet results"),
    debug_dir: Optional[str] = typer.Option(None, "--debug-dir", help="Directory to dump debug overlays"),
    dpi: int = typer.Option(300, "--dpi", help="Render DPI for PDF inputs"),
):
    """
    Process every sheet and write one CSV row per page.
    """
    cfg = _load_config_or_exit(config)
    try:
        out, results = grade_images(inputs, out_csv, config=cfg, key_txt=key_txt, debug_dir=debug_dir, dpi=dpi)
    except (OMRError, OSError) as e:
        rprint(f"[red]Scan failed:[/red] {e}")
        raise typer.Exit(code=2)

    failed = sum(1 for r in results if not r.success)
    rprint(f"[green]Wrote:[/green] {out}  ({len(results)} page(s), {failed} failed)")


# ------------------------------ INSPECT ------------------------------
@app.command()
def inspect(
    image: str = typer.Argument(..., help="One sheet image"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Config file (.yaml/.yml or .json)"),
    key_txt: Optional[str] = typer.Option(None, "--key-txt", "-k", help="Answer key file to score against"),
    debug_dir: Optional[str] = typer.Option(None, "--debug-dir", help="Directory to dump debug overlays"),
):
    """
    Process a single sheet and print what was read.
    """
    cfg = _load_config_or_exit(config)
    try:
        img = imread_any(image)
    except (OMRError, OSError) as e:
        rprint(f"[red]Could not read {image}:[/red] {e}")
        raise typer.Exit(code=2)

    sink = DirectoryDiagnostics(debug_dir) if debug_dir else None
    result = SheetPipeline(cfg, sink).process(img)
    if sink is not None:
        sink.snapshot("summary", annotate_result(img, result))

    if not result.success:
        rprint(f"[red]Processing failed:[/red] {result.error}")
        raise typer.Exit(code=1)

    console = Console()
    summary = Table(title=Path(image).name, show_header=False)
    summary.add_row("Student ID", f"{result.student_id}  ({result.student_confidence:.0%})")
    summary.add_row("Test ID", f"{result.test_id}  ({result.test_confidence:.0%})")
    summary.add_row("Markers", f"L {result.l_markers_found}/4, rect {result.rect_markers_found}/4")
    summary.add_row("Answer block", result.answer_tier)
    summary.add_row("Identity boxes", result.identity_tier)
    summary.add_row("Time", f"{result.duration_ms:.0f} ms")
    if key_txt:
        key = load_key_txt(key_txt, len(result.answers))
        correct, total = score_against_key(result.answers, key)
        summary.add_row("Key", key_to_string(key, total))
        summary.add_row("Score", f"{correct}/{total}")
    console.print(summary)

    answers = Table(title="Answers")
    answers.add_column("Q", justify="right")
    answers.add_column("Answer")
    answers.add_column("Confidence", justify="right")
    answers.add_column("Status")
    for i, (ans, conf, status) in enumerate(zip(result.answers, result.confidences, answer_statuses(result)), start=1):
        answers.add_row(str(i), ans or "-", f"{conf:.2f}", status.value)
    console.print(answers)


# ------------------------------ CONFIG -------------------------------
@app.command("config")
def config_cmd(
    out: Optional[str] = typer.Option(None, "--out", "-o", help="Write the YAML here instead of stdout"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Start from this config instead of the defaults"),
):
    """
    Print the effective configuration as YAML (a starting point for --config).
    """
    cfg = _load_config_or_exit(config)
    text = yaml.safe_dump(dump_config(cfg), sort_keys=False)
    if out:
        Path(out).write_text(text, encoding="utf-8")
        rprint(f"[green]Wrote:[/green] {out}")
    else:
        typer.echo(text)


# ------------------------------- MAIN --------------------------------
def app_main() -> None:
    """Entry point for console_scripts."""
    try:
        app()
    except KeyboardInterrupt:
        rprint("\n[red]Interrupted[/red]")
        sys.exit(130)


if __name__ == "__main__":
    app_main()
