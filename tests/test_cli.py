import csv

import yaml
from typer.testing import CliRunner

from fiducial_omr.cli import app

runner = CliRunner()


def test_config_prints_defaults_as_yaml():
    result = runner.invoke(app, ["config"])
    assert result.exit_code == 0, result.output
    data = yaml.safe_load(result.output)
    assert data["answers"]["fill_threshold"] == 0.40
    assert data["identity"]["test"]["columns"] == 4


def test_config_writes_file(tmp_path):
    out = tmp_path / "cfg.yaml"
    result = runner.invoke(app, ["config", "--out", str(out)])
    assert result.exit_code == 0, result.output
    assert yaml.safe_load(out.read_text(encoding="utf-8"))["canonical_size"] == [1000, 1400]


def test_bad_config_exits_with_code_2(tmp_path):
    bad = tmp_path / "bad.yaml"
    bad.write_text("answers:\n  nope: 1\n", encoding="utf-8")
    result = runner.invoke(app, ["config", "--config", str(bad)])
    assert result.exit_code == 2


def test_scan_writes_csv(tmp_path, sheet_png):
    out_csv = tmp_path / "results.csv"
    result = runner.invoke(app, ["scan", str(sheet_png), "--out-csv", str(out_csv)])
    assert result.exit_code == 0, result.output
    assert "Wrote" in result.output
    with open(out_csv, newline="", encoding="utf-8") as f:
        rows = list(csv.DictReader(f))
    assert len(rows) == 1
    assert rows[0]["StudentID"] == "2024001357"
    assert rows[0]["success"] == "1"


def test_inspect_prints_ids(sheet_png):
    result = runner.invoke(app, ["inspect", str(sheet_png)])
    assert result.exit_code == 0, result.output
    assert "2024001357" in result.output
    assert "MULTIPLE" in result.output


def test_inspect_scores_against_key(sheet_png, tmp_path):
    key = tmp_path / "key.txt"
    key.write_text("A B C D\nA B\n")
    result = runner.invoke(app, ["inspect", str(sheet_png), "--key-txt", str(key)])
    assert result.exit_code == 0, result.output
    assert "ABCDAB" in result.output
    assert "4/6" in result.output


def test_inspect_missing_file_exits_with_code_2(tmp_path):
    result = runner.invoke(app, ["inspect", str(tmp_path / "missing.png")])
    assert result.exit_code == 2
