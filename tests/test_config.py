import json

import pytest

from fiducial_omr.config_io import config_from_dict, dump_config, load_config, load_config_any
from fiducial_omr.errors import ConfigError
from fiducial_omr.pipeline_defaults import DEFAULTS, GridSpec, apply_overrides


def test_apply_overrides_replaces_sections_without_touching_defaults():
    cfg = apply_overrides(answers={"fill_threshold": 0.5}, deadline_seconds=2.0)
    assert cfg.answers.fill_threshold == 0.5
    assert cfg.answers.margin == DEFAULTS.answers.margin
    assert cfg.deadline_seconds == 2.0
    assert DEFAULTS.answers.fill_threshold == 0.40
    assert DEFAULTS.deadline_seconds is None


def test_apply_overrides_chains_from_a_config():
    first = apply_overrides(answers={"fill_threshold": 0.5})
    second = apply_overrides(first, regions={"block_margin": 20})
    assert second.answers.fill_threshold == 0.5
    assert second.regions.block_margin == 20


def test_apply_overrides_descends_into_nested_sections():
    cfg = apply_overrides(identity={"student": {"columns": 8}, "weak_confidence": 0.3})
    assert isinstance(cfg.identity.student, GridSpec)
    assert cfg.identity.student.columns == 8
    assert cfg.identity.student.symbols == DEFAULTS.identity.student.symbols
    assert cfg.identity.test.columns == 4
    assert cfg.identity.weak_confidence == 0.3
    assert DEFAULTS.identity.student.columns == 10


def test_yaml_config_overrides_nested_values(tmp_path):
    p = tmp_path / "cfg.yaml"
    p.write_text(
        "answers:\n"
        "  fill_threshold: 0.45\n"
        "regions:\n"
        "  identity_band: [0.18, 0.46]\n"
        "identity:\n"
        "  test:\n"
        "    columns: 5\n",
        encoding="utf-8",
    )
    cfg = load_config(p)
    assert cfg.answers.fill_threshold == 0.45
    assert cfg.regions.identity_band == (0.18, 0.46)
    assert cfg.identity.test.columns == 5
    assert cfg.identity.student == DEFAULTS.identity.student
    assert cfg.markers == DEFAULTS.markers


def test_json_config(tmp_path):
    p = tmp_path / "cfg.json"
    p.write_text(json.dumps({"canonical_size": [800, 1120]}), encoding="utf-8")
    assert load_config(p).canonical_size == (800, 1120)


def test_empty_file_gives_defaults(tmp_path):
    p = tmp_path / "empty.yml"
    p.write_text("", encoding="utf-8")
    assert load_config(p) == DEFAULTS


def test_unknown_keys_are_rejected():
    with pytest.raises(ConfigError, match="fill_treshold"):
        config_from_dict({"answers": {"fill_treshold": 0.5}})
    with pytest.raises(ConfigError):
        config_from_dict({"nonsense": 1})


def test_section_must_be_a_mapping():
    with pytest.raises(ConfigError):
        config_from_dict({"answers": [1, 2]})


def test_root_must_be_a_mapping(tmp_path):
    p = tmp_path / "list.yaml"
    p.write_text("- 1\n- 2\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config_any(p)


def test_dump_then_load_gives_the_same_config(tmp_path):
    cfg = apply_overrides(answers={"fill_threshold": 0.42}, deadline_seconds=1.5)
    p = tmp_path / "round.json"
    p.write_text(json.dumps(dump_config(cfg)), encoding="utf-8")
    assert load_config(p) == cfg


def test_config_errors_are_value_errors():
    assert issubclass(ConfigError, ValueError)
