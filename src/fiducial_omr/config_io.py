# src/fiducial_omr/config_io.py
from __future__ import annotations
from dataclasses import fields, is_dataclass, asdict
from pathlib import Path
from typing import Any, Dict, Type, TypeVar
import json

import yaml

from .errors import ConfigError
from .pipeline_defaults import (
    AnswerSettings,
    GridSpec,
    IdentitySettings,
    MarkerSettings,
    PipelineConfig,
    PreprocessSettings,
    RegionSettings,
)

T = TypeVar("T")

# Nested dataclass type for every field that holds one.
_NESTED: Dict[str, type] = {
    "preprocess": PreprocessSettings,
    "markers": MarkerSettings,
    "regions": RegionSettings,
    "identity": IdentitySettings,
    "answers": AnswerSettings,
    "student": GridSpec,
    "test": GridSpec,
}


def load_config_any(path: str | Path) -> Dict[str, Any]:
    """
    Prefer YAML, but transparently accept JSON.
    - If extension is .yml/.yaml -> use YAML
    - If extension is .json -> use JSON
    - Otherwise: try YAML first, then JSON
    """
    p = Path(path)
    data = p.read_text(encoding="utf-8")
    ext = p.suffix.lower()

    if ext in {".yml", ".yaml"}:
        cfg = yaml.safe_load(data)
    elif ext == ".json":
        cfg = json.loads(data)
    else:
        # No/unknown extension: prefer YAML, then fallback to JSON
        try:
            cfg = yaml.safe_load(data)
        except yaml.YAMLError:
            cfg = json.loads(data)

    if cfg is None:
        cfg = {}
    if not isinstance(cfg, dict):
        raise ConfigError("Config root must be a mapping/object.")

    return cfg


def _build(cls: Type[T], data: Dict[str, Any], where: str) -> T:
    if not isinstance(data, dict):
        raise ConfigError(f"'{where}' must be a mapping, got {type(data).__name__}")
    known = {f.name: f for f in fields(cls)}
    unknown = sorted(set(data) - set(known))
    if unknown:
        raise ConfigError(f"Unknown key(s) in '{where}': {', '.join(unknown)}")

    kwargs: Dict[str, Any] = {}
    for name, value in data.items():
        if name in _NESTED and is_dataclass(_NESTED[name]):
            kwargs[name] = _build(_NESTED[name], value, f"{where}.{name}")
        elif isinstance(value, list):
            # YAML/JSON have no tuples; every sequence field is a tuple
            kwargs[name] = tuple(value)
        else:
            kwargs[name] = value
    try:
        return cls(**kwargs)
    except TypeError as e:
        raise ConfigError(f"Invalid '{where}': {e}") from e


def config_from_dict(data: Dict[str, Any]) -> PipelineConfig:
    """Build a PipelineConfig; keys left out keep their defaults."""
    return _build(PipelineConfig, data, "config")


def load_config(path: str | Path) -> PipelineConfig:
    return config_from_dict(load_config_any(path))


def dump_config(config: PipelineConfig) -> Dict[str, Any]:
    """Plain nested mapping (lists instead of tuples) suitable for YAML/JSON."""

    def _plain(value: Any) -> Any:
        if isinstance(value, dict):
            return {k: _plain(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [_plain(v) for v in value]
        return value

    return _plain(asdict(config))
