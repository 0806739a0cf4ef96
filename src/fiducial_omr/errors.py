# src/fiducial_omr/errors.py
from __future__ import annotations


class OMRError(Exception):
    """Base class for every error raised by fiducial_omr."""


class InvalidImageError(OMRError, ValueError):
    """The input raster is missing, unreadable or has zero area."""


class DeadlineExceeded(OMRError):
    """Processing a single document took longer than the configured deadline."""


class ConfigError(OMRError, ValueError):
    """A configuration file does not describe a valid PipelineConfig."""
