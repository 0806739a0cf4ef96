# src/fiducial_omr/tools/diagnostics.py
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

import numpy as np


class Diagnostics:
    """
    Observability hook handed to every stage.

    event():    structured narration (tier chosen, marker counts, ...)
    snapshot(): intermediate images; ignored here, written by subclasses.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger("fiducial_omr.diagnostics")

    @property
    def wants_images(self) -> bool:
        return False

    def event(self, name: str, **fields: Any) -> None:
        if self.logger.isEnabledFor(logging.DEBUG):
            details = " ".join(f"{k}={v}" for k, v in fields.items())
            self.logger.debug("%s %s", name, details)

    def snapshot(self, name: str, image: np.ndarray) -> None:
        return None


class RecordingDiagnostics(Diagnostics):
    """Keeps everything in memory; used by tests and notebooks."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        super().__init__(logger)
        self.events: List[Tuple[str, Dict[str, Any]]] = []
        self.snapshots: Dict[str, np.ndarray] = {}

    @property
    def wants_images(self) -> bool:
        return True

    def event(self, name: str, **fields: Any) -> None:
        super().event(name, **fields)
        self.events.append((name, fields))

    def snapshot(self, name: str, image: np.ndarray) -> None:
        self.snapshots[name] = image.copy()

    def names(self) -> List[str]:
        return [name for name, _ in self.events]

    def last(self, name: str) -> Dict[str, Any]:
        for ev_name, fields in reversed(self.events):
            if ev_name == name:
                return fields
        raise KeyError(name)
