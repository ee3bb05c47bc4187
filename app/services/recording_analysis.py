from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any

from app.services.simulation_store import SimulationStore

logger = logging.getLogger(__name__)


class RecordingAnalyzer(ABC):
    @abstractmethod
    def analyze(self, *, simulation_id: str, recording_key: str) -> Mapping[str, Any] | None:
        raise NotImplementedError


def dispatch_recording_analysis(
    *,
    analyzer: RecordingAnalyzer | None,
    store: SimulationStore,
    simulation_id: str,
    recording_key: str,
    log: logging.Logger | logging.LoggerAdapter = logger,
) -> None:
    """Runs after the upload response has been sent; failures are only logged."""
    if analyzer is None:
        log.info(
            "Recording analysis skipped simulation_id=%s key=%s reason=no_analyzer",
            simulation_id,
            recording_key,
        )
        return

    try:
        result = analyzer.analyze(simulation_id=simulation_id, recording_key=recording_key)
        if result is not None:
            store.update(simulation_id, {"body_analysis": dict(result)})
    except Exception:
        log.exception(
            "Recording analysis failed simulation_id=%s key=%s",
            simulation_id,
            recording_key,
        )
        return

    log.info(
        "Recording analysis finished simulation_id=%s key=%s stored=%s",
        simulation_id,
        recording_key,
        result is not None,
    )
