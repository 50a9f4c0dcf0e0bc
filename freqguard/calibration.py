"""Ambient calibration of detection thresholds."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Sequence

import numpy as np
from loguru import logger

from .classifier import SOUND_CANNON_BAND, Band, bin_range
from .spectrum import CaptureError, DeviceId, SpectrumSnapshot, SpectrumSource

CALIBRATION_SAMPLES = 10
CALIBRATION_INTERVAL = 0.5
BAND_A_FLOOR = 150.0
BAND_B_FLOOR = 130.0
BAND_A_FACTOR = 1.5
BAND_B_FACTOR = 1.3


class CalibrationErrorKind(str, Enum):
    DEVICE_BUSY = "device_busy"
    CAPTURE_FAILED = "capture_failed"
    CANCELLED = "cancelled"


class CalibrationError(Exception):
    def __init__(self, kind: CalibrationErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind


@dataclass(frozen=True)
class CalibrationResult:
    band_a_threshold: float
    band_b_threshold: float
    ambient_mean: float


ProgressCallback = Callable[[float], None]


def derive_thresholds(
    snapshots: Sequence[SpectrumSnapshot],
    band: Band = SOUND_CANNON_BAND,
) -> CalibrationResult:
    """Average the snapshots per bin and scale the band's mean into thresholds."""
    if not snapshots:
        raise ValueError("At least one snapshot is required")
    averaged = np.mean(np.stack([s.bins.astype(np.float64) for s in snapshots]), axis=0)
    start, end = bin_range(band, snapshots[0])
    mean = float(np.mean(averaged[start:end])) if end > start else 0.0
    return CalibrationResult(
        band_a_threshold=min(255.0, max(BAND_A_FLOOR, mean * BAND_A_FACTOR)),
        band_b_threshold=min(255.0, max(BAND_B_FLOOR, mean * BAND_B_FACTOR)),
        ambient_mean=mean,
    )


class Calibrator:
    """Samples ambient spectra on a dedicated capture pipeline.

    The caller must release the device first; the calibrator opens and
    closes its own source. Instances are single-use: a cancel issued before
    ``calibrate`` runs still aborts it.
    """

    def __init__(
        self,
        source_factory: Callable[[], SpectrumSource],
        samples: int = CALIBRATION_SAMPLES,
        interval: float = CALIBRATION_INTERVAL,
    ) -> None:
        self.source_factory = source_factory
        self.samples = samples
        self.interval = interval
        self._cancel = threading.Event()

    def cancel(self) -> None:
        """Finish the pending sample tick, then abort."""
        self._cancel.set()

    def calibrate(
        self,
        device_id: DeviceId = None,
        progress: Optional[ProgressCallback] = None,
    ) -> CalibrationResult:
        source = self.source_factory()
        try:
            source.start(device_id)
        except CaptureError as exc:
            raise CalibrationError(
                CalibrationErrorKind.CAPTURE_FAILED, f"Calibration capture failed: {exc}"
            ) from exc

        logger.info("Calibration started ({} samples every {}s)", self.samples, self.interval)
        collected = []
        try:
            for index in range(1, self.samples + 1):
                self._cancel.wait(self.interval)
                try:
                    snapshot = source.pull()
                except CaptureError as exc:
                    raise CalibrationError(
                        CalibrationErrorKind.CAPTURE_FAILED, f"Capture failed during calibration: {exc}"
                    ) from exc
                if snapshot is not None:
                    collected.append(snapshot)
                if progress is not None:
                    progress(index / self.samples * 100.0)
                if self._cancel.is_set():
                    raise CalibrationError(CalibrationErrorKind.CANCELLED, "Calibration cancelled")
        finally:
            source.stop()

        if not collected:
            raise CalibrationError(CalibrationErrorKind.CAPTURE_FAILED, "No spectrum data captured")
        result = derive_thresholds(collected)
        logger.info(
            "Calibration complete: ambient={:.1f} band_a={:.1f} band_b={:.1f}",
            result.ambient_mean,
            result.band_a_threshold,
            result.band_b_threshold,
        )
        return result
