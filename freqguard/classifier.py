"""Threshold classification of spectrum snapshots into the two threat bands."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from .settings import DetectionSettings
from .spectrum import SpectrumSnapshot


@dataclass(frozen=True)
class Band:
    name: str
    label: str
    low_hz: float
    high_hz: Optional[float]  # None runs to Nyquist
    trigger_ratio: float


SOUND_CANNON_BAND = Band("sound_cannon", "Sound cannon", 2000.0, 10000.0, 0.3)
# Heuristic second classifier over the audio bins above band A; not an RF sensor.
V2K_BAND = Band("v2k", "V2K", 10000.0, None, 0.2)


@dataclass(frozen=True)
class ClassificationResult:
    detected: bool = False
    intensity_percent: float = 0.0
    peak_hz: float = 0.0


@dataclass(frozen=True)
class Classification:
    band_a: ClassificationResult
    band_b: ClassificationResult

    @property
    def any_detected(self) -> bool:
        return self.band_a.detected or self.band_b.detected


def bin_range(band: Band, snapshot: SpectrumSnapshot) -> Tuple[int, int]:
    """Return the ``[start, end)`` bin indices covering ``band``, clamped to the snapshot."""
    bin_size = snapshot.sample_rate / snapshot.fft_size
    high_hz = band.high_hz if band.high_hz is not None else snapshot.sample_rate / 2
    start = int(math.floor(band.low_hz / bin_size))
    end = min(int(math.floor(high_hz / bin_size)), snapshot.bin_count)
    return min(start, end), end


def classify_band(
    snapshot: SpectrumSnapshot,
    band: Band,
    threshold: float,
) -> ClassificationResult:
    start, end = bin_range(band, snapshot)
    if end <= start:
        return ClassificationResult()
    window = snapshot.bins[start:end]
    above = int(np.count_nonzero(window > threshold))
    ratio = above / (end - start)
    peak_hz = snapshot.bin_hz(start + int(np.argmax(window)))
    return ClassificationResult(
        detected=ratio > band.trigger_ratio,
        intensity_percent=ratio * 100.0,
        peak_hz=peak_hz,
    )


def classify(snapshot: SpectrumSnapshot, settings: DetectionSettings) -> Classification:
    return Classification(
        band_a=classify_band(
            snapshot,
            SOUND_CANNON_BAND,
            settings.effective_threshold(settings.band_a_threshold),
        ),
        band_b=classify_band(
            snapshot,
            V2K_BAND,
            settings.effective_threshold(settings.band_b_threshold),
        ),
    )
