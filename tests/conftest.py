from __future__ import annotations

from typing import List, Optional

import numpy as np
import pytest

from freqguard.alerts import AlertSequence, CountermeasureError, CountermeasureErrorKind
from freqguard.classifier import SOUND_CANNON_BAND, V2K_BAND, bin_range
from freqguard.countermeasure import CountermeasureController
from freqguard.settings import PreferencesStore
from freqguard.spectrum import CaptureError, SpectrumSnapshot
from freqguard.synth import AudioMixer

SAMPLE_RATE = 48000.0
BIN_COUNT = 4096


def make_snapshot(
    band_a_fraction: float = 0.0,
    band_b_fraction: float = 0.0,
    amplitude: int = 220,
    floor: int = 0,
    sample_rate: float = SAMPLE_RATE,
    bin_count: int = BIN_COUNT,
    timestamp: float = 1_700_000_000.0,
) -> SpectrumSnapshot:
    """Snapshot with the leading fraction of each band's bins raised to ``amplitude``."""
    bins = np.full(bin_count, floor, dtype=np.uint8)
    probe = SpectrumSnapshot(bins, sample_rate)
    for band, fraction in ((SOUND_CANNON_BAND, band_a_fraction), (V2K_BAND, band_b_fraction)):
        start, end = bin_range(band, probe)
        count = int(round((end - start) * fraction))
        bins[start : start + count] = amplitude
    return SpectrumSnapshot(bins, sample_rate, timestamp)


class FakeSource:
    """Stands in for SpectrumSource with scripted snapshots."""

    def __init__(
        self,
        snapshots: Optional[List[SpectrumSnapshot]] = None,
        start_error: Optional[CaptureError] = None,
        pull_error: Optional[CaptureError] = None,
        default: Optional[SpectrumSnapshot] = None,
    ) -> None:
        self.snapshots = list(snapshots or [])
        self.start_error = start_error
        self.pull_error = pull_error
        self.default = default
        self.device_id = None
        self.started = False
        self.stopped = False
        self.gain = None
        self.pulls = 0

    def start(self, device_id=None):
        if self.start_error is not None:
            raise self.start_error
        self.device_id = device_id
        self.started = True
        return device_id

    def pull(self):
        self.pulls += 1
        if self.pull_error is not None:
            raise self.pull_error
        if self.snapshots:
            return self.snapshots.pop(0)
        return self.default

    def stop(self):
        self.stopped = True

    def clock(self) -> float:
        return 0.0

    def insert_gain(self, schedule):
        self.gain = schedule

    def remove_gain(self):
        self.gain = None


class FakeSpeech:
    def __init__(self, supported: bool = True) -> None:
        self.supported = supported
        self.spoken: List[str] = []
        self.cancelled = 0

    def speak(self, text: str) -> None:
        if not self.supported:
            raise CountermeasureError(CountermeasureErrorKind.SYNTHESIS_UNSUPPORTED, "no tts")
        self.spoken.append(text)

    def cancel(self) -> None:
        self.cancelled += 1


class SourceFactory:
    """Hands out FakeSources and remembers them."""

    def __init__(self, **kwargs) -> None:
        self.kwargs = kwargs
        self.created: List[FakeSource] = []

    def __call__(self) -> FakeSource:
        source = FakeSource(**self.kwargs)
        self.created.append(source)
        return source


@pytest.fixture
def mixer() -> AudioMixer:
    return AudioMixer(sample_rate=8000, blocksize=256)


@pytest.fixture
def speech() -> FakeSpeech:
    return FakeSpeech()


@pytest.fixture
def controller(mixer, speech, tmp_path) -> CountermeasureController:
    alerts = AlertSequence(
        mixer,
        speech,
        siren_path=tmp_path / "missing-siren.wav",
        neutralize_path=tmp_path / "missing-neutralize.wav",
    )
    return CountermeasureController(mixer, alerts)


@pytest.fixture
def preferences(tmp_path) -> PreferencesStore:
    return PreferencesStore(tmp_path / "prefs.yaml")
