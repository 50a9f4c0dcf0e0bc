"""Audible alert sequence: siren cue, spoken warning and neutralizing cue."""

from __future__ import annotations

import shutil
import subprocess
import threading
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from loguru import logger
from scipy.io import wavfile
from scipy.signal import resample_poly

from .synth import AudioMixer, ClipPlayer

DEFAULT_WARNING = (
    "Warning. Hostile frequency activity detected. Countermeasures engaged."
)
SPEECH_COMMANDS: Tuple[str, ...] = ("espeak-ng", "espeak", "say", "spd-say")


class CountermeasureErrorKind(str, Enum):
    ASSET_UNAVAILABLE = "asset_unavailable"
    SYNTHESIS_UNSUPPORTED = "synthesis_unsupported"


class CountermeasureError(Exception):
    """Raised when one stage of the countermeasure cannot produce audio."""

    def __init__(self, kind: CountermeasureErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind


_clip_cache: Dict[Tuple[str, int], np.ndarray] = {}
_cache_lock = threading.Lock()


def load_clip(path: Path, sample_rate: int) -> np.ndarray:
    """Load a WAV asset as mono float32 at ``sample_rate``."""
    key = (str(path), sample_rate)
    with _cache_lock:
        if key in _clip_cache:
            return _clip_cache[key]
    try:
        source_rate, data = wavfile.read(str(path))
    except (OSError, ValueError) as exc:
        raise CountermeasureError(
            CountermeasureErrorKind.ASSET_UNAVAILABLE, f"Cannot load audio asset {path}: {exc}"
        ) from exc

    if np.issubdtype(data.dtype, np.integer):
        data = data.astype(np.float32) / float(np.iinfo(data.dtype).max)
    data = data.astype(np.float32, copy=False)
    if data.ndim > 1:
        data = np.mean(data, axis=1)
    if source_rate != sample_rate:
        data = resample_poly(data, sample_rate, source_rate).astype(np.float32)
    with _cache_lock:
        _clip_cache[key] = data
    return data


class SpeechSynthesizer:
    """Speaks text through the first available command-line TTS engine."""

    def __init__(self, commands: Sequence[str] = SPEECH_COMMANDS) -> None:
        self.commands = tuple(commands)
        self._proc: Optional[subprocess.Popen] = None
        self._lock = threading.Lock()

    def executable(self) -> Optional[str]:
        for name in self.commands:
            path = shutil.which(name)
            if path:
                return path
        return None

    def speak(self, text: str) -> None:
        executable = self.executable()
        if executable is None:
            raise CountermeasureError(
                CountermeasureErrorKind.SYNTHESIS_UNSUPPORTED,
                f"No speech engine found (tried {', '.join(self.commands)})",
            )
        with self._lock:
            self._terminate()
            try:
                self._proc = subprocess.Popen(
                    [executable, text],
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL,
                )
            except OSError as exc:
                raise CountermeasureError(
                    CountermeasureErrorKind.SYNTHESIS_UNSUPPORTED, f"Speech engine failed: {exc}"
                ) from exc

    def cancel(self) -> None:
        with self._lock:
            self._terminate()

    def _terminate(self) -> None:
        proc, self._proc = self._proc, None
        if proc is None or proc.poll() is not None:
            return
        proc.terminate()
        try:
            proc.wait(timeout=1.0)
        except subprocess.TimeoutExpired:
            proc.kill()


class AlertSequence:
    """Siren, then spoken warning and neutralizing cue once the siren ends.

    Every stage is best-effort: a missing asset or speech engine is logged
    and the remaining stages still run.
    """

    def __init__(
        self,
        mixer: AudioMixer,
        speech: SpeechSynthesizer,
        siren_path: Optional[Path],
        neutralize_path: Optional[Path],
        message: str = DEFAULT_WARNING,
    ) -> None:
        self.mixer = mixer
        self.speech = speech
        self.siren_path = siren_path
        self.neutralize_path = neutralize_path
        self.message = message
        self._players: List[ClipPlayer] = []
        self._volume = 1.0
        self._cancelled = False
        # start/cancel run on the engine thread, _after_siren on the audio callback.
        self._lock = threading.RLock()

    @property
    def players(self) -> Tuple[ClipPlayer, ...]:
        with self._lock:
            return tuple(self._players)

    def start(self, volume: float) -> None:
        with self._lock:
            self._cancelled = False
            self._volume = volume
            try:
                self._play(self.siren_path, on_end=self._after_siren)
            except CountermeasureError as exc:
                logger.warning("Alert siren unavailable: {}", exc)
                self._after_siren()

    def cancel(self) -> None:
        with self._lock:
            self._cancelled = True
            players, self._players = self._players, []
            for player in players:
                player.stop()
                try:
                    self.mixer.remove(player)
                except Exception as exc:
                    logger.warning("Failed to disconnect alert player: {}", exc)
            try:
                self.speech.cancel()
            except Exception as exc:
                logger.warning("Failed to cancel speech: {}", exc)

    def _after_siren(self) -> None:
        with self._lock:
            if self._cancelled:
                return
            try:
                self.speech.speak(self.message)
            except CountermeasureError as exc:
                logger.warning("Spoken warning unavailable: {}", exc)
            try:
                self._play(self.neutralize_path)
            except CountermeasureError as exc:
                logger.warning("Neutralizing cue unavailable: {}", exc)

    def _play(self, path: Optional[Path], on_end=None) -> None:
        if self._cancelled:
            return
        if path is None:
            raise CountermeasureError(CountermeasureErrorKind.ASSET_UNAVAILABLE, "No asset configured")
        samples = load_clip(path, self.mixer.sample_rate)
        player = ClipPlayer(samples, gain=self._volume, on_end=on_end)
        self._players.append(player)
        self.mixer.add(player)
