"""Microphone capture and byte-scaled spectrum snapshots."""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Callable, Deque, List, Optional, Tuple, Union

import numpy as np
from loguru import logger
from scipy.signal import get_window

from .synth import ParamSchedule

if TYPE_CHECKING:
    import sounddevice as sd

DeviceId = Union[int, str, None]

DEFAULT_DEVICE_ID = "default"


class CaptureErrorKind(str, Enum):
    NO_DEVICE = "no_device"
    PERMISSION_DENIED = "permission_denied"
    HARDWARE_FAILURE = "hardware_failure"


class CaptureError(Exception):
    """Raised when the microphone pipeline cannot be opened or dies."""

    def __init__(self, kind: CaptureErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind


@dataclass(frozen=True)
class SpectrumSnapshot:
    """One frame of byte amplitudes, bin ``i`` centred on ``i * rate / fft_size``."""

    bins: np.ndarray
    sample_rate: float
    timestamp: float = 0.0

    def __post_init__(self) -> None:
        frozen = np.array(self.bins, dtype=np.uint8, copy=True)
        frozen.flags.writeable = False
        object.__setattr__(self, "bins", frozen)

    @property
    def bin_count(self) -> int:
        return int(self.bins.shape[0])

    @property
    def fft_size(self) -> int:
        return self.bin_count * 2

    def bin_hz(self, index: int) -> float:
        return index * self.sample_rate / (2 * self.bin_count)


@dataclass(frozen=True)
class InputDevice:
    id: Union[int, str]
    name: str
    default_samplerate: float = 0.0
    channels: int = 1


@dataclass(frozen=True)
class StreamInfo:
    device: Union[int, str]
    sample_rate: int
    exclusive: bool = False


@dataclass
class SpectrumConfig:
    """Analyser parameters for the capture pipeline."""

    sample_rate: int = 48000
    fft_size: int = 8192
    smoothing: float = 0.2
    min_decibels: float = -90.0
    max_decibels: float = -10.0
    channels: int = 1
    exclusive: bool = True

    def __post_init__(self) -> None:
        if self.fft_size < 4096 or self.fft_size & (self.fft_size - 1):
            raise ValueError("fft_size must be a power of two >= 4096")
        if not 0.0 <= self.smoothing <= 0.3:
            raise ValueError("smoothing must be within [0, 0.3]")
        if self.min_decibels >= self.max_decibels:
            raise ValueError("min_decibels must be below max_decibels")


def _portaudio():
    """Import sounddevice on first use; PortAudio is only needed once a device is touched."""
    try:
        import sounddevice
    except OSError as exc:
        raise CaptureError(CaptureErrorKind.HARDWARE_FAILURE, f"PortAudio unavailable: {exc}") from exc
    return sounddevice


def list_input_devices() -> List[InputDevice]:
    """Return input-capable devices, or a single default entry if enumeration fails."""
    try:
        sd = _portaudio()
        devices = sd.query_devices()
    except Exception as exc:
        logger.error("Error enumerating audio devices: {}", exc)
        return [InputDevice(DEFAULT_DEVICE_ID, "Default Microphone")]

    result: List[InputDevice] = []
    for idx, info in enumerate(devices):
        if info.get("max_input_channels", 0) > 0:
            result.append(
                InputDevice(
                    idx,
                    info.get("name", f"Device {idx}"),
                    float(info.get("default_samplerate", 0) or 0),
                    int(info.get("max_input_channels", 0)),
                )
            )
    return result


class DeviceMonitor:
    """Polls device enumeration and reports changes to a callback."""

    def __init__(
        self,
        on_change: Callable[[List[InputDevice]], None],
        interval: float = 5.0,
        enumerate_devices: Callable[[], List[InputDevice]] = list_input_devices,
    ) -> None:
        self.on_change = on_change
        self.interval = interval
        self._enumerate = enumerate_devices
        self._known: List[InputDevice] = []
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._known = self._enumerate()
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="device-monitor", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=self.interval + 1.0)
        self._thread = None

    def poll(self) -> bool:
        """Re-enumerate once; return True if the device list changed."""
        current = self._enumerate()
        if current == self._known:
            return False
        self._known = current
        logger.info("Audio input devices changed: {}", [d.name for d in current])
        try:
            self.on_change(current)
        except Exception as exc:
            logger.error("Device change handler failed: {}", exc)
        return True

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval):
            self.poll()


class SampleRing:
    """Fixed-size ring holding the most recent samples."""

    def __init__(self, capacity_samples: int) -> None:
        self.capacity = capacity_samples
        self._buffer: Deque[np.ndarray] = deque()
        self._total = 0

    def __len__(self) -> int:
        return self._total

    def extend(self, samples: np.ndarray) -> None:
        chunk = samples.astype(np.float32, copy=True)
        self._buffer.append(chunk)
        self._total += chunk.size
        self._trim()

    def _trim(self) -> None:
        while self._total > self.capacity and self._buffer:
            excess = self._total - self.capacity
            left = self._buffer[0]
            if left.size <= excess:
                self._buffer.popleft()
                self._total -= left.size
            else:
                self._buffer[0] = left[excess:]
                self._total -= excess

    def recent(self, samples: int) -> np.ndarray:
        """Return the newest ``samples`` values, zero-padded at the front."""
        result = np.zeros(samples, dtype=np.float32)
        remaining = min(samples, self._total)
        idx = samples
        for chunk in reversed(self._buffer):
            if remaining <= 0:
                break
            take = min(chunk.size, remaining)
            idx -= take
            result[idx : idx + take] = chunk[-take:]
            remaining -= take
        return result


class SpectrumAnalyser:
    """Windowed FFT with temporal smoothing, scaled to the byte domain."""

    def __init__(self, config: SpectrumConfig) -> None:
        self.config = config
        self._window = get_window("blackman", config.fft_size).astype(np.float32)
        self._previous = np.zeros(config.fft_size // 2, dtype=np.float64)

    def reset(self) -> None:
        self._previous[:] = 0.0

    def analyse(self, samples: np.ndarray) -> np.ndarray:
        cfg = self.config
        if samples.size != cfg.fft_size:
            raise ValueError(f"Expected {cfg.fft_size} samples, got {samples.size}")
        spectrum = np.fft.rfft(samples * self._window)[: cfg.fft_size // 2]
        magnitude = np.abs(spectrum) / cfg.fft_size
        smoothed = cfg.smoothing * self._previous + (1.0 - cfg.smoothing) * magnitude
        self._previous = smoothed
        with np.errstate(divide="ignore"):
            decibels = 20.0 * np.log10(smoothed)
        scale = 255.0 / (cfg.max_decibels - cfg.min_decibels)
        scaled = np.floor((decibels - cfg.min_decibels) * scale)
        return np.clip(np.nan_to_num(scaled, nan=0.0, neginf=0.0), 0, 255).astype(np.uint8)


def _to_mono(chunk: np.ndarray) -> np.ndarray:
    if chunk.ndim == 1 or chunk.shape[1] == 1:
        return np.squeeze(chunk, axis=1) if chunk.ndim == 2 else chunk
    return np.mean(chunk, axis=1)


def _classify_failure(exc: Exception) -> CaptureErrorKind:
    message = str(exc).lower()
    if isinstance(exc, PermissionError) or "permission" in message or "access denied" in message:
        return CaptureErrorKind.PERMISSION_DENIED
    if isinstance(exc, ValueError) or "no input device" in message or "invalid device" in message:
        return CaptureErrorKind.NO_DEVICE
    return CaptureErrorKind.HARDWARE_FAILURE


class SpectrumSource:
    """Owns one microphone stream and turns its newest samples into snapshots."""

    def __init__(self, config: Optional[SpectrumConfig] = None) -> None:
        self.config = config or SpectrumConfig()
        self._analyser = SpectrumAnalyser(self.config)
        self._ring = SampleRing(self.config.fft_size)
        self._lock = threading.Lock()
        self._stream: Optional["sd.InputStream"] = None
        self._sample_rate: Optional[int] = None
        self._frames_captured = 0
        self._gain: Optional[ParamSchedule] = None
        self._failure: Optional[CaptureError] = None
        self._closing = False

    @property
    def sample_rate(self) -> Optional[int]:
        return self._sample_rate

    @property
    def active(self) -> bool:
        return self._stream is not None

    def clock(self) -> float:
        """Seconds of audio captured since the stream opened."""
        if not self._sample_rate:
            return 0.0
        return self._frames_captured / self._sample_rate

    def start(self, device_id: DeviceId = None) -> StreamInfo:
        if self._stream is not None:
            raise RuntimeError("Spectrum source already started")
        device = None if device_id in (None, DEFAULT_DEVICE_ID) else device_id
        if device is None and not list_input_devices():
            raise CaptureError(CaptureErrorKind.NO_DEVICE, "No audio input devices available")

        self._failure = None
        self._closing = False
        self._frames_captured = 0
        self._ring = SampleRing(self.config.fft_size)
        self._analyser.reset()

        stream, rate, exclusive = self._open_stream(device)
        self._sample_rate = rate
        try:
            stream.start()
        except Exception as exc:
            stream.close()
            raise CaptureError(_classify_failure(exc), f"Unable to start capture: {exc}") from exc
        self._stream = stream
        logger.info(
            "Capture started at {} Hz on device {} (exclusive={})",
            rate,
            device if device is not None else DEFAULT_DEVICE_ID,
            exclusive,
        )
        return StreamInfo(device if device is not None else DEFAULT_DEVICE_ID, rate, exclusive)

    def pull(self) -> Optional[SpectrumSnapshot]:
        if self._failure is not None:
            raise self._failure
        with self._lock:
            if self._frames_captured == 0 or self._sample_rate is None:
                return None
            samples = self._ring.recent(self.config.fft_size)
            rate = self._sample_rate
        bins = self._analyser.analyse(samples)
        return SpectrumSnapshot(bins, float(rate), time.time())

    def stop(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        self._closing = True
        try:
            stream.stop()
        except Exception as exc:
            logger.warning("Error stopping capture stream: {}", exc)
        try:
            stream.close()
        except Exception as exc:
            logger.warning("Error closing capture stream: {}", exc)
        with self._lock:
            self._gain = None
        logger.info("Capture stopped")

    def insert_gain(self, schedule: ParamSchedule) -> None:
        """Route captured samples through a gain automation before analysis."""
        with self._lock:
            self._gain = schedule

    def remove_gain(self) -> None:
        with self._lock:
            self._gain = None

    # Internal helpers -------------------------------------------------

    def _open_stream(self, device: DeviceId) -> Tuple["sd.InputStream", int, bool]:
        sd = _portaudio()
        candidate_rates: List[int] = [self.config.sample_rate]
        try:
            device_info = sd.query_devices(device, "input")
            default_rate = int(device_info.get("default_samplerate", 0) or 0)
            if default_rate and default_rate not in candidate_rates:
                candidate_rates.append(default_rate)
        except Exception as exc:
            raise CaptureError(_classify_failure(exc), f"Input device {device!r} unavailable: {exc}") from exc

        modes = [True, False] if self.config.exclusive and self._wasapi(device) else [False]
        last_exc: Optional[Exception] = None
        for exclusive in modes:
            for rate in candidate_rates:
                try:
                    stream = sd.InputStream(
                        device=device,
                        samplerate=rate,
                        channels=self.config.channels,
                        dtype="float32",
                        callback=self._on_audio,
                        finished_callback=self._on_finished,
                        extra_settings=sd.WasapiSettings(exclusive=True) if exclusive else None,
                    )
                    return stream, rate, exclusive
                except sd.PortAudioError as exc:
                    last_exc = exc
                    logger.warning(
                        "Failed to open capture at {} Hz (device {}, exclusive={}): {}",
                        rate,
                        device,
                        exclusive,
                        exc,
                    )
        kind = _classify_failure(last_exc) if last_exc else CaptureErrorKind.HARDWARE_FAILURE
        raise CaptureError(kind, f"Unable to open microphone stream: {last_exc}")

    @staticmethod
    def _wasapi(device: DeviceId) -> bool:
        try:
            sd = _portaudio()
            info = sd.query_devices(device, "input")
            hostapi = sd.query_hostapis(info["hostapi"])
        except Exception:
            return False
        return "WASAPI" in str(hostapi.get("name", ""))

    def _on_audio(self, indata, frames, time_info, status):  # type: ignore[override]
        if status:
            logger.warning("Capture callback status: {}", status)
        mono = _to_mono(indata).astype(np.float32, copy=True)
        with self._lock:
            if self._gain is not None and self._sample_rate:
                start = self._frames_captured / self._sample_rate
                times = start + np.arange(frames) / self._sample_rate
                mono *= self._gain.values(times).astype(np.float32)
            self._ring.extend(mono)
            self._frames_captured += frames

    def _on_finished(self) -> None:
        if self._closing:
            return
        logger.error("Capture stream ended unexpectedly")
        self._failure = CaptureError(CaptureErrorKind.HARDWARE_FAILURE, "Capture stream ended unexpectedly")
