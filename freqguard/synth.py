"""Audio synthesis primitives and the output mixer."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
from loguru import logger
from scipy.signal import sawtooth, square

if TYPE_CHECKING:
    import sounddevice as sd

MIN_EXPONENTIAL_VALUE = 1e-4


@dataclass(frozen=True)
class _Event:
    time: float
    value: float
    kind: str  # "set", "linear" or "exponential"


class ParamSchedule:
    """Automation timeline for a parameter such as frequency or gain.

    Ramp events end at their own time and start from the previous event's
    value. With ``period`` set the timeline repeats from its first event.
    """

    def __init__(self, value: float, start: float = 0.0, period: Optional[float] = None) -> None:
        self._events: List[_Event] = [_Event(start, float(value), "set")]
        self.period = period
        self._lock = threading.Lock()

    @property
    def start(self) -> float:
        return self._events[0].time

    def linear_ramp_to(self, value: float, time: float) -> "ParamSchedule":
        return self._insert(_Event(time, float(value), "linear"))

    def exponential_ramp_to(self, value: float, time: float) -> "ParamSchedule":
        if value <= 0:
            raise ValueError("Exponential ramps need a positive target value")
        return self._insert(_Event(time, float(value), "exponential"))

    def cancel_after(self, time: float) -> "ParamSchedule":
        """Drop every event scheduled after ``time``, holding the value reached there."""
        current = self.value_at(time)
        with self._lock:
            kept = [event for event in self._events if event.time <= time]
            self._events = kept + [_Event(time, current, "set")]
            self.period = None
        return self

    def value_at(self, time: float) -> float:
        return float(self.values(np.array([time], dtype=np.float64))[0])

    def values(self, times: np.ndarray) -> np.ndarray:
        times = np.asarray(times, dtype=np.float64)
        with self._lock:
            events = list(self._events)
            period = self.period
        origin = events[0].time
        if period:
            times = np.where(times >= origin, origin + np.mod(times - origin, period), times)

        out = np.full(times.shape, events[0].value, dtype=np.float64)
        for prev, event in zip(events, events[1:]):
            if event.kind == "set":
                out[times >= event.time] = event.value
                continue
            mask = times >= prev.time
            span = event.time - prev.time
            if span <= 0:
                out[times >= event.time] = event.value
                continue
            frac = np.clip((times[mask] - prev.time) / span, 0.0, 1.0)
            if event.kind == "linear":
                out[mask] = prev.value + (event.value - prev.value) * frac
            else:
                start_value = max(prev.value, MIN_EXPONENTIAL_VALUE)
                out[mask] = start_value * (event.value / start_value) ** frac
        return out

    def _insert(self, event: _Event) -> "ParamSchedule":
        with self._lock:
            self._events.append(event)
            self._events.sort(key=lambda e: e.time)
        return self


def _triangle(phase: np.ndarray) -> np.ndarray:
    return sawtooth(phase, width=0.5)


WAVE_FUNCTIONS: Dict[str, Callable[[np.ndarray], np.ndarray]] = {
    "sine": np.sin,
    "square": square,
    "sawtooth": sawtooth,
    "triangle": _triangle,
}


class Oscillator:
    """Phase-continuous periodic generator driven by a frequency schedule."""

    def __init__(self, frequency: ParamSchedule, waveform: str = "sine") -> None:
        if waveform not in WAVE_FUNCTIONS:
            raise ValueError(f"Unknown waveform '{waveform}'")
        self.frequency = frequency
        self.waveform = waveform
        self._phase = 0.0
        self.stopped = False

    def render(self, times: np.ndarray, sample_rate: int) -> np.ndarray:
        if self.stopped:
            return np.zeros(times.shape, dtype=np.float32)
        increments = 2.0 * np.pi * self.frequency.values(times) / sample_rate
        phase = self._phase + np.cumsum(increments)
        if phase.size:
            self._phase = float(np.mod(phase[-1], 2.0 * np.pi))
        return WAVE_FUNCTIONS[self.waveform](phase).astype(np.float32)

    def stop(self) -> None:
        self.stopped = True


class Voice:
    """Oscillators summed through one shared gain schedule."""

    def __init__(self, oscillators: Sequence[Oscillator], gain: ParamSchedule) -> None:
        self.oscillators = list(oscillators)
        self.gain = gain
        self.ends_at: Optional[float] = None

    def render(self, times: np.ndarray, sample_rate: int) -> np.ndarray:
        mixed = np.zeros(times.shape, dtype=np.float32)
        for oscillator in self.oscillators:
            mixed += oscillator.render(times, sample_rate)
        return mixed * self.gain.values(times).astype(np.float32)

    def release(self, now: float, fade_seconds: float) -> None:
        """Fade the shared gain out exponentially and mark the voice for removal."""
        self.gain.cancel_after(now)
        self.gain.exponential_ramp_to(MIN_EXPONENTIAL_VALUE, now + fade_seconds)
        self.ends_at = now + fade_seconds

    def finished(self, now: float) -> bool:
        return self.ends_at is not None and now >= self.ends_at

    def stop(self) -> None:
        for oscillator in self.oscillators:
            oscillator.stop()


class ClipPlayer:
    """Plays a buffer once and reports when it runs out."""

    def __init__(
        self,
        samples: np.ndarray,
        gain: float = 1.0,
        on_end: Optional[Callable[[], None]] = None,
    ) -> None:
        self.samples = np.asarray(samples, dtype=np.float32)
        self.gain = gain
        self.on_end = on_end
        self.position = 0
        self.stopped = False

    def render(self, times: np.ndarray, sample_rate: int) -> np.ndarray:
        frames = times.shape[0]
        out = np.zeros(frames, dtype=np.float32)
        if self.stopped:
            return out
        chunk = self.samples[self.position : self.position + frames]
        out[: chunk.size] = chunk * self.gain
        self.position += chunk.size
        return out

    def finished(self, now: float) -> bool:
        return self.stopped or self.position >= self.samples.size

    def stop(self) -> None:
        self.stopped = True
        self.on_end = None


class AudioMixer:
    """Sums voices and clips into one sounddevice output stream.

    ``render`` is the whole signal path; the stream callback only copies its
    result, so the mixer can be driven without a device.
    """

    def __init__(self, sample_rate: int = 48000, device=None, blocksize: int = 1024) -> None:
        self.sample_rate = sample_rate
        self.device = device
        self.blocksize = blocksize
        self._sources: List[object] = []
        self._lock = threading.Lock()
        self._frames_rendered = 0
        self._stream: Optional["sd.OutputStream"] = None

    @property
    def sources(self) -> Tuple[object, ...]:
        with self._lock:
            return tuple(self._sources)

    def now(self) -> float:
        return self._frames_rendered / self.sample_rate

    @property
    def running(self) -> bool:
        """True while an output stream is pulling frames through ``render``."""
        return self._stream is not None

    def start(self) -> None:
        if self._stream is not None:
            return
        import sounddevice as sd

        self._stream = sd.OutputStream(
            device=self.device,
            samplerate=self.sample_rate,
            channels=1,
            dtype="float32",
            blocksize=self.blocksize,
            callback=self._callback,
        )
        self._stream.start()
        logger.info("Audio output started at {} Hz", self.sample_rate)

    def close(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop()
            stream.close()
        except Exception as exc:
            logger.warning("Error closing audio output: {}", exc)

    def add(self, source) -> None:
        with self._lock:
            if source not in self._sources:
                self._sources.append(source)

    def remove(self, source) -> None:
        with self._lock:
            if source in self._sources:
                self._sources.remove(source)

    def render(self, frames: int) -> np.ndarray:
        ended: List[Callable[[], None]] = []
        with self._lock:
            start = self._frames_rendered
            times = (start + np.arange(frames)) / self.sample_rate
            out = np.zeros(frames, dtype=np.float32)
            for source in self._sources:
                out += source.render(times, self.sample_rate)
            self._frames_rendered += frames
            now = self.now()
            for source in list(self._sources):
                if source.finished(now):
                    self._sources.remove(source)
                    callback = getattr(source, "on_end", None)
                    if callback is not None:
                        ended.append(callback)
        for callback in ended:
            try:
                callback()
            except Exception as exc:
                logger.warning("Audio end handler failed: {}", exc)
        return np.clip(out, -1.0, 1.0)

    def _callback(self, outdata, frames, time_info, status):  # type: ignore[override]
        if status:
            logger.warning("Audio output status: {}", status)
        try:
            outdata[:, 0] = self.render(frames)
        except Exception as exc:
            logger.error("Audio render failed: {}", exc)
            outdata[:] = 0.0
