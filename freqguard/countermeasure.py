"""Countermeasure state machine and waveform generators."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol, Sequence, Tuple

from loguru import logger

from .alerts import AlertSequence
from .settings import CountermeasureProfile, DetectionSettings
from .synth import AudioMixer, Oscillator, ParamSchedule, Voice

MUTE_RAMP_SECONDS = 5.0
FADE_OUT_SECONDS = 0.3
PROFILE_GAIN_SCALE = 0.3

# (waveform, [(seconds, hz), ...]) per oscillator; each sweep loops.
Sweep = Tuple[str, Sequence[Tuple[float, float]]]

PROFILE_SWEEPS = {
    CountermeasureProfile.STANDARD: (
        ("sine", ((0.0, 4000.0), (1.0, 9000.0), (2.0, 4000.0))),
        ("sine", ((0.0, 11000.0), (1.5, 15000.0), (3.0, 11000.0))),
    ),
    CountermeasureProfile.ADVANCED: (
        ("sawtooth", ((0.0, 2500.0), (0.5, 10000.0), (1.0, 2500.0))),
        ("square", ((0.0, 12000.0), (0.75, 18000.0), (1.5, 12000.0))),
    ),
}


class CountermeasureState(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"


class InputPath(Protocol):
    def clock(self) -> float: ...

    def insert_gain(self, schedule: ParamSchedule) -> None: ...

    def remove_gain(self) -> None: ...


@dataclass
class ActiveCountermeasure:
    """Everything one activation owns; dropped as a whole on deactivation."""

    profile: CountermeasureProfile
    voice: Optional[Voice]
    input_path: Optional[InputPath]
    manual: bool


def _sweep_schedule(points: Sequence[Tuple[float, float]], now: float) -> ParamSchedule:
    first_time, first_hz = points[0]
    period = points[-1][0] - first_time
    schedule = ParamSchedule(first_hz, start=now, period=period or None)
    for offset, hz in points[1:]:
        schedule.exponential_ramp_to(hz, now + offset)
    return schedule


def build_voice(settings: DetectionSettings, now: float) -> Voice:
    """Create the waveform generator for the selected profile."""
    profile = settings.countermeasure_profile
    if profile is CountermeasureProfile.CUSTOM:
        oscillator = Oscillator(
            ParamSchedule(settings.custom_frequency_hz, start=now), settings.custom_waveform
        )
        return Voice([oscillator], ParamSchedule(settings.custom_volume, start=now))

    oscillators = [
        Oscillator(_sweep_schedule(points, now), waveform)
        for waveform, points in PROFILE_SWEEPS[profile]
    ]
    gain = ParamSchedule(settings.alert_volume * PROFILE_GAIN_SCALE, start=now)
    return Voice(oscillators, gain)


class CountermeasureController:
    """Idle/Active state machine for the audio countermeasure.

    Activation mutes the monitored input with a slow gain ramp, runs the
    alert sequence and starts the profile's generator. Deactivation tears all
    of it down step by step and never raises.
    """

    def __init__(
        self,
        mixer: AudioMixer,
        alerts: AlertSequence,
        mute_ramp_seconds: float = MUTE_RAMP_SECONDS,
        fade_out_seconds: float = FADE_OUT_SECONDS,
    ) -> None:
        self.mixer = mixer
        self.alerts = alerts
        self.mute_ramp_seconds = mute_ramp_seconds
        self.fade_out_seconds = fade_out_seconds
        self._active: Optional[ActiveCountermeasure] = None
        self._lock = threading.RLock()

    @property
    def state(self) -> CountermeasureState:
        return CountermeasureState.ACTIVE if self._active else CountermeasureState.IDLE

    @property
    def is_active(self) -> bool:
        return self._active is not None

    @property
    def is_manual(self) -> bool:
        active = self._active
        return bool(active and active.manual)

    @property
    def active(self) -> Optional[ActiveCountermeasure]:
        return self._active

    def activate(
        self,
        settings: DetectionSettings,
        input_path: Optional[InputPath] = None,
        manual: bool = False,
    ) -> bool:
        """Enter ACTIVE; returns False if already active."""
        with self._lock:
            if self._active is not None:
                return False

            if input_path is not None:
                try:
                    start = input_path.clock()
                    ramp = ParamSchedule(0.0, start=start)
                    ramp.linear_ramp_to(1.0, start + self.mute_ramp_seconds)
                    input_path.insert_gain(ramp)
                except Exception as exc:
                    logger.warning("Unable to insert input mute stage: {}", exc)
                    input_path = None

            try:
                self.alerts.start(settings.alert_volume)
            except Exception as exc:
                logger.warning("Alert sequence failed to start: {}", exc)

            now = self.mixer.now()
            voice: Optional[Voice] = None
            try:
                voice = build_voice(settings, now)
                self.mixer.add(voice)
            except Exception as exc:
                logger.error("Countermeasure generator failed to start: {}", exc)

            self._active = ActiveCountermeasure(
                profile=settings.countermeasure_profile,
                voice=voice,
                input_path=input_path,
                manual=manual,
            )
        logger.info(
            "Countermeasure activated (profile={}, manual={})",
            settings.countermeasure_profile.value,
            manual,
        )
        return True

    def deactivate(self) -> bool:
        """Enter IDLE; returns False if already idle."""
        with self._lock:
            active, self._active = self._active, None
        if active is None:
            return False

        try:
            self.alerts.cancel()
        except Exception as exc:
            logger.warning("Failed to stop alert sequence: {}", exc)

        if active.voice is not None:
            self._release_voice(active.voice)

        if active.input_path is not None:
            try:
                active.input_path.remove_gain()
            except Exception as exc:
                logger.warning("Failed to restore input path: {}", exc)

        logger.info("Countermeasure deactivated")
        return True

    def _release_voice(self, voice: Voice) -> None:
        # Nothing advances the mixer clock without a stream, so a fade would never end.
        if self.mixer.running:
            try:
                voice.release(self.mixer.now(), self.fade_out_seconds)
                return
            except Exception as exc:
                logger.warning("Failed to fade countermeasure output: {}", exc)
        try:
            voice.stop()
            self.mixer.remove(voice)
        except Exception as exc:
            logger.warning("Failed to disconnect countermeasure output: {}", exc)
