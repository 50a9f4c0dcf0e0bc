"""Detection settings and their YAML-backed preferences store."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping

import yaml
from loguru import logger


class Sensitivity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def multiplier(self) -> float:
        return _SENSITIVITY_MULTIPLIERS[self]


_SENSITIVITY_MULTIPLIERS = {
    Sensitivity.LOW: 0.7,
    Sensitivity.MEDIUM: 1.0,
    Sensitivity.HIGH: 1.3,
}


class CountermeasureProfile(str, Enum):
    STANDARD = "standard"
    ADVANCED = "advanced"
    CUSTOM = "custom"


WAVEFORMS = ("sine", "square", "sawtooth", "triangle")


@dataclass(frozen=True)
class DetectionSettings:
    """User-adjustable detection configuration.

    Instances are immutable; the engine swaps in a validated copy on every
    update so concurrent readers never observe a half-applied patch.
    """

    band_a_threshold: float = 200.0
    band_b_threshold: float = 180.0
    sensitivity: Sensitivity = Sensitivity.MEDIUM
    auto_activate_countermeasures: bool = True
    countermeasure_profile: CountermeasureProfile = CountermeasureProfile.STANDARD
    alert_volume: float = 0.8
    custom_frequency_hz: float = 1000.0
    custom_waveform: str = "sine"
    custom_volume: float = 0.5
    share_location: bool = False
    automatic_reporting: bool = True

    def __post_init__(self) -> None:
        object.__setattr__(self, "sensitivity", Sensitivity(self.sensitivity))
        object.__setattr__(
            self, "countermeasure_profile", CountermeasureProfile(self.countermeasure_profile)
        )
        for name in ("band_a_threshold", "band_b_threshold"):
            value = float(getattr(self, name))
            if not 0.0 <= value <= 255.0:
                raise ValueError(f"{name} must be within [0, 255], got {value}")
            object.__setattr__(self, name, value)
        for name in ("alert_volume", "custom_volume"):
            value = float(getattr(self, name))
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be within [0, 1], got {value}")
            object.__setattr__(self, name, value)
        if float(self.custom_frequency_hz) <= 0:
            raise ValueError("custom_frequency_hz must be positive")
        object.__setattr__(self, "custom_frequency_hz", float(self.custom_frequency_hz))
        if self.custom_waveform not in WAVEFORMS:
            raise ValueError(f"Unknown waveform '{self.custom_waveform}'")

    def effective_threshold(self, threshold: float) -> float:
        """Threshold actually compared against bin amplitudes.

        Higher sensitivity lowers the bar, so raising sensitivity can only
        add detections.
        """
        return threshold / self.sensitivity.multiplier

    def patched(self, **changes: Any) -> "DetectionSettings":
        unknown = set(changes) - {f.name for f in dataclasses.fields(self)}
        if unknown:
            raise ValueError(f"Unknown setting(s): {', '.join(sorted(unknown))}")
        return dataclasses.replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        data = dataclasses.asdict(self)
        data["sensitivity"] = self.sensitivity.value
        data["countermeasure_profile"] = self.countermeasure_profile.value
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "DetectionSettings":
        """Build settings from stored data, keeping defaults for bad or missing keys."""
        settings = cls()
        if not data:
            return settings
        known = {f.name for f in dataclasses.fields(cls)}
        for key, value in data.items():
            if key not in known:
                logger.debug("Ignoring unknown stored preference '{}'", key)
                continue
            try:
                settings = settings.patched(**{key: value})
            except (TypeError, ValueError) as exc:
                logger.warning("Ignoring invalid stored preference {}={!r}: {}", key, value, exc)
        return settings


class PreferencesStore:
    """Persists DetectionSettings as a YAML mapping."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def load(self) -> DetectionSettings:
        if not self.path.exists():
            logger.info("No stored preferences at {}; using defaults", self.path)
            return DetectionSettings()
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle)
        except (OSError, yaml.YAMLError) as exc:
            logger.warning("Unable to read preferences {}: {}; using defaults", self.path, exc)
            return DetectionSettings()
        if data is not None and not isinstance(data, dict):
            logger.warning("Preferences file {} is not a mapping; using defaults", self.path)
            return DetectionSettings()
        return DetectionSettings.from_dict(data)

    def save(self, settings: DetectionSettings) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            yaml.safe_dump(settings.to_dict(), handle, sort_keys=True)
        tmp_path.replace(self.path)
