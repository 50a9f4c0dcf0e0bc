"""Frequency-threat detection and countermeasure engine."""

from .alerts import AlertSequence, CountermeasureError, SpeechSynthesizer
from .calibration import CalibrationError, CalibrationResult, Calibrator
from .classifier import Classification, ClassificationResult, classify
from .countermeasure import CountermeasureController, CountermeasureState
from .engine import DetectionEngine, DetectionState
from .history import DetectionEvent, DetectionHistory
from .settings import CountermeasureProfile, DetectionSettings, PreferencesStore, Sensitivity
from .spectrum import CaptureError, SpectrumConfig, SpectrumSnapshot, SpectrumSource, list_input_devices
from .synth import AudioMixer
