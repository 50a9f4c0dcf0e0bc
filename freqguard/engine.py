"""Detection engine: frame loop, settings owner and state publisher."""

from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from typing import Any, Callable, List, Optional, Tuple

from loguru import logger

from .calibration import (
    CALIBRATION_INTERVAL,
    CALIBRATION_SAMPLES,
    CalibrationError,
    CalibrationErrorKind,
    CalibrationResult,
    Calibrator,
    ProgressCallback,
)
from .classifier import SOUND_CANNON_BAND, V2K_BAND, Band, Classification, ClassificationResult, classify
from .countermeasure import CountermeasureController
from .history import DetectionEvent, DetectionHistory
from .settings import DetectionSettings, PreferencesStore
from .spectrum import (
    CaptureError,
    DeviceId,
    InputDevice,
    SpectrumSnapshot,
    SpectrumSource,
    list_input_devices,
)


@dataclass(frozen=True)
class DetectionState:
    recording: bool = False
    band_a_detected: bool = False
    band_b_detected: bool = False
    countermeasure_active: bool = False


StateListener = Callable[[DetectionState], None]
EventListener = Callable[[DetectionEvent], None]
ReportHook = Callable[[DetectionEvent, DetectionSettings], None]


class DetectionEngine:
    """Runs the classify-and-respond loop over one spectrum source.

    The engine is the only writer of settings and detection state. Observers
    are called from the loop thread, outside the engine lock.
    """

    def __init__(
        self,
        preferences: PreferencesStore,
        source_factory: Callable[[], SpectrumSource],
        controller: CountermeasureController,
        history: Optional[DetectionHistory] = None,
        report_hook: Optional[ReportHook] = None,
        frame_rate: float = 60.0,
        calibration_samples: int = CALIBRATION_SAMPLES,
        calibration_interval: float = CALIBRATION_INTERVAL,
        enumerate_devices: Callable[[], List[InputDevice]] = list_input_devices,
    ) -> None:
        self.preferences = preferences
        self.source_factory = source_factory
        self.controller = controller
        self.history = history or DetectionHistory()
        self.report_hook = report_hook
        self.frame_interval = 1.0 / frame_rate
        self.calibration_samples = calibration_samples
        self.calibration_interval = calibration_interval
        self._enumerate_devices = enumerate_devices

        self._settings = preferences.load()
        self._state = DetectionState()
        self._lock = threading.RLock()
        self._state_listeners: List[StateListener] = []
        self._source: Optional[SpectrumSource] = None
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._device_id: DeviceId = None
        self._devices: List[InputDevice] = []
        self._calibration_lock = threading.Lock()
        self._calibrator: Optional[Calibrator] = None
        self._resume_after_calibration = False
        self.last_error: Optional[Exception] = None
        self.last_classification: Optional[Classification] = None

        self.history.subscribe(self._forward_report)

    # Observers --------------------------------------------------------

    def on_state_change(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    def on_history_append(self, listener: EventListener) -> None:
        self.history.subscribe(listener)

    @property
    def state(self) -> DetectionState:
        return self._state

    @property
    def settings(self) -> DetectionSettings:
        return self._settings

    @property
    def device_id(self) -> DeviceId:
        return self._device_id

    @property
    def running(self) -> bool:
        return self._source is not None

    # Devices ----------------------------------------------------------

    def list_input_devices(self) -> List[InputDevice]:
        if not self._devices:
            self._devices = self._enumerate_devices()
        return list(self._devices)

    def handle_device_change(self, devices: Optional[List[InputDevice]] = None) -> List[InputDevice]:
        """Re-run enumeration after the host signals a device change."""
        self._devices = list(devices) if devices is not None else self._enumerate_devices()
        known = {device.id for device in self._devices}
        if self._device_id is not None and self._device_id not in known:
            logger.warning("Selected input device {} is no longer listed", self._device_id)
        return list(self._devices)

    def select_device(self, device_id: DeviceId) -> None:
        with self._lock:
            if device_id == self._device_id:
                return
            was_running = self.running
            self._device_id = device_id
        logger.info("Selected input device {}", device_id)
        if was_running:
            self.stop()
            self.start()

    # Lifecycle --------------------------------------------------------

    def start(self) -> None:
        """Open the capture stream and start the frame loop.

        Raises CaptureError; the engine stays stopped in that case. While a
        calibration holds the device the request is deferred until it ends.
        """
        with self._lock:
            if self.running:
                return
            if self._calibration_lock.locked():
                self._resume_after_calibration = True
                logger.info("Calibration in progress; detection starts once it finishes")
                return
            source = self.source_factory()
            try:
                source.start(self._device_id)
            except CaptureError as exc:
                self.last_error = exc
                logger.error("Unable to start detection ({}): {}", exc.kind.value, exc)
                raise
            self.last_error = None
            self._source = source
            self._stop_event.clear()
            self._state = replace(self._state, recording=True)
            self._thread = threading.Thread(target=self._run, name="detection-loop", daemon=True)
            self._thread.start()
            state = self._state
        logger.info("Detection started")
        self._publish(state)

    def stop(self) -> None:
        """Tear down the loop, capture stream, countermeasure and any calibration."""
        calibrator = self._calibrator
        if calibrator is not None:
            calibrator.cancel()
        self._halt()
        self._resume_after_calibration = False

    def _halt(self) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=2.0)

        with self._lock:
            self._thread = None
            source, self._source = self._source, None
            if source is not None:
                source.stop()
            self.controller.deactivate()
            changed = self._state != DetectionState()
            self._state = DetectionState()
            self.last_classification = None
            state = self._state
        if source is not None:
            logger.info("Detection stopped")
        if changed:
            self._publish(state)

    # Settings ---------------------------------------------------------

    def update_settings(self, **changes: Any) -> DetectionSettings:
        """Apply a validated patch and persist the result."""
        with self._lock:
            settings = self._settings.patched(**changes)
            self._settings = settings
        try:
            self.preferences.save(settings)
        except OSError as exc:
            logger.error("Failed to persist preferences: {}", exc)
        logger.info("Settings updated: {}", changes)
        return settings

    # Calibration ------------------------------------------------------

    def calibrate(self, progress: Optional[ProgressCallback] = None) -> CalibrationResult:
        """Pause detection, derive thresholds from ambient noise and apply them."""
        if not self._calibration_lock.acquire(blocking=False):
            raise CalibrationError(CalibrationErrorKind.DEVICE_BUSY, "Calibration already in progress")
        try:
            self._calibrator = Calibrator(
                self.source_factory,
                samples=self.calibration_samples,
                interval=self.calibration_interval,
            )
            with self._lock:
                was_running = self.running
                self._resume_after_calibration = self._resume_after_calibration or was_running
            if was_running:
                self._halt()
            try:
                result = self._calibrator.calibrate(self._device_id, progress)
            except CalibrationError as exc:
                self.last_error = exc
                logger.error("Calibration failed ({}): {}", exc.kind.value, exc)
                raise
            finally:
                self._calibrator = None
            self.update_settings(
                band_a_threshold=result.band_a_threshold,
                band_b_threshold=result.band_b_threshold,
            )
            return result
        finally:
            resume, self._resume_after_calibration = self._resume_after_calibration, False
            self._calibration_lock.release()
            if resume:
                try:
                    self.start()
                except CaptureError:
                    logger.error("Detection could not resume after calibration")

    # Countermeasures --------------------------------------------------

    def manually_activate(self) -> bool:
        with self._lock:
            activated = self.controller.activate(self._settings, input_path=self._source, manual=True)
            state = self._sync_countermeasure_state()
        if state is not None:
            self._publish(state)
        return activated

    def manually_deactivate(self) -> bool:
        with self._lock:
            deactivated = self.controller.deactivate()
            state = self._sync_countermeasure_state()
        if state is not None:
            self._publish(state)
        return deactivated

    def clear_history(self) -> None:
        self.history.clear()
        logger.info("Detection history cleared")

    # Frame processing -------------------------------------------------

    def process_snapshot(self, snapshot: SpectrumSnapshot) -> Classification:
        """Classify one frame and apply its state transitions."""
        with self._lock:
            settings = self._settings
            result = classify(snapshot, settings)
            previous = self._state
            rising: List[Tuple[Band, ClassificationResult]] = []
            if result.band_a.detected and not previous.band_a_detected:
                rising.append((SOUND_CANNON_BAND, result.band_a))
            if result.band_b.detected and not previous.band_b_detected:
                rising.append((V2K_BAND, result.band_b))

            if rising and settings.auto_activate_countermeasures:
                self.controller.activate(settings, input_path=self._source)
            elif not result.any_detected and self.controller.is_active and not self.controller.is_manual:
                self.controller.deactivate()

            state = DetectionState(
                recording=previous.recording,
                band_a_detected=result.band_a.detected,
                band_b_detected=result.band_b.detected,
                countermeasure_active=self.controller.is_active,
            )
            self._state = state
            self.last_classification = result
            events = [
                DetectionEvent(
                    band=band.name,
                    timestamp=snapshot.timestamp,
                    intensity_percent=band_result.intensity_percent,
                    countermeasure_activated=state.countermeasure_active,
                    peak_hz=band_result.peak_hz,
                )
                for band, band_result in rising
            ]

        for event in events:
            logger.warning(
                "{} band detected: intensity={:.1f}% peak={:.0f}Hz countermeasure={}",
                event.band,
                event.intensity_percent,
                event.peak_hz,
                event.countermeasure_activated,
            )
            self.history.append(event)
        if state != previous:
            self._publish(state)
        return result

    def _run(self) -> None:
        while not self._stop_event.is_set():
            source = self._source
            if source is None:
                break
            try:
                snapshot = source.pull()
            except CaptureError as exc:
                self.last_error = exc
                logger.error("Capture failed during detection: {}", exc)
                threading.Thread(target=self.stop, name="detection-stop", daemon=True).start()
                break
            if snapshot is not None and not self._stop_event.is_set():
                try:
                    self.process_snapshot(snapshot)
                except Exception as exc:
                    logger.exception("Frame processing failed: {}", exc)
            self._stop_event.wait(self.frame_interval)

    # Internal helpers -------------------------------------------------

    def _sync_countermeasure_state(self) -> Optional[DetectionState]:
        active = self.controller.is_active
        if self._state.countermeasure_active == active:
            return None
        self._state = replace(self._state, countermeasure_active=active)
        return self._state

    def _publish(self, state: DetectionState) -> None:
        for listener in list(self._state_listeners):
            try:
                listener(state)
            except Exception as exc:
                logger.error("State listener failed: {}", exc)

    def _forward_report(self, event: DetectionEvent) -> None:
        if self.report_hook is None:
            return
        try:
            self.report_hook(event, self._settings)
        except Exception as exc:
            logger.error("Report forwarding failed: {}", exc)
