"""Entry point for the FreqGuard detector."""

from __future__ import annotations

import argparse
import sys
import time
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from loguru import logger

from freqguard.alerts import DEFAULT_WARNING, AlertSequence, SpeechSynthesizer
from freqguard.calibration import CalibrationError
from freqguard.countermeasure import CountermeasureController
from freqguard.engine import DetectionEngine, DetectionState
from freqguard.history import DEFAULT_HISTORY_LIMIT, DetectionHistory
from freqguard.settings import PreferencesStore
from freqguard.spectrum import CaptureError, DeviceMonitor, SpectrumConfig, SpectrumSource, list_input_devices
from freqguard.synth import AudioMixer
from reporting.client import ReportClient, ReportConfig, ReportForwarder
from reporting.geolocation import DEFAULT_GEOLOCATION_URL, IPGeolocator
from reporting.mqtt_client import MQTTConfig, MQTTEventPublisher
from reporting.session import StaticSession


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Frequency threat detector")
    parser.add_argument(
        "--config",
        default="config/config.yaml",
        help="Path to configuration file (default: config/config.yaml)",
    )
    parser.add_argument(
        "--list-devices",
        action="store_true",
        help="List available audio input devices and exit",
    )
    parser.add_argument(
        "--device",
        help="Input device index or name (overrides audio.device)",
    )
    parser.add_argument(
        "--calibrate",
        action="store_true",
        help="Calibrate thresholds against ambient noise before monitoring",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Run without submitting reports or publishing MQTT events",
    )
    return parser.parse_args()


def load_config(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")
    with path.open("r", encoding="utf-8") as handle:
        config = yaml.safe_load(handle)
    if not isinstance(config, dict):
        raise ValueError("Configuration file must define a mapping")
    return config


def setup_logging(log_config: Dict[str, Any]) -> None:
    level = log_config.get("level", "INFO")
    logger.remove()
    logger.add(sys.stderr, level=level)

    file_path = Path(log_config.get("file_path", "freqguard.log"))
    try:
        file_path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            str(file_path),
            level=level,
            rotation="5 MB",
            retention=5,
            enqueue=True,
            backtrace=False,
            diagnose=False,
        )
    except PermissionError as exc:
        logger.warning(
            "Unable to write log file at {} ({}). Continuing with console logging only.",
            file_path,
            exc,
        )


def list_devices() -> None:
    devices = list_input_devices()
    print("Available audio input devices:")
    for device in devices:
        print(
            f"[{device.id}] {device.name} - default_samplerate={device.default_samplerate:.0f}Hz, "
            f"max_input_channels={device.channels}"
        )


def parse_device(value: Any) -> Any:
    if value is None or isinstance(value, int):
        return value
    text = str(value).strip()
    return int(text) if text.isdigit() else text


def build_controller(config: Dict[str, Any]) -> tuple[CountermeasureController, AudioMixer]:
    output_cfg = config.get("output", {})
    alerts_cfg = config.get("alerts", {})
    mixer = AudioMixer(
        sample_rate=int(output_cfg.get("sample_rate", 48000)),
        device=parse_device(output_cfg.get("device")),
        blocksize=int(output_cfg.get("blocksize", 1024)),
    )
    try:
        mixer.start()
    except Exception as exc:
        logger.warning("Audio output unavailable ({}); countermeasures will be silent", exc)

    siren = alerts_cfg.get("siren_path", "assets/siren.wav")
    neutralize = alerts_cfg.get("neutralize_path", "assets/neutralize.wav")
    alerts = AlertSequence(
        mixer,
        SpeechSynthesizer(),
        siren_path=Path(siren) if siren else None,
        neutralize_path=Path(neutralize) if neutralize else None,
        message=alerts_cfg.get("message", DEFAULT_WARNING),
    )
    return CountermeasureController(mixer, alerts), mixer


def build_forwarder(config: Dict[str, Any], dry_run: bool) -> Optional[ReportForwarder]:
    report_cfg = config.get("reporting", {})
    if dry_run or not report_cfg.get("enabled", True):
        logger.info("Report submission is disabled")
        return None

    session_cfg = config.get("session", {})
    geo_cfg = config.get("geolocation", {})
    forwarder = ReportForwarder(
        ReportClient(
            ReportConfig(
                base_url=report_cfg.get("base_url", "http://localhost:5000"),
                endpoint=report_cfg.get("endpoint", "/api/reports"),
                timeout=float(report_cfg.get("timeout", 10.0)),
            )
        ),
        session=StaticSession(
            username=session_cfg.get("username") or None,
            token=session_cfg.get("token") or None,
            token_env=session_cfg.get("token_env", "FREQGUARD_AUTH_TOKEN"),
        ),
        locator=IPGeolocator(
            url=geo_cfg.get("url", DEFAULT_GEOLOCATION_URL),
            timeout=float(geo_cfg.get("timeout", 5.0)),
        ),
    )
    forwarder.start()
    return forwarder


def build_mqtt(config: Dict[str, Any], dry_run: bool) -> Optional[MQTTEventPublisher]:
    mqtt_cfg = config.get("mqtt", {})
    if dry_run or not mqtt_cfg.get("enabled", False):
        return None

    publisher = MQTTEventPublisher(
        MQTTConfig(
            host=mqtt_cfg.get("host", "localhost"),
            port=int(mqtt_cfg.get("port", 1883)),
            base_topic=mqtt_cfg.get("base_topic", "home/freqguard"),
            username=(mqtt_cfg.get("username") or None),
            password=(mqtt_cfg.get("password") or None),
        ),
        client_id=mqtt_cfg.get("client_id"),
        device_id=config.get("device_id", "freqguard-01"),
    )
    publisher.start()
    return publisher


def log_state(state: DetectionState) -> None:
    logger.info(
        "State recording={} band_a={} band_b={} countermeasure={}",
        state.recording,
        state.band_a_detected,
        state.band_b_detected,
        state.countermeasure_active,
    )


def main() -> None:
    args = parse_args()

    if args.list_devices:
        list_devices()
        return

    config = load_config(Path(args.config))
    setup_logging(config.get("logging", {}))

    audio_cfg = config.get("audio", {})
    spectrum_config = SpectrumConfig(
        sample_rate=int(audio_cfg.get("sample_rate", 48000)),
        fft_size=int(audio_cfg.get("fft_size", 8192)),
        smoothing=float(audio_cfg.get("smoothing", 0.2)),
        channels=int(audio_cfg.get("channels", 1)),
        exclusive=bool(audio_cfg.get("exclusive", True)),
    )
    engine_cfg = config.get("engine", {})
    calibration_cfg = config.get("calibration", {})
    prefs_path = Path(config.get("preferences", {}).get("path", "data/preferences.yaml"))

    controller, mixer = build_controller(config)
    forwarder = build_forwarder(config, args.dry_run)
    mqtt_publisher = build_mqtt(config, args.dry_run)

    engine = DetectionEngine(
        PreferencesStore(prefs_path),
        source_factory=lambda: SpectrumSource(spectrum_config),
        controller=controller,
        history=DetectionHistory(int(engine_cfg.get("history_limit", DEFAULT_HISTORY_LIMIT))),
        report_hook=forwarder.forward if forwarder else None,
        frame_rate=float(engine_cfg.get("frame_rate", 60.0)),
        calibration_samples=int(calibration_cfg.get("samples", 10)),
        calibration_interval=float(calibration_cfg.get("interval", 0.5)),
    )
    engine.on_state_change(log_state)
    if mqtt_publisher:
        engine.on_state_change(mqtt_publisher.publish_state)
        engine.on_history_append(mqtt_publisher.publish_event)

    device = parse_device(args.device if args.device is not None else audio_cfg.get("device"))
    if device is not None:
        engine.select_device(device)

    monitor = DeviceMonitor(
        engine.handle_device_change,
        interval=float(engine_cfg.get("device_poll_seconds", 5.0)),
    )
    monitor.start()

    try:
        if args.calibrate:
            result = engine.calibrate(
                progress=lambda pct: logger.info("Calibration progress {:.0f}%", pct)
            )
            logger.info(
                "Thresholds set to band_a={:.0f} band_b={:.0f}",
                result.band_a_threshold,
                result.band_b_threshold,
            )
        engine.start()
        while engine.running:
            time.sleep(0.5)
        if engine.last_error is not None:
            logger.error("Detection stopped: {}", engine.last_error)
    except CaptureError as exc:
        logger.error(
            "Microphone unavailable ({}): {}. Choose another device with --device.",
            exc.kind.value,
            exc,
        )
        sys.exit(1)
    except CalibrationError as exc:
        logger.error("Calibration failed ({}): {}", exc.kind.value, exc)
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Interrupted by user, shutting down")
    finally:
        engine.stop()
        monitor.stop()
        mixer.close()
        if forwarder:
            forwarder.stop()
        if mqtt_publisher:
            mqtt_publisher.stop()


if __name__ == "__main__":
    main()
