"""MQTT mirror of detection events and engine state."""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional

from loguru import logger
from paho.mqtt import client as mqtt

from freqguard.engine import DetectionState
from freqguard.history import DetectionEvent

ONLINE = "online"
OFFLINE = "offline"


@dataclass
class MQTTConfig:
    host: str
    port: int
    base_topic: str
    username: str | None = None
    password: str | None = None
    keepalive: int = 60

    @property
    def status_topic(self) -> str:
        return f"{self.base_topic}/status"

    @property
    def state_topic(self) -> str:
        return f"{self.base_topic}/state"

    def event_topic(self, band: str) -> str:
        return f"{self.base_topic}/events/{band}"


class MQTTEventPublisher:
    """Publishes each detection event under its band and retains the latest state.

    The broker marks the detector offline through the last will if the
    connection drops without a clean stop.
    """

    def __init__(self, config: MQTTConfig, client_id: Optional[str] = None, device_id: str = "freqguard") -> None:
        self.config = config
        self.device_id = device_id
        self.client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=client_id or "",
            clean_session=True,
        )
        if config.username:
            self.client.username_pw_set(config.username, config.password or "")
        self.client.will_set(config.status_topic, OFFLINE, qos=1, retain=True)
        self.client.reconnect_delay_set(min_delay=1, max_delay=30)
        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect
        self._connected = threading.Event()

    @property
    def connected(self) -> bool:
        return self._connected.is_set()

    def start(self) -> None:
        try:
            self.client.connect(self.config.host, int(self.config.port), keepalive=self.config.keepalive)
        except OSError as exc:
            # loop_start keeps retrying in the background.
            logger.error("MQTT broker {}:{} unreachable: {}", self.config.host, self.config.port, exc)
        self.client.loop_start()

    def stop(self) -> None:
        if self.connected:
            self.client.publish(self.config.status_topic, OFFLINE, qos=1, retain=True)
        self.client.loop_stop()
        try:
            self.client.disconnect()
        except Exception as exc:
            logger.debug("MQTT disconnect failed: {}", exc)

    def publish_event(self, event: DetectionEvent) -> None:
        self._publish_json(
            self.config.event_topic(event.band),
            {
                "device_id": self.device_id,
                "band": event.band,
                "intensity": round(event.intensity_percent, 2),
                "peak_hz": round(event.peak_hz, 1),
                "countermeasure": event.countermeasure_activated,
                "ts": int(event.timestamp),
            },
        )

    def publish_state(self, state: DetectionState) -> None:
        self._publish_json(
            self.config.state_topic,
            {
                "device_id": self.device_id,
                "recording": state.recording,
                "sound_cannon": state.band_a_detected,
                "v2k": state.band_b_detected,
                "countermeasure": state.countermeasure_active,
            },
            retain=True,
        )

    def _publish_json(self, topic: str, payload: Dict[str, Any], retain: bool = False) -> None:
        # Called from the detection thread; paho queues while disconnected.
        result = self.client.publish(topic, json.dumps(payload), qos=0, retain=retain)
        if result.rc == mqtt.MQTT_ERR_NO_CONN:
            logger.debug("MQTT offline; {} not delivered", topic)
        elif result.rc != mqtt.MQTT_ERR_SUCCESS:
            logger.error("MQTT publish to {} failed with code {}", topic, result.rc)

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):  # type: ignore[override]
        if reason_code.is_failure:
            logger.error("MQTT connection refused ({})", reason_code)
            return
        logger.info("Connected to MQTT broker at {}:{}", self.config.host, self.config.port)
        self._connected.set()
        client.publish(self.config.status_topic, ONLINE, qos=1, retain=True)

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None):  # type: ignore[override]
        self._connected.clear()
        if reason_code.is_failure:
            logger.warning("MQTT connection lost ({}); reconnecting", reason_code)
