"""Detection report submission."""

from __future__ import annotations

import queue
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple

import requests
from loguru import logger

from freqguard.classifier import SOUND_CANNON_BAND, V2K_BAND
from freqguard.history import DetectionEvent
from freqguard.settings import DetectionSettings

from .geolocation import IPGeolocator, Location
from .session import SessionProvider

BAND_LABELS = {band.name: band.label for band in (SOUND_CANNON_BAND, V2K_BAND)}


class ReportSubmissionErrorKind(str, Enum):
    NETWORK = "network"
    UNAUTHORIZED = "unauthorized"


class ReportSubmissionError(Exception):
    def __init__(self, kind: ReportSubmissionErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind


@dataclass
class ReportConfig:
    base_url: str
    endpoint: str = "/api/reports"
    timeout: float = 10.0


def build_record(event: DetectionEvent, location: Optional[Location] = None) -> Dict[str, Any]:
    """Translate a detection event into the report API payload."""
    label = BAND_LABELS.get(event.band, event.band)
    record: Dict[str, Any] = {
        "frequency": int(round(event.peak_hz)),
        "description": (
            f"{label} activity detected at {event.intensity_percent:.0f}% intensity"
            + (" (countermeasure activated)" if event.countermeasure_activated else "")
        ),
        "band": event.band,
        "intensity": round(event.intensity_percent, 2),
        "countermeasureActivated": event.countermeasure_activated,
        "timestamp": event.iso_timestamp,
    }
    if location is not None:
        record["location"] = {"latitude": location.latitude, "longitude": location.longitude}
    return record


class ReportClient:
    """POSTs report records to the reports API."""

    def __init__(self, config: ReportConfig, http: Optional[requests.Session] = None) -> None:
        self.config = config
        self.http = http or requests.Session()

    @property
    def url(self) -> str:
        return self.config.base_url.rstrip("/") + "/" + self.config.endpoint.lstrip("/")

    def submit_report(self, record: Dict[str, Any], token: Optional[str] = None) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        try:
            response = self.http.post(self.url, json=record, headers=headers, timeout=self.config.timeout)
        except requests.RequestException as exc:
            raise ReportSubmissionError(ReportSubmissionErrorKind.NETWORK, str(exc)) from exc

        if response.status_code in (401, 403):
            raise ReportSubmissionError(
                ReportSubmissionErrorKind.UNAUTHORIZED,
                f"Report rejected with status {response.status_code}",
            )
        try:
            response.raise_for_status()
        except requests.HTTPError as exc:
            raise ReportSubmissionError(ReportSubmissionErrorKind.NETWORK, str(exc)) from exc
        try:
            return response.json()
        except ValueError:
            return {}


class ReportForwarder:
    """Delivers detection events to the report sink off the detection thread.

    Events go through a bounded queue; when it is full the oldest pending
    event is dropped. Failures are logged and never retried.
    """

    def __init__(
        self,
        client: ReportClient,
        session: Optional[SessionProvider] = None,
        locator: Optional[IPGeolocator] = None,
        max_pending: int = 64,
    ) -> None:
        self.client = client
        self.session = session
        self.locator = locator
        self._queue: "queue.Queue[Tuple[DetectionEvent, DetectionSettings]]" = queue.Queue(maxsize=max_pending)
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="report-forwarder", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=5.0)
        self._thread = None

    def forward(self, event: DetectionEvent, settings: DetectionSettings) -> None:
        """Queue an event for submission without blocking."""
        item = (event, settings)
        try:
            self._queue.put_nowait(item)
        except queue.Full:
            try:
                self._queue.get_nowait()
                logger.warning("Report queue full; dropping oldest pending report")
            except queue.Empty:
                pass
            self._queue.put_nowait(item)

    def deliver(self, event: DetectionEvent, settings: DetectionSettings) -> bool:
        """Submit one event synchronously; returns True when the sink accepted it."""
        if not settings.automatic_reporting:
            logger.debug("Automatic reporting disabled; not submitting {}", event.band)
            return False
        user = self.session.get_current_user() if self.session else None
        token = self.session.get_auth_token() if self.session else None
        if not user or not token:
            logger.debug("No signed-in user; skipping report submission")
            return False

        location = None
        if settings.share_location and self.locator is not None:
            location = self.locator.locate()

        try:
            self.client.submit_report(build_record(event, location), token)
        except ReportSubmissionError as exc:
            logger.error("Report submission failed ({}): {}", exc.kind.value, exc)
            return False
        logger.info("Report submitted for {} detection", event.band)
        return True

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                event, settings = self._queue.get(timeout=1.0)
            except queue.Empty:
                continue
            try:
                self.deliver(event, settings)
            except Exception as exc:
                logger.error("Unexpected report delivery error: {}", exc)
