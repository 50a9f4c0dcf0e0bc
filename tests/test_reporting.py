import time

import pytest
import requests

from freqguard.history import DetectionEvent
from freqguard.settings import DetectionSettings
from reporting import geolocation
from reporting.client import (
    ReportClient,
    ReportConfig,
    ReportForwarder,
    ReportSubmissionError,
    ReportSubmissionErrorKind,
    build_record,
)
from reporting.geolocation import IPGeolocator, Location
from reporting.session import StaticSession

EVENT = DetectionEvent(
    band="sound_cannon",
    timestamp=1_700_000_000.0,
    intensity_percent=40.0,
    countermeasure_activated=True,
    peak_hz=4998.4,
)


class FakeResponse:
    def __init__(self, status_code=201, payload=None):
        self.status_code = status_code
        self._payload = payload if payload is not None else {"id": 7}

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        return self._payload


class FakeHTTP:
    def __init__(self, response=None, error=None):
        self.response = response or FakeResponse()
        self.error = error
        self.calls = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        if self.error is not None:
            raise self.error
        return self.response


class FakeLocator:
    def __init__(self):
        self.calls = 0

    def locate(self):
        self.calls += 1
        return Location(51.5, -0.12)


def make_forwarder(http=None, session=None, locator=None):
    client = ReportClient(ReportConfig("https://reports.example/"), http=http or FakeHTTP())
    return ReportForwarder(client, session=session, locator=locator)


def test_record_shape():
    record = build_record(EVENT)
    assert record["frequency"] == 4998
    assert record["description"].startswith("Sound cannon activity detected at 40% intensity")
    assert record["countermeasureActivated"] is True
    assert record["timestamp"].startswith("2023-11-14T22:13:20")
    assert "location" not in record


def test_record_with_location():
    record = build_record(EVENT, Location(1.0, 2.0))
    assert record["location"] == {"latitude": 1.0, "longitude": 2.0}


def test_submit_posts_with_bearer_token():
    http = FakeHTTP()
    client = ReportClient(ReportConfig("https://reports.example/"), http=http)
    assert client.submit_report({"frequency": 1}, token="abc") == {"id": 7}
    call = http.calls[0]
    assert call["url"] == "https://reports.example/api/reports"
    assert call["headers"] == {"Authorization": "Bearer abc"}


@pytest.mark.parametrize("status", [401, 403])
def test_rejected_credentials_are_unauthorized(status):
    client = ReportClient(ReportConfig("https://reports.example"), http=FakeHTTP(FakeResponse(status)))
    with pytest.raises(ReportSubmissionError) as excinfo:
        client.submit_report({})
    assert excinfo.value.kind is ReportSubmissionErrorKind.UNAUTHORIZED


def test_transport_and_server_errors_are_network():
    offline = ReportClient(
        ReportConfig("https://reports.example"), http=FakeHTTP(error=requests.ConnectionError("down"))
    )
    with pytest.raises(ReportSubmissionError) as excinfo:
        offline.submit_report({})
    assert excinfo.value.kind is ReportSubmissionErrorKind.NETWORK

    broken = ReportClient(ReportConfig("https://reports.example"), http=FakeHTTP(FakeResponse(500)))
    with pytest.raises(ReportSubmissionError) as excinfo:
        broken.submit_report({})
    assert excinfo.value.kind is ReportSubmissionErrorKind.NETWORK


def test_deliver_skips_without_signed_in_user():
    http = FakeHTTP()
    forwarder = make_forwarder(http, session=StaticSession())
    assert forwarder.deliver(EVENT, DetectionSettings()) is False
    assert http.calls == []


def test_deliver_respects_automatic_reporting_flag():
    http = FakeHTTP()
    forwarder = make_forwarder(http, session=StaticSession("ana", "tok"))
    assert forwarder.deliver(EVENT, DetectionSettings(automatic_reporting=False)) is False
    assert http.calls == []


def test_location_is_only_attached_when_shared():
    http = FakeHTTP()
    locator = FakeLocator()
    forwarder = make_forwarder(http, session=StaticSession("ana", "tok"), locator=locator)

    assert forwarder.deliver(EVENT, DetectionSettings())
    assert "location" not in http.calls[-1]["json"]
    assert locator.calls == 0

    assert forwarder.deliver(EVENT, DetectionSettings(share_location=True))
    assert http.calls[-1]["json"]["location"] == {"latitude": 51.5, "longitude": -0.12}


def test_submission_failure_is_swallowed():
    http = FakeHTTP(FakeResponse(401))
    forwarder = make_forwarder(http, session=StaticSession("ana", "tok"))
    assert forwarder.deliver(EVENT, DetectionSettings()) is False


def test_token_from_environment(monkeypatch):
    monkeypatch.setenv("FREQGUARD_TOKEN", "from-env")
    session = StaticSession("ana", token_env="FREQGUARD_TOKEN")
    assert session.get_auth_token() == "from-env"
    monkeypatch.delenv("FREQGUARD_TOKEN")
    assert session.get_auth_token() is None


def test_full_queue_drops_oldest():
    forwarder = ReportForwarder(
        ReportClient(ReportConfig("https://reports.example"), http=FakeHTTP()), max_pending=2
    )
    settings = DetectionSettings()
    events = [DetectionEvent("v2k", float(i), 30.0, False) for i in range(3)]
    for event in events:
        forwarder.forward(event, settings)
    pending = [forwarder._queue.get_nowait()[0] for _ in range(2)]
    assert pending == events[1:]


def test_worker_delivers_queued_events():
    http = FakeHTTP()
    forwarder = make_forwarder(http, session=StaticSession("ana", "tok"))
    forwarder.start()
    try:
        forwarder.forward(EVENT, DetectionSettings())
        deadline = time.monotonic() + 2.0
        while not http.calls and time.monotonic() < deadline:
            time.sleep(0.01)
    finally:
        forwarder.stop()
    assert len(http.calls) == 1


def test_geolocator_reads_coordinates(monkeypatch):
    monkeypatch.setattr(
        geolocation.requests, "get", lambda url, timeout: FakeResponse(200, {"lat": 10.5, "lon": 20.25})
    )
    assert IPGeolocator().locate() == Location(10.5, 20.25)


def test_geolocator_failure_is_none(monkeypatch):
    def offline(url, timeout):
        raise requests.ConnectionError("offline")

    monkeypatch.setattr(geolocation.requests, "get", offline)
    assert IPGeolocator().locate() is None
    monkeypatch.setattr(geolocation.requests, "get", lambda url, timeout: FakeResponse(200, {"status": "fail"}))
    assert IPGeolocator().locate() is None
