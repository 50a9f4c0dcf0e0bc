"""Report sinks and identity collaborators for detection events."""

from .client import ReportClient, ReportConfig, ReportForwarder, ReportSubmissionError
from .geolocation import IPGeolocator, Location
from .mqtt_client import MQTTConfig, MQTTEventPublisher
from .session import SessionProvider, StaticSession
