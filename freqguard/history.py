"""Bounded newest-first log of detection events."""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Callable, Deque, Dict, List

from loguru import logger

DEFAULT_HISTORY_LIMIT = 500


@dataclass(frozen=True)
class DetectionEvent:
    band: str
    timestamp: float
    intensity_percent: float
    countermeasure_activated: bool
    peak_hz: float = 0.0

    @property
    def iso_timestamp(self) -> str:
        return datetime.fromtimestamp(self.timestamp, tz=timezone.utc).isoformat()

    def to_dict(self) -> Dict[str, object]:
        data = asdict(self)
        data["iso_timestamp"] = self.iso_timestamp
        return data


HistoryListener = Callable[[DetectionEvent], None]


class DetectionHistory:
    """Append-only event log; the oldest entries are evicted past ``limit``."""

    def __init__(self, limit: int = DEFAULT_HISTORY_LIMIT) -> None:
        if limit <= 0:
            raise ValueError("History limit must be positive")
        self.limit = limit
        self._events: Deque[DetectionEvent] = deque(maxlen=limit)
        self._listeners: List[HistoryListener] = []
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._events)

    def events(self) -> List[DetectionEvent]:
        """Snapshot of the log, newest first."""
        with self._lock:
            return list(self._events)

    def latest(self) -> DetectionEvent | None:
        with self._lock:
            return self._events[0] if self._events else None

    def subscribe(self, listener: HistoryListener) -> None:
        self._listeners.append(listener)

    def append(self, event: DetectionEvent) -> DetectionEvent:
        with self._lock:
            self._events.appendleft(event)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as exc:
                logger.error("History listener failed: {}", exc)
        return event

    def clear(self) -> None:
        with self._lock:
            self._events.clear()
