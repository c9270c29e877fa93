"""Progress reporting: events emitted after each entity type completes."""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .models.migration import utc_now

logger = logging.getLogger(__name__)


@dataclass
class ProgressEvent:
    """One progress notification."""
    stage: str
    message: str
    percentage: float
    timestamp: datetime = field(default_factory=utc_now)
    entity_type: Optional[str] = None
    counts: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "stage": self.stage,
            "message": self.message,
            "percentage": round(self.percentage, 1),
            "timestamp": self.timestamp.isoformat(),
            "entity_type": self.entity_type,
            "counts": self.counts,
        }


ProgressSink = Callable[[ProgressEvent], None]


def logging_sink(event: ProgressEvent) -> None:
    """Write progress events to the log."""
    logger.info(f"[{event.percentage:5.1f}%] {event.stage}: {event.message}")


class WebhookProgressSink:
    """POSTs progress events as JSON to a URL."""

    def __init__(self, url: str, timeout: float = 5.0, session: Optional[requests.Session] = None):
        """
        Initialize the webhook sink.

        Args:
            url: Endpoint receiving the events
            timeout: Per-request timeout in seconds
            session: Custom requests session
        """
        self.url = url
        self.timeout = timeout
        self._session = session or self._create_session()

    def _create_session(self) -> requests.Session:
        """Create a requests session with retry logic."""
        session = requests.Session()

        retries = Retry(
            total=3,
            backoff_factor=0.5,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["POST"],
        )

        adapter = HTTPAdapter(max_retries=retries)
        session.mount("https://", adapter)
        session.mount("http://", adapter)

        return session

    def __call__(self, event: ProgressEvent) -> None:
        response = self._session.post(self.url, json=event.to_dict(), timeout=self.timeout)
        response.raise_for_status()


class ProgressTracker:
    """
    Tracks completed entity types and notifies sinks.

    The percentage is the share of planned entity types that have finished.
    A failing sink is logged and never interrupts the run.
    """

    def __init__(self, total: int = 0, sinks: Optional[List[ProgressSink]] = None):
        self.total = total
        self.completed = 0
        self.sinks: List[ProgressSink] = list(sinks or [])
        self.events: List[ProgressEvent] = []
        self._lock = threading.Lock()

    def add_sink(self, sink: ProgressSink) -> None:
        self.sinks.append(sink)

    @property
    def percentage(self) -> float:
        if self.total <= 0:
            return 100.0
        return min(100.0, 100.0 * self.completed / self.total)

    def emit(
        self,
        stage: str,
        message: str,
        entity_type: Optional[str] = None,
        counts: Optional[Dict[str, int]] = None,
        advance: bool = False,
    ) -> ProgressEvent:
        """
        Record and publish an event.

        Args:
            stage: Phase or run stage name
            message: Human-readable message
            entity_type: Entity type the event is about
            counts: Record counts to include
            advance: Count one more entity type as finished first
        """
        with self._lock:
            if advance:
                self.completed += 1
            event = ProgressEvent(
                stage=stage,
                message=message,
                percentage=self.percentage,
                entity_type=entity_type,
                counts=dict(counts or {}),
            )
            self.events.append(event)

        for sink in self.sinks:
            try:
                sink(event)
            except Exception as e:
                logger.warning(f"Progress sink {sink!r} failed: {e}")
        return event

    def entity_done(self, stage: str, entity_type: str, counts: Dict[str, int], status: str) -> ProgressEvent:
        """Publish the completion of one entity type."""
        summary = ", ".join(f"{k}={v}" for k, v in counts.items())
        return self.emit(
            stage=stage,
            message=f"{entity_type} {status} ({summary})",
            entity_type=entity_type,
            counts=counts,
            advance=True,
        )
