"""
Client-side feed telemetry buffer.

FeedEventTracker collects interaction events for one viewer session and ships
them in batches to the ingestion endpoint. A batch is flushed when:
- the buffer reaches ``max_size`` events
- the periodic timer fires (every ``flush_interval`` seconds)
- the client goes to the background (``on_visibility_change("hidden")``)
- the tracker is destroyed

Delivery first tries the fire-and-forget BeaconTransport, which only reports
whether it accepted the batch (it is meant to survive the client going
away). If the beacon cannot even enqueue, the batch is POSTed with httpx.
When that POST fails, the batch goes back to the front of the buffer; the
buffer is bounded to ``3 * max_size`` and the oldest events are dropped
beyond that.

Usage:
    tracker = FeedEventTracker(user_id, session_id)
    tracker.set_experiment("exp-1", "treatment")
    tracker.track(post_id, author_id, FeedEventType.IMPRESSION, position_in_feed=3)
    ...
    tracker.destroy()
"""

import queue
import threading
from typing import Any, Dict, List, Optional, Union

import httpx

from config.settings import get_settings
from core.logging import LoggerMixin
from core.utils import utc_now
from feed.constants import EVENT_BATCH_MAX_SIZE, EVENT_FLUSH_INTERVAL_SECONDS, EVENT_REQUEUE_MULTIPLIER
from feed.models import FeedEvent, FeedEventType

DEFAULT_HTTP_TIMEOUT = 5.0
BEACON_MAX_PENDING = 16


# =============================================================================
# Transports
# =============================================================================

class BeaconTransport(LoggerMixin):
    """
    Fire-and-forget sender.

    ``send`` only enqueues the payload for a background thread and returns
    whether it was accepted; delivery outcomes are logged, never reported.
    """

    def __init__(
        self,
        url: str,
        client: Optional[httpx.Client] = None,
        max_pending: int = BEACON_MAX_PENDING,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
    ):
        self._url = url
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout)
        self._queue: "queue.Queue[Optional[Dict[str, Any]]]" = queue.Queue(maxsize=max_pending)
        self._closed = False
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    def send(self, payload: Dict[str, Any]) -> bool:
        with self._lock:
            if self._closed:
                return False
            self._ensure_worker()
        try:
            self._queue.put_nowait(payload)
        except queue.Full:
            return False
        return True

    def _ensure_worker(self) -> None:
        if self._thread is None:
            self._thread = threading.Thread(target=self._run, name="feed-beacon", daemon=True)
            self._thread.start()

    def _run(self) -> None:
        while True:
            payload = self._queue.get()
            if payload is None:
                return
            try:
                self._client.post(self._url, json=payload).raise_for_status()
            except httpx.HTTPError as e:
                self.logger.warning("Beacon delivery failed", error=str(e), events=len(payload.get("events", [])))

    def close(self, timeout: float = DEFAULT_HTTP_TIMEOUT) -> None:
        """
        Stop accepting batches and wait up to ``timeout`` seconds for the
        queued ones to be sent.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            thread = self._thread
        if thread is not None:
            self._queue.put(None)
            thread.join(timeout)
            if thread.is_alive():
                self.logger.warning("Beacon still draining at close", pending=self._queue.qsize())
                return
        if self._owns_client:
            self._client.close()


class HttpTransport:
    """Plain request fallback; raises on any delivery failure."""

    def __init__(self, url: str, client: Optional[httpx.Client] = None, timeout: float = DEFAULT_HTTP_TIMEOUT):
        self._url = url
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout)

    def post(self, payload: Dict[str, Any]) -> None:
        response = self._client.post(self._url, json=payload)
        response.raise_for_status()

    def close(self) -> None:
        if self._owns_client:
            self._client.close()


# =============================================================================
# Tracker
# =============================================================================

class FeedEventTracker(LoggerMixin):
    """Buffers feed events for one session and flushes them in batches."""

    def __init__(
        self,
        user_id: str,
        session_id: str,
        beacon: Optional[BeaconTransport] = None,
        http: Optional[HttpTransport] = None,
        max_size: Optional[int] = None,
        flush_interval: Optional[float] = None,
        start_timer: bool = True,
    ):
        """
        Args:
            user_id: Viewer the events belong to
            session_id: Client session id
            beacon: Fire-and-forget transport (defaults to the ingest URL)
            http: Fallback transport (defaults to the ingest URL)
            max_size: Buffer size that triggers a flush
            flush_interval: Seconds between periodic flushes
            start_timer: Start the periodic flush thread immediately
        """
        settings = get_settings()
        url = settings.event_ingest_url

        self.user_id = user_id
        self.session_id = session_id
        self._beacon = beacon or BeaconTransport(url)
        self._http = http or HttpTransport(url)
        self._max_size = max_size or settings.event_batch_max_size or EVENT_BATCH_MAX_SIZE
        self._flush_interval = flush_interval or settings.event_flush_interval_seconds or EVENT_FLUSH_INTERVAL_SECONDS
        self._max_buffer = self._max_size * EVENT_REQUEUE_MULTIPLIER

        self._buffer: List[FeedEvent] = []
        self._lock = threading.Lock()
        self._experiment_id: Optional[str] = None
        self._variant: Optional[str] = None

        self._stop = threading.Event()
        self._timer: Optional[threading.Thread] = None
        if start_timer:
            self._start_timer()

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._buffer)

    def set_experiment(self, experiment_id: Optional[str], variant: Optional[str]) -> None:
        """Tag subsequent events with the feed's experiment and variant."""
        self._experiment_id = experiment_id
        self._variant = variant

    def track(
        self,
        post_id: str,
        author_id: str,
        event_type: Union[FeedEventType, str],
        metadata: Optional[Dict[str, Any]] = None,
        position_in_feed: Optional[int] = None,
    ) -> None:
        event = FeedEvent(
            user_id=self.user_id,
            session_id=self.session_id,
            post_id=post_id,
            author_id=author_id,
            event_type=event_type,
            metadata=metadata,
            position_in_feed=position_in_feed,
            experiment_id=self._experiment_id,
            variant=self._variant,
            created_at=utc_now(),
        )
        with self._lock:
            self._buffer.append(event)
            full = len(self._buffer) >= self._max_size
        if full:
            self.flush()

    def flush(self) -> bool:
        """
        Send the whole buffer as one batch.

        Returns:
            True if the batch was handed off (or there was nothing to send),
            False if it was re-queued after a failed delivery
        """
        with self._lock:
            if not self._buffer:
                return True
            events = self._buffer
            self._buffer = []

        payload = {"events": [e.model_dump(mode="json") for e in events]}
        try:
            if not self._beacon.send(payload):
                self._http.post(payload)
            return True
        except Exception as e:
            self.logger.warning("Event flush failed, re-queueing batch", error=str(e), events=len(events))
            self._requeue(events)
            return False

    def _requeue(self, events: List[FeedEvent]) -> None:
        with self._lock:
            combined = events + self._buffer
            dropped = len(combined) - self._max_buffer
            if dropped > 0:
                combined = combined[dropped:]
                self.logger.warning("Event buffer full, dropped oldest events", dropped=dropped)
            self._buffer = combined

    def on_visibility_change(self, state: str) -> None:
        if state == "hidden":
            self.flush()

    def destroy(self) -> None:
        """
        Stop the periodic timer, flush what is left and close the transports.

        Closing the beacon waits for the final batch to go out, so events
        tracked right before shutdown are not lost with the worker thread.
        """
        self._stop.set()
        if self._timer is not None:
            self._timer.join(timeout=1.0)
            self._timer = None
        self.flush()
        self._beacon.close()
        self._http.close()

    # =========================================================================
    # Timer
    # =========================================================================

    def _start_timer(self) -> None:
        self._timer = threading.Thread(target=self._run_timer, name="feed-event-flush", daemon=True)
        self._timer.start()

    def _run_timer(self) -> None:
        while not self._stop.wait(self._flush_interval):
            self.flush()
