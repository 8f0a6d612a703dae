"""
Unit tests for the client-side feed event tracker and its transports.
"""

import threading
import time

import httpx
import pytest

from feed.event_tracker import BeaconTransport, FeedEventTracker, HttpTransport
from feed.models import FeedEventType


class FakeBeacon:
    def __init__(self, accept=True):
        self.accept = accept
        self.sent = []
        self.closed = False

    def send(self, payload):
        if self.accept:
            self.sent.append(payload)
        return self.accept

    def close(self):
        self.closed = True


class FakeHttp:
    def __init__(self, error=None):
        self.error = error
        self.posted = []
        self.closed = False

    def post(self, payload):
        if self.error is not None:
            raise self.error
        self.posted.append(payload)

    def close(self):
        self.closed = True


def _tracker(beacon=None, http=None, max_size=3, **kwargs):
    return FeedEventTracker(
        "viewer-1",
        "session-1",
        beacon=beacon or FakeBeacon(),
        http=http or FakeHttp(),
        max_size=max_size,
        start_timer=kwargs.pop("start_timer", False),
        **kwargs,
    )


class TestFeedEventTracker:

    def test_flush_at_max_size(self):
        beacon = FakeBeacon()
        tracker = _tracker(beacon=beacon)

        for i in range(3):
            tracker.track(f"p{i}", "author-a", FeedEventType.IMPRESSION, position_in_feed=i)

        assert tracker.pending == 0
        assert len(beacon.sent) == 1
        events = beacon.sent[0]["events"]
        assert [e["post_id"] for e in events] == ["p0", "p1", "p2"]
        assert events[0]["event_type"] == "impression"
        assert events[0]["user_id"] == "viewer-1"
        assert events[0]["session_id"] == "session-1"

    def test_experiment_tags(self):
        beacon = FakeBeacon()
        tracker = _tracker(beacon=beacon)
        tracker.set_experiment("exp-1", "treatment")

        tracker.track("p1", "author-a", "like")
        tracker.flush()

        event = beacon.sent[0]["events"][0]
        assert event["experiment_id"] == "exp-1"
        assert event["variant"] == "treatment"

    def test_beacon_refusal_falls_back_to_http(self):
        http = FakeHttp()
        tracker = _tracker(beacon=FakeBeacon(accept=False), http=http)

        tracker.track("p1", "author-a", "click")
        assert tracker.flush() is True

        assert len(http.posted) == 1
        assert tracker.pending == 0

    def test_failed_delivery_requeues(self):
        tracker = _tracker(beacon=FakeBeacon(accept=False), http=FakeHttp(error=RuntimeError("offline")), max_size=10)

        tracker.track("p1", "author-a", "click")
        tracker.track("p2", "author-a", "click")

        assert tracker.flush() is False
        assert tracker.pending == 2

    def test_requeue_keeps_newest_events(self):
        tracker = _tracker(beacon=FakeBeacon(accept=False), http=FakeHttp(error=RuntimeError("offline")), max_size=2)

        for i in range(10):
            tracker.track(f"p{i}", "author-a", "impression")

        assert tracker.pending == 6
        http = FakeHttp()
        tracker._http = http
        tracker.flush()
        assert [e["post_id"] for e in http.posted[0]["events"]] == [f"p{i}" for i in range(4, 10)]

    def test_empty_flush(self):
        beacon = FakeBeacon()
        assert _tracker(beacon=beacon).flush() is True
        assert beacon.sent == []

    def test_visibility_hidden_flushes(self):
        beacon = FakeBeacon()
        tracker = _tracker(beacon=beacon)
        tracker.track("p1", "author-a", "dwell", metadata={"dwell_ms": 1500})

        tracker.on_visibility_change("visible")
        assert beacon.sent == []

        tracker.on_visibility_change("hidden")
        assert len(beacon.sent) == 1
        assert beacon.sent[0]["events"][0]["metadata"] == {"dwell_ms": 1500}

    def test_destroy_flushes(self):
        beacon = FakeBeacon()
        tracker = _tracker(beacon=beacon)
        tracker.track("p1", "author-a", "share")

        tracker.destroy()

        assert len(beacon.sent) == 1
        assert beacon.closed

    def test_periodic_flush(self):
        beacon = FakeBeacon()
        tracker = _tracker(beacon=beacon, max_size=100, flush_interval=0.05, start_timer=True)
        try:
            tracker.track("p1", "author-a", "impression")
            deadline = time.time() + 2.0
            while not beacon.sent and time.time() < deadline:
                time.sleep(0.01)
            assert len(beacon.sent) == 1
        finally:
            tracker.destroy()

    def test_invalid_event_type_rejected(self):
        with pytest.raises(ValueError):
            _tracker().track("p1", "author-a", "teleport")


class TestTransports:

    def test_beacon_delivers_in_background(self):
        received = []
        done = threading.Event()

        def handler(request):
            received.append(request.content)
            done.set()
            return httpx.Response(200, json={"ok": True})

        client = httpx.Client(transport=httpx.MockTransport(handler))
        beacon = BeaconTransport("http://test/api/feed/events", client=client)

        assert beacon.send({"events": []}) is True
        assert done.wait(2.0)
        beacon.close()
        assert len(received) == 1

    def test_closed_beacon_refuses(self):
        client = httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        beacon = BeaconTransport("http://test/events", client=client)
        beacon.close()
        assert beacon.send({"events": []}) is False

    def test_full_beacon_queue_refuses(self):
        release = threading.Event()

        def handler(request):
            release.wait(2.0)
            return httpx.Response(200)

        client = httpx.Client(transport=httpx.MockTransport(handler))
        beacon = BeaconTransport("http://test/events", client=client, max_pending=1)
        try:
            results = [beacon.send({"events": []}) for _ in range(5)]
            assert results[0] is True
            assert False in results
        finally:
            release.set()
            beacon.close()

    def test_http_transport_raises_on_error_status(self):
        client = httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(500)))
        with pytest.raises(httpx.HTTPStatusError):
            HttpTransport("http://test/events", client=client).post({"events": []})

    def test_close_waits_for_queued_batch(self):
        received = []

        def handler(request):
            time.sleep(0.3)
            received.append(request.content)
            return httpx.Response(200)

        client = httpx.Client(transport=httpx.MockTransport(handler))
        beacon = BeaconTransport("http://test/events", client=client)

        assert beacon.send({"events": []}) is True
        beacon.close()

        assert len(received) == 1

    def test_owned_clients_closed(self):
        beacon = BeaconTransport("http://test/events")
        http = HttpTransport("http://test/events")

        beacon.close()
        http.close()

        assert beacon._client.is_closed
        assert http._client.is_closed

    def test_injected_client_left_open(self):
        client = httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        HttpTransport("http://test/events", client=client).close()
        assert not client.is_closed


class TestTrackerShutdown:

    def test_destroy_delivers_last_batch(self):
        received = []

        def handler(request):
            time.sleep(0.3)
            received.append(request.content)
            return httpx.Response(200)

        client = httpx.Client(transport=httpx.MockTransport(handler))
        http = FakeHttp()
        tracker = _tracker(beacon=BeaconTransport("http://test/events", client=client), http=http, max_size=100)
        tracker.track("p1", "author-a", "like")

        tracker.destroy()

        assert len(received) == 1
        assert b'"post_id":"p1"' in received[0].replace(b" ", b"")
        assert http.closed
