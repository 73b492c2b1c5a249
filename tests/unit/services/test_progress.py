"""Tests for per-job progress streams."""

import asyncio

import pytest

from sitemirror.foundation.metrics import get_metrics_collector
from sitemirror.models.records import ProgressEvent
from sitemirror.services.progress import ProgressHub, ProgressStream

pytestmark = pytest.mark.timeout(10)


def event(n, job_id="job", status="crawling"):
    return ProgressEvent(job_id=job_id, current_page=n, total_pages=10, status=status, message=f"page {n}")


class TestProgressStream:
    """Test suite for ProgressStream."""

    async def test_events_in_order(self):
        """Test events are delivered in publication order."""
        stream = ProgressStream("job")
        for n in range(3):
            stream.publish(event(n))
        assert [(await stream.get()).current_page for _ in range(3)] == [0, 1, 2]

    def test_drop_oldest_when_full(self):
        """Test a full buffer discards the oldest events and counts them."""
        stream = ProgressStream("job", maxsize=2)
        for n in range(5):
            assert stream.publish(event(n)) is True
        assert stream.dropped == 3
        assert [e.current_page for e in stream.drain()] == [3, 4]
        assert len(stream) == 0

    async def test_get_waits_for_publish(self):
        """Test a consumer blocks until an event arrives."""
        stream = ProgressStream("job")
        waiter = asyncio.create_task(stream.get())
        await asyncio.sleep(0.01)
        assert not waiter.done()

        stream.publish(event(1))
        assert (await asyncio.wait_for(waiter, 1)).current_page == 1

    async def test_iteration_ends_after_close(self):
        """Test iteration drains remaining events then stops."""
        stream = ProgressStream("job")
        stream.publish(event(1))
        stream.publish(event(2))
        stream.close()

        assert stream.publish(event(3)) is False
        assert [e.current_page async for e in stream] == [1, 2]
        assert await stream.get() is None

    def test_invalid_size(self):
        """Test a zero-sized buffer is rejected."""
        with pytest.raises(ValueError):
            ProgressStream("job", maxsize=0)

    def test_contract_shape(self):
        """Test events serialize with contract names."""
        assert event(2).to_contract() == {
            "currentPage": 2, "totalPages": 10, "status": "crawling", "message": "page 2",
        }


class TestProgressHub:
    """Test suite for ProgressHub."""

    async def test_fan_out(self):
        """Test every subscriber of a job receives its events."""
        hub = ProgressHub()
        first, second = hub.subscribe("job"), hub.subscribe("job")
        other = hub.subscribe("other")

        hub.publish(event(1))

        assert (await first.get()).current_page == 1
        assert (await second.get()).current_page == 1
        assert len(other) == 0
        assert hub.subscriber_count("job") == 2

    def test_late_subscriber_gets_latest(self):
        """Test a new stream is primed with the last event."""
        hub = ProgressHub()
        hub.publish(event(1))
        hub.publish(event(2))
        assert [e.current_page for e in hub.subscribe("job").drain()] == [2]

    async def test_close_ends_streams(self):
        """Test closing a job ends its streams and later subscriptions."""
        hub = ProgressHub()
        stream = hub.subscribe("job")
        hub.publish(event(10, status="completed"))
        hub.close("job")

        assert [e.status async for e in stream] == ["completed"]
        late = hub.subscribe("job")
        assert late.closed
        assert [e.status async for e in late] == ["completed"]
        assert hub.subscriber_count("job") == 0

    def test_resumed_job_reopens(self):
        """Test publishing after close accepts new subscribers again."""
        hub = ProgressHub()
        hub.close("job")
        hub.publish(event(1))
        assert not hub.subscribe("job").closed

    def test_unsubscribe(self):
        """Test an unsubscribed stream stops receiving events."""
        hub = ProgressHub()
        stream = hub.subscribe("job")
        hub.unsubscribe(stream)
        hub.publish(event(1))
        assert stream.closed
        assert len(stream) == 0

    def test_slow_consumer_does_not_block(self):
        """Test a full subscriber drops events without slowing the publisher."""
        hub = ProgressHub(buffer_size=1)
        stream = hub.subscribe("job")
        for n in range(4):
            hub.publish(event(n))
        assert stream.dropped == 3
        assert get_metrics_collector().get_counter_value("progress.events_dropped") == 3
