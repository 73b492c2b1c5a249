"""Per-job progress streams with a drop-oldest buffer."""

import asyncio
from collections import deque
from typing import AsyncIterator, Deque, Dict, List, Optional, Set

from ..foundation.logging import get_logger
from ..foundation.metrics import get_metrics_collector
from ..models.records import ProgressEvent

DEFAULT_BUFFER_SIZE = 256


class ProgressStream:
    """Bounded event buffer read by a single consumer.

    ``publish`` never waits: when the buffer is full the oldest event is
    discarded and counted in ``dropped``. Iteration ends after ``close``
    once the remaining events are drained.
    """

    def __init__(self, job_id: str, maxsize: int = DEFAULT_BUFFER_SIZE):
        if maxsize < 1:
            raise ValueError("maxsize must be at least 1")
        self.job_id = job_id
        self.maxsize = maxsize
        self.dropped = 0
        self._buffer: Deque[ProgressEvent] = deque()
        self._ready = asyncio.Event()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._buffer)

    def publish(self, event: ProgressEvent) -> bool:
        """Buffer an event; returns False if the stream is already closed."""
        if self._closed:
            return False
        if len(self._buffer) >= self.maxsize:
            self._buffer.popleft()
            self.dropped += 1
        self._buffer.append(event)
        self._ready.set()
        return True

    def close(self) -> None:
        self._closed = True
        self._ready.set()

    async def get(self) -> Optional[ProgressEvent]:
        """Next event, or None once the stream is closed and drained."""
        while not self._buffer:
            if self._closed:
                return None
            self._ready.clear()
            await self._ready.wait()
        return self._buffer.popleft()

    def drain(self) -> List[ProgressEvent]:
        events = list(self._buffer)
        self._buffer.clear()
        return events

    def __aiter__(self) -> AsyncIterator[ProgressEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[ProgressEvent]:
        while True:
            event = await self.get()
            if event is None:
                return
            yield event


class ProgressHub:
    """Fans a job's progress events out to every subscriber."""

    def __init__(self, buffer_size: int = DEFAULT_BUFFER_SIZE):
        self.buffer_size = buffer_size
        self._streams: Dict[str, List[ProgressStream]] = {}
        self._last: Dict[str, ProgressEvent] = {}
        self._finished: Set[str] = set()
        self.logger = get_logger(__name__)
        self.metrics = get_metrics_collector()

    def subscribe(self, job_id: str) -> ProgressStream:
        """Open a stream for ``job_id``, primed with the latest event if there is one."""
        stream = ProgressStream(job_id, self.buffer_size)
        last = self._last.get(job_id)
        if last is not None:
            stream.publish(last)
        if job_id in self._finished:
            stream.close()
            return stream
        self._streams.setdefault(job_id, []).append(stream)
        return stream

    def unsubscribe(self, stream: ProgressStream) -> None:
        streams = self._streams.get(stream.job_id, [])
        if stream in streams:
            streams.remove(stream)
        stream.close()

    def publish(self, event: ProgressEvent) -> None:
        self._finished.discard(event.job_id)
        self._last[event.job_id] = event
        for stream in self._streams.get(event.job_id, []):
            before = stream.dropped
            stream.publish(event)
            if stream.dropped > before:
                self.metrics.increment_counter("progress.events_dropped")

    def close(self, job_id: str) -> None:
        """End every stream of a finished job."""
        self._finished.add(job_id)
        for stream in self._streams.pop(job_id, []):
            stream.close()
        self.logger.debug(f"Closed progress streams for job {job_id}")

    def subscriber_count(self, job_id: str) -> int:
        return len(self._streams.get(job_id, []))
