"""
In-process publish/subscribe of job events, keyed by job id.

Each live-update connection (one browser tab) owns a channel and subscribes
it under the job id it is watching. The job controller publishes every
state transition; the bus fans the event out to every channel registered
for that id.

Rules:
  - A channel whose `send` fails is dropped; delivery to the rest continues.
  - A terminal event (`completed` / `failed`) closes and forgets every
    channel for that id after delivery.
  - Publishing to an id nobody watches is a no-op. Late viewers read the
    terminal state from the record store instead.

All methods are synchronous and must be called from the event loop thread,
so subscribe / unsubscribe / publish never interleave mid-operation.
The subscriber table is process-local: with several workers, a viewer only
sees events published by the worker it is connected to.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from app.schemas.job import JobEvent

logger = logging.getLogger(__name__)


class ChannelClosedError(Exception):
    """Raised by a channel that can no longer accept events."""


class Channel(Protocol):
    def send(self, event: JobEvent) -> None: ...

    def close(self) -> None: ...


class QueueChannel:
    """
    Channel backed by an asyncio.Queue, read by one SSE response generator.

    `send` never blocks: a reader that falls `maxsize` events behind is
    treated as gone.
    """

    _CLOSED = object()

    def __init__(self, maxsize: int = 64) -> None:
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._maxsize = maxsize
        self.closed = False

    def send(self, event: JobEvent) -> None:
        if self.closed:
            raise ChannelClosedError("channel is closed")
        if self._queue.qsize() >= self._maxsize:
            raise ChannelClosedError(f"channel buffer full ({self._maxsize} events)")
        self._queue.put_nowait(event)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._queue.put_nowait(self._CLOSED)

    async def next_event(self, timeout: float | None = None) -> JobEvent | None:
        """
        Wait for the next event. Returns None once the channel is closed and
        drained; raises TimeoutError if nothing arrives within `timeout`.
        """
        item = await asyncio.wait_for(self._queue.get(), timeout)
        if item is self._CLOSED:
            return None
        return item  # type: ignore[return-value]


class ProgressBus:
    def __init__(self) -> None:
        self._subscribers: dict[int, set[Channel]] = {}

    def subscribe(self, job_id: int, channel: Channel) -> None:
        channels = self._subscribers.setdefault(job_id, set())
        channels.add(channel)
        logger.info(
            "Client subscribed to analysis %d (%d total)",
            job_id, len(channels), extra={"job_id": job_id},
        )

    def unsubscribe(self, job_id: int, channel: Channel) -> None:
        channels = self._subscribers.get(job_id)
        if channels is None or channel not in channels:
            return
        channels.discard(channel)
        if not channels:
            del self._subscribers[job_id]
        logger.info(
            "Client unsubscribed from analysis %d (%d remaining)",
            job_id, len(channels), extra={"job_id": job_id},
        )

    def publish(self, job_id: int, event: JobEvent) -> int:
        """Deliver `event` to every channel watching `job_id`. Returns the delivered count."""
        channels = self._subscribers.get(job_id)
        if not channels:
            logger.debug("No clients listening for analysis %d", job_id)
            return 0

        delivered = 0
        # Iterate a snapshot: failed channels are removed as we go.
        for channel in list(channels):
            try:
                channel.send(event)
            except Exception as exc:
                logger.warning(
                    "Dropping subscriber of analysis %d: %s",
                    job_id, exc, extra={"job_id": job_id},
                )
                self.unsubscribe(job_id, channel)
            else:
                delivered += 1

        logger.debug(
            "Published %s for analysis %d to %d client(s)",
            event.event_name, job_id, delivered,
        )

        if event.is_terminal:
            self.close(job_id)
        return delivered

    def close(self, job_id: int) -> None:
        """Close and forget every channel watching `job_id`."""
        channels = self._subscribers.pop(job_id, None)
        if not channels:
            return
        for channel in channels:
            try:
                channel.close()
            except Exception:
                logger.exception("Error closing channel for analysis %d", job_id)
        logger.info(
            "Closed %d connection(s) for analysis %d",
            len(channels), job_id, extra={"job_id": job_id},
        )

    def close_all(self) -> None:
        for job_id in list(self._subscribers):
            self.close(job_id)

    def connection_count(self, job_id: int | None = None) -> int:
        if job_id is not None:
            return len(self._subscribers.get(job_id, ()))
        return sum(len(channels) for channels in self._subscribers.values())
