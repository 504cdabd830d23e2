"""Fan-out of server-initiated events to SSE subscribers."""

import asyncio
import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Optional

from bridge.app.core.logging import get_log_context, get_logger
from bridge.app.exceptions import CapacityError

logger = get_logger(__name__)

# Pending events per subscriber before it counts as a failed writer
DEFAULT_QUEUE_SIZE = 100

_CLOSE = None


def format_sse(event: str, data: Any) -> str:
    """Encode one server-sent event frame."""
    payload = data if isinstance(data, str) else json.dumps(data)
    lines = "\n".join(f"data: {line}" for line in payload.splitlines() or [""])
    return f"event: {event}\n{lines}\n\n"


@dataclass
class StreamSubscriber:
    """One connected streaming client."""
    id: str
    source: str
    queue: asyncio.Queue = field(default_factory=lambda: asyncio.Queue(maxsize=DEFAULT_QUEUE_SIZE))
    connected_at: float = field(default_factory=time.time)
    closed: bool = False

    def offer(self, frame: str) -> bool:
        """Queue a frame without waiting. False means the write failed."""
        if self.closed:
            return False
        try:
            self.queue.put_nowait(frame)
        except asyncio.QueueFull:
            return False
        return True

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        # Make room for the close marker so the stream loop always wakes up
        while not self.queue.empty():
            self.queue.get_nowait()
        self.queue.put_nowait(_CLOSE)


class SubscriberRegistry:
    """Bounded set of SSE subscribers.

    ``connect`` refuses new subscribers once ``max_connections`` are
    registered. A broadcast is delivered to each subscriber independently; a
    subscriber whose queue is full or closed is removed without affecting the
    others.
    """

    def __init__(self, max_connections: int = 20, queue_size: int = DEFAULT_QUEUE_SIZE):
        self.max_connections = max_connections
        self._queue_size = queue_size
        self._subscribers: dict[str, StreamSubscriber] = {}
        self._lock = asyncio.Lock()

    @property
    def count(self) -> int:
        return len(self._subscribers)

    def __contains__(self, subscriber_id: str) -> bool:
        return subscriber_id in self._subscribers

    async def connect(self, source: str) -> StreamSubscriber:
        async with self._lock:
            if len(self._subscribers) >= self.max_connections:
                logger.warning(
                    f"Rejected SSE connection from {source}: maximum of {self.max_connections} reached",
                    extra=get_log_context(source=source, category="capacity"),
                )
                raise CapacityError(self.max_connections)
            subscriber = StreamSubscriber(
                id=str(uuid.uuid4()),
                source=source,
                queue=asyncio.Queue(maxsize=self._queue_size),
            )
            self._subscribers[subscriber.id] = subscriber
        logger.info(
            f"SSE client connected: {subscriber.id}",
            extra=get_log_context(source=source, session_id=subscriber.id),
        )
        return subscriber

    async def disconnect(self, subscriber_id: str) -> bool:
        async with self._lock:
            subscriber = self._subscribers.pop(subscriber_id, None)
        if subscriber is None:
            return False
        subscriber.close()
        logger.info(f"SSE client disconnected: {subscriber_id}")
        return True

    async def broadcast(self, event: str, data: Any) -> int:
        """Send an event to every subscriber.

        Returns:
            Number of subscribers the event was delivered to
        """
        frame = format_sse(event, data)
        async with self._lock:
            subscribers = list(self._subscribers.values())

        delivered = 0
        failed = []
        for subscriber in subscribers:
            if subscriber.offer(frame):
                delivered += 1
            else:
                failed.append(subscriber.id)

        for subscriber_id in failed:
            logger.warning(f"Removing SSE client {subscriber_id} after failed write")
            await self.disconnect(subscriber_id)
        return delivered

    async def close_all(self) -> None:
        async with self._lock:
            subscribers = list(self._subscribers.values())
            self._subscribers.clear()
        for subscriber in subscribers:
            subscriber.close()
        if subscribers:
            logger.info(f"Closed {len(subscribers)} SSE connections")


async def stream_events(
    registry: SubscriberRegistry,
    subscriber: StreamSubscriber,
    keepalive_seconds: float = 15.0,
) -> AsyncIterator[str]:
    """Yield SSE frames for one subscriber until it is closed or disconnects.

    The subscriber is always removed from the registry when the generator
    finishes, including when the client goes away mid-stream.
    """
    try:
        yield format_sse("connected", {"type": "connected", "sessionId": subscriber.id})
        while True:
            try:
                frame: Optional[str] = await asyncio.wait_for(subscriber.queue.get(), timeout=keepalive_seconds)
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"
                continue
            if frame is _CLOSE:
                break
            yield frame
    finally:
        await registry.disconnect(subscriber.id)
