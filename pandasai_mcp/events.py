"""
Server-Sent Events broadcasting.

Each subscriber gets its own `Subscription`: a bounded queue plus two asyncio
tasks, one emitting `heartbeat` events and one emitting `status` events built
from the session snapshot. Subscribing queues a `connection` event followed by
an immediate `status` event. Closing a subscription cancels both tasks.
Events that do not fit in the queue are dropped; nothing is replayed.
"""

import asyncio
import json
import uuid
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, Optional, Set

import structlog

from .config import settings
from .session import SessionStore

logger = structlog.get_logger(__name__)


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def format_sse(event: Dict[str, Any]) -> str:
    """Encodes one event as an SSE `data:` frame."""
    return f"data: {json.dumps(event, ensure_ascii=False, default=str)}\n\n"


class Subscription:
    """One SSE subscriber: its event queue and its two periodic tasks."""

    def __init__(self, broadcaster: "EventBroadcaster", subscriber_id: str, queue_size: int) -> None:
        self.broadcaster = broadcaster
        self.subscriber_id = subscriber_id
        self.queue: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue(maxsize=queue_size)
        self.tasks: Set[asyncio.Task] = set()
        self.closed = False
        self.dropped = 0

    def publish(self, event: Dict[str, Any]) -> bool:
        """Queues an event. Returns False if it was dropped."""
        if self.closed:
            return False
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.debug("sse_event_dropped", subscriber_id=self.subscriber_id, event_type=event.get("type"))
            return False
        return True

    def start_periodic(self, interval: float, make_event: Callable[[], Dict[str, Any]], name: str) -> None:
        task = asyncio.create_task(self._repeat(interval, make_event), name=f"sse-{name}-{self.subscriber_id}")
        self.tasks.add(task)

    async def _repeat(self, interval: float, make_event: Callable[[], Dict[str, Any]]) -> None:
        # Fixed interval, no jitter or backoff.
        while True:
            await asyncio.sleep(interval)
            self.publish(make_event())

    async def get(self) -> Dict[str, Any]:
        return await self.queue.get()

    def get_nowait(self) -> Optional[Dict[str, Any]]:
        try:
            return self.queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    async def close(self) -> None:
        """Cancels both timers and detaches from the broadcaster. Idempotent."""
        if self.closed:
            return
        self.closed = True
        for task in self.tasks:
            task.cancel()
        self.broadcaster._detach(self)
        logger.info("sse_client_disconnected", subscriber_id=self.subscriber_id, dropped_events=self.dropped)
        await asyncio.gather(*self.tasks, return_exceptions=True)

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


class EventBroadcaster:
    """
    Manages SSE subscribers. There is no shared fan-out buffer: every
    subscriber has its own timers, queue and connection event.
    """

    def __init__(
        self,
        session_store: SessionStore,
        heartbeat_interval: Optional[float] = None,
        status_interval: Optional[float] = None,
        queue_size: Optional[int] = None,
        disconnect_poll_interval: Optional[float] = None,
        service_name: Optional[str] = None,
        service_version: Optional[str] = None
    ) -> None:
        self.session_store = session_store
        self.heartbeat_interval = heartbeat_interval or settings.SSE_HEARTBEAT_SECONDS
        self.status_interval = status_interval or settings.SSE_STATUS_SECONDS
        self.queue_size = queue_size or settings.SSE_QUEUE_SIZE
        self.disconnect_poll_interval = disconnect_poll_interval or settings.SSE_DISCONNECT_POLL_SECONDS
        self.service_name = service_name or settings.SERVICE_NAME
        self.service_version = service_version or settings.SERVICE_VERSION
        self.subscriptions: Dict[str, Subscription] = {}

    @property
    def subscriber_count(self) -> int:
        return len(self.subscriptions)

    def connection_event(self) -> Dict[str, Any]:
        return {
            "type": "connection",
            "message": f"Connected to {self.service_name}",
            "timestamp": utc_timestamp(),
        }

    def heartbeat_event(self) -> Dict[str, Any]:
        return {"type": "heartbeat", "timestamp": utc_timestamp()}

    def status_event(self) -> Dict[str, Any]:
        snapshot = self.session_store.snapshot()
        timestamp = utc_timestamp()
        return {
            "type": "status",
            "data": {
                "service": self.service_name,
                "version": self.service_version,
                "status": "running",
                "dataLoaded": snapshot["data_loaded"],
                "llmConfigured": snapshot["llm_configured"],
                "timestamp": timestamp,
            },
            "timestamp": timestamp,
        }

    async def subscribe(self) -> Subscription:
        """Opens a subscription and queues the connection and first status events."""
        subscription = Subscription(self, uuid.uuid4().hex, self.queue_size)
        self.subscriptions[subscription.subscriber_id] = subscription

        subscription.publish(self.connection_event())
        subscription.publish(self.status_event())
        subscription.start_periodic(self.heartbeat_interval, self.heartbeat_event, "heartbeat")
        subscription.start_periodic(self.status_interval, self.status_event, "status")

        logger.info("sse_client_connected", subscriber_id=subscription.subscriber_id, subscribers=self.subscriber_count)
        return subscription

    def _detach(self, subscription: Subscription) -> None:
        self.subscriptions.pop(subscription.subscriber_id, None)

    async def close_all(self) -> None:
        for subscription in list(self.subscriptions.values()):
            await subscription.close()

    async def stream(self, is_disconnected: Callable[[], Awaitable[bool]]) -> AsyncGenerator[str, None]:
        """
        Yields SSE frames for a new subscriber until the client goes away.

        Args:
            is_disconnected: Awaitable check for client disconnect, usually
                             `request.is_disconnected`.
        """
        subscription = await self.subscribe()
        try:
            while True:
                try:
                    event = await asyncio.wait_for(subscription.get(), timeout=self.disconnect_poll_interval)
                except asyncio.TimeoutError:
                    if await is_disconnected():
                        break
                    continue
                if await is_disconnected():
                    break
                yield format_sse(event)
        finally:
            await subscription.close()
