"""In-process change feed with optional forwarding to RabbitMQ.

Delivery is at-least-once and unordered across entities, so consumers must
apply events idempotently (marking a notification as read twice is harmless).
"""
from __future__ import annotations

import asyncio
import json
import logging
import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

import pika
from pika.exceptions import AMQPError

from .config import get_settings
from .timeutils import utcnow

logger = logging.getLogger("coworking.events")

BOOKING_CREATED = "booking.created"
BOOKING_DELETED = "booking.deleted"
ANNOUNCEMENT_CREATED = "announcement.created"
NOTIFICATION_CREATED = "notification.created"


@dataclass(frozen=True)
class ChangeEvent:
    type: str
    entity_id: Any
    payload: Dict[str, Any] = field(default_factory=dict)
    user_id: Optional[int] = None
    occurred_at: datetime = field(default_factory=utcnow)

    def to_message(self) -> Dict[str, Any]:
        return {
            "event": self.type,
            "entity_id": self.entity_id,
            "user_id": self.user_id,
            "occurred_at": self.occurred_at.isoformat(),
            "payload": self.payload,
        }


class Subscription:
    """Queue of events matching a set of event types. Empty set means every type."""

    _CLOSED = object()

    def __init__(self, feed: "ChangeFeed", event_types: FrozenSet[str], user_id: Optional[int] = None) -> None:
        self._feed = feed
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self.event_types = event_types
        self.user_id = user_id
        self.closed = False

    def matches(self, event: ChangeEvent) -> bool:
        if self.event_types and event.type not in self.event_types:
            return False
        return self.user_id is None or event.user_id in (None, self.user_id)

    def deliver(self, event: ChangeEvent) -> None:
        self._queue.put(event)

    def get(self, timeout: Optional[float] = None) -> Optional[ChangeEvent]:
        """Next event, or ``None`` when ``timeout`` elapses or the subscription is closed."""

        if self.closed and self._queue.empty():
            return None
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is self._CLOSED:
            return None
        return item

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._feed.unsubscribe(self)
            self._queue.put(self._CLOSED)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class AsyncSubscription(Subscription):
    """Subscription read from an event loop without tying up a worker thread.

    Publishers usually run in threadpool workers, so delivery hands events to
    the loop with ``call_soon_threadsafe``. Must be created inside a running loop.
    """

    def __init__(self, feed: "ChangeFeed", event_types: FrozenSet[str], user_id: Optional[int] = None) -> None:
        super().__init__(feed, event_types, user_id=user_id)
        self._loop = asyncio.get_running_loop()
        self._events: "asyncio.Queue[Any]" = asyncio.Queue()

    def deliver(self, event: ChangeEvent) -> None:
        self._loop.call_soon_threadsafe(self._events.put_nowait, event)

    async def next(self, timeout: Optional[float] = None) -> Optional[ChangeEvent]:
        """Next event, or ``None`` when ``timeout`` elapses or the subscription is closed."""

        if self.closed and self._events.empty():
            return None
        try:
            item = await asyncio.wait_for(self._events.get(), timeout)
        except asyncio.TimeoutError:
            return None
        if item is self._CLOSED:
            return None
        return item

    def close(self) -> None:
        if not self.closed:
            super().close()
            if not self._loop.is_closed():
                self._loop.call_soon_threadsafe(self._events.put_nowait, self._CLOSED)


class RabbitForwarder:
    """Publish change events to a durable RabbitMQ queue."""

    def __init__(self, host: str, queue_name: str) -> None:
        self.host = host
        self.queue_name = queue_name

    def forward(self, event: ChangeEvent) -> None:
        try:
            connection = pika.BlockingConnection(pika.ConnectionParameters(host=self.host))
            try:
                channel = connection.channel()
                channel.queue_declare(queue=self.queue_name, durable=True)
                channel.basic_publish(
                    exchange="",
                    routing_key=self.queue_name,
                    body=json.dumps(event.to_message(), default=str),
                    properties=pika.BasicProperties(delivery_mode=2),
                )
            finally:
                connection.close()
        except AMQPError:
            logger.exception("[RabbitMQ] could not forward %s for %s", event.type, event.entity_id)
        else:
            logger.info("[RabbitMQ] forwarded %s for %s", event.type, event.entity_id)


class ChangeFeed:
    def __init__(self, forwarder: Optional[RabbitForwarder] = None) -> None:
        self._lock = threading.Lock()
        self._subscriptions: List[Subscription] = []
        self.forwarder = forwarder

    def subscribe(self, event_types: Iterable[str] = (), user_id: Optional[int] = None) -> Subscription:
        subscription = Subscription(self, frozenset(event_types), user_id=user_id)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def subscribe_async(self, event_types: Iterable[str] = (), user_id: Optional[int] = None) -> AsyncSubscription:
        subscription = AsyncSubscription(self, frozenset(event_types), user_id=user_id)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def publish(
        self,
        event_type: str,
        entity_id: Any,
        payload: Optional[Dict[str, Any]] = None,
        user_id: Optional[int] = None,
    ) -> ChangeEvent:
        event = ChangeEvent(type=event_type, entity_id=entity_id, payload=payload or {}, user_id=user_id)
        with self._lock:
            targets = [sub for sub in self._subscriptions if sub.matches(event)]
        for subscription in targets:
            subscription.deliver(event)
        logger.debug("published %s for %s to %d subscriber(s)", event_type, entity_id, len(targets))
        if self.forwarder is not None:
            self.forwarder.forward(event)
        return event

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)


def _build_feed() -> ChangeFeed:
    settings = get_settings()
    forwarder = RabbitForwarder(settings.rabbitmq_host, settings.bookings_queue) if settings.rabbitmq_host else None
    return ChangeFeed(forwarder=forwarder)


change_feed = _build_feed()
