"""Notification fan-out for job progress, job status and queue state.

Publishing never blocks and never raises into the caller: listener errors are
logged, and a subscriber whose buffer is full simply misses events.
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from .models import JobEvent, utcnow

logger = logging.getLogger(__name__)


class QueueStateEvent(BaseModel):
    """Queue paused/running notification."""

    event: Literal["queue"] = "queue"
    paused: bool
    timestamp: datetime = Field(default_factory=utcnow)


Event = Union[JobEvent, QueueStateEvent]
Listener = Callable[[Event], None]


class Subscription:
    """Bounded buffer of events for one consumer, usable as an async iterator."""

    def __init__(self, broker: "EventBroker", maxsize: int):
        self._broker = broker
        self._queue: "asyncio.Queue[Event]" = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def offer(self, event: Event) -> None:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.debug("Subscriber buffer full, dropping %s event", event.event)

    async def get(self, timeout: Optional[float] = None) -> Event:
        if timeout is None:
            return await self._queue.get()
        return await asyncio.wait_for(self._queue.get(), timeout=timeout)

    def close(self) -> None:
        self._broker.unsubscribe(self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> Event:
        return await self._queue.get()

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class EventBroker:
    """Explicit publish interface the queue writes notifications to."""

    def __init__(self):
        self._listeners: List[Listener] = []
        self._subscriptions: List[Subscription] = []

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def subscribe(self, maxsize: int = 256) -> Subscription:
        subscription = Subscription(self, maxsize)
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def publish(self, event: Event) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Event listener failed for %s event", event.event)
        for subscription in list(self._subscriptions):
            subscription.offer(event)
