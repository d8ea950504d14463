import asyncio
import itertools
import threading
import time
from typing import Any

import structlog

from sessionmeter.metrics import MetricsUpdater
from sessionmeter.models import ChangeEvent

logger = structlog.get_logger()

# events buffered per subscriber before it counts as dead
DEFAULT_MAX_QUEUE = 100


class SubscriptionClosed(Exception):
    """
    raised when delivering to, or reading from, a closed subscription.
    """


class Subscription:
    """
    Subscription is one subscriber's handle: a bounded queue of change
    events. Iterate it with `async for`, or call get().
    """

    def __init__(
        self,
        notifier: "ChangeNotifier",
        subscriber_id: "str",
        max_queue: "int" = DEFAULT_MAX_QUEUE,
    ) -> "None":
        self._notifier = notifier
        self._id = subscriber_id
        self._queue: "asyncio.Queue[ChangeEvent | None]" = asyncio.Queue(max_queue)
        self._closed = False

    @property
    def id(self) -> "str":
        return self._id

    def deliver(self, event: "ChangeEvent") -> "None":
        """
        queues an event. Raises SubscriptionClosed or asyncio.QueueFull.
        """
        if self._closed:
            raise SubscriptionClosed(self._id)
        self._queue.put_nowait(event)

    async def get(self) -> "ChangeEvent":
        if self._closed and self._queue.empty():
            raise SubscriptionClosed(self._id)
        event = await self._queue.get()
        if event is None:
            raise SubscriptionClosed(self._id)
        return event

    def close(self) -> "None":
        """
        unsubscribes and wakes up a pending get().
        """
        if self._closed:
            return
        self._closed = True
        self._notifier.unsubscribe(self)
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            pass

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> "ChangeEvent":
        try:
            return await self.get()
        except SubscriptionClosed:
            raise StopAsyncIteration from None


class ChangeNotifier:
    """
    ChangeNotifier fans minimal change events out to subscribers.

    Events only say what changed and when; subscribers pull state
    themselves. A subscriber whose delivery fails is dropped without
    affecting the others. The subscriber set is guarded by a lock so
    subscribe/unsubscribe may happen during a publish.
    """

    def __init__(
        self,
        max_queue: "int" = DEFAULT_MAX_QUEUE,
        metrics: "MetricsUpdater | None" = None,
    ) -> "None":
        self._metrics = metrics
        self._lock: "threading.Lock" = threading.Lock()
        self._subscribers: "dict[str, Subscription]" = {}
        self._ids = itertools.count(1)
        self._max_queue = max_queue

    def _report(self, count: "int") -> "None":
        if self._metrics is not None:
            self._metrics.set_subscribers(count)

    @property
    def subscriber_count(self) -> "int":
        with self._lock:
            return len(self._subscribers)

    def subscribe(self) -> "Subscription":
        """
        registers a new subscriber. Its first event is 'connected'.
        """
        with self._lock:
            subscriber_id = f"subscriber-{next(self._ids)}"
            subscription = Subscription(self, subscriber_id, self._max_queue)
            self._subscribers[subscriber_id] = subscription
            count = len(self._subscribers)

        self._report(count)
        subscription.deliver(
            ChangeEvent(
                type="connected",
                timestamp=time.time(),
                payload={"subscriber_id": subscriber_id},
            )
        )
        logger.info("subscriber_connected", subscriber=subscriber_id, total=count)
        return subscription

    def unsubscribe(self, subscription: "Subscription") -> "None":
        with self._lock:
            removed = self._subscribers.pop(subscription.id, None)
            remaining = len(self._subscribers)
        self._report(remaining)
        if removed is not None:
            logger.info(
                "subscriber_disconnected",
                subscriber=subscription.id,
                remaining=remaining,
            )

    def publish(
        self, event_type: "str", payload: "dict[str, Any] | None" = None
    ) -> "int":
        """
        delivers an event to every subscriber and returns how many
        received it.
        """
        event = ChangeEvent(type=event_type, timestamp=time.time(), payload=payload or {})

        # deliver outside the lock, from a snapshot
        with self._lock:
            targets = list(self._subscribers.values())

        delivered = 0
        dead: "list[Subscription]" = []
        for subscription in targets:
            try:
                subscription.deliver(event)
                delivered += 1
            except (SubscriptionClosed, asyncio.QueueFull) as e:
                logger.warning(
                    "subscriber_delivery_failed",
                    subscriber=subscription.id,
                    error=type(e).__name__,
                )
                dead.append(subscription)

        for subscription in dead:
            self.unsubscribe(subscription)

        if delivered:
            logger.debug("event_published", event_type=event_type, subscribers=delivered)
        return delivered

    def close_all(self) -> "None":
        with self._lock:
            targets = list(self._subscribers.values())
        for subscription in targets:
            subscription.close()
        logger.info("subscribers_closed", count=len(targets))
