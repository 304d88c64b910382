"""
In-process publish/subscribe delivery for live chat and notification events.

Every subscription owns a bounded asyncio.Queue on the event loop that
created it, so an open subscription costs one queue, not one thread.
Publishing never blocks: items are handed to the subscriber's loop with
call_soon_threadsafe, which keeps a single FIFO across publishers on any
thread. A subscriber whose queue overflows is evicted and its iterator
ends; it has to catch up through the message log.

There is no history replay here. Backlog comes from list_messages.
"""

import asyncio
import logging
import threading
from collections import defaultdict
from typing import Any, Optional

from marketchat.config import settings
from marketchat.metrics import set_channel_subscribers

logger = logging.getLogger(__name__)

_CLOSED = object()


def conversation_channel(conversation_id: str) -> str:
    return f"chat:{conversation_id}"


def notification_channel(user_id: str) -> str:
    return f"notifications:{user_id}"


def _channel_kind(channel: str) -> str:
    return channel.split(":", 1)[0]


class Subscription:
    """
    A cancellable, infinite stream of payloads published on one channel.

    Use as an async iterator; iteration stops once the subscription is
    closed or evicted.
    """

    def __init__(self, broker: "ChannelBroker", channel: str, maxsize: int):
        self.channel = channel
        self.closed = False
        self._broker = broker
        self._loop = asyncio.get_running_loop()
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

    def close(self) -> None:
        self._broker.unsubscribe(self)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Any:
        if self.closed:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED or self.closed:
            raise StopAsyncIteration
        return item

    async def get(self, timeout: Optional[float] = None) -> Any:
        """Next payload, or StopAsyncIteration once closed."""
        return await asyncio.wait_for(self.__anext__(), timeout)

    def _schedule(self, callback, *args) -> None:
        if self._loop.is_closed():
            return
        try:
            self._loop.call_soon_threadsafe(callback, *args)
        except RuntimeError:
            # Loop shut down between the check and the call
            logger.debug(f"Dropped delivery to closed loop on {self.channel}")

    def _offer(self, payload: Any) -> None:
        if self.closed:
            return
        try:
            self._queue.put_nowait(payload)
        except asyncio.QueueFull:
            logger.warning(f"Subscriber on {self.channel} fell behind, evicting")
            self._broker.unsubscribe(self)

    def _terminate(self) -> None:
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)


class ChannelBroker:
    """Fan-out of published payloads to the current subscribers of a channel."""

    def __init__(self, queue_size: int = 256):
        self.queue_size = queue_size
        self._subscribers: dict[str, set[Subscription]] = defaultdict(set)
        self._lock = threading.Lock()

    def subscribe(self, channel: str) -> Subscription:
        """Must be called from within a running event loop."""
        subscription = Subscription(self, channel, self.queue_size)
        with self._lock:
            self._subscribers[channel].add(subscription)
        logger.debug(f"Subscribed to {channel}")
        self._update_gauge(channel)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """Idempotent; other subscribers of the channel are untouched."""
        with self._lock:
            if subscription.closed:
                return
            subscription.closed = True
            subscribers = self._subscribers.get(subscription.channel)
            if subscribers is not None:
                subscribers.discard(subscription)
                if not subscribers:
                    del self._subscribers[subscription.channel]
        subscription._schedule(subscription._terminate)
        logger.debug(f"Unsubscribed from {subscription.channel}")
        self._update_gauge(subscription.channel)

    def publish(self, channel: str, payload: Any) -> int:
        """
        Deliver payload to every current subscriber of channel.

        Returns:
            Number of subscribers the payload was handed to.
        """
        with self._lock:
            targets = list(self._subscribers.get(channel, ()))
        for subscription in targets:
            subscription._schedule(subscription._offer, payload)
        logger.debug(f"Published on {channel} to {len(targets)} subscriber(s)")
        return len(targets)

    def subscriber_count(self, channel: str) -> int:
        with self._lock:
            return len(self._subscribers.get(channel, ()))

    def _update_gauge(self, channel: str) -> None:
        kind = _channel_kind(channel)
        with self._lock:
            total = sum(
                len(subs) for name, subs in self._subscribers.items()
                if _channel_kind(name) == kind
            )
        set_channel_subscribers(kind, total)


broker = ChannelBroker(settings.CHANNEL_QUEUE_SIZE)
