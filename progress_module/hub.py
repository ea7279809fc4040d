"""Publish/subscribe hub fanning broadcast events out to subscribers"""

import asyncio
import inspect
import itertools
from collections.abc import Awaitable, Callable

from logger import get_logger
from progress_module.events import BroadcastEvent

logger = get_logger(__name__)

CancelListener = Callable[[str], Awaitable[None] | None]

_CLOSED = object()


class Subscription:
    """
    One subscriber channel with a bounded outbound queue.

    Iterate with ``async for event in subscription``; iteration ends when the
    subscription is closed or dropped by the hub.
    """

    def __init__(self, hub: "ProgressHub", subscription_id: str, queue_size: int):
        self.hub = hub
        self.id = subscription_id
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._closed = False
        self._finished = False
        self.dropped = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _offer(self, event: BroadcastEvent) -> bool:
        if self._closed:
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            return False
        return True

    def _close(self) -> None:
        if self._closed:
            return
        self._closed = True
        # Make room for the end marker; a closed subscriber gets nothing more anyway
        while True:
            try:
                self._queue.put_nowait(_CLOSED)
                return
            except asyncio.QueueFull:
                self._queue.get_nowait()

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> BroadcastEvent:
        if self._finished:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            self._finished = True
            raise StopAsyncIteration
        return item

    def pending(self) -> int:
        return self._queue.qsize()

    async def request_cancel(self, operation_id: str) -> None:
        """Forward a cancel intent for ``operation_id`` to the hub's listeners."""
        await self.hub.forward_cancel(operation_id, source=self.id)

    async def close(self) -> None:
        self.hub.unsubscribe(self)

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()


class ProgressHub:
    """
    Multicast hub for ``BroadcastEvent`` values.

    ``publish`` never blocks: a subscriber whose queue is full is dropped.
    The subscriber set is only mutated on the event loop thread and without
    suspension points; publishes from worker threads are handed to the loop.
    """

    def __init__(self, queue_size: int = 256):
        self.queue_size = queue_size
        self._subscribers: dict[str, Subscription] = {}
        self._cancel_listeners: list[CancelListener] = []
        self._ids = itertools.count(1)
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def _bind_loop(self) -> asyncio.AbstractEventLoop | None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if self._loop is None and running is not None:
            self._loop = running
        return running

    def subscribe(self) -> Subscription:
        self._bind_loop()
        subscription = Subscription(self, f"sub-{next(self._ids)}", self.queue_size)
        self._subscribers[subscription.id] = subscription
        logger.debug(f"Subscriber connected: {subscription.id} | total={len(self._subscribers)}")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if self._subscribers.pop(subscription.id, None) is not None:
            logger.debug(f"Subscriber disconnected: {subscription.id} | total={len(self._subscribers)}")
        subscription._close()

    def publish(self, event: BroadcastEvent) -> None:
        """Deliver ``event`` to every subscriber. Safe to call from worker threads."""
        running = self._bind_loop()
        if self._loop is not None and running is not self._loop:
            if not self._loop.is_closed():
                self._loop.call_soon_threadsafe(self._deliver, event)
            return
        self._deliver(event)

    def _deliver(self, event: BroadcastEvent) -> int:
        delivered = 0
        for subscription in list(self._subscribers.values()):
            if subscription._offer(event):
                delivered += 1
                continue
            self._subscribers.pop(subscription.id, None)
            subscription.dropped = True
            subscription._close()
            logger.warning(f"Subscriber dropped (queue full): {subscription.id} | queue_size={self.queue_size}")
        return delivered

    # --- Cancel intents ---

    def add_cancel_listener(self, listener: CancelListener) -> None:
        self._cancel_listeners.append(listener)

    def remove_cancel_listener(self, listener: CancelListener) -> None:
        if listener in self._cancel_listeners:
            self._cancel_listeners.remove(listener)

    async def forward_cancel(self, operation_id: str, source: str | None = None) -> None:
        logger.info(f"Cancel requested: operation={operation_id} | source={source or 'api'}")
        for listener in list(self._cancel_listeners):
            result = listener(operation_id)
            if inspect.isawaitable(result):
                await result

    def close(self) -> None:
        for subscription in list(self._subscribers.values()):
            self.unsubscribe(subscription)
