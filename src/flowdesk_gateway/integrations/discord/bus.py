from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Callable, Optional

from ...core.logging_utils import log_event
from .events import DomainEvent

logger = logging.getLogger(__name__)

EventPredicate = Callable[[DomainEvent], bool]

DEFAULT_SUBSCRIPTION_MAXSIZE = 256


class Subscription:
    """Bounded per-subscriber queue; a full queue drops its oldest event."""

    def __init__(
        self,
        bus: "TriggerBus",
        predicate: Optional[EventPredicate],
        maxsize: int,
        name: Optional[str] = None,
    ) -> None:
        self._bus = bus
        self._predicate = predicate
        self._queue: asyncio.Queue[DomainEvent] = asyncio.Queue(maxsize=maxsize)
        self._closed = asyncio.Event()
        self._dropped = 0
        self.name = name

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def dropped(self) -> int:
        return self._dropped

    def pending(self) -> int:
        return self._queue.qsize()

    def wants(self, event: DomainEvent) -> bool:
        if self.closed:
            return False
        if self._predicate is None:
            return True
        return bool(self._predicate(event))

    def offer(self, event: DomainEvent) -> None:
        if self.closed:
            return
        if self._queue.full():
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
            self._dropped += 1
            log_event(
                logger,
                logging.WARNING,
                "discord.bus.event_dropped",
                subscription=self.name,
                kind=event.kind.value,
                dropped_total=self._dropped,
            )
        self._queue.put_nowait(event)

    async def get(
        self, *, timeout_seconds: Optional[float] = None
    ) -> Optional[DomainEvent]:
        """Next event; None once closed and drained, or when the timeout elapses."""
        if timeout_seconds is None:
            return await self._next()
        try:
            return await asyncio.wait_for(self._next(), timeout=timeout_seconds)
        except asyncio.TimeoutError:
            return None

    def get_nowait(self) -> Optional[DomainEvent]:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def close(self) -> None:
        if self.closed:
            return
        self._closed.set()
        self._bus._unsubscribe(self)

    def __aiter__(self) -> AsyncIterator[DomainEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[DomainEvent]:
        while True:
            event = await self._next()
            if event is None:
                return
            yield event

    async def _next(self) -> Optional[DomainEvent]:
        event = self.get_nowait()
        if event is not None or self.closed:
            return event
        getter = asyncio.ensure_future(self._queue.get())
        closer = asyncio.ensure_future(self._closed.wait())
        try:
            await asyncio.wait({getter, closer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            closer.cancel()
            if not getter.done():
                getter.cancel()
        if getter.done() and not getter.cancelled():
            return getter.result()
        return None


class TriggerBus:
    """Fan-out of domain events to predicate-filtered subscriptions."""

    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []

    def subscribe(
        self,
        predicate: Optional[EventPredicate] = None,
        *,
        maxsize: int = DEFAULT_SUBSCRIPTION_MAXSIZE,
        name: Optional[str] = None,
    ) -> Subscription:
        if maxsize <= 0:
            raise ValueError("maxsize must be positive")
        subscription = Subscription(self, predicate, maxsize, name=name)
        self._subscriptions.append(subscription)
        return subscription

    def publish(self, event: DomainEvent) -> int:
        delivered = 0
        for subscription in list(self._subscriptions):
            try:
                wanted = subscription.wants(event)
            except Exception as exc:
                log_event(
                    logger,
                    logging.WARNING,
                    "discord.bus.predicate_failed",
                    subscription=subscription.name,
                    kind=event.kind.value,
                    exc=exc,
                )
                continue
            if wanted:
                subscription.offer(event)
                delivered += 1
        return delivered

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def close(self) -> None:
        for subscription in list(self._subscriptions):
            subscription.close()

    def _unsubscribe(self, subscription: Subscription) -> None:
        try:
            self._subscriptions.remove(subscription)
        except ValueError:
            pass
