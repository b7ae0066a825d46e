"""Program log subscription and event dispatch.

The transport pushes log batches to `EventDispatcher.handle_batch` from
whatever thread it runs on. Each recognized event becomes an `EventDelivery`
on an asyncio queue; consumers drain the queue on the event loop, so all state
transitions that follow from events happen on a single thread.

Delivery order follows the log stream. There is no deduplication: a handler
must tolerate seeing the same event twice.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Union

from .addresses import Address
from .codec import Event, UnrecognizedEvent, decode_event_envelope, decode_event_payload
from .errors import DecodeError
from .transport import LogBatch, Transport

logger = logging.getLogger("sentinel_agent")


@dataclass(frozen=True)
class EventDelivery:
    tag: bytes
    event: Event
    signature: str


@dataclass(frozen=True)
class SubscriptionLost:
    error: str


ChannelItem = Union[EventDelivery, SubscriptionLost]
EventHandler = Callable[[EventDelivery], Union[None, Awaitable[None]]]


def decode_batch(batch: LogBatch) -> List[EventDelivery]:
    """Decode every recognized event in a batch, in log order.

    Failed transactions yield nothing. Malformed lines and unknown tags are
    skipped.
    """
    if batch.err:
        return []
    out: List[EventDelivery] = []
    for line in batch.logs:
        envelope = decode_event_envelope(line)
        if envelope is None:
            continue
        tag, payload = envelope
        try:
            event = decode_event_payload(tag, payload)
        except DecodeError as e:
            logger.debug("Skipping malformed event in %s: %s", batch.signature[:12], e)
            continue
        if isinstance(event, UnrecognizedEvent):
            continue
        out.append(EventDelivery(tag=tag, event=event, signature=batch.signature))
    return out


class EventDispatcher:
    """Bridges the transport's log stream onto an asyncio queue."""

    def __init__(self, transport: Transport, program: Address, *, max_queue: int = 10000):
        self.transport = transport
        self.program = program
        self._queue: "asyncio.Queue[ChannelItem]" = asyncio.Queue(maxsize=max_queue)
        self._handle: Any = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._loop_thread: Optional[int] = None
        self._alive = False
        self._generation = 0

    @property
    def alive(self) -> bool:
        return self._alive

    def subscribe(self) -> None:
        """Register the log listener. Must be called from the consuming event loop."""
        if self._alive:
            return
        self._loop = asyncio.get_running_loop()
        self._loop_thread = threading.get_ident()
        self._generation += 1
        generation = self._generation
        # Alive before the call: the transport may report a failure from inside it.
        self._alive = True

        def on_error(error: BaseException) -> None:
            self._on_error(error, generation)

        try:
            handle = self.transport.subscribe_logs(self.program, self.handle_batch, on_error)
        except Exception:
            self._alive = False
            raise
        if not self._alive:
            logger.warning("Log subscription for %s failed while subscribing", self.program)
            try:
                self.transport.unsubscribe_logs(handle)
            except Exception as e:
                logger.debug("Releasing failed subscription: %s", e)
            return
        self._handle = handle
        logger.info("Subscribed to program logs for %s", self.program)

    def unsubscribe(self) -> None:
        if self._handle is None:
            self._alive = False
            return
        handle, self._handle = self._handle, None
        self._alive = False
        self._generation += 1
        try:
            self.transport.unsubscribe_logs(handle)
        except Exception as e:
            logger.warning("Log unsubscribe failed: %s", e)

    def _put(self, item: ChannelItem) -> None:
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            logger.warning("Event queue full; dropping %s", type(item).__name__)

    def _enqueue(self, item: ChannelItem) -> None:
        loop = self._loop
        if loop is None or threading.get_ident() == self._loop_thread:
            self._put(item)
        else:
            loop.call_soon_threadsafe(self._put, item)

    def handle_batch(self, batch: LogBatch) -> List[EventDelivery]:
        """Transport callback: decode a batch and enqueue its events."""
        deliveries = decode_batch(batch)
        for d in deliveries:
            self._enqueue(d)
        return deliveries

    def _on_error(self, error: BaseException, generation: int) -> None:
        if generation != self._generation:
            logger.debug("Ignoring error from a replaced subscription: %s", error)
            return
        self._alive = False
        self._handle = None
        logger.error("Log subscription lost: %s", error)
        self._enqueue(SubscriptionLost(error=str(error) or type(error).__name__))

    def drain(self) -> List[ChannelItem]:
        """Take everything currently queued without waiting."""
        items: List[ChannelItem] = []
        while True:
            try:
                items.append(self._queue.get_nowait())
            except asyncio.QueueEmpty:
                return items

    async def next_item(self) -> ChannelItem:
        return await self._queue.get()

    async def pump(self, handler: EventHandler, on_lost: Optional[Callable[[SubscriptionLost], None]] = None) -> None:
        """Deliver queued events to `handler` forever (cancel to stop)."""
        while True:
            item = await self._queue.get()
            if isinstance(item, SubscriptionLost):
                if on_lost is not None:
                    on_lost(item)
                continue
            try:
                result = handler(item)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("Event handler failed for %s", item.event.kind)
