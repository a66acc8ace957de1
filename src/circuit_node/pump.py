"""Couples one stream to the local line-oriented console.

Two tasks per stream:

  * outbound: lines from the shared :class:`InputBus` go into a per-stream
    :class:`LineQueue`; a drain task writes them to the stream in order and
    half-closes the stream once the queue ends.
  * inbound: chunks read from the stream are decoded and handed to the
    output sink, tagged with the remote peer id.

When the inbound side terminates (clean end, reset or error) the pump ends
the queue and drops its bus subscription. Teardown runs at most once.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
from collections import deque
from enum import Enum
from typing import Any, AsyncIterator, Callable, Generic, TypeVar

from circuit_node.errors import StreamIOError, StreamReset
from circuit_node.network.stream import Stream

logger = logging.getLogger(__name__)

T = TypeVar("T")

LINE_TERMINATOR = "\n"

OutputSink = Callable[[str, str], None]


# ── Input bus ────────────────────────────────────────────────────────

class Subscription:
    """Handle for one bus listener. ``cancel()`` is idempotent."""

    def __init__(self, bus: InputBus, callback: Callable[[str], None]) -> None:
        self._bus = bus
        self.callback = callback
        self.active = True

    def cancel(self) -> bool:
        """Remove the listener. Returns True only on the first call."""
        if not self.active:
            return False
        self.active = False
        self._bus._remove(self)
        return True


class InputBus:
    """Process-wide source of local input lines, shared by all sessions."""

    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(self, callback: Callable[[str], None]) -> Subscription:
        sub = Subscription(self, callback)
        self._subscriptions.append(sub)
        return sub

    def unsubscribe(self, subscription: Subscription) -> bool:
        return subscription.cancel()

    def publish(self, line: str) -> int:
        """Deliver ``line`` to every listener. Returns the listener count."""
        delivered = 0
        for sub in list(self._subscriptions):
            try:
                sub.callback(line)
                delivered += 1
            except Exception:
                logger.exception("Input listener failed")
        return delivered

    def _remove(self, subscription: Subscription) -> None:
        try:
            self._subscriptions.remove(subscription)
        except ValueError:
            logger.warning("Subscription already removed from bus")


# ── Queue ────────────────────────────────────────────────────────────

_END = object()


class LineQueue(Generic[T]):
    """FIFO pushable with graceful end.

    Items pushed before :meth:`end` are always delivered; iteration stops
    after the last of them. ``maxsize=0`` is unbounded. With a bound,
    :meth:`push` never blocks and never drops: items beyond ``maxsize`` wait
    in an overflow buffer that the reader drains in order, and :meth:`put`
    applies backpressure by waiting until its item is inside the bound.
    """

    def __init__(self, maxsize: int = 0) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize)
        self._overflow: deque[Any] = deque()
        self._drained = asyncio.Event()
        self._drained.set()
        self._ended = False
        self.pushed = 0

    @property
    def ended(self) -> bool:
        return self._ended

    def __len__(self) -> int:
        return self._queue.qsize() + len(self._overflow)

    def _enqueue(self, item: Any) -> None:
        if self._overflow or self._queue.full():
            self._overflow.append(item)
            self._drained.clear()
        else:
            self._queue.put_nowait(item)

    def _refill(self) -> None:
        while self._overflow and not self._queue.full():
            self._queue.put_nowait(self._overflow.popleft())
        if not self._overflow:
            self._drained.set()

    def push(self, item: T) -> bool:
        """Queue ``item`` without waiting. Returns False once ended."""
        if self._ended:
            logger.debug("Dropping item pushed after end")
            return False
        self._enqueue(item)
        self.pushed += 1
        return True

    async def put(self, item: T) -> bool:
        """Queue ``item``, waiting for room when the queue is bounded."""
        if not self.push(item):
            return False
        while self._overflow:
            await self._drained.wait()
        return True

    def end(self) -> None:
        if self._ended:
            return
        self._ended = True
        self._enqueue(_END)

    def __aiter__(self) -> AsyncIterator[T]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[T]:
        while True:
            item = await self._queue.get()
            self._refill()
            if item is _END:
                return
            yield item


# ── Pump ─────────────────────────────────────────────────────────────

class Termination(str, Enum):
    """How the inbound side of a stream ended."""

    END = "end"
    RESET = "reset"
    ERROR = "error"


def encode_line(line: str) -> bytes:
    return (line + LINE_TERMINATOR).encode("utf-8")


class DuplexPump:
    """Moves bytes between one stream and the local console until it ends."""

    def __init__(
        self,
        stream: Stream,
        bus: InputBus,
        sink: OutputSink,
        on_close: Callable[[DuplexPump], None] | None = None,
        maxsize: int = 0,
    ) -> None:
        self.stream = stream
        self.bus = bus
        self.sink = sink
        self.queue: LineQueue[bytes] = LineQueue(maxsize)
        self.termination: Termination | None = None
        self.subscription: Subscription | None = None
        self._on_close = on_close
        self._outbound: asyncio.Task | None = None
        self._inbound: asyncio.Task | None = None
        self._closed = asyncio.Event()
        self._torn_down = False

    @property
    def peer_id(self) -> str:
        return self.stream.remote_peer

    @property
    def running(self) -> bool:
        return self._inbound is not None and not self._torn_down

    def start(self) -> None:
        """Subscribe to local input and launch both directions."""
        if self._inbound is not None:
            return
        self.subscription = self.bus.subscribe(self._on_line)
        self._outbound = asyncio.create_task(self._pump_outbound())
        self._inbound = asyncio.create_task(self._pump_inbound())

    def _on_line(self, line: str) -> None:
        self.queue.push(encode_line(line))

    async def _pump_outbound(self) -> None:
        try:
            async for item in self.queue:
                await self.stream.write(item)
            await self.stream.close_write()
        except StreamReset:
            logger.debug("Outbound pump to %s stopped: stream reset", self.peer_id[:12])
        except StreamIOError as e:
            logger.debug("Outbound pump to %s stopped: %s", self.peer_id[:12], e)

    async def _pump_inbound(self) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        termination = Termination.END
        try:
            async for chunk in self.stream:
                text = decoder.decode(chunk)
                if text:
                    self._emit(text)
            tail = decoder.decode(b"", final=True)
            if tail:
                self._emit(tail)
            logger.info("Stream with %s ended", self.peer_id[:12])
        except StreamReset as e:
            termination = Termination.RESET
            logger.info("Stream with %s was reset by remote or network: %s", self.peer_id[:12], e)
        except asyncio.CancelledError:
            termination = Termination.RESET
            raise
        except StreamIOError as e:
            termination = Termination.ERROR
            logger.warning("Stream with %s failed: %s", self.peer_id[:12], e)
        except Exception:
            termination = Termination.ERROR
            logger.exception("Unexpected error reading from %s", self.peer_id[:12])
        finally:
            self.teardown(termination)

    def _emit(self, text: str) -> None:
        try:
            self.sink(self.peer_id, text)
        except Exception:
            logger.exception("Output sink failed")

    def teardown(self, termination: Termination) -> bool:
        """End the outbound queue and release the input subscription, once.

        Returns:
            True if this call performed the teardown.
        """
        if self._torn_down:
            return False
        self._torn_down = True
        self.termination = termination
        self.queue.end()
        if self.subscription is not None:
            self.subscription.cancel()
        self._closed.set()
        logger.debug("Pump for %s torn down (%s)", self.peer_id[:12], termination.value)
        if self._on_close is not None:
            try:
                self._on_close(self)
            except Exception:
                logger.exception("Pump close callback failed")
        return True

    async def wait_closed(self) -> Termination | None:
        await self._closed.wait()
        return self.termination

    async def drain(self) -> None:
        """Wait for the outbound task to finish writing."""
        if self._outbound is not None:
            await asyncio.gather(self._outbound, return_exceptions=True)

    async def stop(self, reason: str = "session closed") -> None:
        """Abort both directions: reset the stream and cancel the tasks."""
        await self.stream.reset(reason)
        self.teardown(Termination.RESET)
        tasks = [t for t in (self._outbound, self._inbound) if t is not None and not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
