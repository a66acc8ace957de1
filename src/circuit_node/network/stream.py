"""Multiplexed byte streams and their lifecycle.

A stream moves through ``negotiating -> open -> closing -> closed``; ``reset``
is a distinct terminal state reachable from any point after ``open``. Each
stream has a single reader (async iteration) and a single writer.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Coroutine

from circuit_node.errors import StreamIOError, StreamReset
from circuit_node.network.protocol import Frame, FrameType
from circuit_node.network.secure import StreamCipher

logger = logging.getLogger(__name__)

SendFrame = Callable[[Frame], Coroutine[Any, Any, None]]


class StreamState(str, Enum):
    NEGOTIATING = "negotiating"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"
    RESET = "reset"


class Direction(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


_EOF = object()


class Stream:
    """One duplex byte stream carried over a relay connection."""

    def __init__(
        self,
        stream_id: str,
        remote_peer: str,
        protocol: str,
        direction: Direction,
        send_frame: SendFrame,
        limited: bool = False,
    ) -> None:
        self.stream_id = stream_id
        self.remote_peer = remote_peer
        self.protocol = protocol
        self.direction = direction
        self.limited = limited
        self.state = StreamState.NEGOTIATING
        self.cipher: StreamCipher | None = None
        self.reset_reason: str | None = None
        self._send_frame = send_frame
        self._incoming: asyncio.Queue[Any] = asyncio.Queue()
        self._read_closed = False
        self._write_closed = False
        self._error: BaseException | None = None
        self._on_finish: list[Callable[[Stream], None]] = []
        self._negotiated = asyncio.Event()

    def __repr__(self) -> str:
        return (
            f"Stream({self.stream_id[:8]}, {self.direction.value}, "
            f"{self.remote_peer[:12]}, {self.state.value})"
        )

    @property
    def is_finished(self) -> bool:
        return self.state in (StreamState.CLOSED, StreamState.RESET)

    def on_finish(self, callback: Callable[[Stream], None]) -> None:
        """Register a callback run once when the stream closes or resets."""
        self._on_finish.append(callback)

    # ── Reader side ──────────────────────────────────────────────

    def __aiter__(self) -> Stream:
        return self

    async def __anext__(self) -> bytes:
        item = await self._incoming.get()
        if isinstance(item, bytes):
            return item
        if item is _EOF:
            # Re-queue so further reads also see end-of-stream
            self._incoming.put_nowait(_EOF)
            raise StopAsyncIteration
        self._incoming.put_nowait(item)
        raise item

    # ── Writer side ──────────────────────────────────────────────

    async def write(self, data: bytes) -> None:
        if self.state is StreamState.NEGOTIATING:
            await self._negotiated.wait()
        if self.state is StreamState.RESET:
            raise StreamReset(self.reset_reason or "stream reset")
        if self._error is not None:
            raise StreamIOError(str(self._error))
        if self._write_closed:
            raise StreamIOError("write side already closed")
        try:
            payload = self.cipher.seal(data) if self.cipher is not None else data
            await self._send_frame(Frame.data_frame(self.stream_id, payload))
        except (StreamReset, StreamIOError):
            raise
        except Exception as e:
            raise StreamIOError(f"write failed: {e}") from e

    async def close_write(self) -> None:
        """Half-close: no more data will be written. Idempotent."""
        if self.state is StreamState.NEGOTIATING:
            await self._negotiated.wait()
        if self._write_closed or self.is_finished:
            return
        self._write_closed = True
        try:
            await self._send_frame(Frame(type=FrameType.CLOSE, stream_id=self.stream_id))
        except Exception:
            logger.debug("Close frame for %s not delivered", self.stream_id[:8], exc_info=True)
        self._advance_close()

    async def reset(self, reason: str = "reset by local") -> None:
        """Abort the stream in both directions."""
        if self.is_finished:
            return
        try:
            await self._send_frame(
                Frame(type=FrameType.RESET, stream_id=self.stream_id, reason=reason),
            )
        except Exception:
            logger.debug("Reset frame for %s not delivered", self.stream_id[:8], exc_info=True)
        self.feed_reset(reason)

    # ── Feed side (called by the connection) ─────────────────────

    def mark_open(self) -> None:
        if self.state is StreamState.NEGOTIATING:
            self.state = StreamState.OPEN
        self._negotiated.set()

    def feed_data(self, data: bytes) -> None:
        if self._read_closed or self.is_finished:
            return
        self._incoming.put_nowait(data)

    def feed_eof(self) -> None:
        if self._read_closed or self.is_finished:
            return
        self._read_closed = True
        self._incoming.put_nowait(_EOF)
        self._advance_close()

    def feed_reset(self, reason: str = "reset by remote") -> None:
        if self.is_finished:
            return
        self.state = StreamState.RESET
        self.reset_reason = reason
        self._read_closed = self._write_closed = True
        self._incoming.put_nowait(StreamReset(reason))
        self._negotiated.set()
        self._finish()

    def feed_error(self, exc: BaseException) -> None:
        """The carrying connection failed."""
        if self.is_finished:
            return
        self._error = exc
        self.state = StreamState.CLOSED
        self._read_closed = self._write_closed = True
        self._incoming.put_nowait(StreamIOError(str(exc) or type(exc).__name__))
        self._negotiated.set()
        self._finish()

    def _advance_close(self) -> None:
        if self._read_closed and self._write_closed:
            self.state = StreamState.CLOSED
            self._finish()
        elif self.state is StreamState.OPEN:
            self.state = StreamState.CLOSING

    def _finish(self) -> None:
        callbacks, self._on_finish = self._on_finish, []
        for cb in callbacks:
            try:
                cb(self)
            except Exception:
                logger.exception("Stream finish callback failed for %s", self.stream_id[:8])
