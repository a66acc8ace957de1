"""Authenticated, multiplexed WebSocket links to relays.

A NATed peer holds one WebSocket per relay. All of its streams, inbound and
outbound, are multiplexed over that socket by ``stream_id``. The relay splices
the two ends of a circuit together. Payloads are sealed end to end per
stream (see :mod:`circuit_node.network.secure`), so the relay only ever
forwards ciphertext.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Coroutine

import aiohttp
from aiohttp import ClientSession, ClientWSTimeout, WSMsgType

from circuit_node.errors import (
    DialFailure,
    ProtocolError,
    ReservationRefused,
    ReservationUnavailable,
)
from circuit_node.identity import PeerIdentity
from circuit_node.network.address import Address
from circuit_node.network.gate import AddressGate
from circuit_node.network.protocol import Frame, FrameType
from circuit_node.network.secure import KeyOffer
from circuit_node.network.stream import Direction, Stream

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT = 15.0
WS_TIMEOUT = ClientWSTimeout(ws_close=10.0)
HANDSHAKE_TIMEOUT = 10.0
REQUEST_TIMEOUT = 10.0
HEARTBEAT_SECONDS = 30.0

StreamHandler = Callable[[Stream], Coroutine[Any, Any, None]]


@dataclass
class DialOptions:
    """Options for opening an outbound protocol stream."""

    max_outbound_streams: int = 10
    run_on_limited_connection: bool = True
    negotiate_fully: bool = True
    timeout: float = 10.0


@dataclass
class ProtocolHandler:
    """A registered inbound protocol and its limits."""

    protocol: str
    handler: StreamHandler
    max_inbound_streams: int = 32
    run_on_limited_connection: bool = False
    active: int = 0


class RelayConnection:
    """One authenticated WebSocket to one relay, carrying many streams."""

    def __init__(
        self,
        identity: PeerIdentity,
        relay_address: Address,
        session: ClientSession,
        on_connect: Callable[[RelayConnection, Frame], Coroutine[Any, Any, None]],
    ) -> None:
        self.identity = identity
        self.relay_address = relay_address
        self.relay_peer_id = relay_address.peer_id or ""
        self._session = session
        self._on_connect = on_connect
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader: asyncio.Task | None = None
        self._send_lock = asyncio.Lock()
        self._streams: dict[str, Stream] = {}
        self._pending: dict[str, asyncio.Future] = {}
        self._offers: dict[str, KeyOffer] = {}
        self._close_callbacks: list[Callable[[RelayConnection], None]] = []
        self._closed = False

    def __repr__(self) -> str:
        return f"RelayConnection({self.relay_peer_id[:12]}, streams={len(self._streams)})"

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def streams(self) -> list[Stream]:
        return list(self._streams.values())

    def on_close(self, callback: Callable[[RelayConnection], None]) -> None:
        self._close_callbacks.append(callback)

    # ── Lifecycle ────────────────────────────────────────────────

    async def open(self) -> None:
        """Connect the WebSocket and authenticate to the relay."""
        url = self.relay_address.websocket_url()
        try:
            self._ws = await asyncio.wait_for(
                self._session.ws_connect(url, heartbeat=HEARTBEAT_SECONDS, timeout=WS_TIMEOUT),
                CONNECT_TIMEOUT,
            )
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            raise DialFailure(f"cannot reach relay at {url}: {e}") from e

        try:
            await asyncio.wait_for(self._handshake(), HANDSHAKE_TIMEOUT)
        except asyncio.TimeoutError:
            await self._ws.close()
            raise DialFailure(f"handshake with relay {url} timed out") from None
        except (DialFailure, ProtocolError):
            await self._ws.close()
            raise

        self._reader = asyncio.create_task(self._read_loop())
        logger.info("Connected to relay %s", self.relay_address)

    async def _handshake(self) -> None:
        challenge = await self._receive_frame()
        if challenge.type is not FrameType.CHALLENGE or not challenge.nonce:
            raise ProtocolError(f"expected challenge, got {challenge.type.value}")
        if self.relay_peer_id and challenge.peer_id != self.relay_peer_id:
            raise DialFailure(
                f"relay identity mismatch: expected {self.relay_peer_id}, "
                f"got {challenge.peer_id}"
            )
        self.relay_peer_id = challenge.peer_id or ""

        nonce = base64.b64decode(challenge.nonce)
        await self.send(Frame(
            type=FrameType.HELLO,
            peer_id=self.identity.peer_id,
            public_key=self.identity.public_key_bytes.hex(),
            signature=self.identity.sign(nonce).hex(),
        ))
        reply = await self._receive_frame()
        if reply.type is FrameType.ERROR:
            raise DialFailure(f"relay rejected hello: {reply.reason}")
        if reply.type is not FrameType.WELCOME:
            raise ProtocolError(f"expected welcome, got {reply.type.value}")

    async def _receive_frame(self) -> Frame:
        assert self._ws is not None
        msg = await self._ws.receive()
        if msg.type is not WSMsgType.TEXT:
            raise DialFailure(f"relay closed during handshake ({msg.type.name})")
        return Frame.decode(msg.data)

    async def close(self) -> None:
        if self._closed:
            return
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        if self._reader is not None:
            try:
                await asyncio.wait_for(self._reader, 5.0)
            except asyncio.TimeoutError:
                self._reader.cancel()
            except asyncio.CancelledError:
                pass
        self._teardown(ConnectionError("connection closed"))

    # ── Sending ──────────────────────────────────────────────────

    async def send(self, frame: Frame) -> None:
        if self._ws is None or self._ws.closed:
            raise ConnectionError("relay connection is closed")
        async with self._send_lock:
            await self._ws.send_str(frame.encode())

    async def _request(self, frame: Frame, timeout: float) -> Frame:
        request_id = uuid.uuid4().hex
        frame.request_id = request_id
        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = fut
        try:
            await self.send(frame)
            return await asyncio.wait_for(fut, timeout)
        finally:
            self._pending.pop(request_id, None)

    # ── Reservations ─────────────────────────────────────────────

    async def reserve(self, advertise: bool = False, timeout: float = REQUEST_TIMEOUT) -> float:
        """Ask the relay for a reservation slot.

        Returns:
            Expiry timestamp of the reservation.
        """
        try:
            reply = await self._request(
                Frame(type=FrameType.RESERVE, advertise=advertise), timeout,
            )
        except asyncio.TimeoutError:
            raise ReservationUnavailable("relay did not answer reservation request") from None
        except ConnectionError as e:
            raise ReservationUnavailable(str(e)) from e
        if reply.type is FrameType.RESERVE_REFUSED:
            raise ReservationRefused(reply.reason or "reservation refused")
        if reply.type is not FrameType.RESERVE_OK or reply.expires_at is None:
            raise ReservationUnavailable(f"unexpected reply {reply.type.value}")
        return reply.expires_at

    # ── Streams ──────────────────────────────────────────────────

    def outbound_count(self, peer_id: str) -> int:
        return sum(
            1 for s in self._streams.values()
            if s.direction is Direction.OUTBOUND and s.remote_peer == peer_id
        )

    async def open_stream(
        self,
        peer_id: str,
        protocol: str,
        options: DialOptions | None = None,
    ) -> Stream:
        """Open a circuit stream to ``peer_id`` speaking ``protocol``."""
        options = options or DialOptions()
        if self._closed:
            raise DialFailure("relay connection is closed")
        if self.outbound_count(peer_id) >= options.max_outbound_streams:
            raise DialFailure(
                f"too many outbound streams to {peer_id} "
                f"(max {options.max_outbound_streams})"
            )

        stream = self._register(Stream(
            uuid.uuid4().hex, peer_id, protocol, Direction.OUTBOUND, self.send,
        ))
        offer = KeyOffer(self.identity, stream.stream_id)
        self._offers[stream.stream_id] = offer
        stream.on_finish(lambda s: self._offers.pop(s.stream_id, None))
        negotiated: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[stream.stream_id] = negotiated

        try:
            await self.send(Frame(
                type=FrameType.CONNECT,
                stream_id=stream.stream_id,
                peer_id=peer_id,
                protocol=protocol,
                **offer.fields(),
            ))
        except ConnectionError as e:
            self._pending.pop(stream.stream_id, None)
            stream.feed_error(e)
            raise DialFailure(f"relay connection lost: {e}") from e

        if not options.negotiate_fully:
            negotiated.add_done_callback(
                lambda f: self._optimistic_result(stream, f, options),
            )
            return stream

        try:
            limited = await asyncio.wait_for(negotiated, options.timeout)
        except asyncio.TimeoutError:
            self._pending.pop(stream.stream_id, None)
            await stream.reset("negotiation timed out")
            raise DialFailure(f"negotiation of {protocol} with {peer_id} timed out") from None
        except DialFailure:
            raise
        if limited and not options.run_on_limited_connection:
            await stream.reset("limited connection not allowed")
            raise DialFailure("circuit is limited and limited connections are not allowed")
        return stream

    def _optimistic_result(
        self, stream: Stream, fut: asyncio.Future, options: DialOptions,
    ) -> None:
        if fut.cancelled():
            return
        exc = fut.exception()
        if exc is not None:
            logger.info("Optimistic stream %s refused: %s", stream.stream_id[:8], exc)
        elif fut.result() and not options.run_on_limited_connection:
            asyncio.ensure_future(stream.reset("limited connection not allowed"))

    def _register(self, stream: Stream) -> Stream:
        self._streams[stream.stream_id] = stream
        stream.on_finish(lambda s: self._streams.pop(s.stream_id, None))
        return stream

    async def accept(self, frame: Frame) -> Stream:
        """Accept an inbound circuit described by a CONNECT frame.

        Raises:
            ProtocolError: The dialer's stream key did not verify.
        """
        offer = KeyOffer(self.identity, frame.stream_id or "")
        cipher = offer.complete(
            frame.peer_id or "",
            frame.ephemeral_key,
            frame.public_key,
            frame.signature,
            initiator=False,
        )
        stream = self._register(Stream(
            frame.stream_id or "",
            frame.peer_id or "",
            frame.protocol or "",
            Direction.INBOUND,
            self.send,
            limited=frame.limited,
        ))
        stream.cipher = cipher
        stream.mark_open()
        await self.send(Frame(
            type=FrameType.CONNECT_OK,
            stream_id=stream.stream_id,
            protocol=stream.protocol,
            **offer.fields(),
        ))
        return stream

    async def refuse(self, frame: Frame, reason: str) -> None:
        await self.send(Frame(
            type=FrameType.CONNECT_FAIL, stream_id=frame.stream_id, reason=reason,
        ))

    # ── Reading ──────────────────────────────────────────────────

    async def _read_loop(self) -> None:
        assert self._ws is not None
        error: BaseException = ConnectionError("relay connection lost")
        try:
            async for msg in self._ws:
                if msg.type is WSMsgType.TEXT:
                    try:
                        frame = Frame.decode(msg.data)
                    except ProtocolError:
                        logger.warning("Dropping malformed frame from relay %s", self.relay_peer_id[:12])
                        continue
                    await self._dispatch(frame)
                elif msg.type is WSMsgType.ERROR:
                    error = ConnectionError(f"websocket error: {self._ws.exception()}")
                    break
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Relay reader failed for %s", self.relay_peer_id[:12])
            error = e
        finally:
            self._teardown(error)

    async def _dispatch(self, frame: Frame) -> None:
        ftype = frame.type

        if ftype in (FrameType.RESERVE_OK, FrameType.RESERVE_REFUSED, FrameType.ERROR):
            fut = self._pending.get(frame.request_id or "")
            if fut is not None and not fut.done():
                fut.set_result(frame)
            elif ftype is FrameType.ERROR:
                logger.warning("Relay error: %s", frame.reason)
            return

        if ftype is FrameType.PING:
            await self.send(Frame(type=FrameType.PONG, request_id=frame.request_id))
            return

        if ftype is FrameType.CONNECT:
            await self._on_connect(self, frame)
            return

        stream = self._streams.get(frame.stream_id or "")
        if stream is None:
            logger.debug("Frame %s for unknown stream %s", ftype.value, frame.stream_id)
            return

        if ftype is FrameType.CONNECT_OK:
            fut = self._pending.pop(stream.stream_id, None)
            offer = self._offers.pop(stream.stream_id, None)
            if offer is None:
                return
            try:
                stream.cipher = offer.complete(
                    stream.remote_peer,
                    frame.ephemeral_key,
                    frame.public_key,
                    frame.signature,
                    initiator=True,
                )
            except ProtocolError as e:
                logger.warning("Stream key from %s rejected: %s", stream.remote_peer[:12], e)
                if fut is not None and not fut.done():
                    fut.set_exception(DialFailure(f"secure handshake failed: {e}"))
                await stream.reset("secure handshake failed")
                return
            stream.limited = frame.limited
            stream.mark_open()
            if fut is not None and not fut.done():
                fut.set_result(frame.limited)
        elif ftype is FrameType.CONNECT_FAIL:
            reason = frame.reason or "protocol negotiation failed"
            fut = self._pending.pop(stream.stream_id, None)
            if fut is not None and not fut.done():
                fut.set_exception(DialFailure(reason))
            stream.feed_reset(reason)
        elif ftype is FrameType.DATA:
            try:
                data = frame.payload()
                if stream.cipher is not None:
                    data = stream.cipher.open(data)
                stream.feed_data(data)
            except ProtocolError:
                logger.warning("Invalid payload on stream %s, resetting", stream.stream_id[:8])
                await stream.reset("invalid payload")
        elif ftype is FrameType.CLOSE:
            stream.feed_eof()
        elif ftype is FrameType.RESET:
            stream.feed_reset(frame.reason or "reset by remote")

    def _teardown(self, error: BaseException) -> None:
        if self._closed:
            return
        self._closed = True
        for fut in self._pending.values():
            if not fut.done():
                fut.set_exception(DialFailure(f"relay connection lost: {error}"))
                # Mark retrieved so unawaited failures are not reported
                fut.exception()
        self._pending.clear()
        for stream in list(self._streams.values()):
            stream.feed_error(error)
        self._streams.clear()
        logger.info("Relay connection %s closed", self.relay_peer_id[:12])
        for cb in self._close_callbacks:
            try:
                cb(self)
            except Exception:
                logger.exception("Relay close callback failed")


class Transport:
    """Relay-only transport: owns the HTTP session, relay links and handlers."""

    def __init__(self, identity: PeerIdentity, gate: AddressGate) -> None:
        self.identity = identity
        self.gate = gate
        self._session: ClientSession | None = None
        self._connections: dict[str, RelayConnection] = {}
        self._handlers: dict[str, ProtocolHandler] = {}
        self._tasks: set[asyncio.Task] = set()

    @property
    def connections(self) -> list[RelayConnection]:
        return [c for c in self._connections.values() if not c.closed]

    def connection_for(self, relay_peer_id: str) -> RelayConnection | None:
        conn = self._connections.get(relay_peer_id)
        if conn is not None and conn.closed:
            return None
        return conn

    async def start(self) -> None:
        if self._session is None:
            self._session = ClientSession()

    async def stop(self) -> None:
        for conn in list(self._connections.values()):
            await conn.close()
        self._connections.clear()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._session is not None:
            await self._session.close()
            self._session = None
        logger.info("Transport stopped")

    # ── Handlers ─────────────────────────────────────────────────

    def handle(
        self,
        protocol: str,
        handler: StreamHandler,
        max_inbound_streams: int = 32,
        run_on_limited_connection: bool = False,
    ) -> None:
        """Register the handler for inbound streams on ``protocol``."""
        self._handlers[protocol] = ProtocolHandler(
            protocol=protocol,
            handler=handler,
            max_inbound_streams=max_inbound_streams,
            run_on_limited_connection=run_on_limited_connection,
        )

    def unhandle(self, protocol: str) -> None:
        self._handlers.pop(protocol, None)

    @property
    def protocols(self) -> list[str]:
        return list(self._handlers)

    # ── Connections ──────────────────────────────────────────────

    async def connect(self, relay_address: Address) -> RelayConnection:
        """Connect to a relay by its direct address, reusing a live link."""
        self.gate.check(relay_address)
        if self._session is None:
            raise DialFailure("transport not started")

        if relay_address.peer_id:
            existing = self.connection_for(relay_address.peer_id)
            if existing is not None:
                return existing

        conn = RelayConnection(self.identity, relay_address, self._session, self._on_connect)
        await conn.open()
        previous = self._connections.get(conn.relay_peer_id)
        if previous is not None and not previous.closed:
            await conn.close()
            return previous
        self._connections[conn.relay_peer_id] = conn
        conn.on_close(self._forget)
        return conn

    def _forget(self, conn: RelayConnection) -> None:
        if self._connections.get(conn.relay_peer_id) is conn:
            del self._connections[conn.relay_peer_id]

    async def _on_connect(self, conn: RelayConnection, frame: Frame) -> None:
        entry = self._handlers.get(frame.protocol or "")
        if entry is None:
            logger.info("Refusing stream for unsupported protocol %s", frame.protocol)
            await conn.refuse(frame, f"protocol not supported: {frame.protocol}")
            return
        if frame.limited and not entry.run_on_limited_connection:
            await conn.refuse(frame, "limited connections not allowed")
            return
        if entry.active >= entry.max_inbound_streams:
            logger.warning(
                "Refusing stream on %s: %d inbound streams open",
                entry.protocol, entry.active,
            )
            await conn.refuse(frame, "too many inbound streams")
            return

        try:
            stream = await conn.accept(frame)
        except ProtocolError as e:
            logger.warning("Refusing stream from %s: %s", (frame.peer_id or "")[:12], e)
            await conn.refuse(frame, "secure handshake failed")
            return
        entry.active += 1
        stream.on_finish(lambda _s: self._release(entry))
        if stream.is_finished:
            self._release(entry)

        task = asyncio.create_task(entry.handler(stream))
        self._tasks.add(task)
        task.add_done_callback(self._handler_done)

    @staticmethod
    def _release(entry: ProtocolHandler) -> None:
        entry.active = max(0, entry.active - 1)

    def _handler_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Stream handler failed", exc_info=exc)
