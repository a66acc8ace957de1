"""Relay server. Issues reservations and splices circuits.

Runs an aiohttp application with a WebSocket endpoint. Each NATed peer holds
one authenticated socket. When a peer asks to reach a reservation holder, the
relay announces the circuit to the target and, once accepted, forwards frames
between the two ends verbatim. Payloads are opaque to the relay.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import secrets
import time
from dataclasses import dataclass, field

from aiohttp import WSMsgType, web

from circuit_node.config import RelayConfig
from circuit_node.errors import ProtocolError, ReservationRefused
from circuit_node.identity import PeerIdentity
from circuit_node.network.address import Address, circuit_address, websocket_address
from circuit_node.network.protocol import Frame, FrameType
from circuit_node.relay.reservations import ReservationTable

logger = logging.getLogger(__name__)

HANDSHAKE_TIMEOUT = 10.0
HEARTBEAT_SECONDS = 30.0


class PeerLink:
    """An authenticated peer socket on the relay."""

    def __init__(self, peer_id: str, ws: web.WebSocketResponse) -> None:
        self.peer_id = peer_id
        self.ws = ws
        self.connected_at = time.time()
        self._lock = asyncio.Lock()

    async def send_text(self, text: str) -> bool:
        if self.ws.closed:
            return False
        try:
            async with self._lock:
                await self.ws.send_str(text)
        except (ConnectionError, RuntimeError):
            logger.debug("Send to %s failed", self.peer_id[:12], exc_info=True)
            return False
        return True

    async def send(self, frame: Frame) -> bool:
        return await self.send_text(frame.encode())


@dataclass
class Circuit:
    """Two peer links spliced together for one stream."""

    stream_id: str
    src: PeerLink
    dst: PeerLink
    protocol: str
    limited: bool = False
    established: bool = False
    started_at: float = field(default_factory=time.time)
    bytes_relayed: int = 0
    half_closed: set[str] = field(default_factory=set)

    def other(self, link: PeerLink) -> PeerLink | None:
        if link is self.src:
            return self.dst
        if link is self.dst:
            return self.src
        return None


class RelayServer:
    """Publicly reachable relay node."""

    def __init__(self, config: RelayConfig, identity: PeerIdentity | None = None) -> None:
        self.config = config
        self.identity = identity or PeerIdentity.generate()
        self.reservations = ReservationTable(
            max_reservations=config.max_reservations,
            ttl=config.reservation_ttl,
        )
        self._links: dict[str, PeerLink] = {}
        self._circuits: dict[str, Circuit] = {}
        self._app = web.Application()
        self._runner: web.AppRunner | None = None
        self._cleanup_task: asyncio.Task | None = None
        self._bound_port: int | None = None

        self._app.router.add_get("/ws", self._handle_ws)
        self._app.router.add_get("/health", self._handle_health)
        self._app.router.add_get("/peers", self._handle_peers)

    @property
    def peer_id(self) -> str:
        return self.identity.peer_id

    @property
    def port(self) -> int:
        return self._bound_port if self._bound_port is not None else self.config.port

    @property
    def connected_peers(self) -> list[str]:
        return list(self._links)

    @property
    def circuit_count(self) -> int:
        return len(self._circuits)

    def addresses(self) -> list[str]:
        """Dialable relay addresses, each ending in ``/p2p/<relay-id>``."""
        if self.config.announce:
            return [
                str(Address.parse(a).with_peer_id(self.peer_id))
                for a in self.config.announce
            ]
        host = self.config.host
        if host in ("0.0.0.0", "", "::"):
            host = "127.0.0.1"
        return [str(websocket_address(host, self.port, self.peer_id))]

    # ── Lifecycle ────────────────────────────────────────────────

    async def start(self) -> None:
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.config.host, self.config.port)
        await site.start()
        for sock_addr in self._runner.addresses:
            if isinstance(sock_addr, tuple) and len(sock_addr) >= 2:
                self._bound_port = sock_addr[1]
                break
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        logger.info(
            "Relay %s listening on %s:%d", self.peer_id, self.config.host, self.port,
        )

    async def stop(self) -> None:
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
        for link in list(self._links.values()):
            await link.ws.close()
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        logger.info("Relay stopped")

    # ── HTTP endpoints ───────────────────────────────────────────

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "healthy",
            "peer_id": self.peer_id,
            "addresses": self.addresses(),
            "peers": len(self._links),
            "reservations": len(self.reservations),
            "circuits": len(self._circuits),
        })

    async def _handle_peers(self, request: web.Request) -> web.Response:
        """Reservation holders that asked to be advertised."""
        relay = self.addresses()[0]
        return web.json_response({
            "peers": [
                {
                    "peer_id": r.peer_id,
                    "addresses": [str(circuit_address(relay, r.peer_id))],
                }
                for r in self.reservations.advertised()
            ]
        })

    # ── WebSocket ────────────────────────────────────────────────

    async def _handle_ws(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(heartbeat=HEARTBEAT_SECONDS)
        await ws.prepare(request)

        link = await self._authenticate(ws)
        if link is None:
            await ws.close()
            return ws

        try:
            async for msg in ws:
                if msg.type is WSMsgType.TEXT:
                    try:
                        frame = Frame.decode(msg.data)
                    except ProtocolError:
                        logger.warning("Malformed frame from %s", link.peer_id[:12])
                        continue
                    await self._dispatch(link, frame, msg.data)
                elif msg.type is WSMsgType.ERROR:
                    logger.warning(
                        "Socket error from %s: %s", link.peer_id[:12], ws.exception(),
                    )
                    break
        except Exception:
            logger.exception("Error handling peer %s", link.peer_id[:12])
        finally:
            await self._drop_link(link)
        return ws

    async def _authenticate(self, ws: web.WebSocketResponse) -> PeerLink | None:
        """Challenge/response: the peer signs a nonce with its identity key."""
        nonce = secrets.token_bytes(32)
        await ws.send_str(Frame(
            type=FrameType.CHALLENGE,
            peer_id=self.peer_id,
            nonce=base64.b64encode(nonce).decode("ascii"),
        ).encode())

        try:
            msg = await ws.receive(timeout=HANDSHAKE_TIMEOUT)
        except asyncio.TimeoutError:
            logger.info("Peer handshake timed out")
            return None
        if msg.type is not WSMsgType.TEXT:
            return None

        try:
            hello = Frame.decode(msg.data)
            public_key = bytes.fromhex(hello.public_key or "")
            signature = bytes.fromhex(hello.signature or "")
        except (ProtocolError, ValueError):
            await ws.send_str(Frame(type=FrameType.ERROR, reason="malformed hello").encode())
            return None

        if (
            hello.type is not FrameType.HELLO
            or hello.peer_id != PeerIdentity.peer_id_from_public_key(public_key)
            or not PeerIdentity.verify(public_key, signature, nonce)
        ):
            logger.warning("Rejected peer with invalid identity proof")
            await ws.send_str(Frame(type=FrameType.ERROR, reason="authentication failed").encode())
            return None

        link = PeerLink(hello.peer_id, ws)
        previous = self._links.get(link.peer_id)
        self._links[link.peer_id] = link
        if previous is not None:
            logger.info("Peer %s reconnected, closing old link", link.peer_id[:12])
            await self._reset_circuits_of(previous, "peer reconnected")
            await previous.ws.close()

        await link.send(Frame(type=FrameType.WELCOME, addresses=self.addresses()))
        logger.info("Peer %s connected", link.peer_id[:12])
        return link

    async def _drop_link(self, link: PeerLink) -> None:
        if self._links.get(link.peer_id) is not link:
            return
        del self._links[link.peer_id]
        self.reservations.release(link.peer_id)
        await self._reset_circuits_of(link, "peer disconnected")
        logger.info("Peer %s disconnected", link.peer_id[:12])

    # ── Frame dispatch ───────────────────────────────────────────

    async def _dispatch(self, link: PeerLink, frame: Frame, raw: str) -> None:
        ftype = frame.type
        if ftype is FrameType.RESERVE:
            await self._on_reserve(link, frame)
        elif ftype is FrameType.PING:
            await link.send(Frame(type=FrameType.PONG, request_id=frame.request_id))
        elif ftype is FrameType.CONNECT:
            await self._on_connect(link, frame)
        elif ftype in (FrameType.CONNECT_OK, FrameType.CONNECT_FAIL):
            await self._on_connect_reply(link, frame)
        elif ftype is FrameType.DATA:
            await self._on_data(link, frame, raw)
        elif ftype is FrameType.CLOSE:
            await self._on_close(link, frame, raw)
        elif ftype is FrameType.RESET:
            await self._on_reset(link, frame, raw)
        elif ftype is FrameType.PONG:
            pass
        else:
            logger.debug("Unexpected %s from %s", ftype.value, link.peer_id[:12])

    async def _on_reserve(self, link: PeerLink, frame: Frame) -> None:
        try:
            reservation = self.reservations.reserve(link.peer_id, advertise=frame.advertise)
        except ReservationRefused as e:
            await link.send(Frame(
                type=FrameType.RESERVE_REFUSED, request_id=frame.request_id, reason=str(e),
            ))
            return
        await link.send(Frame(
            type=FrameType.RESERVE_OK,
            request_id=frame.request_id,
            expires_at=reservation.expires_at,
            addresses=[str(circuit_address(a, link.peer_id)) for a in self.addresses()],
        ))

    async def _on_connect(self, link: PeerLink, frame: Frame) -> None:
        stream_id = frame.stream_id
        target_id = frame.peer_id or ""

        reason = None
        target = self._links.get(target_id)
        if not stream_id:
            reason = "missing stream id"
        elif not self.config.hop_enabled:
            reason = "relaying disabled"
        elif stream_id in self._circuits:
            reason = "duplicate stream id"
        elif target_id == link.peer_id:
            reason = "cannot relay to self"
        elif target_id not in self.reservations or target is None:
            reason = "target has no reservation"

        if reason is not None:
            logger.info("Circuit %s -> %s refused: %s", link.peer_id[:12], target_id[:12], reason)
            await link.send(Frame(type=FrameType.CONNECT_FAIL, stream_id=stream_id, reason=reason))
            return

        circuit = Circuit(
            stream_id=stream_id,
            src=link,
            dst=target,
            protocol=frame.protocol or "",
            limited=self.config.limits_circuits,
        )
        self._circuits[stream_id] = circuit
        delivered = await target.send(Frame(
            type=FrameType.CONNECT,
            stream_id=stream_id,
            peer_id=link.peer_id,
            protocol=circuit.protocol,
            limited=circuit.limited,
            ephemeral_key=frame.ephemeral_key,
            public_key=frame.public_key,
            signature=frame.signature,
        ))
        if not delivered:
            self._circuits.pop(stream_id, None)
            await link.send(Frame(
                type=FrameType.CONNECT_FAIL, stream_id=stream_id, reason="target unreachable",
            ))

    async def _on_connect_reply(self, link: PeerLink, frame: Frame) -> None:
        circuit = self._circuits.get(frame.stream_id or "")
        if circuit is None or circuit.dst is not link or circuit.established:
            return
        if frame.type is FrameType.CONNECT_OK:
            circuit.established = True
            logger.info(
                "Circuit %s open: %s -> %s (%s)",
                circuit.stream_id[:8], circuit.src.peer_id[:12],
                circuit.dst.peer_id[:12], circuit.protocol,
            )
            await circuit.src.send(Frame(
                type=FrameType.CONNECT_OK,
                stream_id=circuit.stream_id,
                protocol=circuit.protocol,
                limited=circuit.limited,
                ephemeral_key=frame.ephemeral_key,
                public_key=frame.public_key,
                signature=frame.signature,
            ))
        else:
            del self._circuits[circuit.stream_id]
            await circuit.src.send(Frame(
                type=FrameType.CONNECT_FAIL,
                stream_id=circuit.stream_id,
                reason=frame.reason or "refused by target",
            ))

    async def _on_data(self, link: PeerLink, frame: Frame, raw: str) -> None:
        circuit = self._circuits.get(frame.stream_id or "")
        other = circuit.other(link) if circuit else None
        if circuit is None or other is None:
            return
        circuit.bytes_relayed += _payload_size(frame)
        limit = self.config.circuit_limit_bytes
        if limit is not None and circuit.bytes_relayed > limit:
            await self._reset_circuit(circuit, "circuit data limit exceeded")
            return
        await other.send_text(raw)

    async def _on_close(self, link: PeerLink, frame: Frame, raw: str) -> None:
        circuit = self._circuits.get(frame.stream_id or "")
        other = circuit.other(link) if circuit else None
        if circuit is None or other is None:
            return
        circuit.half_closed.add(link.peer_id)
        await other.send_text(raw)
        if len(circuit.half_closed) >= 2:
            self._circuits.pop(circuit.stream_id, None)
            logger.info("Circuit %s closed", circuit.stream_id[:8])

    async def _on_reset(self, link: PeerLink, frame: Frame, raw: str) -> None:
        circuit = self._circuits.get(frame.stream_id or "")
        other = circuit.other(link) if circuit else None
        if circuit is None or other is None:
            return
        self._circuits.pop(circuit.stream_id, None)
        await other.send_text(raw)
        logger.info("Circuit %s reset by %s", circuit.stream_id[:8], link.peer_id[:12])

    # ── Circuit teardown ─────────────────────────────────────────

    async def _reset_circuit(self, circuit: Circuit, reason: str) -> None:
        self._circuits.pop(circuit.stream_id, None)
        logger.info("Resetting circuit %s: %s", circuit.stream_id[:8], reason)
        for end in (circuit.src, circuit.dst):
            await end.send(Frame(type=FrameType.RESET, stream_id=circuit.stream_id, reason=reason))

    async def _reset_circuits_of(self, link: PeerLink, reason: str) -> None:
        for circuit in [c for c in self._circuits.values() if c.other(link) is not None]:
            self._circuits.pop(circuit.stream_id, None)
            other = circuit.other(link)
            if other is not None and other is not link:
                await other.send(Frame(
                    type=FrameType.RESET, stream_id=circuit.stream_id, reason=reason,
                ))

    def expire_circuits(self) -> list[Circuit]:
        """Circuits that outlived the configured duration limit."""
        limit = self.config.circuit_limit_seconds
        if limit is None:
            return []
        cutoff = time.time() - limit
        return [c for c in self._circuits.values() if c.started_at < cutoff]

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.cleanup_interval)
            try:
                self.reservations.expire()
                for circuit in self.expire_circuits():
                    await self._reset_circuit(circuit, "circuit duration limit exceeded")
            except Exception:
                logger.exception("Relay cleanup failed")


def _payload_size(frame: Frame) -> int:
    """Decoded size of a base64 payload, computed from its length only."""
    if not frame.data:
        return 0
    return len(frame.data) * 3 // 4 - frame.data.count("=", -2)
