"""Peer node composing identity, address gate, transport and peer store.

A node:
1. Connects to each configured relay (only relays the gate permits)
2. Requests a reservation and publishes the resulting circuit address
3. Keeps reservations fresh and reconnects lost relays in the background
4. Accepts inbound protocol streams and dials peers through circuits
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Iterable

from circuit_node.config import PeerConfig
from circuit_node.errors import (
    AddressParseError,
    CircuitError,
    DialFailure,
    GateRejected,
    NodeStartError,
    ReservationUnavailable,
)
from circuit_node.identity import PeerIdentity
from circuit_node.network.address import Address, circuit_address
from circuit_node.network.gate import AddressGate
from circuit_node.network.peerstore import PeerStore
from circuit_node.network.stream import Stream
from circuit_node.network.transport import (
    DialOptions,
    RelayConnection,
    StreamHandler,
    Transport,
)

logger = logging.getLogger(__name__)


class Node:
    """A NATed peer reachable only through relays."""

    def __init__(
        self,
        config: PeerConfig,
        identity: PeerIdentity | None = None,
        gate: AddressGate | None = None,
        transport: Transport | None = None,
    ) -> None:
        self.config = config
        self.identity = identity or PeerIdentity.generate()
        self.gate = gate or AddressGate(config.gate_hosts())
        self.transport = transport or Transport(self.identity, self.gate)
        self.peer_store = PeerStore()

        # relay peer id -> active circuit address (at most one per relay)
        self._circuit_addresses: dict[str, str] = {}
        self._reservation_expiry: dict[str, float] = {}
        self._address_listeners: list[Callable[[], None]] = []
        self._watched: set[RelayConnection] = set()
        self._maintenance: asyncio.Task | None = None
        self._running = False

    @property
    def peer_id(self) -> str:
        return self.identity.peer_id

    @property
    def running(self) -> bool:
        return self._running

    # ── Address set ──────────────────────────────────────────────

    def get_addresses(self) -> list[str]:
        """Addresses at which this node can currently be dialed."""
        return list(self._circuit_addresses.values())

    def on_addresses_changed(self, callback: Callable[[], None]) -> None:
        self._address_listeners.append(callback)

    def _set_circuit_address(self, relay_peer_id: str, address: str | None) -> None:
        current = self._circuit_addresses.get(relay_peer_id)
        if address == current:
            return
        if address is None:
            del self._circuit_addresses[relay_peer_id]
            self._reservation_expiry.pop(relay_peer_id, None)
            logger.info("Circuit address via %s withdrawn", relay_peer_id[:12])
        else:
            self._circuit_addresses[relay_peer_id] = address
            logger.info("Circuit address active: %s", address)
        for cb in list(self._address_listeners):
            try:
                cb()
            except Exception:
                logger.exception("Address listener failed")

    # ── Lifecycle ────────────────────────────────────────────────

    async def start(self) -> None:
        """Start the transport and bootstrap the configured relays.

        Raises:
            NodeStartError: If no configured relay could be reached.
        """
        try:
            await self.transport.start()
        except Exception as e:
            raise NodeStartError(f"cannot start transport: {e}") from e
        self._running = True

        failures: list[str] = []
        for text in self.config.relays:
            try:
                await self._bootstrap_relay(Address.parse(text))
            except (AddressParseError, GateRejected, DialFailure) as e:
                logger.error("Relay %s unavailable: %s", text, e)
                failures.append(text)

        if self.config.relays and len(failures) == len(self.config.relays):
            await self.stop()
            raise NodeStartError("could not connect to any relay")

        self._maintenance = asyncio.create_task(self._maintain_loop())
        logger.info(
            "Node started: peer_id=%s, relays=%d, protocols=%s",
            self.peer_id, len(self.transport.connections), self.transport.protocols,
        )

    async def stop(self) -> None:
        self._running = False
        if self._maintenance is not None:
            self._maintenance.cancel()
            try:
                await self._maintenance
            except asyncio.CancelledError:
                pass
            self._maintenance = None
        await self.transport.stop()
        for relay_id in list(self._circuit_addresses):
            self._set_circuit_address(relay_id, None)
        logger.info("Node stopped")

    async def _bootstrap_relay(self, relay: Address) -> RelayConnection:
        conn = await self.dial(relay)
        if self.config.listen_circuit:
            try:
                await self._reserve(conn)
            except ReservationUnavailable as e:
                logger.warning("Reservation on %s unavailable: %s", conn.relay_peer_id[:12], e)
        return conn

    async def _reserve(self, conn: RelayConnection) -> str:
        expires_at = await conn.reserve(advertise=self.config.advertise)
        self._reservation_expiry[conn.relay_peer_id] = expires_at
        address = str(circuit_address(conn.relay_address, self.peer_id))
        self._set_circuit_address(conn.relay_peer_id, address)
        return address

    def _on_relay_closed(self, conn: RelayConnection) -> None:
        self._watched.discard(conn)
        if conn.relay_peer_id in self._circuit_addresses:
            self._set_circuit_address(conn.relay_peer_id, None)

    async def _maintain_loop(self) -> None:
        """Reconnect lost relays and refresh reservations before expiry."""
        while self._running:
            await asyncio.sleep(self.config.maintenance_interval)
            try:
                await self.maintain()
            except Exception:
                logger.exception("Relay maintenance failed")

    async def maintain(self) -> None:
        for text in self.config.relays:
            relay = Address.parse(text)
            conn = self.transport.connection_for(relay.peer_id or "")
            if conn is None:
                try:
                    await self._bootstrap_relay(relay)
                except CircuitError as e:
                    logger.debug("Reconnect to %s failed: %s", text, e)
                continue
            if not self.config.listen_circuit:
                continue
            expiry = self._reservation_expiry.get(conn.relay_peer_id)
            if expiry is None or expiry - time.time() <= self.config.reservation_refresh_margin:
                try:
                    await self._reserve(conn)
                except ReservationUnavailable as e:
                    logger.warning("Reservation refresh on %s failed: %s", conn.relay_peer_id[:12], e)
                    if expiry is None or expiry <= time.time():
                        self._set_circuit_address(conn.relay_peer_id, None)

    # ── Protocols ────────────────────────────────────────────────

    def handle(
        self,
        protocol: str,
        handler: StreamHandler,
        max_inbound_streams: int = 32,
        run_on_limited_connection: bool = False,
    ) -> None:
        self.transport.handle(
            protocol,
            handler,
            max_inbound_streams=max_inbound_streams,
            run_on_limited_connection=run_on_limited_connection,
        )

    def unhandle(self, protocol: str) -> None:
        self.transport.unhandle(protocol)

    # ── Dialing ──────────────────────────────────────────────────

    async def dial(self, address: Address | str) -> RelayConnection:
        """Connect to a relay by its direct address."""
        relay = Address.parse(address) if isinstance(address, str) else address
        self.gate.check(relay)
        conn = await self.transport.connect(relay)
        if conn not in self._watched:
            self._watched.add(conn)
            conn.on_close(self._on_relay_closed)
        return conn

    async def dial_protocol(
        self,
        peer_id: str,
        protocols: Iterable[str],
        options: DialOptions | None = None,
    ) -> Stream:
        """Open a stream to ``peer_id`` using the first protocol it accepts.

        The peer must have been patched into :attr:`peer_store` first.

        Raises:
            GateRejected: Every known address was denied; nothing was dialed.
            DialFailure: No known address, no route, or negotiation failed.
        """
        protocols = list(protocols)
        addresses = self.peer_store.get(peer_id)
        if not addresses:
            raise DialFailure(f"no known addresses for {peer_id}")

        permitted = [a for a in addresses if self.gate.permit(a)]
        if not permitted:
            raise GateRejected(str(addresses[0]))

        last_error: CircuitError | None = None
        for addr in permitted:
            relay = addr.relay_address
            if not addr.is_circuit or relay is None:
                last_error = DialFailure(f"no relay route in {addr}")
                continue
            try:
                conn = await self.dial(relay)
            except (GateRejected, DialFailure) as e:
                last_error = e
                continue
            for protocol in protocols:
                try:
                    stream = await conn.open_stream(peer_id, protocol, options)
                except DialFailure as e:
                    logger.info("Dial %s on %s via %s failed: %s", peer_id[:12], protocol, addr, e)
                    last_error = e
                    continue
                logger.info("Opened %s stream to %s", protocol, peer_id[:12])
                return stream

        raise last_error or DialFailure(f"cannot reach {peer_id}")
