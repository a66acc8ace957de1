"""Accept and dial paths for the session protocol.

Every accepted or dialed stream becomes a :class:`Session` with its own
:class:`DuplexPump`. Sessions are independent: a failure while dialing or
tearing one down never affects the others.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field

from circuit_node.errors import AddressParseError
from circuit_node.network.address import Address, peer_id_from_text
from circuit_node.network.protocol import DEFAULT_PROTOCOL
from circuit_node.network.stream import Direction, Stream, StreamState
from circuit_node.network.transport import DialOptions
from circuit_node.node import Node
from circuit_node.pump import DuplexPump, InputBus, OutputSink, Termination

logger = logging.getLogger(__name__)

DEFAULT_MAX_INBOUND_STREAMS = 32
DEFAULT_MAX_OUTBOUND_STREAMS = 10


@dataclass
class Session:
    """One negotiated application stream between two identities."""

    local_peer: str
    remote_peer: str
    protocol: str
    direction: Direction
    stream: Stream
    pump: DuplexPump | None = None
    opened_at: float = field(default_factory=time.time)

    @property
    def session_id(self) -> str:
        return self.stream.stream_id

    @property
    def state(self) -> StreamState:
        return self.stream.state

    @property
    def termination(self) -> Termination | None:
        return self.pump.termination if self.pump is not None else None

    @property
    def is_active(self) -> bool:
        return self.pump is not None and self.pump.running

    def describe(self) -> str:
        return (
            f"{self.direction.value:<8} {self.remote_peer} {self.protocol} "
            f"[{self.state.value}]"
        )


class SessionManager:
    """Accepts inbound streams and dials outbound ones on a single protocol."""

    def __init__(
        self,
        node: Node,
        bus: InputBus,
        sink: OutputSink,
        protocol: str = DEFAULT_PROTOCOL,
        max_inbound_streams: int = DEFAULT_MAX_INBOUND_STREAMS,
        max_outbound_streams: int = DEFAULT_MAX_OUTBOUND_STREAMS,
        dial_timeout: float = 10.0,
    ) -> None:
        self.node = node
        self.bus = bus
        self.sink = sink
        self.protocol = protocol
        self.max_inbound_streams = max_inbound_streams
        self.max_outbound_streams = max_outbound_streams
        self.dial_timeout = dial_timeout
        self._sessions: dict[str, Session] = {}

    @property
    def sessions(self) -> list[Session]:
        return list(self._sessions.values())

    def register(self) -> None:
        """Install the accept path for :attr:`protocol`."""
        self.node.handle(
            self.protocol,
            self._on_inbound_stream,
            max_inbound_streams=self.max_inbound_streams,
            run_on_limited_connection=True,
        )
        logger.info("Accepting %s streams (max %d)", self.protocol, self.max_inbound_streams)

    def unregister(self) -> None:
        self.node.unhandle(self.protocol)

    async def _on_inbound_stream(self, stream: Stream) -> None:
        logger.info("Inbound %s stream from %s", stream.protocol, stream.remote_peer)
        self._open_session(stream, Direction.INBOUND)

    async def dial(self, address_text: str) -> Session:
        """Dial the peer named by a circuit address and open a session.

        Raises:
            AddressParseError: Malformed address; nothing is created.
            GateRejected: The gate denied every address of the peer.
            DialFailure: Transport or negotiation failure.
        """
        peer_id = peer_id_from_text(address_text)
        address = Address.parse(address_text)
        if address.peer_id != peer_id:
            raise AddressParseError(f"address does not end in /p2p/<peer-id>: {address_text}")
        if peer_id == self.node.peer_id:
            raise AddressParseError("address points at this node")

        self.node.peer_store.patch(peer_id, [address])
        logger.info("Dialing %s on %s via %s", peer_id, self.protocol, address)

        options = DialOptions(
            max_outbound_streams=self.max_outbound_streams,
            run_on_limited_connection=True,
            negotiate_fully=True,
            timeout=self.dial_timeout,
        )
        stream = await self.node.dial_protocol(peer_id, [self.protocol], options)
        return self._open_session(stream, Direction.OUTBOUND)

    def _open_session(self, stream: Stream, direction: Direction) -> Session:
        session = Session(
            local_peer=self.node.peer_id,
            remote_peer=stream.remote_peer,
            protocol=stream.protocol,
            direction=direction,
            stream=stream,
        )
        session.pump = DuplexPump(
            stream, self.bus, self.sink,
            on_close=lambda pump: self._on_session_closed(session),
        )
        self._sessions[session.session_id] = session
        session.pump.start()
        return session

    def _on_session_closed(self, session: Session) -> None:
        self._sessions.pop(session.session_id, None)
        if session.termination is Termination.RESET:
            logger.info("Session with %s reset", session.remote_peer[:12])
        elif session.termination is Termination.ERROR:
            logger.warning("Session with %s closed after an I/O error", session.remote_peer[:12])
        else:
            logger.info("Session with %s closed", session.remote_peer[:12])

    async def close_all(self) -> None:
        for session in self.sessions:
            if session.pump is not None:
                await session.pump.stop()
        self._sessions.clear()
