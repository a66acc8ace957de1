"""Self-describing network addresses.

An address is a path of ``/protocol/value`` segments, e.g.::

    /ip4/13.60.15.36/tcp/3001/ws/p2p/<relay-id>
    /ip4/13.60.15.36/tcp/3001/ws/p2p/<relay-id>/p2p-circuit/p2p/<target-id>

The first form reaches a node directly, the second reaches ``target-id`` only
through the named relay.
"""

from __future__ import annotations

from dataclasses import dataclass

from circuit_node.errors import AddressParseError
from circuit_node.identity import is_valid_peer_id

CIRCUIT = "p2p-circuit"
P2P_SEPARATOR = "/p2p/"

# protocol name -> whether it carries a value segment
PROTOCOLS: dict[str, bool] = {
    "ip4": True,
    "ip6": True,
    "dns": True,
    "dns4": True,
    "dns6": True,
    "tcp": True,
    "udp": True,
    "ws": False,
    "wss": False,
    "p2p": True,
    CIRCUIT: False,
}

HOST_PROTOCOLS = ("ip4", "ip6", "dns", "dns4", "dns6")


@dataclass(frozen=True)
class Address:
    """Immutable parsed address."""

    segments: tuple[tuple[str, str | None], ...]

    @classmethod
    def parse(cls, text: str) -> Address:
        text = text.strip() if isinstance(text, str) else text
        if not text or not isinstance(text, str) or not text.startswith("/"):
            raise AddressParseError(f"invalid address: {text!r}")

        parts = text.split("/")[1:]
        if parts and parts[-1] == "":
            parts.pop()

        segments: list[tuple[str, str | None]] = []
        i = 0
        while i < len(parts):
            proto = parts[i]
            if proto not in PROTOCOLS:
                raise AddressParseError(f"unknown protocol {proto!r} in {text!r}")
            if PROTOCOLS[proto]:
                if i + 1 >= len(parts) or not parts[i + 1]:
                    raise AddressParseError(f"missing value for /{proto} in {text!r}")
                value = parts[i + 1]
                if proto in ("tcp", "udp") and not value.isdigit():
                    raise AddressParseError(f"invalid port {value!r} in {text!r}")
                segments.append((proto, value))
                i += 2
            else:
                segments.append((proto, None))
                i += 1

        if not segments:
            raise AddressParseError(f"empty address: {text!r}")
        return cls(tuple(segments))

    def __str__(self) -> str:
        out = []
        for proto, value in self.segments:
            out.append(f"/{proto}" if value is None else f"/{proto}/{value}")
        return "".join(out)

    def _values(self, proto: str) -> list[str]:
        return [v for p, v in self.segments if p == proto and v is not None]

    @property
    def is_circuit(self) -> bool:
        return any(p == CIRCUIT for p, _ in self.segments)

    @property
    def peer_id(self) -> str | None:
        """Trailing ``/p2p/<id>``: the node this address ultimately reaches."""
        if self.segments and self.segments[-1][0] == "p2p":
            return self.segments[-1][1]
        return None

    @property
    def relay_address(self) -> Address | None:
        """The direct address of the relay hop, for circuit addresses."""
        for i, (proto, _) in enumerate(self.segments):
            if proto == CIRCUIT:
                if i == 0:
                    return None
                return Address(self.segments[:i])
        return None

    @property
    def relay_peer_id(self) -> str | None:
        relay = self.relay_address
        return relay.peer_id if relay is not None else None

    @property
    def host(self) -> str | None:
        for proto, value in self.segments:
            if proto in HOST_PROTOCOLS:
                return value
        return None

    @property
    def port(self) -> int | None:
        ports = self._values("tcp")
        return int(ports[0]) if ports else None

    @property
    def is_secure(self) -> bool:
        return any(p == "wss" for p, _ in self.segments)

    def websocket_url(self) -> str:
        """URL of the relay's WebSocket endpoint for a direct address."""
        target = self.relay_address if self.is_circuit else self
        if target is None or target.host is None or target.port is None:
            raise AddressParseError(f"address has no dialable host/port: {self}")
        scheme = "wss" if target.is_secure else "ws"
        host = f"[{target.host}]" if ":" in target.host else target.host
        return f"{scheme}://{host}:{target.port}/ws"

    def with_peer_id(self, peer_id: str) -> Address:
        if self.peer_id is not None:
            return self
        return Address(self.segments + (("p2p", peer_id),))


def peer_id_from_text(text: str) -> str:
    """Extract the target peer id: split on ``/p2p/`` and take the last part."""
    parts = text.strip().split(P2P_SEPARATOR)
    if len(parts) < 2 or not parts[-1] or "/" in parts[-1]:
        raise AddressParseError(f"missing /p2p/<peer-id> in {text!r}")
    if not is_valid_peer_id(parts[-1]):
        raise AddressParseError(f"malformed peer id {parts[-1]!r} in {text!r}")
    return parts[-1]


def circuit_address(relay: Address | str, target_peer_id: str) -> Address:
    relay_addr = Address.parse(relay) if isinstance(relay, str) else relay
    return Address(relay_addr.segments + ((CIRCUIT, None), ("p2p", target_peer_id)))


def is_circuit_for(text: str, peer_id: str) -> bool:
    """Does ``text`` look like ``.../p2p-circuit/p2p/<peer_id>``?"""
    return text.endswith(f"/{CIRCUIT}/p2p/{peer_id}")


def websocket_address(host: str, port: int, peer_id: str | None = None) -> Address:
    """Direct WebSocket address for ``host:port``."""
    if ":" in host:
        proto = "ip6"
    elif host.replace(".", "").isdigit():
        proto = "ip4"
    else:
        proto = "dns4"
    segments: tuple[tuple[str, str | None], ...] = (
        (proto, host), ("tcp", str(port)), ("ws", None),
    )
    if peer_id:
        segments += (("p2p", peer_id),)
    return Address(segments)
