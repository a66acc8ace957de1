"""Addresses, dial gate, wire frames, streams and the relay transport."""

from circuit_node.network.address import Address, circuit_address, peer_id_from_text
from circuit_node.network.gate import AddressGate
from circuit_node.network.peerstore import PeerStore
from circuit_node.network.stream import Direction, Stream, StreamState
from circuit_node.network.transport import DialOptions, RelayConnection, Transport

__all__ = [
    "Address",
    "AddressGate",
    "DialOptions",
    "Direction",
    "PeerStore",
    "RelayConnection",
    "Stream",
    "StreamState",
    "Transport",
    "circuit_address",
    "peer_id_from_text",
]
