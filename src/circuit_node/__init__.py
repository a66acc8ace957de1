"""circuit-node: relay-routed sessions between NATed peers."""

__version__ = "0.1.0"

from circuit_node.identity import PeerIdentity
from circuit_node.node import Node
from circuit_node.pump import DuplexPump, InputBus
from circuit_node.reservation import ReservationManager
from circuit_node.session import Session, SessionManager

__all__ = [
    "DuplexPump",
    "InputBus",
    "Node",
    "PeerIdentity",
    "ReservationManager",
    "Session",
    "SessionManager",
]
