"""Relay service: reservations and circuit forwarding."""

from circuit_node.relay.reservations import Reservation, ReservationTable
from circuit_node.relay.server import RelayServer

__all__ = ["Reservation", "ReservationTable", "RelayServer"]
