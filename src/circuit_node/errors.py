"""Error taxonomy for relay-routed sessions.

Dial and accept failures are local to a single attempt. Stream resets and
I/O errors tear down one session and are reported, never retried.
"""

from __future__ import annotations


class CircuitError(Exception):
    """Base exception for circuit-node errors."""


class AddressParseError(CircuitError, ValueError):
    """Address text could not be parsed."""


class GateRejected(CircuitError):
    """The address gate denied an outbound dial. Nothing was attempted."""

    def __init__(self, address: str) -> None:
        super().__init__(f"address not permitted by gate: {address}")
        self.address = address


class DialFailure(CircuitError):
    """Negotiation or transport failure while dialing."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class ReservationUnavailable(CircuitError):
    """The relay refused or never granted a reservation."""


class ReservationRefused(ReservationUnavailable):
    """The relay explicitly refused the reservation (e.g. cap reached)."""


class ReservationTimeout(ReservationUnavailable):
    """No circuit address appeared before the deadline."""


class StreamReset(CircuitError):
    """The remote or the network forcibly terminated a stream."""


class StreamIOError(CircuitError):
    """Unexpected read or write failure on a stream."""


class ProtocolError(CircuitError):
    """A malformed or unexpected wire frame."""


class ConfigError(CircuitError):
    """Invalid or missing configuration."""


class NodeStartError(CircuitError):
    """The network stack could not be started."""
