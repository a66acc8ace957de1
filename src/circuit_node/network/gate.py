"""Outbound dial policy.

Only circuit addresses and the configured relays themselves may be dialed.
Everything else is denied so the node never leaks its real address through
an opportunistic direct connection.
"""

from __future__ import annotations

import logging
from typing import Iterable

from circuit_node.errors import GateRejected
from circuit_node.network.address import CIRCUIT, Address

logger = logging.getLogger(__name__)


class AddressGate:
    """Permits circuit addresses and addresses naming an allowed relay host.

    A host identifier matches when it equals one path segment of the address
    (an IP, a DNS name or a relay peer id).
    """

    def __init__(self, allowed_hosts: Iterable[str] = ()) -> None:
        self._allowed = tuple(h for h in allowed_hosts if h)

    @property
    def allowed_hosts(self) -> tuple[str, ...]:
        return self._allowed

    def permit(self, address: Address | str) -> bool:
        text = str(address)
        if CIRCUIT in text:
            return True
        segments = text.split("/")
        return any(host in segments for host in self._allowed)

    def check(self, address: Address | str) -> None:
        """Raise :class:`GateRejected` unless ``address`` is permitted."""
        if not self.permit(address):
            logger.debug("Gate denied dial to %s", address)
            raise GateRejected(str(address))
