"""Which addresses reach which peer."""

from __future__ import annotations

import logging
from typing import Iterable

from circuit_node.network.address import Address

logger = logging.getLogger(__name__)


class PeerStore:
    """Maps peer ids to known addresses.

    A peer must be patched in before it can be dialed by id; nothing else
    populates the store.
    """

    def __init__(self) -> None:
        self._addresses: dict[str, list[Address]] = {}

    def patch(self, peer_id: str, addresses: Iterable[Address | str]) -> None:
        """Replace the known addresses of ``peer_id``."""
        parsed = [a if isinstance(a, Address) else Address.parse(a) for a in addresses]
        self._addresses[peer_id] = parsed
        logger.debug("Peer store patched %s -> %s", peer_id[:12], [str(a) for a in parsed])

    def get(self, peer_id: str) -> list[Address]:
        return list(self._addresses.get(peer_id, []))

    def remove(self, peer_id: str) -> None:
        self._addresses.pop(peer_id, None)

    def peers(self) -> list[str]:
        return list(self._addresses)

    def __contains__(self, peer_id: str) -> bool:
        return peer_id in self._addresses

    def __len__(self) -> int:
        return len(self._addresses)
