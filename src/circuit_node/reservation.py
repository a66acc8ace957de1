"""Wait until the node is dialable through a relay.

The node obtains reservations on its own; this component only observes the
node's address set until a circuit address for the node's own identity shows
up. It checks once per poll interval (level-triggered) and can be woken
early with :meth:`ReservationManager.notify` when the address set changes.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Iterable

from circuit_node.errors import AddressParseError, ReservationTimeout
from circuit_node.network.address import Address, is_circuit_for

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 1.0


class ReservationManager:
    """Polls an address source for ``.../p2p-circuit/p2p/<own-id>``."""

    def __init__(
        self,
        own_peer_id: str,
        address_source: Callable[[], Iterable[str]],
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        self.own_peer_id = own_peer_id
        self._address_source = address_source
        self.poll_interval = poll_interval
        self._changed = asyncio.Event()
        self.polls = 0

    def notify(self) -> None:
        """Signal that the address set changed; the next check runs now."""
        self._changed.set()

    def find_circuit_address(self, relay_address: str | Address | None = None) -> str | None:
        relay_id = None
        if relay_address is not None:
            try:
                relay = Address.parse(relay_address) if isinstance(relay_address, str) else relay_address
            except AddressParseError:
                relay = None
            relay_id = relay.peer_id if relay is not None else None

        for text in self._address_source():
            text = str(text)
            if not is_circuit_for(text, self.own_peer_id):
                continue
            if relay_id is not None:
                try:
                    if Address.parse(text).relay_peer_id != relay_id:
                        continue
                except AddressParseError:
                    continue
            return text
        return None

    async def await_reservation(
        self,
        relay_address: str | Address | None = None,
        timeout: float | None = None,
    ) -> str:
        """Wait for a circuit address through ``relay_address`` (any relay if None).

        Raises:
            ReservationTimeout: If ``timeout`` seconds pass without a match.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        self.polls = 0
        logger.info("Waiting for relay reservation%s", f" on {relay_address}" if relay_address else "")

        while True:
            wait = self.poll_interval
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise ReservationTimeout(
                        f"no circuit address after {timeout:.1f}s ({self.polls} polls)"
                    )
                wait = min(wait, remaining)

            try:
                await asyncio.wait_for(self._changed.wait(), wait)
            except asyncio.TimeoutError:
                pass
            self._changed.clear()

            self.polls += 1
            found = self.find_circuit_address(relay_address)
            if found is not None:
                logger.info("Reservation active after %d poll(s): %s", self.polls, found)
                return found
