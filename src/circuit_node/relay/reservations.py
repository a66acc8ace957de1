"""Reservation bookkeeping on the relay.

A reservation is a standing slot that lets other peers reach its holder
through this relay. Slots are created on request, refreshed by re-requesting,
and destroyed on expiry or when the holder disconnects.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field

from circuit_node.errors import ReservationRefused

logger = logging.getLogger(__name__)

DEFAULT_RESERVATION_TTL = 3600.0


@dataclass
class Reservation:
    """A relay-granted slot for one peer."""

    peer_id: str
    expires_at: float
    advertise: bool = False
    created_at: float = field(default_factory=time.time)

    @property
    def is_expired(self) -> bool:
        return time.time() >= self.expires_at

    def to_dict(self) -> dict:
        return {
            "peer_id": self.peer_id,
            "expires_at": self.expires_at,
            "advertise": self.advertise,
        }


class ReservationTable:
    """Active reservations with an optional concurrency cap.

    ``max_reservations=None`` means unbounded.
    """

    def __init__(
        self,
        max_reservations: int | None = None,
        ttl: float = DEFAULT_RESERVATION_TTL,
    ) -> None:
        self.max_reservations = max_reservations
        self.ttl = ttl
        self._reservations: dict[str, Reservation] = {}

    def __len__(self) -> int:
        return len(self._reservations)

    def __contains__(self, peer_id: str) -> bool:
        return self.get(peer_id) is not None

    def reserve(self, peer_id: str, advertise: bool = False) -> Reservation:
        """Grant or refresh a reservation for ``peer_id``.

        Raises:
            ReservationRefused: If the cap is reached and ``peer_id`` holds
                no slot yet.
        """
        self.expire()
        existing = self._reservations.get(peer_id)
        if existing is None and self.max_reservations is not None:
            if len(self._reservations) >= self.max_reservations:
                logger.warning(
                    "Reservation refused for %s: %d/%d slots in use",
                    peer_id[:12], len(self._reservations), self.max_reservations,
                )
                raise ReservationRefused("reservation limit reached")

        reservation = Reservation(
            peer_id=peer_id,
            expires_at=time.time() + self.ttl,
            advertise=advertise,
        )
        if existing is not None:
            reservation.created_at = existing.created_at
        self._reservations[peer_id] = reservation
        logger.info(
            "Reservation %s for %s (expires in %.0fs)",
            "refreshed" if existing else "granted", peer_id[:12], self.ttl,
        )
        return reservation

    def get(self, peer_id: str) -> Reservation | None:
        reservation = self._reservations.get(peer_id)
        if reservation is not None and reservation.is_expired:
            del self._reservations[peer_id]
            return None
        return reservation

    def release(self, peer_id: str) -> bool:
        return self._reservations.pop(peer_id, None) is not None

    def expire(self) -> list[str]:
        """Drop expired reservations. Returns the affected peer ids."""
        expired = [pid for pid, r in self._reservations.items() if r.is_expired]
        for pid in expired:
            del self._reservations[pid]
            logger.info("Reservation expired for %s", pid[:12])
        return expired

    def advertised(self) -> list[Reservation]:
        return [
            r for r in self._reservations.values()
            if r.advertise and not r.is_expired
        ]
