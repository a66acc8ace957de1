"""Wire frames exchanged between peers and the relay.

Every WebSocket text message carries one JSON-encoded :class:`Frame`. Stream
payloads travel base64-encoded in ``data`` and are never decoded by the relay.
"""

from __future__ import annotations

import base64
import binascii
from enum import Enum

from pydantic import BaseModel, ValidationError

from circuit_node.errors import ProtocolError

DEFAULT_PROTOCOL = "/node-1"


class FrameType(str, Enum):
    """Types of relay frames."""

    # Handshake
    CHALLENGE = "challenge"
    HELLO = "hello"
    WELCOME = "welcome"
    ERROR = "error"

    # Reservations
    RESERVE = "reserve"
    RESERVE_OK = "reserve_ok"
    RESERVE_REFUSED = "reserve_refused"

    # Circuits / streams
    CONNECT = "connect"
    CONNECT_OK = "connect_ok"
    CONNECT_FAIL = "connect_fail"
    DATA = "data"
    CLOSE = "close"
    RESET = "reset"

    # Liveness
    PING = "ping"
    PONG = "pong"


class Frame(BaseModel):
    """A single relay protocol frame."""

    type: FrameType
    request_id: str | None = None
    stream_id: str | None = None
    peer_id: str | None = None
    protocol: str | None = None
    data: str | None = None
    reason: str | None = None
    nonce: str | None = None
    public_key: str | None = None
    ephemeral_key: str | None = None
    signature: str | None = None
    expires_at: float | None = None
    limited: bool = False
    advertise: bool = False
    addresses: list[str] | None = None

    def encode(self) -> str:
        return self.model_dump_json(exclude_none=True)

    @classmethod
    def decode(cls, text: str | bytes) -> Frame:
        try:
            return cls.model_validate_json(text)
        except ValidationError as e:
            raise ProtocolError(f"malformed frame: {e.error_count()} error(s)") from e

    @classmethod
    def data_frame(cls, stream_id: str, payload: bytes) -> Frame:
        return cls(
            type=FrameType.DATA,
            stream_id=stream_id,
            data=base64.b64encode(payload).decode("ascii"),
        )

    def payload(self) -> bytes:
        """Decoded ``data`` bytes of a DATA frame."""
        if self.data is None:
            return b""
        try:
            return base64.b64decode(self.data, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ProtocolError("invalid base64 payload") from e
