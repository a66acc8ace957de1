"""Peer identity: an Ed25519 keypair and the peer id derived from it.

The peer id is stable across restarts as long as the key file is kept.
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import re
from pathlib import Path

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    PublicFormat,
)

logger = logging.getLogger(__name__)

PEER_ID_PREFIX = "12D"
PEER_ID_DIGEST_BYTES = 20
PEER_ID_PATTERN = re.compile(r"^12D[a-z2-7]{32}$")


def is_valid_peer_id(text: str) -> bool:
    """True if ``text`` has the shape of a generated peer id."""
    return bool(PEER_ID_PATTERN.match(text))


class PeerIdentity:
    """A node's keypair and its derived peer id."""

    def __init__(self, private_key: Ed25519PrivateKey) -> None:
        self._private_key = private_key
        self._public_bytes = private_key.public_key().public_bytes(
            Encoding.Raw, PublicFormat.Raw,
        )
        self._peer_id = self.peer_id_from_public_key(self._public_bytes)

    @classmethod
    def generate(cls) -> PeerIdentity:
        return cls(Ed25519PrivateKey.generate())

    @classmethod
    def from_private_bytes(cls, raw: bytes) -> PeerIdentity:
        """Build an identity from a raw 32-byte Ed25519 seed."""
        return cls(Ed25519PrivateKey.from_private_bytes(raw))

    @classmethod
    def load(cls, path: Path) -> PeerIdentity:
        with open(path) as f:
            data = json.load(f)
        identity = cls.from_private_bytes(bytes.fromhex(data["private_key"]))
        stored = data.get("peer_id")
        if stored and stored != identity.peer_id:
            raise ValueError(f"identity file {path} has mismatched peer_id")
        return identity

    @classmethod
    def load_or_generate(cls, path: Path) -> PeerIdentity:
        """Load the identity at ``path``, creating and saving one if missing."""
        path = Path(path)
        if path.exists():
            return cls.load(path)
        identity = cls.generate()
        identity.save(path)
        logger.info("Generated new identity %s at %s", identity.peer_id, path)
        return identity

    def save(self, path: Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        raw = self._private_key.private_bytes(
            Encoding.Raw, PrivateFormat.Raw, NoEncryption(),
        )
        with open(path, "w") as f:
            json.dump({"peer_id": self.peer_id, "private_key": raw.hex()}, f, indent=2)

    @property
    def peer_id(self) -> str:
        return self._peer_id

    @property
    def public_key_bytes(self) -> bytes:
        return self._public_bytes

    def sign(self, data: bytes) -> bytes:
        return self._private_key.sign(data)

    @staticmethod
    def verify(public_key: bytes, signature: bytes, data: bytes) -> bool:
        """Check an Ed25519 signature. Malformed keys count as invalid."""
        try:
            Ed25519PublicKey.from_public_bytes(public_key).verify(signature, data)
        except (InvalidSignature, ValueError):
            return False
        return True

    @staticmethod
    def peer_id_from_public_key(public_key: bytes) -> str:
        digest = hashlib.sha256(public_key).digest()[:PEER_ID_DIGEST_BYTES]
        encoded = base64.b32encode(digest).decode("ascii").rstrip("=").lower()
        return PEER_ID_PREFIX + encoded

    def __repr__(self) -> str:
        return f"PeerIdentity({self.peer_id})"
