"""End-to-end encryption of circuit streams.

Each side of a new stream sends an ephemeral X25519 key signed with its
identity key (in CONNECT and CONNECT_OK). The X25519 shared secret is expanded
with HKDF(BLAKE2b) into one ChaCha20-Poly1305 key per direction. The relay
forwards the sealed payloads and never holds a key.
"""

from __future__ import annotations

import struct

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric.x25519 import (
    X25519PrivateKey,
    X25519PublicKey,
)
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from circuit_node.errors import ProtocolError
from circuit_node.identity import PeerIdentity

KEY_BYTES = 32
TAG_BYTES = 16
SIGNATURE_CONTEXT = b"circuit-node stream key:"


def _signed_bytes(stream_id: str, ephemeral: bytes) -> bytes:
    return SIGNATURE_CONTEXT + stream_id.encode("utf-8") + b":" + ephemeral


def derive_keys(shared: bytes, stream_id: str) -> tuple[bytes, bytes]:
    """Split the shared secret into (dialer->listener, listener->dialer) keys."""
    hkdf = HKDF(
        algorithm=hashes.BLAKE2b(64),
        length=2 * KEY_BYTES,
        salt=None,
        info=b"circuit-node stream " + stream_id.encode("utf-8"),
    )
    material = hkdf.derive(shared)
    return material[:KEY_BYTES], material[KEY_BYTES:]


class StreamCipher:
    """ChaCha20-Poly1305 with a per-direction message counter as nonce.

    Frames of one direction arrive in order over the relay link, so both
    ends advance their counters in step.
    """

    def __init__(self, send_key: bytes, recv_key: bytes) -> None:
        self._send = ChaCha20Poly1305(send_key)
        self._recv = ChaCha20Poly1305(recv_key)
        self._send_counter = 0
        self._recv_counter = 0

    @staticmethod
    def _nonce(counter: int) -> bytes:
        return struct.pack(">4xQ", counter)

    def seal(self, plaintext: bytes) -> bytes:
        nonce = self._nonce(self._send_counter)
        self._send_counter += 1
        return self._send.encrypt(nonce, plaintext, None)

    def open(self, ciphertext: bytes) -> bytes:
        """Decrypt the next payload. Raises ProtocolError if it was tampered with."""
        nonce = self._nonce(self._recv_counter)
        try:
            plaintext = self._recv.decrypt(nonce, ciphertext, None)
        except InvalidTag:
            raise ProtocolError("payload failed authentication") from None
        self._recv_counter += 1
        return plaintext


class KeyOffer:
    """Our half of the key exchange for one stream."""

    def __init__(self, identity: PeerIdentity, stream_id: str) -> None:
        self.stream_id = stream_id
        self._identity = identity
        self._private = X25519PrivateKey.generate()
        self.ephemeral = self._private.public_key().public_bytes(
            Encoding.Raw, PublicFormat.Raw,
        )

    def fields(self) -> dict[str, str]:
        """Frame fields carrying the signed ephemeral key."""
        return {
            "ephemeral_key": self.ephemeral.hex(),
            "public_key": self._identity.public_key_bytes.hex(),
            "signature": self._identity.sign(
                _signed_bytes(self.stream_id, self.ephemeral),
            ).hex(),
        }

    def complete(
        self,
        remote_peer_id: str,
        ephemeral_key: str | None,
        public_key: str | None,
        signature: str | None,
        initiator: bool,
    ) -> StreamCipher:
        """Check the remote half and derive the stream cipher.

        Raises:
            ProtocolError: Missing fields, a key not belonging to
                ``remote_peer_id``, or a bad signature.
        """
        if not (ephemeral_key and public_key and signature):
            raise ProtocolError("stream key exchange missing")
        try:
            remote_ephemeral = bytes.fromhex(ephemeral_key)
            remote_public = bytes.fromhex(public_key)
            remote_signature = bytes.fromhex(signature)
        except ValueError:
            raise ProtocolError("malformed stream key exchange") from None

        if PeerIdentity.peer_id_from_public_key(remote_public) != remote_peer_id:
            raise ProtocolError(f"stream key not signed by {remote_peer_id}")
        if not PeerIdentity.verify(
            remote_public, remote_signature, _signed_bytes(self.stream_id, remote_ephemeral),
        ):
            raise ProtocolError("bad signature on stream key")

        try:
            shared = self._private.exchange(X25519PublicKey.from_public_bytes(remote_ephemeral))
        except ValueError:
            raise ProtocolError("invalid ephemeral key") from None

        forward, backward = derive_keys(shared, self.stream_id)
        if initiator:
            return StreamCipher(forward, backward)
        return StreamCipher(backward, forward)
