"""Tests for circuit_node.network.secure: stream key exchange and sealing."""

from __future__ import annotations

import pytest

from circuit_node.errors import ProtocolError
from circuit_node.identity import PeerIdentity
from circuit_node.network.secure import (
    TAG_BYTES,
    KeyOffer,
    StreamCipher,
    _signed_bytes,
    derive_keys,
)

STREAM_ID = "a1b2c3"


def exchange(dialer: PeerIdentity, listener: PeerIdentity, stream_id: str = STREAM_ID):
    """Run both halves of the exchange. Returns (dialer cipher, listener cipher)."""
    dialer_offer = KeyOffer(dialer, stream_id)
    listener_offer = KeyOffer(listener, stream_id)
    listener_cipher = listener_offer.complete(
        dialer.peer_id, initiator=False, **dialer_offer.fields(),
    )
    dialer_cipher = dialer_offer.complete(
        listener.peer_id, initiator=True, **listener_offer.fields(),
    )
    return dialer_cipher, listener_cipher


@pytest.fixture
def pair():
    return PeerIdentity.generate(), PeerIdentity.generate()


# ── Key derivation ───────────────────────────────────────────────

class TestDeriveKeys:
    def test_directions_differ(self):
        forward, backward = derive_keys(b"\x01" * 32, STREAM_ID)
        assert len(forward) == len(backward) == 32
        assert forward != backward

    def test_bound_to_stream(self):
        assert derive_keys(b"\x01" * 32, "s1") != derive_keys(b"\x01" * 32, "s2")


# ── Exchange ─────────────────────────────────────────────────────

class TestExchange:
    def test_fields_are_hex(self, pair):
        fields = KeyOffer(pair[0], STREAM_ID).fields()
        assert set(fields) == {"ephemeral_key", "public_key", "signature"}
        for value in fields.values():
            bytes.fromhex(value)

    def test_both_directions(self, pair):
        dialer, listener = exchange(*pair)
        assert listener.open(dialer.seal(b"hello\n")) == b"hello\n"
        assert dialer.open(listener.seal(b"hi\n")) == b"hi\n"

    def test_ciphertext_hides_payload(self, pair):
        dialer, _ = exchange(*pair)
        sealed = dialer.seal(b"attack at dawn")
        assert b"attack" not in sealed
        assert len(sealed) == len(b"attack at dawn") + TAG_BYTES

    def test_fresh_keys_per_stream(self, pair):
        first, _ = exchange(*pair, stream_id="s1")
        _, other = exchange(*pair, stream_id="s2")
        with pytest.raises(ProtocolError):
            other.open(first.seal(b"x"))

    def test_missing_fields(self, pair):
        offer = KeyOffer(pair[1], STREAM_ID)
        with pytest.raises(ProtocolError, match="missing"):
            offer.complete(pair[0].peer_id, None, None, None, initiator=False)

    def test_malformed_hex(self, pair):
        offer = KeyOffer(pair[1], STREAM_ID)
        with pytest.raises(ProtocolError, match="malformed"):
            offer.complete(pair[0].peer_id, "zz", "zz", "zz", initiator=False)

    def test_key_of_another_peer(self, pair):
        dialer, listener = pair
        impostor = PeerIdentity.generate()
        fields = KeyOffer(impostor, STREAM_ID).fields()
        with pytest.raises(ProtocolError, match="not signed by"):
            KeyOffer(listener, STREAM_ID).complete(dialer.peer_id, initiator=False, **fields)

    def test_bad_signature(self, pair):
        dialer, listener = pair
        fields = KeyOffer(dialer, STREAM_ID).fields()
        fields["ephemeral_key"] = KeyOffer(dialer, STREAM_ID).ephemeral.hex()
        with pytest.raises(ProtocolError, match="bad signature"):
            KeyOffer(listener, STREAM_ID).complete(dialer.peer_id, initiator=False, **fields)

    def test_signature_bound_to_stream(self, pair):
        dialer, listener = pair
        fields = KeyOffer(dialer, "other-stream").fields()
        with pytest.raises(ProtocolError, match="bad signature"):
            KeyOffer(listener, STREAM_ID).complete(dialer.peer_id, initiator=False, **fields)

    def test_invalid_ephemeral_key(self, pair):
        dialer, listener = pair
        fields = KeyOffer(dialer, STREAM_ID).fields()
        fields["ephemeral_key"] = "00" * 16
        # Re-signed so only the key length is wrong
        fields["signature"] = dialer.sign(_signed_bytes(STREAM_ID, bytes(16))).hex()
        with pytest.raises(ProtocolError, match="invalid ephemeral key"):
            KeyOffer(listener, STREAM_ID).complete(dialer.peer_id, initiator=False, **fields)


# ── Sealing ──────────────────────────────────────────────────────

class TestStreamCipher:
    def test_tampered_payload(self, pair):
        dialer, listener = exchange(*pair)
        sealed = bytearray(dialer.seal(b"line\n"))
        sealed[0] ^= 0x01
        with pytest.raises(ProtocolError, match="authentication"):
            listener.open(bytes(sealed))

    def test_replayed_payload(self, pair):
        dialer, listener = exchange(*pair)
        sealed = dialer.seal(b"once\n")
        assert listener.open(sealed) == b"once\n"
        with pytest.raises(ProtocolError):
            listener.open(sealed)

    def test_reordered_payloads(self, pair):
        dialer, listener = exchange(*pair)
        first = dialer.seal(b"1")
        second = dialer.seal(b"2")
        with pytest.raises(ProtocolError):
            listener.open(second)
        assert listener.open(first) == b"1"

    def test_own_payload_not_accepted(self, pair):
        dialer, _ = exchange(*pair)
        with pytest.raises(ProtocolError):
            dialer.open(dialer.seal(b"echo"))

    def test_sequence(self):
        key_a, key_b = b"\x02" * 32, b"\x03" * 32
        sender = StreamCipher(key_a, key_b)
        receiver = StreamCipher(key_b, key_a)
        for i in range(5):
            assert receiver.open(sender.seal(str(i).encode())) == str(i).encode()
