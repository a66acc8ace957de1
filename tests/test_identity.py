"""Tests for circuit_node.identity.PeerIdentity."""

from __future__ import annotations

import json

import pytest

from circuit_node.identity import PEER_ID_PREFIX, PeerIdentity, is_valid_peer_id


class TestPeerId:
    def test_prefix(self):
        assert PeerIdentity.generate().peer_id.startswith(PEER_ID_PREFIX)

    def test_distinct(self):
        assert PeerIdentity.generate().peer_id != PeerIdentity.generate().peer_id

    def test_deterministic_from_seed(self):
        seed = bytes(range(32))
        a = PeerIdentity.from_private_bytes(seed)
        b = PeerIdentity.from_private_bytes(seed)
        assert a.peer_id == b.peer_id

    def test_derived_from_public_key(self):
        ident = PeerIdentity.generate()
        assert PeerIdentity.peer_id_from_public_key(ident.public_key_bytes) == ident.peer_id

    def test_no_slashes(self):
        assert "/" not in PeerIdentity.generate().peer_id

    def test_generated_ids_are_well_formed(self):
        assert is_valid_peer_id(PeerIdentity.generate().peer_id)

    @pytest.mark.parametrize("text", ["", "garbage", "12D", "12Dabc", "12D" + "A" * 32, "12D" + "a" * 33])
    def test_malformed_ids(self, text):
        assert not is_valid_peer_id(text)


class TestSignatures:
    def test_sign_verify(self):
        ident = PeerIdentity.generate()
        sig = ident.sign(b"nonce")
        assert PeerIdentity.verify(ident.public_key_bytes, sig, b"nonce")

    def test_wrong_data(self):
        ident = PeerIdentity.generate()
        sig = ident.sign(b"nonce")
        assert not PeerIdentity.verify(ident.public_key_bytes, sig, b"other")

    def test_wrong_key(self):
        a, b = PeerIdentity.generate(), PeerIdentity.generate()
        assert not PeerIdentity.verify(b.public_key_bytes, a.sign(b"x"), b"x")

    def test_malformed_key(self):
        assert not PeerIdentity.verify(b"short", b"sig", b"x")


class TestPersistence:
    def test_save_load(self, tmp_path):
        path = tmp_path / "id.json"
        ident = PeerIdentity.generate()
        ident.save(path)
        assert PeerIdentity.load(path).peer_id == ident.peer_id

    def test_load_or_generate_creates(self, tmp_path):
        path = tmp_path / "sub" / "id.json"
        ident = PeerIdentity.load_or_generate(path)
        assert path.exists()
        assert PeerIdentity.load_or_generate(path).peer_id == ident.peer_id

    def test_mismatched_peer_id(self, tmp_path):
        path = tmp_path / "id.json"
        PeerIdentity.generate().save(path)
        data = json.loads(path.read_text())
        data["peer_id"] = "12Dnotme"
        path.write_text(json.dumps(data))
        with pytest.raises(ValueError):
            PeerIdentity.load(path)
