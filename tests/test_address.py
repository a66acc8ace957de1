"""Tests for circuit_node.network.address."""

from __future__ import annotations

import pytest

from circuit_node.errors import AddressParseError
from circuit_node.identity import PeerIdentity
from circuit_node.network.address import (
    Address,
    circuit_address,
    is_circuit_for,
    peer_id_from_text,
    websocket_address,
)

RELAY_ID = "12D" + "relay" * 6 + "aa"
TARGET_ID = "12D" + "target" * 5 + "aa"
RELAY = "/ip4/13.60.15.36/tcp/3001/ws/p2p/" + RELAY_ID
CIRCUIT = RELAY + "/p2p-circuit/p2p/" + TARGET_ID


# ── Parsing ──────────────────────────────────────────────────────

class TestParse:
    def test_round_trip_text(self):
        assert str(Address.parse(CIRCUIT)) == CIRCUIT

    def test_direct_address_fields(self):
        addr = Address.parse(RELAY)
        assert addr.host == "13.60.15.36"
        assert addr.port == 3001
        assert addr.peer_id == RELAY_ID
        assert addr.is_circuit is False

    def test_circuit_address_fields(self):
        addr = Address.parse(CIRCUIT)
        assert addr.is_circuit is True
        assert addr.peer_id == TARGET_ID
        assert addr.relay_peer_id == RELAY_ID
        assert str(addr.relay_address) == RELAY

    def test_trailing_slash_ignored(self):
        assert str(Address.parse(RELAY + "/")) == RELAY

    def test_no_peer_id(self):
        assert Address.parse("/ip4/1.2.3.4/tcp/1").peer_id is None

    @pytest.mark.parametrize("text", [
        "",
        "ip4/1.2.3.4",
        "/ip4",
        "/ip4/1.2.3.4/tcp",
        "/ip4/1.2.3.4/tcp/http",
        "/bogus/1",
    ])
    def test_malformed(self, text):
        with pytest.raises(AddressParseError):
            Address.parse(text)

    def test_bare_circuit_has_no_relay(self):
        addr = Address.parse("/p2p-circuit")
        assert addr.is_circuit
        assert addr.relay_address is None


# ── Peer id extraction ───────────────────────────────────────────

class TestPeerIdFromText:
    def test_takes_last_segment(self):
        assert peer_id_from_text(CIRCUIT) == TARGET_ID

    def test_direct(self):
        assert peer_id_from_text(RELAY) == RELAY_ID

    def test_missing_suffix(self):
        with pytest.raises(AddressParseError):
            peer_id_from_text("/ip4/1.2.3.4/tcp/1")

    def test_trailing_path_after_id(self):
        with pytest.raises(AddressParseError):
            peer_id_from_text("/p2p/abc/tcp/1")

    def test_malformed_peer_id(self):
        with pytest.raises(AddressParseError, match="malformed peer id"):
            peer_id_from_text(RELAY + "/p2p-circuit/p2p/garbage")

    def test_peer_id_wrong_alphabet(self):
        with pytest.raises(AddressParseError):
            peer_id_from_text("/p2p/12D" + "1" * 32)

    def test_generated_id_accepted(self):
        peer_id = PeerIdentity.generate().peer_id
        assert peer_id_from_text(RELAY + "/p2p-circuit/p2p/" + peer_id) == peer_id


# ── Builders ─────────────────────────────────────────────────────

class TestBuilders:
    def test_circuit_address(self):
        assert str(circuit_address(RELAY, TARGET_ID)) == CIRCUIT

    def test_is_circuit_for(self):
        assert is_circuit_for(CIRCUIT, TARGET_ID)
        assert not is_circuit_for(CIRCUIT, "12Dother")
        assert not is_circuit_for(RELAY, RELAY_ID)

    def test_websocket_address_ip4(self):
        assert str(websocket_address("127.0.0.1", 3001, "12Dx")) == "/ip4/127.0.0.1/tcp/3001/ws/p2p/12Dx"

    def test_websocket_address_dns(self):
        assert str(websocket_address("relay.example.org", 443)) == "/dns4/relay.example.org/tcp/443/ws"

    def test_with_peer_id_keeps_existing(self):
        addr = Address.parse(RELAY)
        assert addr.with_peer_id("other") == addr


class TestWebsocketUrl:
    def test_direct(self):
        assert Address.parse(RELAY).websocket_url() == "ws://13.60.15.36:3001/ws"

    def test_circuit_uses_relay_hop(self):
        assert Address.parse(CIRCUIT).websocket_url() == "ws://13.60.15.36:3001/ws"

    def test_secure(self):
        addr = Address.parse("/dns4/relay.example.org/tcp/443/wss")
        assert addr.websocket_url() == "wss://relay.example.org:443/ws"

    def test_no_host(self):
        with pytest.raises(AddressParseError):
            Address.parse("/p2p/abc").websocket_url()
