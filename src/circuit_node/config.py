"""Configuration for relay and peer processes.

Values come from an optional JSON file, then environment variables, then
command-line overrides (highest precedence).

Environment variables:
    CIRCUIT_HOST:           Relay listen host
    CIRCUIT_PORT:           Relay listen port
    CIRCUIT_RELAYS:         Comma-separated relay addresses (peer)
    CIRCUIT_ALLOWED_HOSTS:  Comma-separated extra gate allow-list (peer)
    CIRCUIT_IDENTITY:       Path to the identity key file
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from circuit_node.errors import AddressParseError, ConfigError
from circuit_node.network.address import Address
from circuit_node.network.protocol import DEFAULT_PROTOCOL

logger = logging.getLogger(__name__)

ENV_PREFIX = "CIRCUIT_"


@dataclass
class RelayConfig:
    """Configuration for a publicly reachable relay."""

    host: str = "0.0.0.0"
    port: int = 3001
    announce: list[str] = field(default_factory=list)
    max_reservations: int | None = None  # None = unbounded
    reservation_ttl: float = 3600.0
    circuit_limit_bytes: int | None = None
    circuit_limit_seconds: float | None = None
    hop_enabled: bool = True
    cleanup_interval: float = 30.0
    identity_path: str = ""

    @property
    def limits_circuits(self) -> bool:
        return self.circuit_limit_bytes is not None or self.circuit_limit_seconds is not None

    def validate(self) -> list[str]:
        errors = []
        if not 0 <= self.port <= 65535:
            errors.append("port must be between 0 and 65535")
        if self.max_reservations is not None and self.max_reservations < 0:
            errors.append("max_reservations must be non-negative")
        if self.reservation_ttl <= 0:
            errors.append("reservation_ttl must be positive")
        if self.circuit_limit_bytes is not None and self.circuit_limit_bytes <= 0:
            errors.append("circuit_limit_bytes must be positive")
        if self.circuit_limit_seconds is not None and self.circuit_limit_seconds <= 0:
            errors.append("circuit_limit_seconds must be positive")
        for addr in self.announce:
            try:
                Address.parse(addr)
            except AddressParseError as e:
                errors.append(f"invalid announce address: {e}")
        return errors


@dataclass
class PeerConfig:
    """Configuration for a NATed peer."""

    relays: list[str] = field(default_factory=list)
    allowed_hosts: list[str] = field(default_factory=list)
    protocol: str = DEFAULT_PROTOCOL
    listen_circuit: bool = True
    advertise: bool = False
    poll_interval: float = 1.0
    reservation_timeout: float | None = None  # None = wait forever
    reservation_refresh_margin: float = 60.0
    maintenance_interval: float = 10.0
    max_inbound_streams: int = 32
    max_outbound_streams: int = 10
    dial_timeout: float = 10.0
    identity_path: str = ""

    def gate_hosts(self) -> list[str]:
        """Allow-list for the address gate: configured relay hosts plus extras."""
        hosts = list(self.allowed_hosts)
        for text in self.relays:
            try:
                host = Address.parse(text).host
            except AddressParseError:
                continue
            if host and host not in hosts:
                hosts.append(host)
        return hosts

    def validate(self) -> list[str]:
        errors = []
        if not self.protocol.startswith("/"):
            errors.append("protocol must start with '/'")
        for text in self.relays:
            try:
                addr = Address.parse(text)
            except AddressParseError as e:
                errors.append(f"invalid relay address: {e}")
                continue
            if addr.peer_id is None:
                errors.append(f"relay address has no /p2p/<id>: {text}")
        if self.poll_interval <= 0:
            errors.append("poll_interval must be positive")
        if self.max_inbound_streams <= 0:
            errors.append("max_inbound_streams must be positive")
        if self.max_outbound_streams <= 0:
            errors.append("max_outbound_streams must be positive")
        return errors


def _split(value: str) -> list[str]:
    return [v.strip() for v in value.split(",") if v.strip()]


def _read_json(config_path: str | None) -> dict[str, Any]:
    if not config_path:
        return {}
    path = Path(config_path).resolve()
    if not path.exists():
        raise ConfigError(f"config file not found: {path}")
    try:
        with open(path) as f:
            raw = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"invalid JSON in {path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError(f"config root must be an object: {path}")
    return raw


def _build(cls: type, raw: dict[str, Any]) -> Any:
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(raw) - known)
    if unknown:
        logger.warning("Ignoring unknown config keys: %s", ", ".join(unknown))
    try:
        return cls(**{k: v for k, v in raw.items() if k in known})
    except TypeError as e:
        raise ConfigError(str(e)) from e


def load_relay_config(
    config_path: str | None = None,
    overrides: dict[str, Any] | None = None,
) -> RelayConfig:
    """Load and validate relay configuration."""
    raw = _read_json(config_path)

    if os.getenv(ENV_PREFIX + "HOST"):
        raw["host"] = os.environ[ENV_PREFIX + "HOST"]
    if os.getenv(ENV_PREFIX + "PORT"):
        try:
            raw["port"] = int(os.environ[ENV_PREFIX + "PORT"])
        except ValueError as e:
            raise ConfigError(f"invalid {ENV_PREFIX}PORT: {e}") from e
    if os.getenv(ENV_PREFIX + "IDENTITY"):
        raw["identity_path"] = os.environ[ENV_PREFIX + "IDENTITY"]

    for key, value in (overrides or {}).items():
        if value is not None:
            raw[key] = value

    config = _build(RelayConfig, raw)
    errors = config.validate()
    if errors:
        raise ConfigError("; ".join(errors))
    return config


def load_peer_config(
    config_path: str | None = None,
    overrides: dict[str, Any] | None = None,
) -> PeerConfig:
    """Load and validate peer configuration."""
    raw = _read_json(config_path)

    if os.getenv(ENV_PREFIX + "RELAYS"):
        raw["relays"] = _split(os.environ[ENV_PREFIX + "RELAYS"])
    if os.getenv(ENV_PREFIX + "ALLOWED_HOSTS"):
        raw["allowed_hosts"] = _split(os.environ[ENV_PREFIX + "ALLOWED_HOSTS"])
    if os.getenv(ENV_PREFIX + "IDENTITY"):
        raw["identity_path"] = os.environ[ENV_PREFIX + "IDENTITY"]

    for key, value in (overrides or {}).items():
        if value is not None:
            raw[key] = value

    config = _build(PeerConfig, raw)
    errors = config.validate()
    if errors:
        raise ConfigError("; ".join(errors))
    return config
