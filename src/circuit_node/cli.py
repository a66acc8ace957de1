"""CLI entry point for relays and NATed peers.

Usage:
    circuit-node relay --port 3001 --announce /ip4/13.60.15.36/tcp/3001/ws
    circuit-node peer --relay /ip4/13.60.15.36/tcp/3001/ws/p2p/<relay-id>
    circuit-node peer --relay <relay-addr> --dial <relay-addr>/p2p-circuit/p2p/<peer-id>
    circuit-node keygen --out identity.json

Environment variables:
    CIRCUIT_PORT:           Override relay listening port
    CIRCUIT_RELAYS:         Comma-separated relay addresses for peers
    CIRCUIT_ALLOWED_HOSTS:  Extra hosts the address gate may dial
    CIRCUIT_IDENTITY:       Path to identity key file
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Any

from circuit_node.config import PeerConfig, RelayConfig, load_peer_config, load_relay_config
from circuit_node.console import Console, print_sink
from circuit_node.errors import ConfigError, NodeStartError, ReservationTimeout
from circuit_node.identity import PeerIdentity
from circuit_node.node import Node
from circuit_node.pump import InputBus
from circuit_node.relay.server import RelayServer
from circuit_node.reservation import ReservationManager
from circuit_node.session import SessionManager

logger = logging.getLogger("circuit_node")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="circuit-node",
        description="Relay-routed peer-to-peer line chat",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--log-level", "-l",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: INFO)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    relay = sub.add_parser("relay", help="Run a publicly reachable relay")
    relay.add_argument("--config", "-c", help="Path to JSON config file")
    relay.add_argument("--host", help="Listen host")
    relay.add_argument("--port", "-p", type=int, help="Listen port")
    relay.add_argument(
        "--announce", action="append",
        help="Public address to announce (repeatable)",
    )
    relay.add_argument("--max-reservations", type=int, help="Reservation cap (default: unbounded)")
    relay.add_argument("--identity", "-i", help="Path to identity key file (generated if missing)")

    peer = sub.add_parser("peer", help="Run a NATed peer behind a relay")
    peer.add_argument("--config", "-c", help="Path to JSON config file")
    peer.add_argument(
        "--relay", "-r", action="append",
        help="Relay address ending in /p2p/<relay-id> (repeatable)",
    )
    peer.add_argument("--dial", "-d", help="Circuit address to dial after startup")
    peer.add_argument("--protocol", help="Application protocol name")
    peer.add_argument("--identity", "-i", help="Path to identity key file (generated if missing)")
    peer.add_argument(
        "--reservation-timeout", type=float,
        help="Give up waiting for a reservation after this many seconds",
    )
    peer.add_argument(
        "--no-listen", action="store_true",
        help="Do not request a reservation (dial-only)",
    )

    keygen = sub.add_parser("keygen", help="Generate an identity key file")
    keygen.add_argument("--out", "-o", required=True, help="Where to write the key file")
    keygen.add_argument("--force", action="store_true", help="Overwrite an existing file")

    return parser.parse_args(argv)


def load_identity(identity_path: str | None) -> PeerIdentity:
    """Load or generate the node identity. Without a path it is ephemeral."""
    if not identity_path:
        return PeerIdentity.generate()
    return PeerIdentity.load_or_generate(Path(identity_path))


def _log_loop_exception(loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
    """Background task failures are logged; other sessions keep running."""
    exc = context.get("exception")
    logger.error("Unhandled error in background task: %s", context.get("message"), exc_info=exc)


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()

    def handle_signal() -> None:
        print("\nShutting down...")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, handle_signal)
        except NotImplementedError:
            pass


async def run_relay(config: RelayConfig, identity: PeerIdentity) -> int:
    asyncio.get_running_loop().set_exception_handler(_log_loop_exception)
    server = RelayServer(config, identity)
    try:
        await server.start()
    except OSError as e:
        logger.error("Cannot start relay: %s", e)
        return 1

    print("Relay is up! Relay addresses:")
    for addr in server.addresses():
        print(f"  {addr}")

    stop_event = asyncio.Event()
    _install_signal_handlers(stop_event)
    await stop_event.wait()
    await server.stop()
    return 0


async def run_peer(config: PeerConfig, identity: PeerIdentity, dial: str | None = None) -> int:
    asyncio.get_running_loop().set_exception_handler(_log_loop_exception)

    bus = InputBus()
    node = Node(config, identity)
    manager = SessionManager(
        node, bus, print_sink,
        protocol=config.protocol,
        max_inbound_streams=config.max_inbound_streams,
        max_outbound_streams=config.max_outbound_streams,
        dial_timeout=config.dial_timeout,
    )
    manager.register()
    reservations = ReservationManager(node.peer_id, node.get_addresses, config.poll_interval)
    node.on_addresses_changed(reservations.notify)

    try:
        await node.start()
    except NodeStartError as e:
        logger.error("Cannot start node: %s", e)
        return 1
    print(f"Peer started with id: {node.peer_id}")

    if config.listen_circuit and config.relays:
        try:
            await reservations.await_reservation(timeout=config.reservation_timeout)
        except ReservationTimeout as e:
            logger.error("No relay reservation: %s", e)
            await node.stop()
            return 1

    console = Console(manager, bus, node)
    console.banner()
    if dial:
        await console.handle_line(f"/dial {dial}")

    stop_event = asyncio.Event()
    _install_signal_handlers(stop_event)
    console_task = asyncio.create_task(console.run())
    stop_task = asyncio.create_task(stop_event.wait())
    await asyncio.wait({console_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
    for task in (console_task, stop_task):
        task.cancel()
    await asyncio.gather(console_task, stop_task, return_exceptions=True)

    await manager.close_all()
    await node.stop()
    return 0


def keygen(out: str, force: bool = False) -> int:
    path = Path(out)
    if path.exists() and not force:
        print(f"Error: {path} exists (use --force to overwrite)", file=sys.stderr)
        return 1
    identity = PeerIdentity.generate()
    identity.save(path)
    print(f"Peer id: {identity.peer_id}")
    print(f"Key written to {path}")
    return 0


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if args.command == "keygen":
        sys.exit(keygen(args.out, args.force))

    try:
        if args.command == "relay":
            relay_config = load_relay_config(args.config, {
                "host": args.host,
                "port": args.port,
                "announce": args.announce,
                "max_reservations": args.max_reservations,
                "identity_path": args.identity,
            })
            identity = load_identity(relay_config.identity_path)
            code = asyncio.run(run_relay(relay_config, identity))
        else:
            peer_config = load_peer_config(args.config, {
                "relays": args.relay,
                "protocol": args.protocol,
                "identity_path": args.identity,
                "reservation_timeout": args.reservation_timeout,
                "listen_circuit": False if args.no_listen else None,
            })
            if not peer_config.relays:
                raise ConfigError("no relay configured (use --relay or CIRCUIT_RELAYS)")
            identity = load_identity(peer_config.identity_path)
            code = asyncio.run(run_peer(peer_config, identity, args.dial))
    except (ConfigError, ValueError, OSError) as e:
        logger.error("Startup failed: %s", e)
        sys.exit(1)
    except KeyboardInterrupt:
        code = 0
    sys.exit(code)


if __name__ == "__main__":
    main()
