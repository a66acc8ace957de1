"""Interactive console that turns stdin lines into commands or payload.

Lines starting with a dial command (``/dial``, ``/dialA``, ``/dialB``) open a
session to the given circuit address. ``/sessions``, ``/addrs`` and ``/quit``
are local commands. Every other line is published on the input bus and thus
sent on all open sessions.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import Callable, NamedTuple

from circuit_node.errors import AddressParseError, CircuitError, DialFailure, GateRejected
from circuit_node.node import Node
from circuit_node.pump import InputBus
from circuit_node.session import SessionManager

logger = logging.getLogger(__name__)

DIAL_COMMANDS = ("/dial", "/dialA", "/dialB")
LOCAL_COMMANDS = ("/sessions", "/addrs", "/quit")


class Command(NamedTuple):
    name: str
    argument: str


def parse_command(line: str) -> Command | None:
    """Split a command line. Returns None for payload lines."""
    stripped = line.strip()
    if not stripped.startswith("/"):
        return None
    name, _, rest = stripped.partition(" ")
    if name in DIAL_COMMANDS or name in LOCAL_COMMANDS:
        return Command(name, rest.strip())
    return None


def print_sink(peer_id: str, text: str) -> None:
    """Output sink: show remote text tagged with the sender."""
    for line in text.rstrip("\n").split("\n"):
        print(f"[{peer_id[:16]} -> me] {line}", flush=True)


class Console:
    """Reads operator input and routes it."""

    def __init__(
        self,
        manager: SessionManager,
        bus: InputBus,
        node: Node,
        out: Callable[[str], None] = print,
    ) -> None:
        self.manager = manager
        self.bus = bus
        self.node = node
        self.out = out

    def banner(self) -> None:
        self.out(f"Peer id: {self.node.peer_id}")
        for addr in self.node.get_addresses():
            self.out(f"  {addr}")
        self.out("Give one of these addresses to the other peer.")
        self.out('Type "/dial <circuit-address>" to connect, e.g.')
        self.out("  /dial /ip4/<relay-ip>/tcp/3001/ws/p2p/<relay-id>/p2p-circuit/p2p/<peer-id>")

    async def handle_line(self, line: str) -> bool:
        """Process one input line. Returns False when the operator quits."""
        command = parse_command(line)
        if command is None:
            delivered = self.bus.publish(line)
            if delivered == 0:
                self.out("(no open sessions; message not sent)")
            return True

        if command.name in DIAL_COMMANDS:
            await self._dial(command)
        elif command.name == "/sessions":
            sessions = self.manager.sessions
            if not sessions:
                self.out("No open sessions")
            for session in sessions:
                self.out(session.describe())
        elif command.name == "/addrs":
            for addr in self.node.get_addresses() or ["(no circuit address yet)"]:
                self.out(addr)
        elif command.name == "/quit":
            return False
        return True

    async def _dial(self, command: Command) -> None:
        if not command.argument:
            self.out(f"Usage: {command.name} <address>")
            return
        self.out(f"Dialing {command.argument}")
        try:
            session = await self.manager.dial(command.argument)
        except AddressParseError as e:
            self.out(f"Invalid address: {e}")
        except GateRejected as e:
            self.out(f"Refused by address gate: {e.address}")
        except DialFailure as e:
            self.out(f"Dial failed: {e.reason}")
        except CircuitError as e:
            self.out(f"Dial failed: {e}")
        else:
            self.out(f"Connected to {session.remote_peer} on {session.protocol}")
            self.out("Type messages to send:")

    async def run(self, reader: asyncio.StreamReader | None = None) -> None:
        """Read lines until EOF or ``/quit``."""
        reader = reader or await open_stdin()
        while True:
            raw = await reader.readline()
            if not raw:
                logger.info("Input closed")
                return
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            try:
                keep_going = await self.handle_line(line)
            except Exception:
                logger.exception("Failed to handle input line")
                continue
            if not keep_going:
                return


async def open_stdin() -> asyncio.StreamReader:
    """Wrap stdin in a non-blocking StreamReader."""
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    protocol = asyncio.StreamReaderProtocol(reader)
    await loop.connect_read_pipe(lambda: protocol, sys.stdin)
    return reader
