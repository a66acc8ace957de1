"""Shared fixtures: in-memory stream pairs wired back to back."""

from __future__ import annotations

import pytest

from circuit_node.network.protocol import Frame, FrameType
from circuit_node.network.stream import Direction, Stream


def _deliver(frame: Frame, target: Stream) -> None:
    if frame.type is FrameType.DATA:
        target.feed_data(frame.payload())
    elif frame.type is FrameType.CLOSE:
        target.feed_eof()
    elif frame.type is FrameType.RESET:
        target.feed_reset(frame.reason or "reset by remote")


def make_stream_pair(
    protocol: str = "/node-1",
    dialer: str = "peer-a",
    listener: str = "peer-b",
    stream_id: str = "stream-1",
) -> tuple[Stream, Stream]:
    """Two open streams where frames written on one are fed into the other."""
    ends: dict[str, Stream] = {}

    async def to_listener(frame: Frame) -> None:
        _deliver(frame, ends["listener"])

    async def to_dialer(frame: Frame) -> None:
        _deliver(frame, ends["dialer"])

    ends["dialer"] = Stream(stream_id, listener, protocol, Direction.OUTBOUND, to_listener)
    ends["listener"] = Stream(stream_id, dialer, protocol, Direction.INBOUND, to_dialer)
    for s in ends.values():
        s.mark_open()
    return ends["dialer"], ends["listener"]


@pytest.fixture
def stream_pair():
    return make_stream_pair


class CollectingSink:
    """Output sink that records what it is given."""

    def __init__(self) -> None:
        self.received: list[tuple[str, str]] = []

    def __call__(self, peer_id: str, text: str) -> None:
        self.received.append((peer_id, text))

    @property
    def text(self) -> str:
        return "".join(t for _, t in self.received)


@pytest.fixture
def sink():
    return CollectingSink()
