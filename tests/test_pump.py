"""Tests for the input bus, line queue and duplex pump."""

from __future__ import annotations

import asyncio

import pytest

from circuit_node.network.stream import StreamState
from circuit_node.pump import (
    DuplexPump,
    InputBus,
    LineQueue,
    Termination,
    encode_line,
)


# ── Helpers ──────────────────────────────────────────────────────

async def read_all(stream) -> bytes:
    out = b""
    async for chunk in stream:
        out += chunk
    return out


async def settle(steps: int = 5) -> None:
    for _ in range(steps):
        await asyncio.sleep(0)


# ── Input bus ────────────────────────────────────────────────────

class TestInputBus:
    def test_publish_reaches_all(self):
        bus = InputBus()
        got_a, got_b = [], []
        bus.subscribe(got_a.append)
        bus.subscribe(got_b.append)
        assert bus.publish("hi") == 2
        assert got_a == got_b == ["hi"]

    def test_cancel_once(self):
        bus = InputBus()
        sub = bus.subscribe(lambda line: None)
        assert sub.cancel() is True
        assert sub.cancel() is False
        assert bus.subscriber_count == 0

    def test_cancel_leaves_others(self):
        bus = InputBus()
        got = []
        sub = bus.subscribe(lambda line: None)
        bus.subscribe(got.append)
        bus.unsubscribe(sub)
        bus.publish("x")
        assert got == ["x"]
        assert bus.subscriber_count == 1

    def test_failing_listener_isolated(self):
        bus = InputBus()
        got = []

        def boom(line):
            raise RuntimeError("listener bug")

        bus.subscribe(boom)
        bus.subscribe(got.append)
        assert bus.publish("x") == 1
        assert got == ["x"]

    def test_publish_without_listeners(self):
        assert InputBus().publish("x") == 0


# ── Line queue ───────────────────────────────────────────────────

class TestLineQueue:
    @pytest.mark.asyncio
    async def test_drain_before_close(self):
        q: LineQueue[int] = LineQueue()
        for i in range(100):
            q.push(i)
        q.end()
        assert [item async for item in q] == list(range(100))

    @pytest.mark.asyncio
    async def test_push_after_end_dropped(self):
        q: LineQueue[int] = LineQueue()
        q.push(1)
        q.end()
        assert q.push(2) is False
        assert [item async for item in q] == [1]

    @pytest.mark.asyncio
    async def test_end_idempotent(self):
        q: LineQueue[int] = LineQueue()
        q.end()
        q.end()
        assert [item async for item in q] == []

    @pytest.mark.asyncio
    async def test_consumer_waits_for_items(self):
        q: LineQueue[str] = LineQueue()
        consumer = asyncio.create_task(_collect(q))
        await settle()
        q.push("a")
        await settle()
        q.push("b")
        q.end()
        assert await asyncio.wait_for(consumer, 1.0) == ["a", "b"]

    @pytest.mark.asyncio
    async def test_bounded_put_applies_backpressure(self):
        q: LineQueue[int] = LineQueue(maxsize=1)
        await q.put(1)
        blocked = asyncio.create_task(q.put(2))
        await settle()
        assert not blocked.done()
        got = []
        async for item in q:
            got.append(item)
            if len(got) == 2:
                break
        await blocked
        assert got == [1, 2]

    @pytest.mark.asyncio
    async def test_bounded_push_never_drops(self):
        q: LineQueue[int] = LineQueue(maxsize=1)
        for i in range(5):
            assert q.push(i) is True
        q.end()
        assert len(q) == 6
        assert [item async for item in q] == list(range(5))

    @pytest.mark.asyncio
    async def test_bounded_push_and_put_keep_order(self):
        q: LineQueue[int] = LineQueue(maxsize=2)
        q.push(0)
        q.push(1)
        q.push(2)
        writer = asyncio.create_task(q.put(3))
        await settle()
        assert not writer.done()
        q.push(4)
        q.end()
        assert await _collect(q) == [0, 1, 2, 3, 4]
        assert await asyncio.wait_for(writer, 1.0) is True


async def _collect(q):
    return [item async for item in q]


# ── Duplex pump ──────────────────────────────────────────────────

class TestDuplexPump:
    @pytest.mark.asyncio
    async def test_lines_delivered_in_order(self, stream_pair, sink):
        local, remote = stream_pair()
        bus = InputBus()
        pump = DuplexPump(local, bus, sink)
        pump.start()

        lines = [f"line {i}" for i in range(50)] + ["", "ünïcode ✓"]
        for line in lines:
            bus.publish(line)
        pump.queue.end()
        await asyncio.wait_for(pump.drain(), 1.0)

        received = await asyncio.wait_for(read_all(remote), 1.0)
        assert received.decode("utf-8").split("\n")[:-1] == lines
        await pump.stop()

    @pytest.mark.asyncio
    async def test_drain_before_write_close(self, stream_pair, sink):
        local, remote = stream_pair()
        bus = InputBus()
        pump = DuplexPump(local, bus, sink)
        pump.start()
        for i in range(10):
            bus.publish(str(i))
        pump.queue.end()
        await asyncio.wait_for(pump.drain(), 1.0)
        assert local.state is StreamState.CLOSING
        data = await asyncio.wait_for(read_all(remote), 1.0)
        assert data == b"".join(encode_line(str(i)) for i in range(10))
        await pump.stop()

    @pytest.mark.asyncio
    async def test_bounded_queue_delivers_burst(self, stream_pair, sink):
        local, remote = stream_pair()
        bus = InputBus()
        pump = DuplexPump(local, bus, sink, maxsize=1)
        pump.start()
        for i in range(5):
            bus.publish(str(i))
        pump.queue.end()
        await asyncio.wait_for(pump.drain(), 1.0)
        data = await asyncio.wait_for(read_all(remote), 1.0)
        assert data == b"0\n1\n2\n3\n4\n"
        await pump.stop()

    @pytest.mark.asyncio
    async def test_inbound_to_sink(self, stream_pair, sink):
        local, remote = stream_pair()
        pump = DuplexPump(local, InputBus(), sink)
        pump.start()
        await remote.write("héllo\n".encode("utf-8")[:2])
        await remote.write("héllo\n".encode("utf-8")[2:])
        await remote.close_write()
        assert await asyncio.wait_for(pump.wait_closed(), 1.0) is Termination.END
        assert sink.text == "héllo\n"
        assert all(peer == "peer-b" for peer, _ in sink.received)

    @pytest.mark.asyncio
    async def test_clean_end_tears_down(self, stream_pair, sink):
        local, remote = stream_pair()
        bus = InputBus()
        pump = DuplexPump(local, bus, sink)
        pump.start()
        assert bus.subscriber_count == 1
        await remote.close_write()
        await asyncio.wait_for(pump.wait_closed(), 1.0)
        assert pump.queue.ended
        assert bus.subscriber_count == 0
        await asyncio.wait_for(pump.drain(), 1.0)
        assert local.state is StreamState.CLOSED

    @pytest.mark.asyncio
    async def test_reset_mid_session(self, stream_pair, sink):
        local, remote = stream_pair()
        bus = InputBus()
        pump = DuplexPump(local, bus, sink)
        pump.start()
        await settle()
        sub = pump.subscription

        await remote.reset("remote went away")
        await settle(2)

        assert pump.queue.ended
        assert pump.termination is Termination.RESET
        assert sub is not None and not sub.active
        assert bus.subscriber_count == 0
        assert local.state is StreamState.RESET

    @pytest.mark.asyncio
    async def test_io_error_classified(self, stream_pair, sink):
        local, _remote = stream_pair()
        bus = InputBus()
        pump = DuplexPump(local, bus, sink)
        pump.start()
        local.feed_error(ConnectionError("relay lost"))
        assert await asyncio.wait_for(pump.wait_closed(), 1.0) is Termination.ERROR
        assert bus.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_teardown_idempotent(self, stream_pair, sink):
        local, remote = stream_pair()
        bus = InputBus()
        bus.subscribe(lambda line: None)
        closed = []
        pump = DuplexPump(local, bus, sink, on_close=closed.append)
        pump.start()
        await remote.reset()
        await asyncio.wait_for(pump.wait_closed(), 1.0)
        assert pump.teardown(Termination.ERROR) is False
        assert pump.termination is Termination.RESET
        assert bus.subscriber_count == 1
        assert closed == [pump]

    @pytest.mark.asyncio
    async def test_sessions_have_independent_queues(self, stream_pair, sink):
        local_a, remote_a = stream_pair(stream_id="a")
        local_b, remote_b = stream_pair(stream_id="b")
        bus = InputBus()
        pump_a = DuplexPump(local_a, bus, sink)
        pump_b = DuplexPump(local_b, bus, sink)
        pump_a.start()
        pump_b.start()

        bus.publish("both")
        await remote_a.reset()
        await asyncio.wait_for(pump_a.wait_closed(), 1.0)
        assert bus.subscriber_count == 1

        bus.publish("only b")
        pump_b.queue.end()
        await asyncio.wait_for(pump_b.drain(), 1.0)
        assert await asyncio.wait_for(read_all(remote_b), 1.0) == b"both\nonly b\n"
        assert pump_b.queue is not pump_a.queue
        await pump_b.stop()

    @pytest.mark.asyncio
    async def test_stop_resets_and_cancels(self, stream_pair, sink):
        local, remote = stream_pair()
        bus = InputBus()
        pump = DuplexPump(local, bus, sink)
        pump.start()
        await pump.stop()
        assert local.state is StreamState.RESET
        assert remote.state is StreamState.RESET
        assert bus.subscriber_count == 0
        assert not pump.running

    @pytest.mark.asyncio
    async def test_failing_sink_does_not_stop_pump(self, stream_pair):
        local, remote = stream_pair()
        calls = []

        def flaky(peer, text):
            calls.append(text)
            raise RuntimeError("display broke")

        pump = DuplexPump(local, InputBus(), flaky)
        pump.start()
        await remote.write(b"a")
        await remote.write(b"b")
        await remote.close_write()
        assert await asyncio.wait_for(pump.wait_closed(), 1.0) is Termination.END
        assert calls == ["a", "b"]
