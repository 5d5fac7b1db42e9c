"""Test the reader task."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator

import pytest
from fakes import FakeTransport, wait_until

from irccd.connection import ConnectionManager, Session
from irccd.linecodec import IRCMessage
from irccd.reader import ReaderSignal, ReaderTask

pytestmark = pytest.mark.asyncio


class ScriptedStream:
    """Stand-in for an asyncio.StreamReader, returning (or raising) a scripted sequence of reads."""

    def __init__(self, *script: bytes | Exception) -> None:
        self.script = list(script)
        self.reads = 0

    async def read(self, _: int) -> bytes:
        self.reads += 1
        if not self.script:
            # block, like a quiet connection would
            await asyncio.Event().wait()
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


@pytest.fixture(name="connection")
async def fixture_connection(transport: FakeTransport) -> AsyncGenerator[tuple[ConnectionManager, asyncio.StreamReader], None]:
    """Fixture for a connection over the fake transport, along with its read side."""
    connection = ConnectionManager(Session("185.30.166.38"))
    stream = await connection.connect("185.30.166.38", 6667)
    yield connection, stream


@pytest.fixture(name="signals")
def fixture_signals() -> asyncio.Queue[tuple[ReaderTask, ReaderSignal]]:
    """Fixture for the queue of reader signals."""
    return asyncio.Queue()


async def test_keepalive(connection, signals, transport: FakeTransport) -> None:
    """Test that a keepalive request is answered with the same token."""
    conn, stream = connection
    reader = ReaderTask(conn, stream, signals, retry_interval=0)
    reader.start()

    stream.feed_data(b"PING :abc\r\n")
    await wait_until(lambda: transport.writer.lines[-1] == b"PONG :abc\r\n")

    stream.feed_data(b":irc.example.org PING irc.example.org\r\n")
    await wait_until(lambda: transport.writer.lines[-1] == b"PONG irc.example.org\r\n")
    assert conn.metrics["keepalives"]._value.get() == 2

    await reader.stop()
    assert not reader.running
    assert signals.empty()


async def test_keepalive_split(connection, signals, transport: FakeTransport) -> None:
    """Test that lines are reassembled across reads."""
    conn, stream = connection
    reader = ReaderTask(conn, stream, signals, retry_interval=0)
    reader.start()

    stream.feed_data(b"PI")
    await asyncio.sleep(0.01)
    stream.feed_data(b"NG :split\r")
    await asyncio.sleep(0.01)
    assert transport.writer.lines[-1] != b"PONG :split\r\n"
    stream.feed_data(b"\n")
    await wait_until(lambda: transport.writer.lines[-1] == b"PONG :split\r\n")
    await reader.stop()


async def test_keepalive_failure(connection, signals, transport: FakeTransport) -> None:
    """Test that a keepalive that cannot be answered does not stop the reader."""
    conn, stream = connection
    reader = ReaderTask(conn, stream, signals, retry_interval=0)
    reader.start()

    transport.writer.fail = True
    stream.feed_data(b"PING :abc\r\n")
    await wait_until(lambda: conn.metrics["errors"].labels("keepalive")._value.get() == 1)
    assert reader.running
    await reader.stop()


async def test_registered(connection, signals) -> None:
    """Test that the welcome numeric is signaled upwards."""
    conn, stream = connection
    reader = ReaderTask(conn, stream, signals, retry_interval=0)
    reader.start()

    stream.feed_data(b":irc.example.org 001 user :Welcome to the network\r\n")
    sender, signal = await asyncio.wait_for(signals.get(), 2)
    assert sender is reader
    assert signal == ReaderSignal.REGISTERED
    await reader.stop()


async def test_handlers(connection, signals) -> None:
    """Test that lines are surfaced to handlers, even if one of them fails."""
    conn, stream = connection
    received: list[IRCMessage] = []

    def broken_handler(msg: IRCMessage) -> None:
        raise RuntimeError("broken")

    reader = ReaderTask(conn, stream, signals, retry_interval=0, handlers=[broken_handler, received.append])
    reader.start()

    stream.feed_data(b":lain!lain@wired PRIVMSG #test :hello there\r\n\r\nNOTICE\r\n")
    await wait_until(lambda: len(received) == 2)
    assert received[0] == IRCMessage("PRIVMSG", ["#test", "hello there"], "lain!lain@wired")
    assert received[1].command == "NOTICE"
    assert conn.metrics["errors"].labels("handler")._value.get() == 2

    # keepalives are not surfaced
    stream.feed_data(b"PING :abc\r\n")
    await asyncio.sleep(0.05)
    assert len(received) == 2
    await reader.stop()


async def test_exhaustion(connection, signals) -> None:
    """Test that the reader gives up after too many consecutive failures."""
    conn, stream = connection
    reader = ReaderTask(conn, stream, signals, retry_limit=300, retry_interval=0)
    reader.start()

    stream.feed_eof()
    sender, signal = await asyncio.wait_for(signals.get(), 5)
    assert (sender, signal) == (reader, ReaderSignal.FAILED)
    assert reader.failures == 300
    assert conn.metrics["reader_failures"]._value.get() == 300
    await wait_until(lambda: not reader.running)
    assert signals.empty()


async def test_failures_reset(connection, signals) -> None:
    """Test that a successful read resets the failure count."""
    conn, _ = connection
    stream = ScriptedStream(
        b"",
        ConnectionResetError(104, "Connection reset by peer"),
        b"NOTICE * :hello\r\n",
        b"",
        b"",
        b"",
    )
    reader = ReaderTask(conn, stream, signals, retry_limit=3, retry_interval=0)  # type: ignore[arg-type]
    reader.start()

    # two failures, a success, then three failures again
    sender, signal = await asyncio.wait_for(signals.get(), 2)
    assert (sender, signal) == (reader, ReaderSignal.FAILED)
    assert stream.reads == 6
    assert conn.metrics["reader_failures"]._value.get() == 5
    await reader.stop()


async def test_stop(connection, signals) -> None:
    """Test stopping a reader, waiting on a quiet connection."""
    conn, _ = connection
    reader = ReaderTask(conn, ScriptedStream(), signals)  # type: ignore[arg-type]
    assert not reader.running
    await reader.stop()  # not started, no-op

    reader.start()
    await asyncio.sleep(0)
    assert reader.running
    await reader.stop()
    assert not reader.running
