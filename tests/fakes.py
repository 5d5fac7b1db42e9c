"""Fake network peers, used for testing."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable


class FakeWriter:
    """Stand-in for an asyncio.StreamWriter, recording everything written to it."""

    def __init__(self, fail: bool = False) -> None:
        self.data = b""
        self.fail = fail
        self.eof = False
        self.closed = False
        self.waited = False

    def write(self, data: bytes) -> None:
        if self.fail:
            raise ConnectionResetError(104, "Connection reset by peer")
        self.data += data

    def write_eof(self) -> None:
        self.eof = True

    async def drain(self) -> None:
        pass

    def is_closing(self) -> bool:
        return self.closed

    def close(self) -> None:
        self.closed = True

    async def wait_closed(self) -> None:
        self.waited = True

    @property
    def lines(self) -> list[bytes]:
        """Return all the lines written, terminators included."""
        return self.data.splitlines(keepends=True)


class FakeTransport:
    """Hands out a new stream pair for every connection, in place of asyncio.open_connection."""

    def __init__(self) -> None:
        self.streams: list[asyncio.StreamReader] = []
        self.writers: list[FakeWriter] = []
        self.calls: list[tuple[str, int]] = []

    async def open_connection(self, host: str, port: int, **_: object) -> tuple[asyncio.StreamReader, FakeWriter]:
        self.calls.append((host, port))
        stream, writer = asyncio.StreamReader(), FakeWriter()
        self.streams.append(stream)
        self.writers.append(writer)
        return stream, writer

    @property
    def writer(self) -> FakeWriter:
        """Return the writer of the most recent connection."""
        return self.writers[-1]


class FakeIRCServer:
    """A fake IRC server, listening on a real socket.

    Records every line it receives into a queue, and lets tests send
    arbitrary data back to the client.
    """

    def __init__(self) -> None:
        self.lines: asyncio.Queue[bytes] = asyncio.Queue()
        self.writers: list[asyncio.StreamWriter] = []
        self.address = "127.0.0.1"
        self.port = 0
        self._server: asyncio.AbstractServer | None = None

    async def start(self) -> None:
        """Start listening on a random free port."""
        self._server = await asyncio.start_server(self.handle, self.address, 0)
        self.port = self._server.sockets[0].getsockname()[1]

    async def handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        """Handle a client connection."""
        self.writers.append(writer)
        while True:
            try:
                line = await reader.readline()
            except OSError:
                break
            if not line:
                break
            await self.lines.put(line)

    async def expect(self, timeout: float = 2) -> bytes:
        """Return the next line received, or fail if none arrives in time."""
        return await asyncio.wait_for(self.lines.get(), timeout)

    async def expect_command(self, command: bytes, timeout: float = 2) -> bytes:
        """Skip received lines until one with the given command is found."""
        while True:
            line = await self.expect(timeout)
            if line.split(b" ", 1)[0].rstrip(b"\r\n") == command:
                return line

    async def readlines(self, timeout: float = 0.1) -> list[bytes]:
        """Return all lines received, until a timeout occurs."""
        output = []
        while True:
            try:
                output.append(await self.expect(timeout))
            except asyncio.TimeoutError:
                break
        return output

    def push(self, data: bytes) -> None:
        """Send data to the most recently connected client."""
        self.writers[-1].write(data)

    def drop(self) -> None:
        """Close all client connections."""
        for writer in self.writers:
            writer.close()

    async def close(self) -> None:
        """Stop the server."""
        self.drop()
        if self._server:
            self._server.close()
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._server.wait_closed(), 1)


async def wait_until(condition: Callable[[], bool], timeout: float = 2) -> None:
    """Wait until a condition becomes true, or fail after a timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)
