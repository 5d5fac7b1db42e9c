"""Reader component.

Continuously drains the server connection, splits it into lines, answers
keepalive requests and surfaces every other line to the application. Reports
upwards only through a one-way signal queue: when the server has accepted our
login, and when reading has failed for good.
"""

# SPDX-FileCopyrightText: Faidon Liambotis
# SPDX-FileCopyrightText: Wikimedia Foundation
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import asyncio
import enum
from collections.abc import Callable, Iterable
from typing import Any

import structlog

from .connection import ConnectionManager, ConnError
from .linecodec import IRCMessage, LineBuffer, keepalive_token

logger = structlog.get_logger()

READ_CHUNK_SIZE = 4096

LineHandler = Callable[[IRCMessage], Any]


class ReaderSignal(enum.Enum):
    """Signals sent by the reader to the event loop."""

    REGISTERED = enum.auto()
    FAILED = enum.auto()


class ReaderTask:
    """Read from the server connection, in an asyncio task of its own.

    The reader owns the read side of the connection exclusively. A failed read
    is retried after a short sleep; after too many consecutive failures, the
    reader gives up, sends a FAILED signal and stops.
    """

    def __init__(
        self,
        connection: ConnectionManager,
        stream: asyncio.StreamReader,
        signals: asyncio.Queue[tuple[ReaderTask, ReaderSignal]],
        retry_limit: int = 300,
        retry_interval: float = 1.0,
        handlers: Iterable[LineHandler] = (),
    ) -> None:
        self.connection = connection
        self.stream = stream
        self.signals = signals
        self.retry_limit = retry_limit
        self.retry_interval = retry_interval
        self.handlers = list(handlers)
        self.failures = 0
        self.log = logger.new(host=connection.session.host, port=connection.session.port)
        self._task: asyncio.Task[None] | None = None

    def start(self) -> None:
        """Spawn the reader task."""
        self._task = asyncio.create_task(self.run())

    @property
    def running(self) -> bool:
        """Return True if the reader task has been started and has not finished."""
        return self._task is not None and not self._task.done()

    @property
    def healthy(self) -> bool:
        """Return True if the reader is running, and its last read succeeded."""
        return self.running and self.failures == 0

    async def stop(self) -> None:
        """Stop the reader task, and wait until it has stopped."""
        if self._task:
            try:
                self._task.cancel()
                await self._task  # give a chance to the task to cancel
            except asyncio.CancelledError:
                pass
            self._task = None

    async def read(self) -> bytes:
        """Read the next chunk of data. Returns an empty bytes object on failure."""
        try:
            return await self.stream.read(READ_CHUNK_SIZE)
        except OSError as exc:
            self.log.debug("Read error", error=str(exc))
            return b""

    async def run(self) -> None:
        """Read from the server until reading fails too many times in a row."""
        lines = LineBuffer()
        while True:
            data = await self.read()
            if not data:
                self.failures += 1
                self.connection.metrics["reader_failures"].inc()
                self.log.warning("Reader error", failures=self.failures)
                if self.failures >= self.retry_limit:
                    self.log.error("Reader giving up", failures=self.failures)
                    await self.signals.put((self, ReaderSignal.FAILED))
                    return
                await asyncio.sleep(self.retry_interval)
                continue

            self.failures = 0
            lines.feed(data)
            for line in lines:
                await self.handle_line(line)

    async def handle_line(self, bline: bytes) -> None:
        """Handle a single line received from the server."""
        self.connection.metrics["lines_received"].inc()
        line = bline.decode("utf8", "replace").rstrip("\r\n")
        if not line:
            return
        if not bline.endswith(b"\n"):
            self.log.debug("Line exceeded max length, truncated")

        try:
            msg = IRCMessage.from_message(line)
        except ValueError:
            self.log.debug("Unparseable line, ignoring", message=line)
            return

        if msg.command == "PING":
            try:
                await self.connection.reply_keepalive(keepalive_token(line))
            except ConnError as exc:
                self.connection.metrics["errors"].labels("keepalive").inc()
                self.log.warning("Unable to answer keepalive", error=str(exc))
            return

        self.log.info("Server message", message=line)
        if msg.command == "001":
            await self.signals.put((self, ReaderSignal.REGISTERED))
        elif msg.command == "ERROR":
            self.log.warning("Server error", message=" ".join(msg.params))

        for handler in self.handlers:
            try:
                handler(msg)
            except Exception:
                self.connection.metrics["errors"].labels("handler").inc()
                self.log.exception("Line handler failed")
