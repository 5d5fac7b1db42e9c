"""Daemon component.

The top-level event loop: owns the session, the channel registry and the
reader, waits for reader signals and control records, and routes them to the
right place. Also decides what happens when the connection is lost.
"""

# SPDX-FileCopyrightText: Faidon Liambotis
# SPDX-FileCopyrightText: Wikimedia Foundation
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import asyncio
import configparser
import contextlib
from typing import Any

import prometheus_client
import structlog

from .channels import ChannelRegistry
from .connection import ConnectionManager, NotConnected, Session
from .control import ControlRecord
from .dispatcher import CommandDispatcher
from .metrics import build_metrics
from .reader import LineHandler, ReaderSignal, ReaderTask

logger = structlog.get_logger()

EXIT_SUCCESS = 0
EXIT_FAILURE = -1


class Daemon:
    """The IRC client daemon, holding a single connection to an IRC server."""

    def __init__(self, config: configparser.SectionProxy) -> None:
        self.default_host = config.get("host", "185.30.166.38")
        self.default_port = config.getint("port", fallback=6667)
        nick = config.get("nick", "user")
        self.session = Session(self.default_host, self.default_port, nick, config.get("realname", nick))

        self.autoconnect = config.getboolean("autoconnect", fallback=True)
        self.tick = config.getfloat("tick", fallback=120)
        self.read_retry_limit = config.getint("read_retry_limit", fallback=300)
        self.read_retry_interval = config.getfloat("read_retry_interval", fallback=1.0)
        self.exit_on_reader_failure = config.getboolean("exit_on_reader_failure", fallback=True)

        self.metrics_registry = prometheus_client.CollectorRegistry()
        self.metrics = build_metrics(self.metrics_registry)
        self.connection = ConnectionManager(self.session, self.metrics)
        self.channels = ChannelRegistry()
        self.metrics["channels"].set_function(lambda: len(self.channels))
        self.dispatcher = CommandDispatcher(self)

        self.records: asyncio.Queue[ControlRecord] = asyncio.Queue()
        self.signals: asyncio.Queue[tuple[ReaderTask, ReaderSignal]] = asyncio.Queue()
        self.line_handlers: list[LineHandler] = []
        self.reader: ReaderTask | None = None
        self.exit_status: int | None = None
        self._waiters: dict[str, asyncio.Task[Any]] = {}

    async def start(self) -> None:
        """Connect to the configured server, if so configured."""
        if self.autoconnect:
            await self.connect(self.default_host, self.default_port)

    async def connect(self, host: str, port: int) -> None:
        """Connect to a server, and spawn a reader for the new connection."""
        stream = await self.connection.connect(host, port)
        self.reader = ReaderTask(
            self.connection,
            stream,
            self.signals,
            retry_limit=self.read_retry_limit,
            retry_interval=self.read_retry_interval,
            handlers=self.line_handlers,
        )
        self.reader.start()

    async def stop_reader(self) -> None:
        """Stop the current reader, if any."""
        reader, self.reader = self.reader, None
        if reader:
            await reader.stop()

    async def teardown(self) -> None:
        """Tear down the current connection.

        Channel memberships do not survive the connection, so the registry is
        cleared as well. Raises NotConnected if there was no connection.
        """
        await self.stop_reader()
        self.channels.clear()
        await self.connection.disconnect()

    def request_exit(self, status: int) -> None:
        """Make the event loop stop, with the given exit status."""
        logger.info("Exit requested", status=status)
        self.exit_status = status

    async def serve(self) -> int:
        """Run the event loop until an exit is requested. Returns the exit status."""
        logger.info("Waiting for control records", tick=self.tick)
        try:
            while self.exit_status is None:
                await self.wait_once()
        finally:
            for waiter in self._waiters.values():
                waiter.cancel()
            self._waiters.clear()
            await self.stop_reader()
        return self.exit_status

    async def wait_once(self) -> None:
        """Wait for a reader signal or a control record, and handle it.

        Reader signals take precedence over control records, when both are
        ready. If nothing arrives within a tick, the tick is handled instead.
        """
        # keep the pending getters across calls, so that nothing gets lost
        for name, queue in (("signal", self.signals), ("record", self.records)):
            if name not in self._waiters:
                self._waiters[name] = asyncio.create_task(queue.get())

        done, _ = await asyncio.wait(
            self._waiters.values(),
            timeout=self.tick,
            return_when=asyncio.FIRST_COMPLETED,
        )
        if not done:
            await self.on_tick()
            return

        if self._waiters["signal"] in done:
            reader, signal = self._waiters.pop("signal").result()
            await self.handle_signal(reader, signal)

        if self._waiters["record"] in done:
            record = self._waiters.pop("record").result()
            if self.exit_status is not None:
                logger.warning("Exiting, control record dropped", action=record.action.name)
                return
            await self.dispatcher.dispatch(record)

    async def handle_signal(self, reader: ReaderTask, signal: ReaderSignal) -> None:
        """Handle a signal sent by a reader."""
        if reader is not self.reader:
            logger.debug("Signal from a previous connection, ignoring", signal=signal.name)
            return

        if signal == ReaderSignal.REGISTERED:
            self.connection.mark_registered()
        elif signal == ReaderSignal.FAILED:
            logger.error("Connection to server lost, not reconnecting", host=self.session.host, port=self.session.port)
            with contextlib.suppress(NotConnected):
                await self.teardown()
            if self.exit_on_reader_failure:
                self.request_exit(EXIT_FAILURE)

    async def on_tick(self) -> None:
        """Handle a periodic tick, when nothing else happened for a while."""
        logger.debug(
            "Tick",
            state=self.session.state.name,
            reader_running=bool(self.reader and self.reader.running),
            channels=len(self.channels),
        )

    def __repr__(self) -> str:
        """Return a user-readable description of the daemon."""
        return f"<{self.__class__.__name__} {self.session.nick}@{self.session.host}:{self.session.port}>"
