"""Connection to the IRC server.

Owns the TCP session to the server: connecting and logging in, sending lines,
answering keepalives and disconnecting. The connection handle never leaves
this module, except for the read side, which is handed over to the reader.
"""

# SPDX-FileCopyrightText: Faidon Liambotis
# SPDX-FileCopyrightText: Wikimedia Foundation
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import asyncio
import dataclasses
import enum
import errno
import socket

import structlog

from .linecodec import MAX_LINE_LENGTH, check_line, frame
from .metrics import Metrics, build_metrics

logger = structlog.get_logger()


class ConnectionState(enum.Enum):
    """States of the connection to the server."""

    DISCONNECTED = enum.auto()
    CONNECTING = enum.auto()
    AUTHENTICATING = enum.auto()
    CONNECTED = enum.auto()


@dataclasses.dataclass
class Session:
    """The daemon's single logical connection to an IRC server."""

    host: str
    port: int = 6667
    nick: str = "user"
    realname: str = "user"
    state: ConnectionState = ConnectionState.DISCONNECTED


class ConnError(Exception):
    """Base class for connection errors."""


class Refused(ConnError):
    """The server refused the connection."""


class ResolutionFailed(ConnError):
    """The server name could not be resolved."""


class NotConnected(ConnError):
    """There is no live connection."""


class AlreadyConnected(ConnError):
    """A connection is already live; it has to be torn down first."""


class TransportError(ConnError):
    """Input/output error on the connection."""


class ConnectionManager:
    """Manage the connection to the IRC server, on behalf of a Session."""

    def __init__(self, session: Session, metrics: Metrics | None = None) -> None:
        self.session = session
        self.metrics = metrics if metrics is not None else build_metrics()
        self.log = logger.new()
        self._writer: asyncio.StreamWriter | None = None

    @property
    def connected(self) -> bool:
        """Return True if there is a live connection handle."""
        return self._writer is not None and not self._writer.is_closing()

    def _set_state(self, state: ConnectionState) -> None:
        if state != self.session.state:
            self.log.debug("Connection state changed", old=self.session.state.name, new=state.name)
        self.session.state = state
        self.metrics["connected"].set(1 if state == ConnectionState.CONNECTED else 0)

    async def connect(self, host: str, port: int) -> asyncio.StreamReader:
        """Connect to the server and log in.

        Returns the read side of the connection, to be consumed by a reader.
        """
        if self._writer is not None:
            raise AlreadyConnected(f"already connected to {self.session.host}:{self.session.port}")

        self.session.host, self.session.port = host, port
        self.log = logger.new(host=host, port=port)
        self._set_state(ConnectionState.CONNECTING)
        self.log.info("Connecting to server")
        try:
            # lines longer than 512 bytes are handled by the line codec
            reader, writer = await asyncio.open_connection(host, port, limit=MAX_LINE_LENGTH * 2)
        except socket.gaierror as exc:
            self._set_state(ConnectionState.DISCONNECTED)
            raise ResolutionFailed(f"cannot resolve {host}: {exc.strerror}") from exc
        except ConnectionRefusedError as exc:
            self._set_state(ConnectionState.DISCONNECTED)
            raise Refused(f"connection to {host}:{port} refused") from exc
        except OSError as exc:
            self._set_state(ConnectionState.DISCONNECTED)
            raise TransportError(f"cannot connect to {host}:{port}: {exc.strerror or exc}") from exc

        self._writer = writer
        self.log.info("Connected to server")
        try:
            await self.login()
        except ConnError:
            await self.disconnect()
            raise
        return reader

    async def login(self) -> None:
        """Send the login sequence, as two separate lines."""
        nick, realname = self.session.nick, self.session.realname
        await self.send("NICK", nick)
        await self.send("USER", nick, "8", "*", ":" + realname)
        self._set_state(ConnectionState.AUTHENTICATING)

    def mark_registered(self) -> None:
        """Record that the server has accepted our login."""
        if self.session.state == ConnectionState.AUTHENTICATING:
            self._set_state(ConnectionState.CONNECTED)
            self.log.info("Registered with server", nick=self.session.nick)

    async def disconnect(self) -> None:
        """Disconnect from the server gracefully, then close the connection.

        The session always ends up disconnected, even if the goodbye could not
        be delivered.
        """
        writer, self._writer = self._writer, None
        self._set_state(ConnectionState.DISCONNECTED)
        if writer is None:
            raise NotConnected("not connected")

        try:
            if not writer.is_closing():
                writer.write(frame("QUIT"))
                writer.write_eof()
                await writer.drain()
        except OSError as exc:
            if exc.errno != errno.ENOTCONN:
                self.log.debug("Unable to send QUIT", errno=exc.errno)
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        self.log.info("Disconnected from server")

    async def send_line(self, line: bytes) -> int:
        """Send a pre-framed line to the server. Returns the number of bytes sent."""
        check_line(line)
        writer = self._writer
        if writer is None or writer.is_closing():
            raise NotConnected("not connected")

        self.log.debug("Data sent", message=line.decode("utf8", "replace").rstrip("\r\n"))
        try:
            writer.write(line)
            await writer.drain()
        except OSError as exc:
            self.metrics["errors"].labels("send").inc()
            raise TransportError(f"cannot send: {exc.strerror or exc}") from exc
        self.metrics["lines_sent"].inc()
        return len(line)

    async def send(self, command: str, *args: str) -> int:
        """Frame a command and its arguments, and send it to the server."""
        return await self.send_line(frame(command, *args))

    async def reply_keepalive(self, token: str) -> None:
        """Answer a server keepalive request, echoing the server's token.

        The reply is written to the transport right away, before any other
        line that is queued after it.
        """
        line = frame("PONG", token) if token else frame("PONG")
        writer = self._writer
        if writer is None or writer.is_closing():
            raise NotConnected("not connected")

        self.log.debug("Keepalive reply", token=token)
        try:
            writer.write(line)
            await writer.drain()
        except OSError as exc:
            self.metrics["errors"].labels("send").inc()
            raise TransportError(f"cannot send keepalive: {exc.strerror or exc}") from exc
        self.metrics["keepalives"].inc()
        self.metrics["lines_sent"].inc()

    async def probe(self) -> bool:
        """Check whether the connection is alive, by sending a keepalive request."""
        try:
            await self.send("PING", self.session.host)
        except ConnError:
            return False
        return True

    def __repr__(self) -> str:
        """Return a user-readable description of the connection."""
        return f"<{self.__class__.__name__} {self.session.host}:{self.session.port} {self.session.state.name}>"
