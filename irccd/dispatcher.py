"""Command dispatcher component.

Turns control records into IRC protocol actions and channel registry
mutations, by dispatching them to the ``handle_`` methods.
"""

# SPDX-FileCopyrightText: Faidon Liambotis
# SPDX-FileCopyrightText: Wikimedia Foundation
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import contextlib
import enum
import re
from typing import TYPE_CHECKING

import structlog

from .channels import AddResult, validate_channel_name
from .connection import ConnError, NotConnected
from .control import ControlRecord
from .linecodec import ProtocolError

if TYPE_CHECKING:
    from .daemon import Daemon

logger = structlog.get_logger()


class DispatchFailure(enum.Enum):
    """Reasons for a control record to be rejected."""

    INVALID_CHANNEL_NAME = enum.auto()
    UNKNOWN_ACTION = enum.auto()
    ALREADY_CONNECTED = enum.auto()
    NICKNAME_UNCHANGED = enum.auto()
    INVALID_NICKNAME = enum.auto()
    NO_ACTIVE_CHANNEL = enum.auto()
    INVALID_HOST = enum.auto()


class DispatchError(Exception):
    """Exception thrown by command handlers to reject a control record."""

    def __init__(self, reason: DispatchFailure, message: str) -> None:
        super().__init__(message)
        self.reason = reason
        self.message = message


def parse_hostspec(hostspec: str, default_port: int) -> tuple[str, int]:
    """Split a "host", "host:port" or "[v6address]:port" specification."""
    host, port = hostspec.strip(), default_port
    if host.startswith("["):
        host, _, rest = host[1:].partition("]")
        if rest.startswith(":"):
            port = int(rest[1:])
    elif host.count(":") == 1:
        host, _, portstr = host.partition(":")
        port = int(portstr)
    if not host or not 0 < port < 65536:
        raise ValueError(f"invalid host specification: {hostspec}")
    return host, port


def validate_nickname(nick: str) -> bool:
    """Return True if the nickname can be sent as a single NICK argument."""
    # no whitespace, control characters or list separators
    return bool(nick) and not re.search(r"[\s\x00-\x1f\x7f,]", nick)


class CommandDispatcher:
    """Apply control records to the connection and the channel registry.

    Records are handled one at a time, by the event loop; the dispatcher only
    borrows the daemon's session state for the duration of a dispatch() call.
    """

    def __init__(self, daemon: Daemon) -> None:
        self.daemon = daemon
        self.connection = daemon.connection
        self.channels = daemon.channels

    async def dispatch(self, record: ControlRecord) -> None:
        """Handle a single control record. Errors are logged, never raised."""
        log = logger.bind(action=record.action.name, code=record.code)
        self.connection.metrics["records"].labels(record.action.name.lower()).inc()
        try:
            handler = getattr(self, f"handle_{record.action.name.lower()}")
            await handler(record.payload)
        except DispatchError as exc:
            self.connection.metrics["errors"].labels(exc.reason.name.lower()).inc()
            log.warning(exc.message, reason=exc.reason.name)
        except ConnError as exc:
            self.connection.metrics["errors"].labels("connection").inc()
            log.error("Connection error", error=str(exc), kind=type(exc).__name__)
        except ProtocolError as exc:
            self.connection.metrics["errors"].labels("protocol").inc()
            log.error("Protocol error", error=str(exc), kind=type(exc).__name__)
        except Exception:
            self.connection.metrics["errors"].labels("ise").inc()
            log.exception("Internal error while dispatching record")

    async def handle_join(self, channel: str) -> None:
        """Join a channel, or select it if it has been joined already."""
        if not validate_channel_name(channel):
            raise DispatchError(DispatchFailure.INVALID_CHANNEL_NAME, f"{channel} is not a valid channel")

        if channel in self.channels:
            self.channels.select(channel)
            logger.info("Channel already joined, selected", channel=channel, result=AddResult.ALREADY_PRESENT.name)
            return

        # only considered joined if the request could be sent
        await self.connection.send("JOIN", channel)
        self.channels.add(channel)

    async def handle_part(self, channel: str) -> None:
        """Leave a channel."""
        await self.connection.send("PART", channel)
        self.channels.remove(channel)

    async def handle_list(self, payload: str) -> None:
        """Request a channel list."""
        if payload:
            await self.connection.send("LIST", payload)
        else:
            await self.connection.send("LIST")

    async def handle_write(self, text: str) -> None:
        """Send a message to the active channel."""
        channel = self.channels.active
        if channel is None:
            raise DispatchError(DispatchFailure.NO_ACTIVE_CHANNEL, "No channel joined, message not sent")
        await self.connection.send("PRIVMSG", channel.name, ":" + text)

    async def handle_nick(self, nick: str) -> None:
        """Change nickname; the change is assumed to succeed."""
        nick = nick.strip()
        if not validate_nickname(nick):
            raise DispatchError(DispatchFailure.INVALID_NICKNAME, f"{nick!r} is not a valid nickname")
        if nick == self.daemon.session.nick:
            raise DispatchError(DispatchFailure.NICKNAME_UNCHANGED, f"Nickname {nick} already in use by this client")

        if self.connection.connected:
            await self.connection.send("NICK", nick)
        else:
            logger.info("Not connected, nickname will be used on next connect", nick=nick)
        self.daemon.session.nick = nick

    async def handle_connect(self, hostspec: str) -> None:
        """Connect to a server, replacing the current connection (if any)."""
        session = self.daemon.session
        try:
            host, port = parse_hostspec(hostspec or self.daemon.default_host, self.daemon.default_port)
        except ValueError:
            raise DispatchError(DispatchFailure.INVALID_HOST, f"{hostspec} is not a valid server") from None

        same_server = (host, port) == (session.host, session.port)
        # writes may still succeed after the server hung up; the reader notices first
        reader = self.daemon.reader
        alive = self.connection.connected and reader is not None and reader.healthy
        if alive and same_server and await self.connection.probe():
            raise DispatchError(DispatchFailure.ALREADY_CONNECTED, f"Server {host}:{port} already connected to")

        with contextlib.suppress(NotConnected):
            await self.daemon.teardown()
        await self.daemon.connect(host, port)

    async def handle_ping(self, payload: str) -> None:
        """Send a keepalive request to the server."""
        if payload:
            await self.connection.send("PING", payload)
        else:
            await self.connection.send("PING")

    async def handle_disconnect(self, _: str) -> None:
        """Disconnect from the server."""
        await self.daemon.teardown()

    async def handle_quit(self, _: str) -> None:
        """Disconnect, and make the daemon exit successfully."""
        with contextlib.suppress(NotConnected):
            await self.daemon.teardown()
        self.daemon.request_exit(0)

    async def handle_unknown(self, _: str) -> None:
        """Reject records with an unrecognized action code."""
        raise DispatchError(DispatchFailure.UNKNOWN_ACTION, "Unknown action, ignoring")

