"""Control channel component.

Listens on a local Unix socket for control records, sent by other processes
that want the daemon to perform IRC actions. Each connection carries a single
record: a one-byte action code followed by the payload, NUL-padded up to the
record size. Decoded records are queued, in arrival order, for the event loop
to dispatch.

Also provides the client side, used by the ircctl command.
"""

# SPDX-FileCopyrightText: Faidon Liambotis
# SPDX-FileCopyrightText: Wikimedia Foundation
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import asyncio
import dataclasses
import enum
import pathlib
import select
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    import configparser

    from .metrics import Metrics

logger = structlog.get_logger()

DEFAULT_SOCKET = "/tmp/irccd.socket"
RECORD_SIZE = getattr(select, "PIPE_BUF", 512)


@enum.unique
class Action(enum.Enum):
    """Actions that can be requested over the control channel, by their code."""

    JOIN = "J"
    PART = "P"
    LIST = "L"
    WRITE = "W"
    NICK = "N"
    CONNECT = "C"
    PING = "G"
    DISCONNECT = "D"
    QUIT = "Q"
    UNKNOWN = ""

    @classmethod
    def from_code(cls, code: str) -> Action:
        """Return the action for a code; UNKNOWN if the code is not recognized."""
        try:
            action = cls(code)
        except ValueError:
            return cls.UNKNOWN
        return action

    @classmethod
    def from_name(cls, name: str) -> Action:
        """Return the action for a case-insensitive name or code, as given on a command line."""
        if len(name) == 1:
            return cls.from_code(name.upper())
        return cls.__members__.get(name.upper(), cls.UNKNOWN)


class RecordError(ValueError):
    """Base class for invalid control records."""


class MalformedRecord(RecordError):
    """A record that is empty or cannot be decoded."""


class RecordTooLong(RecordError):
    """A record that exceeds the record size."""


@dataclasses.dataclass(frozen=True)
class ControlRecord:
    """A single unit of work, received over the control channel."""

    action: Action
    payload: str = ""
    code: str = ""

    @classmethod
    def from_bytes(cls, data: bytes, record_size: int = RECORD_SIZE) -> ControlRecord:
        """Decode a record, as received over the wire."""
        if len(data) > record_size:
            raise RecordTooLong(f"record is {len(data)} bytes, maximum is {record_size}")
        if not data or data[0] == 0:
            raise MalformedRecord("empty record")

        try:
            code = data[:1].decode("ascii")
            # the payload is NUL-terminated, and may be NUL-padded
            payload = data[1:].split(b"\0", 1)[0].decode("utf8")
        except UnicodeDecodeError as exc:
            raise MalformedRecord(f"record cannot be decoded: {exc.reason}") from exc

        return cls(Action.from_code(code), payload.rstrip("\r\n"), code)

    def to_bytes(self, record_size: int = RECORD_SIZE) -> bytes:
        """Encode the record for the wire, NUL-padded to the record size."""
        if self.action == Action.UNKNOWN:
            raise MalformedRecord("cannot encode an unknown action")
        data = self.action.value.encode("ascii") + self.payload.encode("utf8")
        if len(data) > record_size:
            raise RecordTooLong(f"record is {len(data)} bytes, maximum is {record_size}")
        return data.ljust(record_size, b"\0")


class ControlServer:
    """A server accepting control records over a local Unix socket."""

    def __init__(
        self,
        config: configparser.SectionProxy,
        records: asyncio.Queue[ControlRecord],
        metrics: Metrics | None = None,
    ) -> None:
        self.records = records
        self.metrics = metrics
        self.path = pathlib.Path(config.get("path", fallback=DEFAULT_SOCKET))
        self.record_size = config.getint("record_size", fallback=RECORD_SIZE)
        self.client_timeout = config.getfloat("client_timeout", fallback=5.0)
        self._server: asyncio.AbstractServer | None = None

    async def serve(self) -> None:
        """Create a new socket and start listening for records.

        This returns once the socket is listening; records are processed in
        the background.
        """
        # remove a stale socket left over by a previous instance
        if self.path.is_socket():
            self.path.unlink()
        self._server = await asyncio.start_unix_server(self.handle_client, path=str(self.path))
        logger.info("Listening for control records", path=str(self.path))

    async def close(self) -> None:
        """Stop listening and remove the socket."""
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        self.path.unlink(missing_ok=True)

    async def handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        """Receive a single record from a client, and queue it for processing."""
        try:
            data = await asyncio.wait_for(self.read_record(reader), self.client_timeout)
            record = ControlRecord.from_bytes(data, self.record_size)
        except asyncio.TimeoutError:
            self._error("control-timeout")
            logger.warning("Timed out waiting for control record")
        except RecordError as exc:
            self._error("control-parsing")
            logger.warning("Invalid control record, ignoring", error=str(exc))
        except OSError as exc:
            self._error("control-io")
            logger.debug("Control connection error", error=str(exc))
        else:
            logger.debug("Control record received", action=record.action.name, payload=record.payload)
            await self.records.put(record)
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass

    async def read_record(self, reader: asyncio.StreamReader) -> bytes:
        """Read until the client closes its side, or there is more than a record's worth of data."""
        data = b""
        while len(data) <= self.record_size:
            chunk = await reader.read(self.record_size + 1 - len(data))
            if not chunk:
                break
            data += chunk
        return data

    def _error(self, kind: str) -> None:
        if self.metrics is not None:
            self.metrics["errors"].labels(kind).inc()


async def send_record(path: str | pathlib.Path, record: ControlRecord, record_size: int = RECORD_SIZE) -> None:
    """Deliver a record to a running daemon."""
    data = record.to_bytes(record_size)
    _, writer = await asyncio.open_unix_connection(str(path))
    try:
        writer.write(data)
        writer.write_eof()
        await writer.drain()
    finally:
        writer.close()
        await writer.wait_closed()
