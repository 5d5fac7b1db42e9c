"""IRC line codec.

Frames outgoing commands into wire protocol lines, clamped to the maximum line
length, and splits an incoming byte stream back into individual lines.

Also provides a minimal parser for incoming lines, enough to recognize the
commands the daemon reacts to (PING, ERROR, numerics).
"""

# SPDX-FileCopyrightText: Faidon Liambotis
# SPDX-FileCopyrightText: Wikimedia Foundation
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import dataclasses
from collections.abc import Iterator, Sequence

TERMINATOR = b"\r\n"
MAX_LINE_LENGTH = 512  # including CRLF; RFC 2812, section 2.3
MAX_PAYLOAD_LENGTH = MAX_LINE_LENGTH - len(TERMINATOR)


class ProtocolError(Exception):
    """Base class for wire protocol errors."""


class MalformedLine(ProtocolError):
    """A line that is not properly terminated, or carries embedded terminators."""


class LineTooLong(ProtocolError):
    """A line that exceeds the maximum line length."""


def frame(command: str, *args: str) -> bytes:
    """Build a CRLF-terminated protocol line from a command and its arguments.

    Arguments are joined verbatim with single spaces; callers are responsible
    for prefixing the trailing argument with a colon where needed. Carriage
    returns and newlines are removed, so that a single call can never produce
    more than one line. The body is truncated so that the result never exceeds
    512 bytes, terminator included.
    """
    body = " ".join((command, *args)) if args else command
    body = body.replace("\r", "").replace("\n", "")
    encoded = body.encode("utf8")
    if len(encoded) > MAX_PAYLOAD_LENGTH:
        # do not leave half a UTF-8 sequence at the end
        encoded = encoded[:MAX_PAYLOAD_LENGTH].decode("utf8", "ignore").encode("utf8")
    return encoded + TERMINATOR


def check_line(line: bytes) -> None:
    """Validate a pre-framed line, raising ProtocolError if it cannot be sent as-is."""
    if len(line) > MAX_LINE_LENGTH:
        raise LineTooLong(f"line is {len(line)} bytes, maximum is {MAX_LINE_LENGTH}")
    if not line.endswith(TERMINATOR):
        raise MalformedLine("line is not terminated by CRLF")
    body = line[: -len(TERMINATOR)]
    if b"\r" in body or b"\n" in body:
        raise MalformedLine("line contains an embedded terminator")


def extract_line(buffer: bytes) -> tuple[bytes | None, bytes]:
    """Extract the first line out of an accumulating buffer.

    Returns a tuple of the line (including its terminator) and the unconsumed
    remainder of the buffer. If the buffer does not contain a full line yet,
    the line is None and the buffer is returned untouched.

    Lines longer than the protocol allows are cut at the payload limit; the
    first part is returned (without a terminator) and the rest stays in the
    remainder.
    """
    newline = buffer.find(b"\n", 0, MAX_LINE_LENGTH)
    if newline >= 0:
        return buffer[: newline + 1], buffer[newline + 1 :]
    if len(buffer) >= MAX_LINE_LENGTH:
        return buffer[:MAX_PAYLOAD_LENGTH], buffer[MAX_PAYLOAD_LENGTH:]
    return None, buffer


class LineBuffer:
    """Accumulate bytes received from a stream, and iterate over complete lines.

    Iteration consumes the lines that are complete at that point; iterating
    again after feeding more data resumes where the previous one stopped.
    """

    def __init__(self) -> None:
        self._buffer = b""

    def feed(self, data: bytes) -> None:
        """Append received data to the buffer."""
        self._buffer += data

    def __iter__(self) -> Iterator[bytes]:
        while True:
            line, self._buffer = extract_line(self._buffer)
            if line is None:
                return
            yield line

    def __len__(self) -> int:
        return len(self._buffer)


def keepalive_token(line: str) -> str:
    """Return the argument of a keepalive request, to be echoed back verbatim.

    This is everything after the first space, after skipping the source prefix
    (if any), e.g. ":abc" for "PING :abc".
    """
    line = line.rstrip("\r\n")
    if line.startswith(":"):
        line = line.partition(" ")[2]
    return line.partition(" ")[2]


@dataclasses.dataclass
class IRCMessage:
    """Represents an RFC 1459/2681 message.

    Can be either initialized:
    * with its constructor using a command, params and (optionally) a source
    * given a preformatted string, using the from_message() class method

    Does not currently support IRCv3 features like message tags.
    """

    command: str
    params: Sequence[str]
    source: str | None = None

    @classmethod
    def from_message(cls, message: str) -> IRCMessage:
        """Parse a previously formatted IRC message. Returns an instance of IRCMessage."""
        parts = message.rstrip("\r\n").split(" ")

        source = None
        if parts[0].startswith(":"):
            source = parts[0][1:]
            parts = parts[1:]

        if not parts or not parts[0]:
            raise ValueError("Invalid IRC message (no command specified)")
        command = parts[0].upper()

        params: list[str] = []
        remaining = parts[1:]
        while remaining:
            param = remaining.pop(0)
            if param.startswith(":"):
                # trailing parameter, may contain spaces
                params.append(" ".join([param, *remaining])[1:])
                break
            elif param:
                # skip multiple spaces in middle of message, as per RFC 1459
                params.append(param)

        return cls(command, params, source)
