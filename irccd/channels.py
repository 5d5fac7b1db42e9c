"""Registry of joined channels."""

# SPDX-FileCopyrightText: Faidon Liambotis
# SPDX-FileCopyrightText: Wikimedia Foundation
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import dataclasses
import datetime
import enum
import re
from collections.abc import Iterator, Sequence

import structlog

logger = structlog.get_logger()

CHANNEL_SIGIL = "#"
CHANNEL_MAXLEN = 50


class AddResult(enum.Enum):
    """Outcome of ChannelRegistry.add()."""

    ADDED = enum.auto()
    ALREADY_PRESENT = enum.auto()


class RemoveResult(enum.Enum):
    """Outcome of ChannelRegistry.remove()."""

    REMOVED = enum.auto()
    NOT_FOUND = enum.auto()


def validate_channel_name(name: str) -> bool:
    """Return True if the name is usable as a channel name, False otherwise."""
    # spaces, commas and BEL are not allowed, RFC 2812 section 1.3
    return bool(re.fullmatch(rf"{CHANNEL_SIGIL}[^\s,\x07]+", name)) and len(name) <= CHANNEL_MAXLEN


@dataclasses.dataclass(frozen=True)
class Channel:
    """A joined channel."""

    name: str
    joined: datetime.datetime = dataclasses.field(
        default_factory=lambda: datetime.datetime.now(tz=datetime.timezone.utc),
        compare=False,
    )


class ChannelRegistry:
    """An ordered collection of joined channels, unique by name.

    Iteration order is join order. Also keeps track of the active channel,
    i.e. the one messages are addressed to; this is the most recently joined
    channel, unless another one has been explicitly selected.
    """

    def __init__(self) -> None:
        self._channels: dict[str, Channel] = {}
        self._active: str | None = None

    def add(self, name: str) -> AddResult:
        """Add a channel at the end of the registry, and make it the active one."""
        if name in self._channels:
            return AddResult.ALREADY_PRESENT
        self._channels[name] = Channel(name)
        self._active = name
        logger.info("Channel added", channel=name)
        return AddResult.ADDED

    def remove(self, name: str) -> RemoveResult:
        """Remove a channel by name; no-op if the channel is not in the registry."""
        try:
            del self._channels[name]
        except KeyError:
            logger.debug("Channel not found in registry", channel=name)
            return RemoveResult.NOT_FOUND

        if self._active == name:
            # fall back to the most recently joined channel
            self._active = next(reversed(self._channels), None)
        logger.info("Channel removed", channel=name)
        return RemoveResult.REMOVED

    def select(self, name: str) -> None:
        """Make an existing channel the active one."""
        if name not in self._channels:
            raise KeyError(name)
        self._active = name

    def clear(self) -> None:
        """Forget all channels."""
        self._channels.clear()
        self._active = None

    def contains(self, name: str) -> bool:
        """Return True if the channel has been joined."""
        return name in self._channels

    def all(self) -> Sequence[Channel]:
        """Return all channels, in join order."""
        return list(self._channels.values())

    @property
    def active(self) -> Channel | None:
        """Return the active channel, or None if no channel is joined."""
        if self._active is None:
            return None
        return self._channels[self._active]

    def __contains__(self, name: object) -> bool:
        return name in self._channels

    def __iter__(self) -> Iterator[Channel]:
        return iter(self.all())

    def __len__(self) -> int:
        return len(self._channels)

    def __repr__(self) -> str:
        """Return a user-readable description of the registry."""
        return f"<{self.__class__.__name__} {' '.join(self._channels)}>"
