"""Testing initialization."""

from __future__ import annotations

import configparser
import logging
from collections.abc import AsyncGenerator, Callable, Iterator
from unittest.mock import patch

import pytest
import structlog
from fakes import FakeIRCServer, FakeTransport

from irccd.daemon import Daemon


@pytest.fixture(autouse=True)
def fixture_configure_structlog() -> None:
    """Fixture to configure structlog. Currently just silences it entirely."""

    def dummy_processor(
        logger: logging.Logger, name: str, event_dict: structlog.types.EventDict
    ) -> structlog.types.EventDict:
        raise structlog.exceptions.DropEvent

    structlog.configure(processors=[dummy_processor])


@pytest.fixture(name="transport")
def fixture_transport() -> Iterator[FakeTransport]:
    """Fixture replacing the TCP transport with a fake, in-memory one."""
    transport = FakeTransport()
    with patch("asyncio.open_connection", new=transport.open_connection):
        yield transport


@pytest.fixture(name="ircd")
async def fixture_ircd() -> AsyncGenerator[FakeIRCServer, None]:
    """Fixture for a running fake IRC server."""
    server = FakeIRCServer()
    await server.start()
    yield server
    await server.close()


@pytest.fixture(name="make_config")
def fixture_make_config() -> Callable[..., configparser.ConfigParser]:
    """Fixture returning a factory of example configurations.

    Keyword arguments override options in the [irc] section.
    """

    def make_config(**irc: object) -> configparser.ConfigParser:
        config = configparser.ConfigParser()
        config.read_string(
            """
            [irc]
            host = 185.30.166.38
            port = 6667
            nick = user
            realname = user
            autoconnect = no
            read_retry_limit = 300
            read_retry_interval = 0
            """
        )
        for key, value in irc.items():
            config["irc"][key] = str(value)
        return config

    return make_config


@pytest.fixture(name="daemon")
async def fixture_daemon(
    make_config: Callable[..., configparser.ConfigParser],
    transport: FakeTransport,
) -> AsyncGenerator[Daemon, None]:
    """Fixture for a Daemon, connected to 185.30.166.38:6667 over the fake transport."""
    daemon = Daemon(make_config()["irc"])
    await daemon.connect("185.30.166.38", 6667)
    yield daemon
    await daemon.stop_reader()
