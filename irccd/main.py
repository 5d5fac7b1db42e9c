"""Command-line executable component.

Responsible for parsing the command-line arguments, the configuration file, and
setting up logging and metrics. Optionally detaches from the terminal, then
runs the daemon's event loop.

Provides a run() function, used by __main__ or directly, as well as ctl(), the
entry point of the ircctl client.
"""

# SPDX-FileCopyrightText: Faidon Liambotis
# SPDX-FileCopyrightText: Wikimedia Foundation
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import argparse
import asyncio
import configparser
import contextlib
import errno
import logging
import os
import pathlib
import sys
from collections.abc import Sequence

import structlog

from ._version import __version__
from .connection import ConnError, NotConnected
from .control import DEFAULT_SOCKET, RECORD_SIZE, Action, ControlRecord, ControlServer, RecordError, send_record
from .daemon import EXIT_FAILURE, Daemon
from .metrics import serve_metrics

logger = structlog.get_logger()


def parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    """Parse and return the parsed command line arguments."""
    parser = argparse.ArgumentParser(
        prog="irccd",
        description="IRC client daemon",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    cfg_dflt = pathlib.Path("irccd.conf")
    if not cfg_dflt.exists():
        cfg_dflt = pathlib.Path("/etc/irccd.conf")
    parser.add_argument("--config-file", "-c", type=pathlib.Path, default=cfg_dflt, help="Path to configuration file")
    parser.add_argument("--daemon", "-d", action="store_true", help="Detach from the terminal and run in the background")

    log_levels = ("DEBUG", "INFO", "WARNING", "ERROR")
    parser.add_argument("--log-level", choices=log_levels, type=str.upper, help="Log level (overrides config)")
    log_formats = ("plain", "console", "json")
    log_dflt = "console" if sys.stdout.isatty() else "plain"
    parser.add_argument("--log-format", default=log_dflt, choices=log_formats, help="Log format")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def configure_logging(log_format: str, log_level: str | int = logging.WARNING) -> None:
    """Configure logging parameters."""
    renderer: structlog.typing.Processor
    if log_format == "plain":
        timestamper = None
        renderer = structlog.dev.ConsoleRenderer(colors=False)
    elif log_format == "console":
        timestamper = structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S", utc=False)
        renderer = structlog.dev.ConsoleRenderer(colors=True)
    elif log_format == "json":
        timestamper = structlog.processors.TimeStamper(fmt="iso")
        renderer = structlog.processors.JSONRenderer(sort_keys=True)
    else:
        raise ValueError(f"Invalid logging format specified: {log_format}")

    # render using structlog-based formatters within logging
    processors: list[structlog.typing.Processor] = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if timestamper:
        processors.append(timestamper)

    structlog.configure(
        processors=[
            *processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler()
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[
            *processors,
            structlog.stdlib.ExtraAdder(),
        ],
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )
    handler.setFormatter(formatter)
    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    # default level, only for events emitted before the config is parsed
    root_logger.setLevel(log_level)


def configure_log_levels(override_level: str | int | None, config: configparser.SectionProxy | None = None) -> None:
    """Configure logging levels, using the config file and an override, typically given by a CLI argument."""
    if config:
        for key, level in config.items():
            this_logger_name = key if key != "root" else None
            this_logger = logging.getLogger(this_logger_name)
            this_logger.setLevel(level.upper())

    if override_level:
        # set the level for the entire package
        logging.getLogger("irccd").setLevel(override_level)


def daemonize(nochdir: bool = False, noclose: bool = False) -> None:
    """Fork the process, detach from the terminal and redirect the standard streams."""
    if os.fork() > 0:
        os._exit(0)  # parent

    os.setsid()
    if not nochdir:
        os.chdir("/")
    if not noclose:
        devnull = os.open(os.devnull, os.O_RDWR)
        for stream in (sys.stdin, sys.stdout, sys.stderr):
            os.dup2(devnull, stream.fileno())
        os.close(devnull)


async def start_daemon(config: configparser.ConfigParser) -> int:
    """Start the daemon, listen for control records and run the event loop.

    Returns the exit status requested by the daemon.
    """
    daemon = Daemon(config["irc"])

    if "prometheus" in config:
        serve_metrics(config["prometheus"], daemon.metrics_registry)

    try:
        await daemon.start()
    except ConnError as exc:
        logger.critical(f"Unable to connect: {exc}", host=daemon.session.host, port=daemon.session.port)
        return EXIT_FAILURE

    control_config = config["control"] if config.has_section("control") else config[configparser.DEFAULTSECT]
    control_server = ControlServer(control_config, daemon.records, daemon.metrics)
    try:
        await control_server.serve()
    except OSError as exc:
        logger.critical(f"Cannot listen for control records: {exc.strerror}", path=str(control_server.path))
        with contextlib.suppress(NotConnected):
            await daemon.teardown()
        return EXIT_FAILURE

    try:
        return await daemon.serve()
    finally:
        await control_server.close()


def run(argv: Sequence[str] | None = None) -> None:
    """Entry point."""
    options = parse_args(argv)

    configure_logging(options.log_format)
    configure_log_levels(options.log_level or logging.INFO)
    logger.info("Starting irccd", config_file=str(options.config_file), version=__version__)

    config = configparser.ConfigParser(strict=True)
    try:
        with options.config_file.open(encoding="utf-8") as config_fh:
            config.read_file(config_fh)
    except OSError as exc:
        logger.critical(f"Cannot open configuration file: {exc.strerror}", errno=errno.errorcode[exc.errno])
        raise SystemExit(-1) from exc
    except configparser.Error as exc:
        msg = repr(exc).replace("\n", " ")  # configparser exceptions sometimes include newlines
        logger.critical(f"Invalid configuration, {msg}")
        raise SystemExit(-1) from exc

    if "irc" not in config:
        logger.critical('Invalid configuration, missing section "irc"')
        raise SystemExit(-1)

    # now that we've read the config, configure with the levels defined there (but CLI option takes precedence)
    if "loggers" in config:
        configure_log_levels(options.log_level, config["loggers"])

    if options.daemon:
        daemonize()

    try:
        status = asyncio.run(start_daemon(config))
    except KeyboardInterrupt:
        return

    if status:
        raise SystemExit(status)


def parse_ctl_args(argv: Sequence[str] | None) -> argparse.Namespace:
    """Parse and return the parsed command line arguments of the control client."""
    parser = argparse.ArgumentParser(
        prog="ircctl",
        description="Send a command to a running irccd",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--socket", "-s", type=pathlib.Path, default=DEFAULT_SOCKET, help="Path to the control socket")
    parser.add_argument("--record-size", type=int, default=RECORD_SIZE, help="Size of a control record")
    actions = [action.name.lower() for action in Action if action != Action.UNKNOWN]
    parser.add_argument("action", help=f"Action to perform, by name ({', '.join(actions)}) or by code")
    parser.add_argument("payload", nargs="*", help="Action argument, e.g. a channel or a message")
    return parser.parse_args(argv)


def ctl(argv: Sequence[str] | None = None) -> None:
    """Entry point of the control client."""
    options = parse_ctl_args(argv)

    action = Action.from_name(options.action)
    if action == Action.UNKNOWN:
        print(f"ircctl: unknown action {options.action!r}", file=sys.stderr)
        raise SystemExit(2)

    record = ControlRecord(action, " ".join(options.payload))
    try:
        asyncio.run(send_record(options.socket, record, options.record_size))
    except RecordError as exc:
        print(f"ircctl: {exc}", file=sys.stderr)
        raise SystemExit(2) from exc
    except OSError as exc:
        print(f"ircctl: cannot reach irccd at {options.socket}: {exc.strerror}", file=sys.stderr)
        raise SystemExit(1) from exc
