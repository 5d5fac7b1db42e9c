"""Prometheus instrumentation component.

Defines the application-level metrics collected by the daemon. Each daemon
instance gets its own registry, that can then be exposed on a
Prometheus/OpenMetrics-compatible /metrics endpoint.
"""

# SPDX-FileCopyrightText: Faidon Liambotis
# SPDX-FileCopyrightText: Wikimedia Foundation
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import configparser
from typing import Any, Union

import prometheus_client
import structlog
from prometheus_client import Counter, Gauge

logger = structlog.get_logger()

Metrics = dict[str, Union[Counter, Gauge]]


def build_metrics(registry: prometheus_client.CollectorRegistry | None = None) -> Metrics:
    """Create the set of daemon metrics, registered in the given (or a new) registry."""
    if registry is None:
        registry = prometheus_client.CollectorRegistry()

    return {
        "lines_sent": Counter("irccd_lines_sent", "Count of lines sent to the server", registry=registry),
        "lines_received": Counter("irccd_lines_received", "Count of lines received from the server", registry=registry),
        "keepalives": Counter("irccd_keepalives", "Count of keepalive requests answered", registry=registry),
        "reader_failures": Counter("irccd_reader_failures", "Count of failed server reads", registry=registry),
        "records": Counter("irccd_records", "Count of control records processed", ["action"], registry=registry),
        "errors": Counter("irccd_errors", "Count of errors and exceptions", ["type"], registry=registry),
        "channels": Gauge("irccd_channels", "Number of joined channels", registry=registry),
        "connected": Gauge("irccd_connected", "Whether the daemon is connected to a server", registry=registry),
    }


def serve_metrics(config: configparser.SectionProxy, registry: prometheus_client.CollectorRegistry) -> Any:
    """Expose the registry over HTTP, in a background thread."""
    listen_address = config.get("listen_address", fallback="::")
    listen_port = config.getint("listen_port", fallback=9200)
    server = prometheus_client.start_http_server(listen_port, listen_address, registry=registry)
    logger.info("Listening for Prometheus HTTP", listen_address=listen_address, listen_port=listen_port)
    return server
