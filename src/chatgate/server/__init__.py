"""HTTP/event surface and Prometheus metrics."""

from chatgate.server.app import create_gateway_app, start_server, stop_server
from chatgate.server.exporter import MetricsExporter

__all__ = [
    "MetricsExporter",
    "create_gateway_app",
    "start_server",
    "stop_server",
]
