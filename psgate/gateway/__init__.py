"""HTTP surface."""

from psgate.gateway.server import MetricsServer

__all__ = ["MetricsServer"]
