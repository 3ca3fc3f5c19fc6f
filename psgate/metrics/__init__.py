"""Execution metrics."""

from psgate.metrics.registry import ExecutionRecord, MetricsRegistry

__all__ = ["ExecutionRecord", "MetricsRegistry"]
