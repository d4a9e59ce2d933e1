"""
Monitoring Module for MongoDB Diff

Prometheus metrics for diff and retry runs.

Usage:
    from mongodiff.monitoring import DiffMetrics

    metrics = DiffMetrics()
    metrics.start_server(9090)
"""

from mongodiff.monitoring.metrics import DiffMetrics

__all__ = [
    "DiffMetrics",
]
