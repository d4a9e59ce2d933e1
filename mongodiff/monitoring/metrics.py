"""
Prometheus Metrics for MongoDB Diff Runs

Counters and gauges tracking diff progress, mismatches and retry
outcomes. Exposed over HTTP for Prometheus scraping when a port is
configured.
"""

import logging
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, Info, start_http_server

logger = logging.getLogger(__name__)


class DiffMetrics:
    """Prometheus metrics for diff and retry runs."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        """
        Initialize diff metrics.

        Args:
            registry: Prometheus registry (a fresh one if not provided)
        """
        self.registry = registry or CollectorRegistry()

        # Documents by outcome
        self.documents_total = Counter(
            'mongodiff_documents_total',
            'Documents compared, by outcome',
            ['namespace', 'outcome'],
            registry=self.registry
        )

        # One-sided documents
        self.one_sided_total = Counter(
            'mongodiff_one_sided_documents_total',
            'Documents present on only one cluster',
            ['namespace', 'side'],
            registry=self.registry
        )

        self.chunks_total = Counter(
            'mongodiff_chunks_total',
            'Work units completed, by outcome',
            ['namespace', 'outcome'],
            registry=self.registry
        )

        self.bytes_processed_total = Counter(
            'mongodiff_bytes_processed_total',
            'Bytes verified (max of source and destination per unit)',
            ['namespace'],
            registry=self.registry
        )

        # Task duration
        self.task_duration_seconds = Histogram(
            'mongodiff_task_duration_seconds',
            'Duration of one fetch-hash-compare task in seconds',
            ['namespace'],
            buckets=[0.1, 0.5, 1, 5, 10, 30, 60, 120, 300, 600],
            registry=self.registry
        )

        self.run_progress_ratio = Gauge(
            'mongodiff_run_progress_ratio',
            'Fraction of work units completed in the current run',
            registry=self.registry
        )

        self.retry_outcomes_total = Counter(
            'mongodiff_retry_outcomes_total',
            'Re-verified keys, by classification',
            ['namespace', 'outcome'],
            registry=self.registry
        )

        self.run_info = Info(
            'mongodiff_run',
            'Diff run information',
            registry=self.registry
        )

        logger.info("DiffMetrics initialized")

    def record_result(self, result) -> None:
        """
        Record one completed work unit.

        Args:
            result: DiffResult of the unit
        """
        namespace = str(result.namespace)

        self.documents_total.labels(namespace=namespace, outcome='match').inc(result.matches)
        self.documents_total.labels(namespace=namespace, outcome='failed').inc(result.failure_count)
        self.one_sided_total.labels(namespace=namespace, side='source').inc(result.only_on_source)
        self.one_sided_total.labels(namespace=namespace, side='dest').inc(result.only_on_dest)
        self.bytes_processed_total.labels(namespace=namespace).inc(result.bytes_processed)

        if result.inconclusive:
            outcome = 'inconclusive'
        elif result.failure_count:
            outcome = 'failed'
        else:
            outcome = 'success'
        self.chunks_total.labels(namespace=namespace, outcome=outcome).inc()

    def observe_task_duration(self, namespace: str, duration_seconds: float) -> None:
        """Record how long one task took."""
        self.task_duration_seconds.labels(namespace=namespace).observe(duration_seconds)

    def update_progress(self, ratio: float) -> None:
        self.run_progress_ratio.set(ratio)

    def record_retry_outcome(self, namespace: str, outcome: str) -> None:
        """Record the classification of one re-verified key."""
        self.retry_outcomes_total.labels(namespace=namespace, outcome=outcome).inc()

    def set_run_info(self, run_id: str, mode: str) -> None:
        self.run_info.info({'run_id': run_id, 'mode': mode})

    def start_server(self, port: int) -> None:
        """Start the Prometheus metrics HTTP server."""
        try:
            start_http_server(port, registry=self.registry)
            logger.info(f"Metrics server started on port {port}")
        except OSError as e:
            if "Address already in use" in str(e):
                logger.warning(f"Metrics server already running on port {port}")
            else:
                raise
