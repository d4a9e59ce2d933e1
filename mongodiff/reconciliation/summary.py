"""
Diff Summary Aggregator

Thread-safe running counters for a diff run, with human-readable
progress and completion reports.
"""

import logging
import threading
import time
from typing import Any, Dict, Optional

from mongodiff.monitoring.metrics import DiffMetrics

logger = logging.getLogger(__name__)


def _percent(done: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return round(done / total * 100.0, 1)


def _format_bytes(num_bytes: int) -> str:
    value = float(num_bytes)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024.0:
            return f"{value:.1f} {unit}"
        value /= 1024.0
    return f"{value:.1f} TB"


class DiffSummary:
    """
    Process-wide aggregate of diff results.

    Created once per run. Workers fold results in concurrently through
    record_result(); the status reporter and the final report only read.
    Counters never decrease.
    """

    def __init__(
        self,
        total_chunks: int = 0,
        total_docs: int = 0,
        total_size: int = 0,
        metrics: Optional[DiffMetrics] = None
    ):
        """
        Initialize the summary.

        Args:
            total_chunks: Number of work units submitted
            total_docs: Estimated document count across all namespaces
            total_size: Estimated data size in bytes
            metrics: Optional prometheus metrics to mirror counters into
        """
        self.total_chunks = total_chunks
        self.total_docs = total_docs
        self.total_size = total_size
        self.metrics = metrics
        self.start_time = time.monotonic()

        self._lock = threading.Lock()
        self.processed_docs = 0
        self.successful_docs = 0
        self.failed_docs = 0
        self.processed_chunks = 0
        self.successful_chunks = 0
        self.failed_chunks = 0
        self.inconclusive_chunks = 0
        self.source_only = 0
        self.dest_only = 0
        self.processed_bytes = 0

        logger.debug(
            f"Initialized DiffSummary: {total_chunks} chunks, "
            f"{total_docs} docs, {total_size} bytes estimated"
        )

    def record_result(self, result) -> None:
        """
        Fold one DiffResult into the counters.

        Args:
            result: Completed DiffResult
        """
        failures = result.failure_count

        with self._lock:
            self.processed_docs += result.matches + failures
            self.successful_docs += result.matches
            self.failed_docs += failures
            self.processed_chunks += 1
            if result.inconclusive:
                self.inconclusive_chunks += 1
            if failures > 0 or result.inconclusive:
                self.failed_chunks += 1
            else:
                self.successful_chunks += 1
            self.source_only += result.only_on_source
            self.dest_only += result.only_on_dest
            self.processed_bytes += result.bytes_processed
            processed_chunks = self.processed_chunks

        if self.metrics is not None:
            self.metrics.record_result(result)
            if self.total_chunks:
                self.metrics.update_progress(processed_chunks / self.total_chunks)

    def elapsed_seconds(self) -> float:
        return time.monotonic() - self.start_time

    def snapshot(self) -> Dict[str, Any]:
        """Return a consistent copy of all counters."""
        with self._lock:
            return {
                "total_chunks": self.total_chunks,
                "total_docs": self.total_docs,
                "total_size": self.total_size,
                "processed_docs": self.processed_docs,
                "successful_docs": self.successful_docs,
                "failed_docs": self.failed_docs,
                "processed_chunks": self.processed_chunks,
                "successful_chunks": self.successful_chunks,
                "failed_chunks": self.failed_chunks,
                "inconclusive_chunks": self.inconclusive_chunks,
                "source_only": self.source_only,
                "dest_only": self.dest_only,
                "processed_bytes": self.processed_bytes,
                "elapsed_seconds": round(self.elapsed_seconds(), 1),
            }

    def get_summary(self, final: bool = False) -> str:
        """
        Render the counters as a report line.

        Args:
            final: Append the completion banner

        Returns:
            Human-readable summary
        """
        s = self.snapshot()

        lines = [
            f"{s['processed_chunks']}/{s['total_chunks']} chunks "
            f"({_percent(s['processed_chunks'], s['total_chunks'])}%) "
            f"[{s['successful_chunks']} ok, {s['failed_chunks']} failed, "
            f"{s['inconclusive_chunks']} inconclusive]",
            f"{s['processed_docs']}/{s['total_docs']} docs "
            f"({_percent(s['processed_docs'], s['total_docs'])}%) "
            f"[{s['successful_docs']} matched, {s['failed_docs']} failed: "
            f"{s['source_only']} only on source, {s['dest_only']} only on dest]",
            f"{_format_bytes(s['processed_bytes'])}/{_format_bytes(s['total_size'])} processed "
            f"({_percent(s['processed_bytes'], s['total_size'])}%), "
            f"elapsed {s['elapsed_seconds']}s",
        ]

        if final:
            banner = "=" * 30 + " DIFF COMPLETE " + "=" * 30
            return "\n".join([banner] + lines + ["=" * len(banner)])

        return " | ".join(lines)
