"""
Run Context for MongoDB Diff Reconciliation

Bundles the per-run handles every component receives at construction.
"""

import threading
from dataclasses import dataclass, field
from typing import Optional

from mongodiff.monitoring.metrics import DiffMetrics
from mongodiff.reconciliation.summary import DiffSummary
from mongodiff.utils.correlation import generate_run_id


@dataclass
class RunContext:
    """
    Shared handles for one diff or retry run.

    Attributes:
        summary: Run-wide counters, the only state mutated by several workers
        run_id: Identifier stamped on log lines and status records
        batch_size: Cursor batch size for every fetch
        cancel: Set to stop in-flight fetch loops
        metrics: Optional prometheus metrics
    """

    summary: DiffSummary
    run_id: str = field(default_factory=generate_run_id)
    batch_size: int = 10000
    cancel: threading.Event = field(default_factory=threading.Event)
    metrics: Optional[DiffMetrics] = None

    @property
    def cancelled(self) -> bool:
        return self.cancel.is_set()
