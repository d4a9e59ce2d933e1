"""
Reconciliation Module for MongoDB Migration Verification

This module verifies that a destination cluster holds exactly the documents
of a source cluster after a bulk migration.

Main components:
- comparer: MongoDB total-order value comparison
- partition: Work units and their boundary queries
- differ: Fetch-hash-compare task per work unit
- scheduler: Bounded worker pool and status reporter
- summary: Run-wide progress counters
- retry: Status store and targeted re-verification
- runner: Orchestration of a full diff pass

Usage:
    from mongodiff.reconciliation import DiffRunner, MongoTopology, StatusStore

    runner = DiffRunner(config, source_client, dest_client, MongoTopology(source_client),
                        status_store=StatusStore(status_client["mongodiff"]["diff_status"]))
    summary = runner.run()

    verifier = RetryVerifier(source_client, dest_client, status_store)
    report = verifier.retry()
"""

from mongodiff.reconciliation.comparer import (
    UnsupportedValueError,
    ValueComparer,
    compare_values,
    structurally_equal,
)
from mongodiff.reconciliation.differ import DiffResult, DiffTask
from mongodiff.reconciliation.partition import ChunkBounds, Namespace, Partition, UnitKind
from mongodiff.reconciliation.retry import RetryOutcome, RetryStatus, RetryVerifier, StatusStore
from mongodiff.reconciliation.runner import DiffRunner
from mongodiff.reconciliation.scheduler import DiffScheduler, SchedulerSaturatedError, StatusReporter
from mongodiff.reconciliation.summary import DiffSummary
from mongodiff.reconciliation.topology import MongoTopology, TopologyProvider

__all__ = [
    "UnsupportedValueError",
    "ValueComparer",
    "compare_values",
    "structurally_equal",
    "DiffResult",
    "DiffTask",
    "ChunkBounds",
    "Namespace",
    "Partition",
    "UnitKind",
    "RetryOutcome",
    "RetryStatus",
    "RetryVerifier",
    "StatusStore",
    "DiffRunner",
    "DiffScheduler",
    "SchedulerSaturatedError",
    "StatusReporter",
    "DiffSummary",
    "MongoTopology",
    "TopologyProvider",
]
