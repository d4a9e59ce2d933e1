"""
Diff Runner for MongoDB Migration Verification

Turns the source topology into work units, runs one fetch-hash-compare
task per unit on the scheduler, folds results into the run summary and
records failed units in the status store.
"""

import logging
from typing import List, Optional

from bson.errors import InvalidDocument
from pymongo.errors import PyMongoError

from mongodiff.monitoring.metrics import DiffMetrics
from mongodiff.reconciliation.context import RunContext
from mongodiff.reconciliation.differ import DiffResult, DiffTask
from mongodiff.reconciliation.partition import Namespace, Partition
from mongodiff.reconciliation.retry import StatusStore
from mongodiff.reconciliation.scheduler import DiffScheduler, StatusReporter
from mongodiff.reconciliation.summary import DiffSummary
from mongodiff.reconciliation.topology import TopologyProvider
from mongodiff.utils.config import DiffConfig
from mongodiff.utils.correlation import RunIdContext

logger = logging.getLogger(__name__)


class DiffRunner:
    """Runs one diff pass over every selected namespace."""

    def __init__(
        self,
        config: DiffConfig,
        source_client,
        dest_client,
        topology: TopologyProvider,
        status_store: Optional[StatusStore] = None,
        metrics: Optional[DiffMetrics] = None
    ):
        """
        Initialize the runner.

        Args:
            config: Run configuration
            source_client: MongoClient for the source cluster
            dest_client: MongoClient for the destination cluster
            topology: Provider of namespaces, chunks and size estimates
            status_store: Where failed units are recorded (skipped if None)
            metrics: Optional prometheus metrics
        """
        self.config = config
        self.source_client = source_client
        self.dest_client = dest_client
        self.topology = topology
        self.status_store = status_store
        self.metrics = metrics
        self.context: Optional[RunContext] = None
        self.results: List[DiffResult] = []
        self.store_error: Optional[str] = None

        self.total_docs = 0
        self.total_size = 0

    def build_partitions(self) -> List[Partition]:
        """
        Build one work unit per chunk of each sharded collection and one
        whole-collection unit per unsharded collection.
        """
        include = [Namespace.parse(ns) for ns in self.config.include_namespaces]
        partitions = []
        sharded, unsharded = [], []
        self.total_docs = 0
        self.total_size = 0

        for ns in self.topology.list_namespaces(include):
            count, size = self.topology.collection_stats(ns)
            self.total_docs += count
            self.total_size += size

            chunks = self.topology.chunks(ns) if self.topology.is_sharded(ns) else []
            if chunks:
                sharded.append(str(ns))
                per_chunk = count // len(chunks)
                key_pattern = self.topology.shard_key(ns)
                partitions.extend(
                    Partition.from_chunk(ns, chunk, per_chunk, key_pattern=key_pattern) for chunk in chunks
                )
            else:
                unsharded.append(str(ns))
                partitions.append(Partition.whole_collection(ns, count))

        logger.info(f"ShardedColls:[{', '.join(sharded)}]")
        logger.info(f"UnshardedColls:[{', '.join(unsharded)}]")
        return partitions

    def run(self) -> DiffSummary:
        """
        Verify every work unit and return the final summary.

        Mismatches are a normal outcome; only a saturated scheduler or a
        topology error stops the run. A status store failure is logged and
        kept in store_error.
        """
        partitions = self.build_partitions()
        summary = DiffSummary(len(partitions), self.total_docs, self.total_size, metrics=self.metrics)

        with RunIdContext() as run_id:
            self.context = RunContext(
                summary=summary,
                run_id=run_id,
                batch_size=self.config.batch_size,
                metrics=self.metrics
            )
            if self.metrics is not None:
                self.metrics.set_run_info(run_id, "diff")

            logger.info(f"Starting diff run {run_id}: {len(partitions)} work units")
            self.results = self._execute(partitions)

        if self.status_store is not None:
            try:
                self.status_store.record_failures(self.results, run_id=self.context.run_id)
            except (PyMongoError, InvalidDocument) as e:
                self.store_error = str(e)
                logger.error(f"Failed to record failed work units in status store: {e}")

        logger.info(summary.get_summary(True))
        return summary

    def _execute(self, partitions: List[Partition]) -> List[DiffResult]:
        scheduler = DiffScheduler(
            workers=self.config.threads,
            queue_capacity=max(len(partitions), 1),
            submit_timeout=self.config.submit_timeout
        )
        reporter = StatusReporter(self.context.summary, interval=self.config.report_interval)
        results = []

        with reporter, scheduler:
            for partition in partitions:
                task = DiffTask(partition, self.source_client, self.dest_client, self.context)
                scheduler.submit(task)
                logger.debug(f"Submitted {task}")

            for result in scheduler.as_completed():
                self.context.summary.record_result(result)
                results.append(result)
                if result.inconclusive:
                    logger.warning(f"Inconclusive result for {result.namespace}: {'; '.join(result.errors)}")
                else:
                    logger.debug(f"Got result {result.short_string()}")

        return results

    def cancel(self) -> None:
        """Ask in-flight fetch loops to stop; their results become inconclusive."""
        if self.context is not None:
            logger.warning("Cancelling diff run")
            self.context.cancel.set()
