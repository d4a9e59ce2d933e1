"""
Retry Subsystem for MongoDB Diff Reconciliation

Persists failed keys per work unit to a status store, and re-verifies
them later by fetching each document by _id from both clusters and
classifying the difference at full fidelity.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple

import bson
from bson.errors import InvalidBSON
from bson.raw_bson import RawBSONDocument
from pymongo.errors import PyMongoError

from mongodiff.reconciliation.comparer import ValueComparer
from mongodiff.reconciliation.differ import RAW_CODEC_OPTIONS, DiffResult, content_digest, id_key
from mongodiff.reconciliation.partition import Namespace

logger = logging.getLogger(__name__)

# Mismatch keys per status record stay well under the 16 MiB document limit
RECORD_BYTE_BUDGET = 8 * 1024 * 1024


class RetryStatus(Enum):
    """Status of a status-store record."""
    FAILED = "FAILED"
    INCONCLUSIVE = "INCONCLUSIVE"
    RESOLVED = "RESOLVED"
    CONFIRMED = "CONFIRMED"


class RetryOutcome(Enum):
    """Classification of one re-verified key."""
    MATCH = "match"
    ONLY_ON_SOURCE = "only_on_source"
    ONLY_ON_DEST = "only_on_dest"
    MISSING_BOTH = "missing_both"
    SIZE_MISMATCH = "size_mismatch"
    EQUAL_CONTENT_BYTE_MISMATCH = "equal_content_byte_mismatch"
    CONTENT_MISMATCH = "content_mismatch"


@dataclass
class RetryTask:
    """One status-store record: the failed keys of one work unit."""

    namespace: Namespace
    keys: List[Any]
    status: RetryStatus = RetryStatus.FAILED
    bounds: Optional[Dict[str, Any]] = None
    run_id: Optional[str] = None
    record_id: Any = None

    @classmethod
    def from_result(cls, result: DiffResult, run_id: Optional[str] = None) -> "RetryTask":
        status = RetryStatus.INCONCLUSIVE if result.inconclusive else RetryStatus.FAILED
        return cls(
            namespace=result.namespace,
            keys=list(result.failed_keys),
            status=status,
            bounds=result.chunk_bounds.to_doc() if result.chunk_bounds else None,
            run_id=run_id
        )

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "RetryTask":
        """
        Parse a status-store record.

        Mismatch entries are {"key": <_id>}; bare values are accepted as keys.
        """
        keys = []
        for mismatch in doc.get("mismatches", []):
            if isinstance(mismatch, dict) and "key" in mismatch:
                keys.append(mismatch["key"])
            else:
                keys.append(mismatch)

        return cls(
            namespace=Namespace(doc["db"], doc["coll"]),
            keys=keys,
            status=RetryStatus(doc["status"]),
            bounds=doc.get("bounds"),
            run_id=doc.get("run_id"),
            record_id=doc.get("_id")
        )

    def to_doc(self) -> Dict[str, Any]:
        doc = {
            "db": self.namespace.database_name,
            "coll": self.namespace.collection_name,
            "status": self.status.value,
            "mismatches": [{"key": key} for key in self.keys],
            "run_id": self.run_id,
            "updated_at": datetime.now(timezone.utc),
        }
        if self.bounds is not None:
            doc["bounds"] = self.bounds
        return doc

    def split(self, max_bytes: int = RECORD_BYTE_BUDGET) -> List["RetryTask"]:
        """
        Split into records whose mismatch lists each encode to at most
        max_bytes. A single key larger than max_bytes gets a record alone.
        """
        parts: List[RetryTask] = []
        batch: List[Any] = []
        size = 0

        for key in self.keys:
            key_size = len(bson.encode({"key": key}))
            if batch and size + key_size > max_bytes:
                parts.append(replace(self, keys=batch))
                batch, size = [], 0
            batch.append(key)
            size += key_size

        if batch or not parts:
            parts.append(replace(self, keys=batch))
        return parts


class StatusStore:
    """
    Durable record of failed work units, backed by a MongoDB collection.

    Records are written once per failed unit, split into several records
    when the unit's keys would not fit in one document. Records may be
    re-marked, never deleted.
    """

    def __init__(self, collection, max_record_bytes: int = RECORD_BYTE_BUDGET):
        """
        Initialize the store.

        Args:
            collection: pymongo Collection holding status records
            max_record_bytes: Encoded size limit of one record's mismatch keys
        """
        self.collection = collection
        self.max_record_bytes = max_record_bytes
        logger.debug(f"Initialized StatusStore on {getattr(collection, 'full_name', collection)}")

    @classmethod
    def from_client(cls, client, db_name: str, coll_name: str) -> "StatusStore":
        return cls(client[db_name][coll_name])

    def record_failures(self, results: Iterable[DiffResult], run_id: Optional[str] = None) -> int:
        """
        Write the failed keys of every result that has any.

        Args:
            results: Completed diff results
            run_id: Run identifier stamped on each record

        Returns:
            Number of records written

        Raises:
            PyMongoError: If the insert fails
        """
        docs = []
        units = 0
        for result in results:
            if result.failure_count == 0:
                continue
            units += 1
            parts = RetryTask.from_result(result, run_id).split(self.max_record_bytes)
            if len(parts) > 1:
                logger.info(f"{result.namespace}: {result.failure_count} failed keys split over {len(parts)} records")
            docs.extend(part.to_doc() for part in parts)

        if docs:
            self.collection.insert_many(docs)

        logger.info(f"Recorded {units} failed work units in {len(docs)} status store records")
        return len(docs)

    def load(self, statuses: Iterable[RetryStatus] = (RetryStatus.FAILED,)) -> Iterator[RetryTask]:
        """Yield every record whose status is in statuses."""
        values = [status.value for status in statuses]
        for doc in self.collection.find({"status": {"$in": values}}):
            yield RetryTask.from_doc(doc)

    def mark(self, task: RetryTask, status: RetryStatus) -> None:
        """Re-mark a loaded record's status."""
        if task.record_id is None:
            raise ValueError(f"Cannot mark a record that was not loaded from the store: {task.namespace}")

        self.collection.update_one(
            {"_id": task.record_id},
            {"$set": {"status": status.value, "updated_at": datetime.now(timezone.utc)}}
        )
        task.status = status
        logger.debug(f"Marked {task.namespace} record {task.record_id} as {status.value}")


@dataclass
class RetryReport:
    """Counts of retry outcomes across all re-verified keys."""

    outcomes: Counter = field(default_factory=Counter)
    duplicates: int = 0
    records: int = 0
    errors: int = 0
    unverified_records: int = 0

    @property
    def keys_checked(self) -> int:
        return sum(self.outcomes.values())

    @property
    def still_failing(self) -> int:
        return self.keys_checked - self.outcomes[RetryOutcome.MATCH]

    def summary(self) -> str:
        parts = ", ".join(f"{outcome.value}={count}" for outcome, count in sorted(
            self.outcomes.items(), key=lambda item: item[0].value
        ))
        return (
            f"Retry complete: {self.records} records, {self.keys_checked} keys checked, "
            f"{self.still_failing} still failing, {self.duplicates} duplicate keys, "
            f"{self.errors} keys not re-verified [{parts}]"
        )


class RetryVerifier:
    """
    Re-verifies failed keys one document at a time.

    Classification only: neither cluster is ever written.
    """

    def __init__(
        self,
        source_client,
        dest_client,
        status_store: StatusStore,
        metrics=None,
        hash_fn: Callable[[bytes], str] = content_digest
    ):
        """
        Initialize the verifier.

        Args:
            source_client: MongoClient for the source cluster
            dest_client: MongoClient for the destination cluster
            status_store: Store holding failure records
            metrics: Optional DiffMetrics
            hash_fn: Content digest function
        """
        self.source_client = source_client
        self.dest_client = dest_client
        self.status_store = status_store
        self.metrics = metrics
        self.hash_fn = hash_fn
        self.comparer = ValueComparer()

    def retry(
        self,
        statuses: Iterable[RetryStatus] = (RetryStatus.FAILED,),
        mark_results: bool = True
    ) -> RetryReport:
        """
        Re-verify every key of every matching status record.

        Args:
            statuses: Record statuses to load
            mark_results: Re-mark records RESOLVED or CONFIRMED afterwards

        Returns:
            RetryReport with outcome counts
        """
        report = RetryReport()

        for task in self.status_store.load(statuses):
            report.records += 1
            logger.info(f"{task.namespace}: re-verifying {len(task.keys)} keys")
            task_failures = 0
            task_errors = 0

            for key in task.keys:
                try:
                    outcome, duplicates = self.verify_key(task.namespace, key)
                except (PyMongoError, InvalidBSON) as e:
                    logger.error(f"{task.namespace} - could not re-verify id: {key}: {e}")
                    task_errors += 1
                    continue
                report.outcomes[outcome] += 1
                report.duplicates += duplicates
                if outcome is not RetryOutcome.MATCH:
                    task_failures += 1

            report.errors += task_errors
            if task_errors:
                report.unverified_records += 1
                logger.warning(
                    f"{task.namespace}: {task_errors} keys could not be re-verified, "
                    f"record {task.record_id} stays {task.status.value}"
                )
            elif mark_results and task.record_id is not None:
                new_status = RetryStatus.CONFIRMED if task_failures else RetryStatus.RESOLVED
                self.status_store.mark(task, new_status)

        logger.info(report.summary())
        return report

    def verify_key(self, namespace: Namespace, key: Any) -> Tuple[RetryOutcome, int]:
        """
        Fetch one key from both clusters and classify it.

        Returns:
            (outcome, number of sides with duplicate documents for the key)
        """
        source_doc, source_dupe = self._fetch_one(self.source_client, namespace, key, "source")
        dest_doc, dest_dupe = self._fetch_one(self.dest_client, namespace, key, "dest")

        outcome = self.compare_documents(namespace, key, source_doc, dest_doc)

        if self.metrics is not None:
            self.metrics.record_retry_outcome(str(namespace), outcome.value)

        return outcome, int(source_dupe) + int(dest_dupe)

    def _fetch_one(self, client, namespace: Namespace, key: Any, side: str) -> Tuple[Optional[RawBSONDocument], bool]:
        coll = client[namespace.database_name].get_collection(
            namespace.collection_name,
            codec_options=RAW_CODEC_OPTIONS
        )

        # {_id: 1} also matches 1.0 and Int64(1); keep only the exact id
        wanted = id_key(key)
        with coll.find({"_id": key}) as cursor:
            docs = [doc for doc in cursor if id_key(doc["_id"]) == wanted]

        if not docs:
            logger.debug(f"{namespace}: {side} doc does not exist: {key}")
            return None, False
        if len(docs) > 1:
            logger.error(f"{namespace}: duplicate {side} documents found with same key: {key}")
            return docs[0], True
        return docs[0], False

    def compare_documents(
        self,
        namespace: Namespace,
        key: Any,
        source_doc: Optional[RawBSONDocument],
        dest_doc: Optional[RawBSONDocument]
    ) -> RetryOutcome:
        """
        Classify the difference between two fetched documents.

        Args:
            namespace: Namespace of the documents
            key: Document _id
            source_doc: Source document or None if missing
            dest_doc: Destination document or None if missing

        Returns:
            RetryOutcome
        """
        if source_doc is None and dest_doc is None:
            logger.error(f"{namespace} - doc missing on both sides, id: {key}")
            return RetryOutcome.MISSING_BOTH
        if dest_doc is None:
            logger.error(f"{namespace} - doc only exists on source, id: {key}")
            return RetryOutcome.ONLY_ON_SOURCE
        if source_doc is None:
            logger.error(f"{namespace} - doc only exists on dest, id: {key}")
            return RetryOutcome.ONLY_ON_DEST

        source_bytes = source_doc.raw
        dest_bytes = dest_doc.raw

        if len(source_bytes) != len(dest_bytes):
            logger.error(
                f"{namespace} - doc sizes not equal ({len(source_bytes)} vs {len(dest_bytes)}), id: {key}"
            )
            return RetryOutcome.SIZE_MISMATCH

        if self.hash_fn(source_bytes) == self.hash_fn(dest_bytes) and source_bytes == dest_bytes:
            logger.debug(f"{namespace} - hashes match, id: {key}")
            return RetryOutcome.MATCH

        if self.comparer.documents_equal(source_doc, dest_doc):
            logger.error(f"{namespace} - docs equal, but hash mismatch, id: {key}")
            return RetryOutcome.EQUAL_CONTENT_BYTE_MISMATCH

        fields = self.comparer.differing_fields(source_doc, dest_doc)
        logger.error(f"{namespace} - doc hash mismatch, id: {key}, differing fields: {fields}")
        return RetryOutcome.CONTENT_MISMATCH
