"""
Fetch-Hash-Compare Task for MongoDB Diff Reconciliation

Streams one work unit from both clusters, reduces every document to its
key, content digest and size, and computes the symmetric difference of
the two sides.
"""

import hashlib
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import bson
from bson.codec_options import CodecOptions
from bson.errors import InvalidBSON
from bson.raw_bson import RawBSONDocument
from pymongo.errors import PyMongoError

from mongodiff.reconciliation.context import RunContext
from mongodiff.reconciliation.partition import ChunkBounds, Namespace, Partition, UnitKind

logger = logging.getLogger(__name__)

RAW_CODEC_OPTIONS = CodecOptions(document_class=RawBSONDocument)


class DiffCancelled(Exception):
    """Raised inside a fetch loop when the run is cancelled."""
    pass


def content_digest(raw: bytes) -> str:
    """Fingerprint a document's raw BSON bytes."""
    return hashlib.md5(raw).hexdigest()


def id_key(doc_id: Any) -> bytes:
    """
    Map an _id to a key that keeps its BSON type.

    1, Int64(1), 1.0 and "1" are distinct _id values to the server and
    must stay distinct here.
    """
    return bson.encode({"_id": doc_id})


@dataclass(frozen=True)
class DiffResult:
    """
    Outcome of one work unit.

    failed_keys holds the raw _id values of every differing or one-sided
    document, in detection order and without duplicates. A result flagged
    inconclusive followed a fetch error or cancellation; its one-sided
    counts are not evidence of real mismatches.
    """

    namespace: Namespace
    kind: UnitKind
    matches: int = 0
    failed_keys: Tuple[Any, ...] = ()
    only_on_source: int = 0
    only_on_dest: int = 0
    bytes_processed: int = 0
    chunk_bounds: Optional[ChunkBounds] = None
    inconclusive: bool = False
    errors: Tuple[str, ...] = ()

    @property
    def failure_count(self) -> int:
        return len(self.failed_keys)

    @property
    def differing(self) -> int:
        return self.failure_count - self.only_on_source - self.only_on_dest

    def short_string(self) -> str:
        status = "inconclusive" if self.inconclusive else f"{self.failure_count} failures"
        return (
            f"{self.namespace} {self.kind.value}: {self.matches} matches, "
            f"{status}, {self.bytes_processed} bytes"
        )


@dataclass
class FetchedSide:
    """Digests of one side of a work unit, keyed by id_key(_id)."""

    digests: Dict[bytes, str] = field(default_factory=dict)
    ids: Dict[bytes, Any] = field(default_factory=dict)
    num_bytes: int = 0
    error: Optional[str] = None


def symmetric_difference(
    source_digests: Dict[Any, str],
    dest_digests: Dict[Any, str]
) -> Tuple[List[Any], List[Any], List[Any]]:
    """
    Split the keys of two key -> digest maps by outcome.

    Args:
        source_digests: Source side mapping
        dest_digests: Destination side mapping

    Returns:
        (differing, only_on_source, only_on_dest) key lists
    """
    differing = []
    only_on_source = []

    for key, digest in source_digests.items():
        dest_digest = dest_digests.get(key)
        if dest_digest is None:
            only_on_source.append(key)
        elif dest_digest != digest:
            differing.append(key)

    only_on_dest = [key for key in dest_digests if key not in source_digests]

    return differing, only_on_source, only_on_dest


class DiffTask:
    """
    Verifies one work unit end to end.

    The task is read-only on both clusters. Fetch errors are logged and
    make the result inconclusive; nothing is retried here.
    """

    SOURCE = "source"
    DEST = "dest"

    def __init__(self, partition: Partition, source_client, dest_client, context: RunContext):
        """
        Initialize the task.

        Args:
            partition: Work unit to verify
            source_client: pymongo MongoClient for the source cluster
            dest_client: pymongo MongoClient for the destination cluster
            context: Run handles (batch size, cancellation, metrics)
        """
        self.partition = partition
        self.source_client = source_client
        self.dest_client = dest_client
        self.context = context

    def __call__(self) -> DiffResult:
        start = time.monotonic()
        result = self.fetch_and_compare()
        duration = time.monotonic() - start

        if self.context.metrics is not None:
            self.context.metrics.observe_task_duration(str(self.partition.namespace), duration)

        logger.debug(
            f"Thread [{threading.current_thread().name}] completed a task "
            f"in {duration * 1000:.0f} ms :: {result.short_string()}"
        )
        return result

    def fetch_and_compare(self) -> DiffResult:
        p = self.partition
        logger.debug(f"Thread [{threading.current_thread().name}] started fetch/compare for {p}")

        source = self.fetch_docs(self.source_client, self.SOURCE)
        dest = self.fetch_docs(self.dest_client, self.DEST)

        compare_start = time.monotonic()
        differing, only_on_source, only_on_dest = symmetric_difference(source.digests, dest.digests)

        failed_keys: Dict[bytes, Any] = {}
        for key in differing + only_on_source:
            failed_keys.setdefault(key, source.ids[key])
        for key in only_on_dest:
            failed_keys.setdefault(key, dest.ids[key])

        errors = tuple(side.error for side in (source, dest) if side.error)

        result = DiffResult(
            namespace=p.namespace,
            kind=p.kind,
            matches=len(source.digests) - (len(differing) + len(only_on_source)),
            failed_keys=tuple(failed_keys.values()),
            only_on_source=len(only_on_source),
            only_on_dest=len(only_on_dest),
            # Upper-bound proxy for bytes verified, not total I/O
            bytes_processed=max(source.num_bytes, dest.num_bytes),
            chunk_bounds=p.reported_bounds(),
            inconclusive=bool(errors),
            errors=errors
        )

        logger.debug(
            f"Thread [{threading.current_thread().name}] computed diff for {p} "
            f"in {(time.monotonic() - compare_start) * 1000:.0f} ms"
        )
        return result

    def fetch_docs(self, client, side: str) -> FetchedSide:
        """
        Stream the unit from one cluster and digest every document.

        On a fetch error or cancellation the side's map is cleared and the
        error recorded.

        Args:
            client: MongoClient for the side
            side: "source" or "dest", for logging

        Returns:
            FetchedSide with digests, raw ids and byte count
        """
        p = self.partition
        fetched = FetchedSide()
        fetch_start = time.monotonic()
        logger.debug(f"Thread [{threading.current_thread().name}] started fetching docs for {p} from {side}")

        coll = client[p.namespace.database_name].get_collection(
            p.namespace.collection_name,
            codec_options=RAW_CODEC_OPTIONS
        )

        try:
            with coll.find(batch_size=self.context.batch_size, **p.query()) as cursor:
                for doc in cursor:
                    if self.context.cancelled:
                        raise DiffCancelled(f"Run cancelled while fetching {p} from {side}")
                    raw = doc.raw
                    doc_id = doc["_id"]
                    key = id_key(doc_id)
                    fetched.num_bytes += len(raw)
                    fetched.digests[key] = content_digest(raw)
                    fetched.ids[key] = doc_id
        except (PyMongoError, InvalidBSON, DiffCancelled) as e:
            logger.error(
                f"Thread [{threading.current_thread().name}] encountered an error "
                f"fetching docs for {p} from {side}: {e}"
            )
            fetched.digests.clear()
            fetched.ids.clear()
            fetched.error = f"{side}: {e}"
            return fetched

        logger.debug(
            f"Thread [{threading.current_thread().name}] fetched {len(fetched.digests)} docs "
            f"from {side} for {p} in {(time.monotonic() - fetch_start) * 1000:.0f} ms"
        )
        return fetched

    def crashed_result(self, exc: BaseException) -> DiffResult:
        """Result standing in for a task that raised unexpectedly."""
        p = self.partition
        return DiffResult(
            namespace=p.namespace,
            kind=p.kind,
            chunk_bounds=p.reported_bounds(),
            inconclusive=True,
            errors=(f"task crashed: {exc!r}",)
        )

    def __str__(self) -> str:
        return f"DiffTask({self.partition})"
