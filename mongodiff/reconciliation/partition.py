"""
Work-Unit Model for MongoDB Diff Reconciliation

Describes a contiguous key range of one collection to verify and builds
the find() arguments that select exactly that range.

Ranges are expressed as index bounds ($min/$max with a hint on the shard
key index) rather than $gte/$lt filters. Index bounds follow the index
order, which spans every BSON type, while comparison operators only
match values of the bound's own type. Hashed shard keys work the same
way because chunk bounds are positions in the hashed index.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from bson.max_key import MaxKey
from bson.min_key import MinKey
from bson.son import SON

from mongodiff.reconciliation.comparer import compare_values

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Namespace:
    """Immutable (database, collection) identity."""

    database_name: str
    collection_name: str

    @classmethod
    def parse(cls, full_name: str) -> "Namespace":
        """
        Build a namespace from a "db.coll" string.

        Raises:
            ValueError: If either part is missing
        """
        database_name, _, collection_name = full_name.partition(".")
        if not database_name or not collection_name:
            raise ValueError(f"Invalid namespace: {full_name!r}. Expected 'db.collection'")
        return cls(database_name, collection_name)

    def __str__(self) -> str:
        return f"{self.database_name}.{self.collection_name}"


class UnitKind(Enum):
    """Work-unit variants."""
    CHUNK = "chunk"
    PARTITION = "partition"
    WHOLE_COLLECTION = "whole_collection"


@dataclass(frozen=True)
class ChunkBounds:
    """Bounds a work unit verified, as reported in results and status records."""

    lower: Optional[Mapping[str, Any]]
    upper: Optional[Mapping[str, Any]]

    def to_doc(self) -> Dict[str, Any]:
        return {
            "min": dict(self.lower) if self.lower is not None else None,
            "max": dict(self.upper) if self.upper is not None else None,
        }


@dataclass(frozen=True)
class Partition:
    """
    One verifiable slice of a collection.

    Bounds are half-open [lower, upper) over the shard key index; None
    means unbounded on that side. key_pattern is the shard key pattern
    as (field, direction) pairs, where direction is 1 or "hashed".
    """

    namespace: Namespace
    kind: UnitKind = UnitKind.WHOLE_COLLECTION
    lower: Optional[Mapping[str, Any]] = None
    upper: Optional[Mapping[str, Any]] = None
    key_pattern: Tuple[Tuple[str, Any], ...] = (("_id", 1),)
    estimated_doc_count: int = 0

    def __post_init__(self):
        if self.lower is not None and self.upper is not None:
            if compare_values(self._key_values(self.lower), self._key_values(self.upper)) > 0:
                raise ValueError(
                    f"Invalid bounds for {self.namespace}: "
                    f"lower {dict(self.lower)} is above upper {dict(self.upper)}"
                )

    @classmethod
    def whole_collection(cls, namespace: Namespace, estimated_doc_count: int = 0) -> "Partition":
        return cls(namespace, UnitKind.WHOLE_COLLECTION, estimated_doc_count=estimated_doc_count)

    @classmethod
    def from_chunk(
        cls,
        namespace: Namespace,
        chunk: Mapping[str, Any],
        estimated_doc_count: int = 0,
        key_pattern: Optional[Mapping[str, Any]] = None
    ) -> "Partition":
        """
        Build a chunk unit from a config.chunks document.

        An all-MinKey lower bound and an all-MaxKey upper bound are stored
        as unbounded.

        Args:
            namespace: Collection the chunk belongs to
            chunk: Chunk metadata with "min" and "max" documents
            estimated_doc_count: Expected number of documents in the chunk
            key_pattern: Shard key from config.collections; an ascending
                key over the bound fields if not given

        Returns:
            Partition of kind CHUNK
        """
        lower = chunk["min"]
        upper = chunk["max"]
        if key_pattern is None:
            pattern = tuple((field, 1) for field in lower.keys())
        else:
            pattern = tuple(key_pattern.items())

        if all(isinstance(v, MinKey) for v in lower.values()):
            lower = None
        if all(isinstance(v, MaxKey) for v in upper.values()):
            upper = None

        return cls(
            namespace,
            UnitKind.CHUNK,
            lower=lower,
            upper=upper,
            key_pattern=pattern,
            estimated_doc_count=estimated_doc_count
        )

    @property
    def shard_key(self) -> Tuple[str, ...]:
        return tuple(field for field, _ in self.key_pattern)

    def _key_values(self, bound: Mapping[str, Any]) -> List[Any]:
        return [bound[field] for field in self.shard_key]

    def query(self) -> Dict[str, Any]:
        """Return the find() keyword arguments selecting lower <= key < upper."""
        return _QUERY_BUILDERS[self.kind](self)

    def to_chunk_def(self) -> ChunkBounds:
        return ChunkBounds(self.lower, self.upper)

    def reported_bounds(self) -> Optional[ChunkBounds]:
        """Bounds to attach to this unit's result, if its kind reports any."""
        return _RESULT_SHAPERS[self.kind](self)

    def __str__(self) -> str:
        if self.kind is UnitKind.WHOLE_COLLECTION:
            return f"{self.namespace} [all]"
        lower = dict(self.lower) if self.lower is not None else "-inf"
        upper = dict(self.upper) if self.upper is not None else "+inf"
        return f"{self.namespace} [{lower}, {upper})"


def _index_bound(partition: Partition, bound: Mapping[str, Any]) -> SON:
    return SON((field, bound[field]) for field in partition.shard_key)


def _bounded_query(partition: Partition) -> Dict[str, Any]:
    args: Dict[str, Any] = {"filter": {}}

    if partition.lower is not None:
        args["min"] = _index_bound(partition, partition.lower)
    if partition.upper is not None:
        args["max"] = _index_bound(partition, partition.upper)

    # min/max are only honoured together with a hint on the matching index
    if "min" in args or "max" in args:
        args["hint"] = list(partition.key_pattern)
    return args


def _whole_collection_query(partition: Partition) -> Dict[str, Any]:
    return {"filter": {}}


_QUERY_BUILDERS: Dict[UnitKind, Callable[[Partition], Dict[str, Any]]] = {
    UnitKind.CHUNK: _bounded_query,
    UnitKind.PARTITION: _bounded_query,
    UnitKind.WHOLE_COLLECTION: _whole_collection_query,
}

_RESULT_SHAPERS: Dict[UnitKind, Callable[[Partition], Optional[ChunkBounds]]] = {
    UnitKind.CHUNK: Partition.to_chunk_def,
    UnitKind.PARTITION: Partition.to_chunk_def,
    UnitKind.WHOLE_COLLECTION: lambda partition: None,
}
