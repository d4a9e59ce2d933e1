"""
Topology Provider for MongoDB Diff Reconciliation

Interface to the cluster metadata a diff run needs: which collections to
verify, which are sharded, their chunk boundaries and size estimates.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pymongo.errors import OperationFailure

from mongodiff.reconciliation.partition import Namespace

logger = logging.getLogger(__name__)

SYSTEM_DATABASES = ("admin", "config", "local")


class TopologyProvider(ABC):
    """Source-cluster metadata consumed by the diff runner."""

    @abstractmethod
    def list_namespaces(self, include: Optional[Iterable[Namespace]] = None) -> List[Namespace]:
        """Return the namespaces to verify, restricted to include when given."""

    @abstractmethod
    def is_sharded(self, namespace: Namespace) -> bool:
        """Return True if the collection is sharded."""

    @abstractmethod
    def chunks(self, namespace: Namespace) -> List[Dict[str, Any]]:
        """Return chunk documents with "min" and "max" bounds, in key order."""

    @abstractmethod
    def collection_stats(self, namespace: Namespace) -> Tuple[int, int]:
        """Return (estimated document count, data size in bytes)."""

    def shard_key(self, namespace: Namespace) -> Optional[Dict[str, Any]]:
        """Return the shard key pattern, or None to use the chunk bound fields ascending."""
        return None


class MongoTopology(TopologyProvider):
    """
    Reads topology from a source cluster's config database.

    Works against a mongos; against a replica set every collection is
    reported unsharded.
    """

    def __init__(self, client):
        """
        Initialize the provider.

        Args:
            client: MongoClient connected to the source cluster
        """
        self.client = client
        self._sharded: Optional[Dict[str, Dict[str, Any]]] = None

    def _sharded_collections(self) -> Dict[str, Dict[str, Any]]:
        if self._sharded is None:
            self._sharded = {
                doc["_id"]: doc
                for doc in self.client["config"]["collections"].find({"dropped": {"$ne": True}})
            }
            logger.info(f"Found {len(self._sharded)} sharded collections")
        return self._sharded

    def list_namespaces(self, include: Optional[Iterable[Namespace]] = None) -> List[Namespace]:
        if include:
            return list(include)

        namespaces = []
        for db_name in self.client.list_database_names():
            if db_name in SYSTEM_DATABASES:
                continue
            for coll_name in self.client[db_name].list_collection_names():
                if not coll_name.startswith("system."):
                    namespaces.append(Namespace(db_name, coll_name))
        return namespaces

    def is_sharded(self, namespace: Namespace) -> bool:
        return str(namespace) in self._sharded_collections()

    def chunks(self, namespace: Namespace) -> List[Dict[str, Any]]:
        meta = self._sharded_collections().get(str(namespace))
        if meta is None:
            return []

        # Chunks reference their collection by uuid since 5.0, by ns before
        if "uuid" in meta:
            query = {"uuid": meta["uuid"]}
        else:
            query = {"ns": str(namespace)}

        chunks = list(self.client["config"]["chunks"].find(query).sort("min", 1))
        logger.debug(f"Loaded {len(chunks)} chunks for {namespace}")
        return chunks

    def shard_key(self, namespace: Namespace) -> Optional[Dict[str, Any]]:
        meta = self._sharded_collections().get(str(namespace))
        return meta.get("key") if meta is not None else None

    def collection_stats(self, namespace: Namespace) -> Tuple[int, int]:
        db = self.client[namespace.database_name]
        try:
            stats = db.command("collStats", namespace.collection_name)
        except OperationFailure as e:
            logger.warning(f"collStats failed for {namespace}: {e}")
            count = db[namespace.collection_name].estimated_document_count()
            return count, 0
        return stats.get("count", 0), stats.get("size", 0)
