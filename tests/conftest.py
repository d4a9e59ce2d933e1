"""
Pytest configuration and shared fixtures.

Provides in-memory stand-ins for pymongo clients so the diff engine can be
exercised without running clusters. Documents are stored decoded and
re-encoded with bson on every read, so raw bytes, digests and sizes behave
as they would against a real server.

Query semantics follow the server where the engine depends on them:
comparison operators only match values in the operand's type bracket,
while min/max index bounds walk the index in full BSON order.
"""

import copy
import hashlib
import logging

import bson
import pytest
from bson.int64 import Int64
from bson.objectid import ObjectId
from bson.raw_bson import RawBSONDocument
from pymongo.errors import AutoReconnect, DocumentTooLarge, OperationFailure

from mongodiff.reconciliation.comparer import compare_values, kind_of, sort_key, structurally_equal

MAX_BSON_SIZE = 16 * 1024 * 1024


def hashed_value(value):
    """Stand-in for the server's hashed index function: a signed 64-bit integer."""
    digest = hashlib.md5(bson.encode({"": value})).digest()
    return Int64(int.from_bytes(digest[:8], "little", signed=True))


def _matches_condition(value, condition):
    if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
        for op, operand in condition.items():
            if op == "$in":
                if not any(structurally_equal(value, item) for item in operand):
                    return False
                continue
            if op == "$ne":
                if value is not None and structurally_equal(value, operand):
                    return False
                continue
            if kind_of(value).bracket is not kind_of(operand).bracket:
                return False
            result = compare_values(value, operand)
            if op == "$gte" and result < 0:
                return False
            if op == "$gt" and result <= 0:
                return False
            if op == "$lt" and result >= 0:
                return False
            if op == "$lte" and result > 0:
                return False
        return True
    return value is not None and structurally_equal(value, condition)


def matches_filter(doc, query):
    """Evaluate the subset of query operators the engine emits."""
    for field, condition in (query or {}).items():
        if not _matches_condition(doc.get(field), condition):
            return False
    return True


def index_entry(doc, key_pattern):
    """Index key of doc under key_pattern; missing fields index as null."""
    entry = []
    for field, direction in key_pattern:
        value = doc.get(field)
        entry.append(hashed_value(value) if direction == "hashed" else value)
    return entry


def within_index_bounds(doc, hint, min=None, max=None):
    """Apply $min (inclusive) and $max (exclusive) over the hinted index."""
    if min is None and max is None:
        return True
    if hint is None:
        raise OperationFailure("min/max require a hint on the index they bound")

    key_pattern = list(hint.items()) if isinstance(hint, dict) else [tuple(pair) for pair in hint]
    fields = [field for field, _ in key_pattern]
    for bound in (min, max):
        if bound is not None and list(bound.keys()) != fields:
            raise OperationFailure(f"min/max must match the hinted index {fields}")

    entry = index_entry(doc, key_pattern)
    if min is not None and compare_values(entry, list(min.values())) < 0:
        return False
    if max is not None and compare_values(entry, list(max.values())) >= 0:
        return False
    return True


def selects(doc, find_args):
    """True if find(**find_args) would return doc."""
    return matches_filter(doc, find_args.get("filter")) and within_index_bounds(
        doc, find_args.get("hint"), find_args.get("min"), find_args.get("max")
    )


class FakeCursor:
    """Iterable cursor supporting the context manager protocol."""

    def __init__(self, docs, fail_after=None):
        self._docs = docs
        self._fail_after = fail_after
        self.closed = False

    def __iter__(self):
        for i, doc in enumerate(self._docs):
            if self._fail_after is not None and i >= self._fail_after:
                raise AutoReconnect("connection reset by peer")
            yield doc

    def sort(self, key, direction=1):
        self._docs = sorted(self._docs, key=lambda d: _sort_value(d, key), reverse=direction < 0)
        return self

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def _sort_value(doc, key):
    return sort_key(doc[key])


class FakeCollection:
    """In-memory collection; duplicate _id values are allowed on purpose."""

    def __init__(self, name, docs=None, codec_options=None, store=None):
        self.name = name
        self.docs = store if store is not None else [copy.deepcopy(d) for d in (docs or [])]
        self.codec_options = codec_options
        self.fail_after = None
        self.find_error = None
        self.find_calls = []

    @property
    def full_name(self):
        return f"fake.{self.name}"

    def _wrap(self, doc):
        if self.codec_options is not None and self.codec_options.document_class is RawBSONDocument:
            return RawBSONDocument(bson.encode(doc))
        return copy.deepcopy(doc)

    def find(self, filter=None, batch_size=None, min=None, max=None, hint=None, **kwargs):
        call = {"filter": filter}
        call.update((name, value) for name, value in (("min", min), ("max", max), ("hint", hint)) if value is not None)
        self.find_calls.append(call)
        if self.find_error is not None:
            raise self.find_error
        selected = [
            self._wrap(d) for d in self.docs
            if matches_filter(d, filter) and within_index_bounds(d, hint, min, max)
        ]
        return FakeCursor(selected, fail_after=self.fail_after)

    def insert_many(self, docs):
        docs = list(docs)
        for doc in docs:
            if len(bson.encode(doc)) > MAX_BSON_SIZE:
                raise DocumentTooLarge("BSON document too large")
        for doc in docs:
            doc.setdefault("_id", ObjectId())
            self.docs.append(copy.deepcopy(doc))

    def update_one(self, query, update):
        for doc in self.docs:
            if matches_filter(doc, query):
                doc.update(copy.deepcopy(update.get("$set", {})))
                return

    def estimated_document_count(self):
        return len(self.docs)


class FakeDatabase:
    def __init__(self, client, name):
        self.client = client
        self.name = name

    def _collection(self, name, codec_options=None):
        key = (self.name, name)
        base = self.client.collections.setdefault(key, FakeCollection(name))
        if codec_options is None:
            return base
        view = FakeCollection(name, codec_options=codec_options, store=base.docs)
        view.fail_after = base.fail_after
        view.find_error = base.find_error
        view.find_calls = base.find_calls
        return view

    def get_collection(self, name, codec_options=None):
        return self._collection(name, codec_options)

    def __getitem__(self, name):
        return self._collection(name)

    def list_collection_names(self):
        return [coll for (db, coll) in self.client.collections if db == self.name]

    def command(self, name, coll_name):
        coll = self.client.collections[(self.name, coll_name)]
        return {"count": len(coll.docs), "size": sum(len(bson.encode(d)) for d in coll.docs)}


class FakeClient:
    """Minimal MongoClient stand-in keyed by (db, coll)."""

    def __init__(self, collections=None):
        self.collections = {}
        for (db, coll), docs in (collections or {}).items():
            self.collections[(db, coll)] = FakeCollection(coll, docs)

    def __getitem__(self, name):
        return FakeDatabase(self, name)

    def list_database_names(self):
        return sorted({db for (db, _) in self.collections})

    def collection(self, db, coll):
        return self.collections[(db, coll)]

    def close(self):
        pass


def make_users(count=10):
    """Sample user documents with integer ids."""
    return [
        {
            "_id": i,
            "username": f"user{i}",
            "email": f"user{i}@example.com",
            "profile": {"age": 20 + i, "tags": ["a", "b"]},
        }
        for i in range(count)
    ]


@pytest.fixture
def users():
    return make_users()


@pytest.fixture
def make_client():
    """Factory for FakeClient instances."""
    return FakeClient


@pytest.fixture(autouse=True)
def capture_mongodiff_logs(caplog):
    """Let caplog see package log records at DEBUG."""
    caplog.set_level(logging.DEBUG, logger="mongodiff")
    yield


@pytest.fixture
def query_matcher():
    """Evaluate find() arguments against a plain document."""
    return selects


@pytest.fixture
def shard_hash():
    """The hashed index function used by the fake collections."""
    return hashed_value
