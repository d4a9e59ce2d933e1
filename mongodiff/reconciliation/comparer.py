"""
Value Comparer for MongoDB Diff Reconciliation

Imposes a total order over BSON values that follows MongoDB's native sort
semantics. Used to validate partition boundaries and to explain a hash
mismatch by structural comparison of two documents.
"""

import logging
import math
from collections.abc import Mapping
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from functools import cmp_to_key
from typing import Any, Callable, Dict
from uuid import UUID

from bson.binary import Binary
from bson.code import Code
from bson.datetime_ms import DatetimeMS
from bson.dbref import DBRef
from bson.decimal128 import Decimal128
from bson.int64 import Int64
from bson.max_key import MaxKey
from bson.min_key import MinKey
from bson.objectid import ObjectId
from bson.regex import Regex
from bson.timestamp import Timestamp

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class UnsupportedValueError(ValueError):
    """Raised when a value has no place in the BSON ordering."""
    pass


class Bracket(Enum):
    """
    MongoDB canonical type brackets, in sort order.

    Values from different brackets compare by bracket rank alone.
    """
    MIN_KEY = 0
    NULL = 5
    NUMBER = 10
    STRING = 15
    DOCUMENT = 20
    ARRAY = 25
    BINARY = 30
    OBJECT_ID = 35
    BOOLEAN = 40
    DATETIME = 45
    TIMESTAMP = 47
    REGEX = 50
    DBREF = 55
    CODE = 60
    MAX_KEY = 100


class BsonKind(Enum):
    """Concrete value kinds, each belonging to one bracket."""
    MIN_KEY = ("min_key", Bracket.MIN_KEY)
    NULL = ("null", Bracket.NULL)
    INT32 = ("int32", Bracket.NUMBER)
    INT64 = ("int64", Bracket.NUMBER)
    DOUBLE = ("double", Bracket.NUMBER)
    DECIMAL = ("decimal", Bracket.NUMBER)
    STRING = ("string", Bracket.STRING)
    DOCUMENT = ("document", Bracket.DOCUMENT)
    ARRAY = ("array", Bracket.ARRAY)
    BINARY = ("binary", Bracket.BINARY)
    OBJECT_ID = ("object_id", Bracket.OBJECT_ID)
    BOOLEAN = ("boolean", Bracket.BOOLEAN)
    DATETIME = ("datetime", Bracket.DATETIME)
    TIMESTAMP = ("timestamp", Bracket.TIMESTAMP)
    REGEX = ("regex", Bracket.REGEX)
    DBREF = ("dbref", Bracket.DBREF)
    CODE = ("code", Bracket.CODE)
    MAX_KEY = ("max_key", Bracket.MAX_KEY)

    def __init__(self, label: str, bracket: Bracket):
        self.label = label
        self.bracket = bracket


def kind_of(value: Any) -> BsonKind:
    """
    Classify a decoded BSON value.

    Args:
        value: Value as produced by pymongo's bson decoder

    Returns:
        The value's BsonKind

    Raises:
        UnsupportedValueError: If the value has no BSON kind
    """
    # Order matters: bool is an int, Int64 is an int, Code and Binary
    # subclass str and bytes.
    if value is None:
        return BsonKind.NULL
    if isinstance(value, MinKey):
        return BsonKind.MIN_KEY
    if isinstance(value, MaxKey):
        return BsonKind.MAX_KEY
    if isinstance(value, bool):
        return BsonKind.BOOLEAN
    if isinstance(value, Int64):
        return BsonKind.INT64
    if isinstance(value, int):
        if -2 ** 31 <= value < 2 ** 31:
            return BsonKind.INT32
        return BsonKind.INT64
    if isinstance(value, float):
        return BsonKind.DOUBLE
    if isinstance(value, (Decimal128, Decimal)):
        return BsonKind.DECIMAL
    if isinstance(value, Code):
        return BsonKind.CODE
    if isinstance(value, str):
        return BsonKind.STRING
    if isinstance(value, DBRef):
        return BsonKind.DBREF
    if isinstance(value, Mapping):
        return BsonKind.DOCUMENT
    if isinstance(value, (list, tuple)):
        return BsonKind.ARRAY
    if isinstance(value, (bytes, UUID)):
        return BsonKind.BINARY
    if isinstance(value, ObjectId):
        return BsonKind.OBJECT_ID
    if isinstance(value, (datetime, DatetimeMS)):
        return BsonKind.DATETIME
    if isinstance(value, Timestamp):
        return BsonKind.TIMESTAMP
    if isinstance(value, Regex):
        return BsonKind.REGEX

    raise UnsupportedValueError(
        f"Unsupported BSON value of type {type(value).__name__}: {value!r}"
    )


def _sign(number) -> int:
    return (number > 0) - (number < 0)


def _natural(a, b) -> int:
    return (a > b) - (a < b)


def _equal(a, b) -> int:
    return 0


def _to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal128):
        return value.to_decimal()
    if isinstance(value, Decimal):
        return value
    # Decimal(float) is exact, so no precision is lost on promotion
    return Decimal(value)


def _is_nan(value: Any) -> bool:
    if isinstance(value, float):
        return math.isnan(value)
    if isinstance(value, Decimal128):
        return value.to_decimal().is_nan()
    if isinstance(value, Decimal):
        return value.is_nan()
    return False


def _compare_numbers(a, b) -> int:
    """
    Compare numbers across int32, int64, double and decimal kinds.

    Promotes to Decimal when either side is a decimal, to float when either
    side is a double, and compares as integers otherwise. NaN equals NaN and
    sorts below every other number.
    """
    a_nan, b_nan = _is_nan(a), _is_nan(b)
    if a_nan or b_nan:
        return int(b_nan) - int(a_nan)

    kinds = {kind_of(a), kind_of(b)}
    if BsonKind.DECIMAL in kinds:
        return _natural(_to_decimal(a), _to_decimal(b))
    if BsonKind.DOUBLE in kinds:
        # Large int64 values lose precision as float; compare exactly instead
        if isinstance(a, float) and isinstance(b, float):
            return _natural(a, b)
        if math.isinf(a if isinstance(a, float) else b):
            return _natural(float(a), float(b))
        return _natural(_to_decimal(a), _to_decimal(b))
    return _natural(int(a), int(b))


def _compare_documents(a: Mapping, b: Mapping) -> int:
    """
    Compare documents independent of field insertion order.

    Fields are sorted by name and compared pairwise, name first and then
    value; a shorter document that is a prefix of a longer one sorts first.
    """
    a_items = sorted(a.items(), key=lambda item: item[0])
    b_items = sorted(b.items(), key=lambda item: item[0])

    for (a_name, a_value), (b_name, b_value) in zip(a_items, b_items):
        result = _natural(a_name, b_name)
        if result:
            return result
        result = compare_values(a_value, b_value)
        if result:
            return result

    return _natural(len(a_items), len(b_items))


def _compare_arrays(a, b) -> int:
    for a_value, b_value in zip(a, b):
        result = compare_values(a_value, b_value)
        if result:
            return result
    return _natural(len(a), len(b))


def _binary_form(value):
    if isinstance(value, UUID):
        return (4, value.bytes)
    subtype = value.subtype if isinstance(value, Binary) else 0
    return (subtype, bytes(value))


def _compare_binary(a, b) -> int:
    # MongoDB orders BinData by length, then subtype, then bytes
    a_subtype, a_bytes = _binary_form(a)
    b_subtype, b_bytes = _binary_form(b)
    return _natural(
        (len(a_bytes), a_subtype, a_bytes),
        (len(b_bytes), b_subtype, b_bytes)
    )


def _to_millis(value) -> int:
    if isinstance(value, DatetimeMS):
        return int(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    delta = value - _EPOCH
    return (delta.days * 86400 + delta.seconds) * 1000 + delta.microseconds // 1000


def _compare_datetimes(a, b) -> int:
    return _natural(_to_millis(a), _to_millis(b))


def _compare_timestamps(a: Timestamp, b: Timestamp) -> int:
    return _natural((a.time, a.inc), (b.time, b.inc))


def _compare_regex(a: Regex, b: Regex) -> int:
    return _natural((a.pattern, a.flags), (b.pattern, b.flags))


def _compare_dbrefs(a: DBRef, b: DBRef) -> int:
    result = _natural(a.collection, b.collection)
    if result:
        return result
    result = compare_values(a.id, b.id)
    if result:
        return result
    return _natural(a.database or "", b.database or "")


def _compare_code(a: Code, b: Code) -> int:
    result = _natural(str(a), str(b))
    if result:
        return result
    return compare_values(a.scope, b.scope)


_BRACKET_COMPARATORS: Dict[Bracket, Callable[[Any, Any], int]] = {
    Bracket.MIN_KEY: _equal,
    Bracket.NULL: _equal,
    Bracket.NUMBER: _compare_numbers,
    Bracket.STRING: _natural,
    Bracket.DOCUMENT: _compare_documents,
    Bracket.ARRAY: _compare_arrays,
    Bracket.BINARY: _compare_binary,
    Bracket.OBJECT_ID: _natural,
    Bracket.BOOLEAN: _natural,
    Bracket.DATETIME: _compare_datetimes,
    Bracket.TIMESTAMP: _compare_timestamps,
    Bracket.REGEX: _compare_regex,
    Bracket.DBREF: _compare_dbrefs,
    Bracket.CODE: _compare_code,
    Bracket.MAX_KEY: _equal,
}


def compare_values(a: Any, b: Any) -> int:
    """
    Compare two BSON values under MongoDB ordering.

    Args:
        a: First value
        b: Second value

    Returns:
        Negative, zero or positive as a sorts before, with or after b

    Raises:
        UnsupportedValueError: If either value has no BSON kind
    """
    a_bracket = kind_of(a).bracket
    b_bracket = kind_of(b).bracket

    if a_bracket is not b_bracket:
        return _sign(a_bracket.value - b_bracket.value)

    return _BRACKET_COMPARATORS[a_bracket](a, b)


def structurally_equal(a: Any, b: Any) -> bool:
    """Return True if two values are equal under MongoDB ordering."""
    return compare_values(a, b) == 0


sort_key = cmp_to_key(compare_values)


class ValueComparer:
    """
    Compares decoded documents for the retry pass.

    Wraps the module level comparator and reports which top level fields
    differ, so a mismatch can be explained in the logs.
    """

    def __init__(self):
        """Initialize the value comparer."""
        logger.debug("Initialized ValueComparer")

    def documents_equal(self, source_doc: Mapping, dest_doc: Mapping) -> bool:
        """
        Check two documents for structural equality.

        Args:
            source_doc: Document from the source cluster
            dest_doc: Document from the destination cluster

        Returns:
            True if the documents are equal regardless of field order
        """
        return structurally_equal(source_doc, dest_doc)

    def differing_fields(self, source_doc: Mapping, dest_doc: Mapping) -> list:
        """
        List top level fields whose values differ or exist on one side only.

        Args:
            source_doc: Document from the source cluster
            dest_doc: Document from the destination cluster

        Returns:
            Sorted list of field names
        """
        fields = set(source_doc.keys()) | set(dest_doc.keys())
        differing = []

        for field in fields:
            if field not in source_doc or field not in dest_doc:
                differing.append(field)
            elif not structurally_equal(source_doc[field], dest_doc[field]):
                differing.append(field)

        return sorted(differing)
