"""
Unit tests for reconciliation comparer module.

Tests the MongoDB total-order comparison over BSON values.
"""

import itertools
from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID

import bson
import pytest
from bson.binary import Binary
from bson.code import Code
from bson.decimal128 import Decimal128
from bson.int64 import Int64
from bson.max_key import MaxKey
from bson.min_key import MinKey
from bson.objectid import ObjectId
from bson.raw_bson import RawBSONDocument
from bson.regex import Regex
from bson.son import SON
from bson.timestamp import Timestamp

from mongodiff.reconciliation.comparer import (
    Bracket,
    BsonKind,
    UnsupportedValueError,
    ValueComparer,
    compare_values,
    kind_of,
    sort_key,
    structurally_equal,
)


def sign(n):
    return (n > 0) - (n < 0)


SAMPLE_VALUES = [
    None,
    0,
    5,
    Int64(5),
    5.0,
    5.5,
    -3,
    float("nan"),
    Decimal128("5.00"),
    Decimal128("1E+20"),
    Int64(2 ** 62),
    "",
    "apple",
    "banana",
    {"a": 1},
    {"a": 1, "b": 2},
    {"b": 1},
    [],
    [1, 2],
    [1, 3],
    Binary(b"\x01\x02"),
    UUID("123e4567-e89b-12d3-a456-426614174000"),
    ObjectId("5f1d7e3b9c1a2b3c4d5e6f70"),
    ObjectId("5f1d7e3b9c1a2b3c4d5e6f71"),
    False,
    True,
    datetime(2024, 1, 1, 12, 0, 0),
    datetime(2024, 1, 1, 13, 0, 0, tzinfo=timezone.utc),
    Timestamp(100, 1),
    Timestamp(100, 2),
    Regex("^a", 0),
    Code("function() {}"),
]


class TestKinds:
    """Test value classification."""

    def test_int32_and_int64_kinds(self):
        """Test that small ints are int32 and Int64 or large ints are int64."""
        assert kind_of(5) is BsonKind.INT32
        assert kind_of(Int64(5)) is BsonKind.INT64
        assert kind_of(2 ** 40) is BsonKind.INT64

    def test_bool_is_not_a_number(self):
        """Test that booleans are classified before ints."""
        assert kind_of(True) is BsonKind.BOOLEAN
        assert kind_of(True).bracket is Bracket.BOOLEAN

    def test_code_is_not_a_string(self):
        """Test that Code, a str subclass, has its own kind."""
        assert kind_of(Code("x")) is BsonKind.CODE

    def test_raw_document_is_a_document(self):
        """Test that RawBSONDocument is classified as a document."""
        raw = RawBSONDocument(bson.encode({"a": 1}))
        assert kind_of(raw) is BsonKind.DOCUMENT

    def test_unsupported_value_raises(self):
        """Test that unknown types raise instead of being coerced."""
        with pytest.raises(UnsupportedValueError):
            kind_of(object())

        with pytest.raises(ValueError):
            compare_values({1, 2}, 3)


class TestSentinels:
    """Test MinKey and MaxKey ordering."""

    @pytest.mark.parametrize("value", SAMPLE_VALUES)
    def test_min_key_below_everything(self, value):
        """Test that MinKey sorts below every non-sentinel value."""
        assert compare_values(MinKey(), value) < 0
        assert compare_values(value, MinKey()) > 0

    @pytest.mark.parametrize("value", SAMPLE_VALUES)
    def test_max_key_above_everything(self, value):
        """Test that MaxKey sorts above every non-sentinel value."""
        assert compare_values(MaxKey(), value) > 0
        assert compare_values(value, MaxKey()) < 0

    def test_sentinels_equal_themselves(self):
        """Test that each sentinel compares equal to itself."""
        assert compare_values(MinKey(), MinKey()) == 0
        assert compare_values(MaxKey(), MaxKey()) == 0
        assert compare_values(MinKey(), MaxKey()) < 0


class TestNull:
    """Test null ordering."""

    def test_null_equals_null(self):
        assert compare_values(None, None) == 0

    @pytest.mark.parametrize("value", [0, "", {}, [], False, ObjectId("5f1d7e3b9c1a2b3c4d5e6f70")])
    def test_null_below_non_null(self, value):
        """Test that null sorts below any non-null value."""
        assert compare_values(None, value) < 0
        assert compare_values(value, None) > 0


class TestNumbers:
    """Test cross-type numeric comparison."""

    def test_int32_equals_int64(self):
        assert compare_values(5, Int64(5)) == 0

    def test_int32_equals_double(self):
        assert compare_values(5, 5.0) == 0

    def test_double_above_int(self):
        assert compare_values(5.5, 5) > 0
        assert compare_values(5, 5.5) < 0

    def test_decimal_promotion(self):
        """Test that decimal comparisons are exact."""
        assert compare_values(Decimal128("5.00"), 5) == 0
        assert compare_values(Decimal128("0.1"), 0.1) != 0
        assert compare_values(Decimal128("5.5"), 5.5) == 0
        assert compare_values(Decimal("2.5"), Decimal128("2.50")) == 0

    def test_large_int64_against_double(self):
        """Test that int64 values beyond float precision are not rounded."""
        big = Int64(2 ** 53 + 1)
        assert compare_values(big, float(2 ** 53)) > 0

    def test_nan_ordering(self):
        """Test that NaN equals NaN and sorts below other numbers."""
        nan = float("nan")
        assert compare_values(nan, nan) == 0
        assert compare_values(nan, -1e308) < 0
        assert compare_values(Decimal128("NaN"), nan) == 0
        assert compare_values(float("-inf"), nan) > 0

    def test_infinity(self):
        assert compare_values(float("inf"), Int64(2 ** 62)) > 0
        assert compare_values(float("-inf"), -5) < 0

    def test_numbers_below_strings(self):
        """Test that cross-bracket values order by bracket."""
        assert compare_values(10 ** 6, "0") < 0


class TestDocuments:
    """Test document comparison."""

    def test_field_order_is_irrelevant(self):
        """Test that {a:1,b:2} equals {b:2,a:1}."""
        assert compare_values({"a": 1, "b": 2}, {"b": 2, "a": 1}) == 0
        assert compare_values(SON([("a", 1), ("b", 2)]), SON([("b", 2), ("a", 1)])) == 0

    def test_prefix_sorts_first(self):
        """Test that {a:1} sorts before {a:1,b:1}."""
        assert compare_values({"a": 1}, {"a": 1, "b": 1}) < 0
        assert compare_values({"a": 1, "b": 1}, {"a": 1}) > 0

    def test_field_names_compared(self):
        assert compare_values({"a": 5}, {"b": 1}) < 0

    def test_nested_values_recurse(self):
        """Test that nested values use numeric promotion."""
        assert compare_values({"x": {"y": [1, 2.0]}}, {"x": {"y": [1.0, Int64(2)]}}) == 0
        assert compare_values({"x": {"y": 1}}, {"x": {"y": 2}}) < 0

    def test_raw_documents(self):
        """Test that raw documents compare structurally."""
        a = RawBSONDocument(bson.encode({"a": 1, "b": {"c": "x"}}))
        b = RawBSONDocument(bson.encode(SON([("b", {"c": "x"}), ("a", 1.0)])))
        assert a.raw != b.raw
        assert structurally_equal(a, b)


class TestArrays:
    """Test array comparison."""

    def test_elementwise(self):
        assert compare_values([1, 2], [1, 3]) < 0

    def test_length_tiebreak(self):
        assert compare_values([1, 2], [1, 2, 3]) < 0
        assert compare_values([], [None]) < 0

    def test_mixed_elements(self):
        assert compare_values([1, "a"], [1, "b"]) < 0


class TestScalars:
    """Test remaining scalar kinds."""

    def test_strings(self):
        assert compare_values("apple", "banana") < 0

    def test_booleans(self):
        assert compare_values(False, True) < 0

    def test_datetimes_naive_and_aware(self):
        """Test that naive datetimes are treated as UTC."""
        naive = datetime(2024, 1, 1, 12, 0, 0)
        aware = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        assert compare_values(naive, aware) == 0
        assert compare_values(naive, datetime(2024, 1, 1, 13, 0, 0)) < 0

    def test_timestamps(self):
        assert compare_values(Timestamp(100, 1), Timestamp(100, 2)) < 0
        assert compare_values(Timestamp(99, 5), Timestamp(100, 1)) < 0

    def test_object_ids(self):
        assert compare_values(ObjectId("5f1d7e3b9c1a2b3c4d5e6f70"), ObjectId("5f1d7e3b9c1a2b3c4d5e6f71")) < 0

    def test_binary_and_uuid(self):
        """Test that UUIDs compare as subtype 4 binary."""
        uuid = UUID("123e4567-e89b-12d3-a456-426614174000")
        assert compare_values(uuid, Binary(uuid.bytes, 4)) == 0
        assert compare_values(Binary(b"\x01"), Binary(b"\x00\x00")) < 0

    def test_regex_and_code(self):
        assert compare_values(Regex("^a"), Regex("^b")) < 0
        assert compare_values(Code("a"), Code("a")) == 0
        assert compare_values(Code("a", {"x": 1}), Code("a", {"x": 2})) < 0


class TestTotalOrder:
    """Test ordering properties over mixed samples."""

    def test_antisymmetry(self):
        """Test that cmp(a,b) == -cmp(b,a) for every sample pair."""
        for a, b in itertools.product(SAMPLE_VALUES, repeat=2):
            assert sign(compare_values(a, b)) == -sign(compare_values(b, a)), (a, b)

    def test_transitivity(self):
        """Test that sorting is consistent with pairwise comparison."""
        ordered = sorted(SAMPLE_VALUES, key=sort_key)
        for i, a in enumerate(ordered):
            for b in ordered[i + 1:]:
                assert compare_values(a, b) <= 0, (a, b)

    def test_bracket_order(self):
        """Test the canonical order of one value per bracket."""
        values = [MaxKey(), Regex("x"), Timestamp(1, 1), datetime(2024, 1, 1), True,
                  ObjectId(), Binary(b"x"), [1], {"a": 1}, "s", 1, None, MinKey()]
        assert sorted(values, key=sort_key) == list(reversed(values))


class TestValueComparer:
    """Test the document-level helper."""

    @pytest.fixture
    def comparer(self):
        return ValueComparer()

    def test_documents_equal(self, comparer):
        assert comparer.documents_equal({"a": 1, "b": 2}, {"b": 2.0, "a": 1}) is True
        assert comparer.documents_equal({"a": 1}, {"a": 2}) is False

    def test_differing_fields(self, comparer):
        """Test listing fields that differ or exist on one side."""
        source = {"_id": 1, "name": "x", "age": 30, "extra": True}
        dest = {"_id": 1, "name": "y", "age": 30.0, "other": 1}
        assert comparer.differing_fields(source, dest) == ["extra", "name", "other"]
