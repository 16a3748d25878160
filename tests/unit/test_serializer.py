"""
Unit tests for the serialization codec.

Tests cover:
- Round-trip of every logical type
- Order-preserving number and date encoding
- Digit budget errors
- Decoding failures
- Overflow packing
"""

from datetime import datetime, timedelta, timezone

import msgpack
import pytest

from dbaas.eavdb_server.errors import DeserializationError, ValueTooLarge
from dbaas.eavdb_server.serial import (
    NUMBER_DIGITS,
    DataType,
    Entity,
    EntityId,
    deserialize,
    pack,
    serialize,
    truncate,
    type_of,
    unpack,
)


def roundtrip(value):
    type_ = type_of(value)
    return deserialize(serialize(value, type_), type_)


class TestTypeOf:
    """Tests for type detection."""

    def test_scalars(self):
        """Scalars map to their own tags."""
        assert type_of(None) == DataType.NULL
        assert type_of(True) == DataType.BOOLEAN
        assert type_of("x") == DataType.STRING
        assert type_of(1) == DataType.NUMBER
        assert type_of(1.5) == DataType.NUMBER
        assert type_of(datetime.now(timezone.utc)) == DataType.DATE

    def test_references(self):
        """Refs, entities and ids keep distinct tags."""
        assert type_of({"$ref": "User#1"}) == DataType.REF
        assert type_of(Entity({"id": "1", "$$as": "User"})) == DataType.ENTITY
        assert type_of(EntityId("abc")) == DataType.ID

    def test_objects(self):
        """Bytes and containers are objects."""
        assert type_of(b"\x00") == DataType.OBJECT
        assert type_of({}) == DataType.OBJECT
        assert type_of([]) == DataType.OBJECT

    def test_unsupported(self):
        """Unknown types are rejected."""
        with pytest.raises(TypeError):
            type_of(object())


class TestRoundTrip:
    """deserialize(serialize(v)) == v."""

    @pytest.mark.parametrize(
        "value",
        [
            None,
            True,
            False,
            "",
            "hello",
            "日本語テキスト🍣",
            "line\nbreak\ttab",
            0,
            1,
            -1,
            42,
            -987654321,
            10**23,
            -(10**23),
            0.1,
            -2.5,
            3.14159,
            1e-05,
            2.0,
            -2.0,
            0.0,
            1e23,
        ],
    )
    def test_scalars(self, value):
        """Scalars survive encoding with their type."""
        result = roundtrip(value)
        assert result == value
        assert type(result) is type(value)

    def test_whole_floats_keep_a_fraction(self):
        """Floats are never encoded like the equal int."""
        assert serialize(2.0) == serialize(2) + ".0"
        assert serialize(2.0) != serialize(2)

    def test_booleans_stay_booleans(self):
        """Booleans do not decode as numbers or strings."""
        assert roundtrip(False) is False
        assert roundtrip(True) is True

    def test_dates(self):
        """Dates round-trip with millisecond precision."""
        value = datetime(2024, 5, 6, 7, 8, 9, 123000, tzinfo=timezone.utc)
        assert roundtrip(value) == value

    def test_dates_before_epoch(self):
        """Negative epoch milliseconds are supported."""
        value = datetime(1950, 1, 1, tzinfo=timezone.utc)
        assert roundtrip(value) == value

    def test_naive_dates_are_utc(self):
        """Naive datetimes are stored as UTC."""
        value = datetime(2024, 1, 1, 12, 0, 0)
        assert roundtrip(value) == value.replace(tzinfo=timezone.utc)

    def test_objects(self):
        """Bytes and empty containers are stored whole."""
        assert roundtrip(b"\x00\xffbinary") == b"\x00\xffbinary"
        assert roundtrip({}) == {}
        assert roundtrip([]) == []
        assert roundtrip({"k": ["v", 1, None]}) == {"k": ["v", 1, None]}

    def test_ref(self):
        """Refs encode to the ref string."""
        assert serialize({"$ref": "User#1"}) == "User#1"
        assert roundtrip({"$ref": "User#1"}) == {"$ref": "User#1"}

    def test_entity_encodes_as_ref(self):
        """Live entities are stored as their ref."""
        entity = Entity({"id": "u1", "$$as": "User", "name": "alice"})
        encoded = serialize(entity)
        assert encoded == "User#u1"
        assert deserialize(encoded, DataType.ENTITY) == {"$ref": "User#u1"}

    def test_id(self):
        """Ids decode as EntityId."""
        result = roundtrip(EntityId("abc"))
        assert result == "abc"
        assert isinstance(result, EntityId)


class TestNumberOrdering:
    """serialize(a) < serialize(b) for a < b."""

    def test_sorted_values(self):
        """String order of encodings equals numeric order."""
        values = [
            -(10**23),
            -1000,
            -10,
            -2.55,
            -2.5,
            -2.25,
            -2.0,
            -2,
            -1,
            -0.5,
            0,
            0.25,
            1,
            2,
            2.0,
            2.5,
            3,
            10,
            1000.125,
            10**23,
        ]
        encoded = [serialize(v) for v in values]
        assert encoded == sorted(encoded)

    def test_fixed_width_integer_part(self):
        """Integer part is zero padded to the digit budget."""
        assert serialize(7) == "0" * (NUMBER_DIGITS - 1) + "7"

    def test_negative_zero(self):
        """-0.0 encodes like 0.0."""
        assert serialize(-0.0) == serialize(0.0) == serialize(0) + ".0"

    def test_dates_keep_order(self):
        """Later dates encode greater."""
        base = datetime(2024, 1, 1, tzinfo=timezone.utc)
        encoded = [serialize(base + timedelta(seconds=s)) for s in (-86400, -1, 0, 1, 86400)]
        assert encoded == sorted(encoded)


class TestNumberLimits:
    """Digit budget enforcement."""

    def test_largest_fits(self):
        """The largest integer within budget is accepted."""
        assert roundtrip(10**NUMBER_DIGITS - 1) == 10**NUMBER_DIGITS - 1

    def test_too_large(self):
        """Integers wider than the budget are rejected."""
        with pytest.raises(ValueTooLarge) as exc_info:
            serialize(10**NUMBER_DIGITS)
        assert exc_info.value.code == "VALUE_TOO_LARGE"

    def test_too_small(self):
        """Negative integers wider than the budget are rejected."""
        with pytest.raises(ValueTooLarge):
            serialize(-(10**NUMBER_DIGITS))

    @pytest.mark.parametrize("value", [float("inf"), float("-inf"), float("nan")])
    def test_not_finite(self, value):
        """Infinities and NaN are rejected."""
        with pytest.raises(ValueTooLarge):
            serialize(value)


class TestDeserializationErrors:
    """Decoding failures name the value and type."""

    def test_bad_object(self):
        """Invalid base64 payloads fail."""
        with pytest.raises(DeserializationError) as exc_info:
            deserialize("%%% not base64 %%%", DataType.OBJECT)
        assert exc_info.value.type_name == "OBJECT"

    def test_bad_boolean(self):
        """Booleans only accept true/false."""
        with pytest.raises(DeserializationError):
            deserialize("maybe", DataType.BOOLEAN)

    def test_bad_number(self):
        """Non numeric strings under NUMBER fail."""
        with pytest.raises(DeserializationError):
            deserialize("abc", DataType.NUMBER)

    def test_unknown_tag(self):
        """Unknown type tags fail."""
        with pytest.raises(DeserializationError):
            deserialize("x", 99)

    def test_null_tag(self):
        """NULL decodes to None regardless of the stored string."""
        assert deserialize("anything", DataType.NULL) is None


class TestOverflow:
    """Truncation and overflow packing."""

    def test_truncate(self):
        """Values over the base length are cut."""
        assert truncate("abcdef", 3) == "abc"
        assert truncate("abc", 3) == "abc"
        assert truncate(None, 3) is None

    def test_pack_unpack(self):
        """Overflow payloads round-trip byte exact."""
        value = "長い値" * 500
        assert unpack(pack(value)) == value

    def test_unpack_rejects_non_strings(self):
        """Overflow payloads must hold a string."""
        with pytest.raises(DeserializationError):
            unpack(msgpack.packb(5))
