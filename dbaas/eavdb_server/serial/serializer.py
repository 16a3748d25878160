"""
Type-tagged encoding between native values and column strings.

Encodings by type:
    NULL     -> None (SQL NULL)
    BOOLEAN  -> "true" / "false"
    STRING   -> the string itself
    NUMBER   -> zero-padded, order-preserving decimal (see below)
    DATE     -> epoch milliseconds, encoded as a NUMBER
    OBJECT   -> base64 of the msgpack payload
    REF      -> the "$ref" string ("Kind#id")
    ENTITY   -> the entity's ref string, decoded as a REF
    ID       -> the id string

Number layout:
    non-negative: <24 digit integer part>[.<fraction>]
    negative:     -<nines' complement of the above>~

Floats always carry a fraction (at least ".0") so they decode as float.

The nines' complement makes larger magnitudes sort lower and the "~"
terminator sorts a shorter negative after any longer one sharing its
prefix, so plain string comparison agrees with numeric comparison.

Overflow payloads (values longer than the base length) are always
stored as msgpack bytes via pack()/unpack().
"""

from __future__ import annotations

import base64
import binascii
import math
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Optional, Union

import msgpack

from ..errors import DeserializationError, ValueTooLarge
from .types import REF_KEY, DataType, EntityId, type_of


NUMBER_DIGITS = 24

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

_NEGATIVE = "-"
_NEGATIVE_END = "~"
_COMPLEMENT = str.maketrans("0123456789", "9876543210")


def _complement(digits: str) -> str:
    return digits.translate(_COMPLEMENT)


def _serialize_number(value: Union[int, float, Decimal]) -> str:
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueTooLarge(value, NUMBER_DIGITS)
        text = format(Decimal(repr(value)), "f")
    else:
        if isinstance(value, Decimal) and not value.is_finite():
            raise ValueTooLarge(value, NUMBER_DIGITS)
        text = format(Decimal(value), "f")

    negative = text.startswith("-")
    integer, _, fraction = text.lstrip("-").partition(".")
    integer = integer.lstrip("0") or "0"
    fraction = fraction.rstrip("0")
    if integer == "0" and not fraction:
        negative = False
    if isinstance(value, float) and not fraction:
        fraction = "0"

    if len(integer) > NUMBER_DIGITS or len(fraction) > NUMBER_DIGITS:
        raise ValueTooLarge(value, NUMBER_DIGITS)

    integer = integer.zfill(NUMBER_DIGITS)
    if not negative:
        return integer + ("." + fraction if fraction else "")
    encoded = _complement(integer)
    if fraction:
        encoded += "." + _complement(fraction)
    return _NEGATIVE + encoded + _NEGATIVE_END


def _deserialize_number(encoded: str) -> Union[int, float]:
    if encoded.startswith(_NEGATIVE):
        body = encoded[1:]
        if body.endswith(_NEGATIVE_END):
            body = body[:-1]
        integer, _, fraction = body.partition(".")
        text = "-" + _complement(integer) + ("." + _complement(fraction) if fraction else "")
    else:
        text = encoded
    try:
        if "." in text:
            return float(text)
        return int(text)
    except ValueError:
        raise DeserializationError(encoded, DataType.NUMBER.name) from None


def epoch_millis(value: datetime) -> int:
    # Naive datetimes are taken as UTC
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return (value - EPOCH) // timedelta(milliseconds=1)


def _serialize_object(value: Any) -> str:
    packed = msgpack.packb(value, use_bin_type=True)
    return base64.b64encode(packed).decode("ascii")


def _deserialize_object(encoded: str) -> Any:
    try:
        packed = base64.b64decode(encoded.encode("ascii"), validate=True)
        return msgpack.unpackb(packed, raw=False)
    except (ValueError, TypeError, binascii.Error):
        raise DeserializationError(encoded, DataType.OBJECT.name) from None


def serialize(value: Any, type_: Optional[DataType] = None) -> Optional[str]:
    """Encode a native value to its column string.

    Args:
        value: Native value
        type_: Type tag (detected with type_of() when omitted)

    Returns:
        Encoded string, or None for NULL

    Raises:
        ValueTooLarge: If a number does not fit NUMBER_DIGITS
        TypeError: If the value type is not storable
    """
    if type_ is None:
        type_ = type_of(value)

    if type_ == DataType.NULL:
        return None
    if type_ == DataType.BOOLEAN:
        return "true" if value else "false"
    if type_ == DataType.NUMBER:
        return _serialize_number(value)
    if type_ == DataType.DATE:
        return _serialize_number(epoch_millis(value))
    if type_ == DataType.OBJECT:
        if isinstance(value, bytearray):
            value = bytes(value)
        return _serialize_object(value)
    if type_ == DataType.REF:
        return value[REF_KEY]
    if type_ == DataType.ENTITY:
        return value.ref()
    return str(value)


def deserialize(encoded: Optional[str], type_: Union[DataType, int]) -> Any:
    """Decode a column string back to a native value.

    Args:
        encoded: Stored string (None for SQL NULL)
        type_: Type tag stored alongside the value

    Returns:
        Native value

    Raises:
        DeserializationError: If the string cannot be decoded under type_
    """
    try:
        type_ = DataType(type_)
    except ValueError:
        raise DeserializationError(encoded, f"tag {type_}") from None

    if type_ == DataType.NULL or encoded is None:
        return None
    if type_ == DataType.BOOLEAN:
        if encoded == "true":
            return True
        if encoded == "false":
            return False
        raise DeserializationError(encoded, type_.name)
    if type_ == DataType.NUMBER:
        return _deserialize_number(encoded)
    if type_ == DataType.DATE:
        millis = _deserialize_number(encoded)
        if not isinstance(millis, int):
            raise DeserializationError(encoded, type_.name)
        return EPOCH + timedelta(milliseconds=millis)
    if type_ == DataType.OBJECT:
        return _deserialize_object(encoded)
    if type_ in (DataType.REF, DataType.ENTITY):
        return {REF_KEY: encoded}
    if type_ == DataType.ID:
        return EntityId(encoded)
    return encoded


def truncate(encoded: Optional[str], length: int) -> Optional[str]:
    """Cut an encoded value down to the base column length."""
    if encoded is None or len(encoded) <= length:
        return encoded
    return encoded[:length]


def pack(encoded: str) -> bytes:
    """Pack a full-length encoded value for the overflow table."""
    return msgpack.packb(encoded, use_bin_type=True)


def unpack(data: bytes) -> str:
    """Unpack an overflow payload back to the encoded value.

    Raises:
        DeserializationError: If the payload is not a packed string
    """
    try:
        encoded = msgpack.unpackb(data, raw=False)
    except (ValueError, TypeError):
        raise DeserializationError(data, "overflow") from None
    if not isinstance(encoded, str):
        raise DeserializationError(data, "overflow")
    return encoded
