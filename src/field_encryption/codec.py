"""
Canonical binary encoding of field values.

Each value is written as a one-byte type tag (BSON numbering) followed by
a length-delimited payload. The encoding is a bijection per value so that
deterministic encryption of equal values yields equal ciphertext:

- ``int`` and ``long`` share one integer tag with an 8-byte payload, so
  32-bit and 64-bit integers of equal magnitude encode identically.
- Datetimes must be timezone-aware and are stored as UTC microseconds.
- Mapping key order is preserved.
"""

from __future__ import annotations

import struct
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Iterable, Tuple, Union
from uuid import UUID

from .errors import SerializationError

# Type tags
TAG_DOUBLE = 0x01
TAG_STRING = 0x02
TAG_OBJECT = 0x03
TAG_ARRAY = 0x04
TAG_BINARY = 0x05
TAG_BOOL = 0x08
TAG_DATE = 0x09
TAG_NULL = 0x0A
TAG_INT64 = 0x12
TAG_DECIMAL = 0x13

BINARY_SUBTYPE_GENERIC = 0x00
BINARY_SUBTYPE_UUID = 0x04

INT32_MIN, INT32_MAX = -(2**31), 2**31 - 1
INT64_MIN, INT64_MAX = -(2**63), 2**63 - 1

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# Declared value types accepted in schemas (bsonType names)
VALUE_TYPES = frozenset(
    {
        "double",
        "string",
        "object",
        "array",
        "binData",
        "bool",
        "date",
        "null",
        "int",
        "long",
        "decimal",
    }
)

# Types whose canonical encoding is meaningful for equality matching
DETERMINISTIC_TYPES = frozenset({"string", "int", "long", "date", "binData"})


def type_name_of(value: Any) -> str:
    """Return the bsonType name of a Python value."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, int):
        return "int" if INT32_MIN <= value <= INT32_MAX else "long"
    if isinstance(value, float):
        return "double"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (bytes, bytearray, UUID)):
        return "binData"
    if isinstance(value, datetime):
        return "date"
    if isinstance(value, Decimal):
        return "decimal"
    if isinstance(value, dict):
        return "object"
    if isinstance(value, (list, tuple)):
        return "array"
    raise SerializationError(f"Unsupported value type: {type(value).__name__}")


def conforms(value: Any, declared: Union[str, Iterable[str]]) -> bool:
    """Check whether a value matches one of the declared bsonTypes."""
    names = {declared} if isinstance(declared, str) else set(declared)
    try:
        actual = type_name_of(value)
    except SerializationError:
        return False
    if actual in names:
        return True
    # a small integer is also a valid long
    return actual == "int" and "long" in names


def encode_value(value: Any) -> bytes:
    """
    Serialize a value into its canonical tagged encoding.

    Raises:
        SerializationError: If the value (or a nested value) is unsupported
    """
    out = bytearray()
    _encode(value, out)
    return bytes(out)


def decode_value(data: bytes) -> Any:
    """
    Parse a canonical encoding back into a Python value.

    Raises:
        SerializationError: If the encoding is malformed or has trailing bytes
    """
    try:
        value, offset = _decode(data, 0)
    except (struct.error, IndexError, UnicodeDecodeError, ValueError) as e:
        raise SerializationError(f"Malformed canonical encoding: {e}") from e
    if offset != len(data):
        raise SerializationError("Trailing bytes after canonical encoding")
    return value


def _utf8(text: str) -> bytes:
    try:
        return text.encode("utf-8")
    except UnicodeEncodeError as e:
        raise SerializationError(f"String is not valid UTF-8: {e.reason}") from e


def _pack_bytes(raw: bytes, out: bytearray) -> None:
    out += struct.pack(">I", len(raw))
    out += raw


def _encode(value: Any, out: bytearray) -> None:
    name = type_name_of(value)

    if name == "null":
        out.append(TAG_NULL)
    elif name == "bool":
        out.append(TAG_BOOL)
        out.append(1 if value else 0)
    elif name in ("int", "long"):
        if not INT64_MIN <= value <= INT64_MAX:
            raise SerializationError("Integer out of 64-bit range")
        out.append(TAG_INT64)
        out += struct.pack(">q", value)
    elif name == "double":
        out.append(TAG_DOUBLE)
        out += struct.pack(">d", value)
    elif name == "string":
        out.append(TAG_STRING)
        _pack_bytes(_utf8(value), out)
    elif name == "binData":
        out.append(TAG_BINARY)
        if isinstance(value, UUID):
            out.append(BINARY_SUBTYPE_UUID)
            _pack_bytes(value.bytes, out)
        else:
            out.append(BINARY_SUBTYPE_GENERIC)
            _pack_bytes(bytes(value), out)
    elif name == "date":
        if value.tzinfo is None:
            raise SerializationError("Datetime values must be timezone-aware")
        delta = value - _EPOCH
        micros = (delta.days * 86400 + delta.seconds) * 1_000_000 + delta.microseconds
        out.append(TAG_DATE)
        out += struct.pack(">q", micros)
    elif name == "decimal":
        out.append(TAG_DECIMAL)
        _pack_bytes(str(value).encode("ascii"), out)
    elif name == "object":
        out.append(TAG_OBJECT)
        out += struct.pack(">I", len(value))
        for key, item in value.items():
            if not isinstance(key, str):
                raise SerializationError("Document keys must be strings")
            _pack_bytes(_utf8(key), out)
            _encode(item, out)
    elif name == "array":
        out.append(TAG_ARRAY)
        out += struct.pack(">I", len(value))
        for item in value:
            _encode(item, out)


def _unpack_bytes(data: bytes, offset: int) -> Tuple[bytes, int]:
    (length,) = struct.unpack_from(">I", data, offset)
    offset += 4
    end = offset + length
    if end > len(data):
        raise ValueError("length prefix exceeds buffer")
    return data[offset:end], end


def _decode(data: bytes, offset: int) -> Tuple[Any, int]:
    tag = data[offset]
    offset += 1

    if tag == TAG_NULL:
        return None, offset
    if tag == TAG_BOOL:
        flag = data[offset]
        if flag not in (0, 1):
            raise ValueError("invalid boolean byte")
        return flag == 1, offset + 1
    if tag == TAG_INT64:
        (number,) = struct.unpack_from(">q", data, offset)
        return number, offset + 8
    if tag == TAG_DOUBLE:
        (number,) = struct.unpack_from(">d", data, offset)
        return number, offset + 8
    if tag == TAG_STRING:
        raw, offset = _unpack_bytes(data, offset)
        return raw.decode("utf-8"), offset
    if tag == TAG_BINARY:
        subtype = data[offset]
        raw, offset = _unpack_bytes(data, offset + 1)
        if subtype == BINARY_SUBTYPE_UUID:
            return UUID(bytes=raw), offset
        if subtype != BINARY_SUBTYPE_GENERIC:
            raise ValueError(f"unsupported binary subtype {subtype}")
        return raw, offset
    if tag == TAG_DATE:
        (micros,) = struct.unpack_from(">q", data, offset)
        return _EPOCH + timedelta(microseconds=micros), offset + 8
    if tag == TAG_DECIMAL:
        raw, offset = _unpack_bytes(data, offset)
        return Decimal(raw.decode("ascii")), offset
    if tag == TAG_OBJECT:
        (count,) = struct.unpack_from(">I", data, offset)
        offset += 4
        document = {}
        for _ in range(count):
            raw_key, offset = _unpack_bytes(data, offset)
            key = raw_key.decode("utf-8")
            if key in document:
                raise ValueError(f"duplicate key {key!r}")
            document[key], offset = _decode(data, offset)
        return document, offset
    if tag == TAG_ARRAY:
        (count,) = struct.unpack_from(">I", data, offset)
        offset += 4
        items = []
        for _ in range(count):
            item, offset = _decode(data, offset)
            items.append(item)
        return items, offset

    raise ValueError(f"unknown type tag 0x{tag:02x}")
