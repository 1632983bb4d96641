"""Tests for canonical value encoding."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from field_encryption import SerializationError
from field_encryption.codec import conforms, decode_value, encode_value, type_name_of


def test_int32_and_int64_of_equal_magnitude_encode_identically():
    assert type_name_of(42) == "int"
    assert type_name_of(2**40) == "long"
    assert encode_value(42) == encode_value(int("42"))
    assert decode_value(encode_value(2**40)) == 2**40


def test_distinct_values_have_distinct_encodings():
    values = [0, 1, -1, "", "0", "1", True, False, None, b"", b"\x00", 0.0, [], {}]
    encodings = {encode_value(v) for v in values}
    assert len(encodings) == len(values)


def test_bool_is_not_an_int():
    assert type_name_of(True) == "bool"
    assert decode_value(encode_value(True)) is True
    assert not conforms(True, "int")


def test_nested_document_round_trip_preserves_order():
    value = {"weight": 180, "notes": ["a", {"b": None}], "height": 1.85}
    decoded = decode_value(encode_value(value))
    assert decoded == value
    assert list(decoded) == ["weight", "notes", "height"]


def test_dates_are_utc_microseconds():
    tz = timezone(timedelta(hours=5, minutes=30))
    when = datetime(2020, 2, 29, 12, 30, 15, 123456, tzinfo=tz)
    decoded = decode_value(encode_value(when))
    assert decoded == when
    assert decoded.tzinfo == timezone.utc


def test_naive_datetime_is_rejected():
    with pytest.raises(SerializationError):
        encode_value(datetime(2020, 1, 1))


def test_uuid_and_decimal():
    ident = uuid4()
    assert decode_value(encode_value(ident)) == ident
    assert decode_value(encode_value(Decimal("12.50"))) == Decimal("12.50")


def test_unsupported_type():
    with pytest.raises(SerializationError):
        encode_value({1, 2})


def test_lone_surrogate_is_a_serialization_error():
    with pytest.raises(SerializationError):
        encode_value("A\ud800")
    with pytest.raises(SerializationError):
        encode_value({"k\udc00": 1})


def test_integer_out_of_range():
    with pytest.raises(SerializationError):
        encode_value(2**70)


def test_trailing_bytes_are_rejected():
    with pytest.raises(SerializationError):
        decode_value(encode_value("x") + b"\x00")


def test_truncated_encoding_is_rejected():
    with pytest.raises(SerializationError):
        decode_value(encode_value("hello")[:-2])


def test_conforms_accepts_small_ints_as_long():
    assert conforms(5, "long")
    assert conforms(2**40, ["int", "long"])
    assert not conforms(2**40, "int")
    assert not conforms("5", "int")
