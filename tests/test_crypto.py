"""Tests for the AES-256-CBC / HMAC-SHA-512 AEAD."""

from __future__ import annotations

import pytest

from field_encryption import (
    DATA_KEY_SIZE,
    IV_SIZE,
    TAG_SIZE,
    AeadAes256CbcHmacSha512,
    CryptoError,
    DecryptionError,
    SecureKey,
)

AAD = b"\x01\x01" + bytes(16)


def test_secure_key_subkeys_partition_material():
    raw = bytes(range(96))
    key = SecureKey(raw)
    assert key.encryption_key == raw[:32]
    assert key.mac_key == raw[32:64]
    assert key.iv_key == raw[64:96]
    assert repr(key) == "SecureKey([REDACTED])"


def test_generate_produces_data_key_size():
    assert len(SecureKey.generate()) == DATA_KEY_SIZE


def test_seal_and_open():
    key = SecureKey.generate()
    iv = AeadAes256CbcHmacSha512.random_iv()
    sealed = AeadAes256CbcHmacSha512.encrypt(key, b"AB+", AAD, iv)

    assert sealed[:IV_SIZE] == iv
    # one padded block plus tag
    assert len(sealed) == IV_SIZE + 16 + TAG_SIZE
    assert AeadAes256CbcHmacSha512.decrypt(key, sealed, AAD) == b"AB+"


def test_derived_iv_is_stable_and_plaintext_dependent():
    key = SecureKey.generate()
    a = AeadAes256CbcHmacSha512.derive_iv(key, AAD, b"241014209")
    b = AeadAes256CbcHmacSha512.derive_iv(key, AAD, b"241014209")
    c = AeadAes256CbcHmacSha512.derive_iv(key, AAD, b"241014210")
    assert a == b
    assert a != c
    assert len(a) == IV_SIZE


def test_tampered_tag_is_rejected():
    key = SecureKey.generate()
    sealed = bytearray(
        AeadAes256CbcHmacSha512.encrypt(key, b"secret", AAD, AeadAes256CbcHmacSha512.random_iv())
    )
    sealed[-1] ^= 0x01
    with pytest.raises(DecryptionError):
        AeadAes256CbcHmacSha512.decrypt(key, bytes(sealed), AAD)


def test_mismatched_aad_is_rejected():
    key = SecureKey.generate()
    sealed = AeadAes256CbcHmacSha512.encrypt(
        key, b"secret", AAD, AeadAes256CbcHmacSha512.random_iv()
    )
    with pytest.raises(DecryptionError):
        AeadAes256CbcHmacSha512.decrypt(key, sealed, b"\x01\x02" + bytes(16))


def test_wrong_key_is_rejected():
    sealed = AeadAes256CbcHmacSha512.encrypt(
        SecureKey.generate(), b"secret", AAD, AeadAes256CbcHmacSha512.random_iv()
    )
    with pytest.raises(DecryptionError):
        AeadAes256CbcHmacSha512.decrypt(SecureKey.generate(), sealed, AAD)


def test_truncated_input_is_rejected():
    with pytest.raises(DecryptionError):
        AeadAes256CbcHmacSha512.decrypt(SecureKey.generate(), bytes(40), AAD)


def test_invalid_key_size():
    with pytest.raises(CryptoError):
        AeadAes256CbcHmacSha512.encrypt(SecureKey(bytes(32)), b"x", AAD, bytes(16))


def test_invalid_iv_size():
    with pytest.raises(CryptoError):
        AeadAes256CbcHmacSha512.encrypt(SecureKey.generate(), b"x", AAD, bytes(12))
