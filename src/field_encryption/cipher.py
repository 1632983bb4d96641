"""
Field cipher engine and ciphertext wire format.

Wire format (binary subtype 6)::

    version(1) || algorithm(1) || keyId(16) || IV(16) || ciphertext || tag(32)

The first 18 bytes are bound into the tag as associated data. The
plaintext is the canonical encoding of the value, so the original type
travels inside the ciphertext.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID

import structlog

from .codec import conforms, decode_value, encode_value, type_name_of
from .crypto import IV_SIZE, TAG_SIZE, AeadAes256CbcHmacSha512, SecureKey
from .errors import DecryptionError, NotFoundError, SchemaMismatchError, SerializationError
from .key_manager import EnvelopeKeyManager
from .schema import Algorithm, EncryptionDirective

logger = structlog.get_logger()

FORMAT_VERSION: int = 1
BINARY_SUBTYPE_ENCRYPTED: int = 6
KEY_ID_SIZE: int = 16
HEADER_SIZE: int = 2 + KEY_ID_SIZE
MIN_CIPHERTEXT_SIZE: int = HEADER_SIZE + IV_SIZE + IV_SIZE + TAG_SIZE


class EncryptedBinary(bytes):
    """
    Opaque encrypted field value.

    A ``bytes`` subclass tagged with the encrypted binary subtype so that
    stores and readers can tell it apart from ordinary binary data.
    """

    subtype = BINARY_SUBTYPE_ENCRYPTED

    @property
    def version(self) -> int:
        return self[0]

    @property
    def algorithm(self) -> Algorithm:
        try:
            return Algorithm(self[1])
        except ValueError as e:
            raise DecryptionError(f"Unknown algorithm byte: {self[1]}") from e

    @property
    def key_id(self) -> UUID:
        return UUID(bytes=bytes(self[2:HEADER_SIZE]))

    def __repr__(self) -> str:
        return f"EncryptedBinary(subtype=6, length={len(self)})"


def is_encrypted(value: Any) -> bool:
    return isinstance(value, EncryptedBinary)


def _header(algorithm: Algorithm, key_id: UUID) -> bytes:
    return bytes([FORMAT_VERSION, algorithm.value]) + key_id.bytes


def seal(key: SecureKey, key_id: UUID, algorithm: Algorithm, plaintext: bytes) -> EncryptedBinary:
    """Encrypt canonical plaintext bytes under an unwrapped data key."""
    aad = _header(algorithm, key_id)
    if algorithm is Algorithm.DETERMINISTIC:
        iv = AeadAes256CbcHmacSha512.derive_iv(key, aad, plaintext)
    else:
        iv = AeadAes256CbcHmacSha512.random_iv()
    return EncryptedBinary(aad + AeadAes256CbcHmacSha512.encrypt(key, plaintext, aad, iv))


def open_sealed(key: SecureKey, blob: bytes) -> bytes:
    """Authenticate and decrypt a ciphertext blob, returning canonical bytes."""
    parse_header(blob)
    return AeadAes256CbcHmacSha512.decrypt(key, bytes(blob[HEADER_SIZE:]), bytes(blob[:HEADER_SIZE]))


def parse_header(blob: bytes) -> EncryptedBinary:
    """
    Validate the envelope of a ciphertext blob.

    Raises:
        DecryptionError: On short input, unknown version or unknown algorithm
    """
    if len(blob) < MIN_CIPHERTEXT_SIZE:
        raise DecryptionError(
            f"Ciphertext too small: expected at least {MIN_CIPHERTEXT_SIZE} bytes, got {len(blob)}"
        )
    if blob[0] != FORMAT_VERSION:
        raise DecryptionError(f"Unknown ciphertext format version: {blob[0]}")
    if blob[1] not in (Algorithm.DETERMINISTIC.value, Algorithm.RANDOM.value):
        raise DecryptionError(f"Unknown algorithm byte: {blob[1]}")
    return blob if isinstance(blob, EncryptedBinary) else EncryptedBinary(blob)


class FieldCipher:
    """Encrypts and decrypts single values using data keys from the key manager."""

    def __init__(self, key_manager: EnvelopeKeyManager) -> None:
        self._key_manager = key_manager

    @property
    def key_manager(self) -> EnvelopeKeyManager:
        return self._key_manager

    async def encrypt(self, value: Any, directive: EncryptionDirective) -> EncryptedBinary:
        """
        Encrypt a value as directed.

        Raises:
            SchemaMismatchError: If the value does not match the declared type
            SerializationError: If the value has no canonical encoding
            NotFoundError, ProviderError: If the data key is unavailable
        """
        if directive.value_types and not conforms(value, directive.value_types):
            try:
                actual = type_name_of(value)
            except SerializationError:
                actual = type(value).__name__
            raise SchemaMismatchError(
                f"Expected {'/'.join(directive.value_types)}, got {actual}"
            )
        plaintext = encode_value(value)
        key = await self._key_manager.get_data_key(directive.key_id)
        return seal(key, directive.key_id, directive.algorithm, plaintext)

    async def decrypt(self, blob: bytes) -> Any:
        """
        Decrypt a ciphertext blob back into its typed value.

        Fails closed: the tag is verified before any decryption, and no value is
        returned unless authentication and decoding both succeed.

        Raises:
            DecryptionError: Malformed envelope, bad tag, unknown version or key id
            ProviderError: If the master key provider refuses to unwrap the data key
        """
        encrypted = parse_header(blob)
        key_id = encrypted.key_id
        try:
            key = await self._key_manager.get_data_key(key_id)
        except NotFoundError as e:
            raise DecryptionError(f"Unknown data key: {key_id}") from e

        plaintext = open_sealed(key, encrypted)
        try:
            return decode_value(plaintext)
        except SerializationError as e:
            logger.warning("Authenticated plaintext failed to decode", key_id=str(key_id))
            raise DecryptionError("Decrypted value has an invalid encoding") from e
