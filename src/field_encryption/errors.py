"""
Exception classes for client-side field level encryption.

Every public operation either returns a complete result or raises one of
these; no partially transformed document is ever returned.
"""

from __future__ import annotations


class FieldEncryptionError(Exception):
    """Base exception for all field level encryption operations."""

    pass


class SchemaError(FieldEncryptionError):
    """Encryption schema is malformed or uses unsupported keywords."""

    pass


class SchemaMismatchError(FieldEncryptionError):
    """Document shape or value type conflicts with the compiled schema."""

    pass


class NotFoundError(FieldEncryptionError):
    """Data key not found in the key vault."""

    pass


class ProviderError(FieldEncryptionError):
    """Master key provider failed to wrap or unwrap a data key."""

    pass


class DecryptionError(FieldEncryptionError):
    """Ciphertext is malformed, tampered with, or cannot be authenticated."""

    pass


class CryptoError(FieldEncryptionError):
    """Cryptographic operation failed (encryption, key generation)."""

    pass


class StorageError(FieldEncryptionError):
    """Key vault backend error (database, in-memory, etc.)."""

    pass


class SerializationError(FieldEncryptionError):
    """Value cannot be converted to or from its canonical encoding."""

    pass


class ConfigError(FieldEncryptionError):
    """Configuration error."""

    pass
