"""
Cryptographic primitives for field level encryption.

This module provides:
- SecureKey: Data key wrapper with subkey accessors and best-effort zeroization
- AeadAes256CbcHmacSha512: Encrypt-then-MAC AEAD over AES-256-CBC and HMAC-SHA-512

Data key layout (96 bytes):
- bytes  0..32: encryption subkey (AES-256-CBC)
- bytes 32..64: MAC subkey (HMAC-SHA-512)
- bytes 64..96: IV derivation subkey (deterministic mode)

Sealed layout: IV(16) || AES-256-CBC(PKCS7(plaintext)) || TAG(32)
"""

from __future__ import annotations

import secrets
import struct

from cryptography.hazmat.primitives import hashes, hmac, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.constant_time import bytes_eq

from .errors import CryptoError, DecryptionError

# Cryptographic constants
DATA_KEY_SIZE: int = 96
SUBKEY_SIZE: int = 32  # 256 bits
IV_SIZE: int = 16  # AES block size
TAG_SIZE: int = 32  # truncated HMAC-SHA-512
BLOCK_SIZE_BITS: int = 128


class SecureKey:
    """
    Secure key wrapper with automatic memory cleanup on deletion.

    Uses bytearray internally for mutable zeroing in __del__.
    Note: Python's garbage collector doesn't guarantee immediate cleanup,
    so this is best-effort zeroization.
    """

    __slots__ = ("_bytes",)

    def __init__(self, key_bytes: bytes | bytearray) -> None:
        """
        Create a SecureKey from raw bytes.

        Args:
            key_bytes: Raw key material (96 bytes for a data key)
        """
        if not isinstance(key_bytes, (bytes, bytearray)):
            raise CryptoError("Key must be bytes or bytearray")
        self._bytes = bytearray(key_bytes)

    @classmethod
    def generate(cls, size: int = DATA_KEY_SIZE) -> SecureKey:
        """Generate cryptographically secure random key material."""
        return cls(secrets.token_bytes(size))

    def as_bytes(self) -> bytes:
        """Return key as immutable bytes."""
        return bytes(self._bytes)

    @property
    def encryption_key(self) -> bytes:
        return bytes(self._bytes[:SUBKEY_SIZE])

    @property
    def mac_key(self) -> bytes:
        return bytes(self._bytes[SUBKEY_SIZE : 2 * SUBKEY_SIZE])

    @property
    def iv_key(self) -> bytes:
        return bytes(self._bytes[2 * SUBKEY_SIZE : 3 * SUBKEY_SIZE])

    def __len__(self) -> int:
        """Return key length in bytes."""
        return len(self._bytes)

    def __repr__(self) -> str:
        """Redacted representation to prevent accidental key disclosure."""
        return "SecureKey([REDACTED])"

    def __del__(self) -> None:
        """Zero memory on deletion (best-effort)."""
        if hasattr(self, "_bytes"):
            for i in range(len(self._bytes)):
                self._bytes[i] = 0


def _mac(key: SecureKey, aad: bytes, iv: bytes, ciphertext: bytes) -> bytes:
    h = hmac.HMAC(key.mac_key, hashes.SHA512())
    h.update(aad)
    h.update(iv)
    h.update(ciphertext)
    # AAD length in bits, 64-bit big-endian
    h.update(struct.pack(">Q", len(aad) * 8))
    return h.finalize()[:TAG_SIZE]


class AeadAes256CbcHmacSha512:
    """
    AES-256-CBC with HMAC-SHA-512 authentication (encrypt-then-MAC).

    Provides static methods for sealing and opening with Additional
    Authenticated Data. The IV is supplied by the caller so that
    deterministic mode can derive it from the plaintext.
    """

    @staticmethod
    def _check_key(key: SecureKey) -> None:
        if len(key) != DATA_KEY_SIZE:
            raise CryptoError(
                f"Invalid key size: expected {DATA_KEY_SIZE}, got {len(key)}"
            )

    @staticmethod
    def derive_iv(key: SecureKey, aad: bytes, plaintext: bytes) -> bytes:
        """
        Derive a synthetic IV from the plaintext.

        Identical (key, aad, plaintext) always yields the same IV, which makes
        the whole ciphertext deterministic.
        """
        AeadAes256CbcHmacSha512._check_key(key)
        h = hmac.HMAC(key.iv_key, hashes.SHA512())
        h.update(aad)
        h.update(plaintext)
        return h.finalize()[:IV_SIZE]

    @staticmethod
    def random_iv() -> bytes:
        return secrets.token_bytes(IV_SIZE)

    @staticmethod
    def encrypt(key: SecureKey, plaintext: bytes, aad: bytes, iv: bytes) -> bytes:
        """
        Encrypt plaintext and append the authentication tag.

        Args:
            key: 96-byte data key
            plaintext: Data to encrypt
            aad: Additional Authenticated Data bound into the tag
            iv: 16-byte initialization vector

        Returns:
            IV || ciphertext || tag

        Raises:
            CryptoError: If key or IV size is invalid or encryption fails
        """
        AeadAes256CbcHmacSha512._check_key(key)
        if len(iv) != IV_SIZE:
            raise CryptoError(f"Invalid IV size: expected {IV_SIZE}, got {len(iv)}")

        try:
            padder = padding.PKCS7(BLOCK_SIZE_BITS).padder()
            padded = padder.update(plaintext) + padder.finalize()
            encryptor = Cipher(algorithms.AES(key.encryption_key), modes.CBC(iv)).encryptor()
            ciphertext = encryptor.update(padded) + encryptor.finalize()
        except Exception as e:
            raise CryptoError(f"Encryption error: {e}") from e

        return iv + ciphertext + _mac(key, aad, iv, ciphertext)

    @staticmethod
    def decrypt(key: SecureKey, sealed: bytes, aad: bytes) -> bytes:
        """
        Verify the tag, then decrypt.

        Args:
            key: 96-byte data key
            sealed: IV || ciphertext || tag
            aad: Additional Authenticated Data (must match encryption)

        Returns:
            Decrypted plaintext bytes

        Raises:
            DecryptionError: If the blob is malformed or authentication fails
        """
        AeadAes256CbcHmacSha512._check_key(key)

        body_len = len(sealed) - IV_SIZE - TAG_SIZE
        if body_len <= 0 or body_len % IV_SIZE != 0:
            raise DecryptionError("Malformed ciphertext length")

        iv = sealed[:IV_SIZE]
        ciphertext = sealed[IV_SIZE:-TAG_SIZE]
        tag = sealed[-TAG_SIZE:]

        if not bytes_eq(_mac(key, aad, iv, ciphertext), tag):
            raise DecryptionError("Decryption failed")

        try:
            decryptor = Cipher(algorithms.AES(key.encryption_key), modes.CBC(iv)).decryptor()
            padded = decryptor.update(ciphertext) + decryptor.finalize()
            unpadder = padding.PKCS7(BLOCK_SIZE_BITS).unpadder()
            return unpadder.update(padded) + unpadder.finalize()
        except Exception:
            # Generic error to prevent oracle attacks
            raise DecryptionError("Decryption failed") from None

