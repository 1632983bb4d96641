"""
Envelope key manager.

This module provides:
- EnvelopeKeyManager: Data key lifecycle (create, unwrap, re-wrap, delete)
  and the per-session cache of unwrapped data keys

Hierarchy: Master key (provider) -> wrapped data key (key vault) -> field values

Cache semantics:
- Keyed by key id, no TTL; eviction is explicit (``invalidate``)
- Population on a miss is serialized per key id, so concurrent readers of
  the same key trigger one unwrap call
- Re-wrap and eviction take the same per-key lock as population
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime, timezone
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Type,
    TypeVar,
)
from uuid import UUID, uuid4

import structlog

from .crypto import DATA_KEY_SIZE, SecureKey
from .errors import (
    ConfigError,
    FieldEncryptionError,
    ProviderError,
    StorageError,
)
from .key_vault import KeyStatus, KeyVault, KeyVaultDocument
from .providers import MasterKeyProvider

logger = structlog.get_logger()

T = TypeVar("T")

DEFAULT_TIMEOUT: float = 10.0


async def _bounded(
    awaitable: Awaitable[T],
    timeout: Optional[float],
    error: Type[FieldEncryptionError],
    what: str,
) -> T:
    """Await with a timeout, surfacing expiry as the given error type."""
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError as e:
        raise error(f"{what} timed out after {timeout}s") from e


class _KeyLock:
    """Per-key lock that counts its holders and waiters."""

    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


class EnvelopeKeyManager:
    """
    Creates, unwraps and caches data keys.

    Data keys are 96 random bytes wrapped by a named master key provider and
    persisted in the key vault.
    """

    def __init__(
        self,
        key_vault: KeyVault,
        providers: Mapping[str, MasterKeyProvider],
        *,
        timeout: Optional[float] = DEFAULT_TIMEOUT,
    ) -> None:
        """
        Initialize the key manager.

        Args:
            key_vault: Key vault backend
            providers: Master key providers by name
            timeout: Bound for each provider and key vault call (None disables)
        """
        self._key_vault = key_vault
        self._providers = dict(providers)
        self._timeout = timeout
        self._cache: Dict[UUID, SecureKey] = {}
        self._locks: Dict[UUID, _KeyLock] = {}

    @property
    def key_vault(self) -> KeyVault:
        return self._key_vault

    def _provider(self, name: str) -> MasterKeyProvider:
        provider = self._providers.get(name)
        if provider is None:
            raise ConfigError(f"Master key provider not configured: {name!r}")
        return provider

    @asynccontextmanager
    async def _locked(self, key_id: UUID) -> AsyncIterator[None]:
        # entries live only while someone holds or awaits them
        entry = self._locks.get(key_id)
        if entry is None:
            entry = self._locks[key_id] = _KeyLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._locks.get(key_id) is entry:
                del self._locks[key_id]

    async def create_data_key(
        self,
        provider: str,
        master_key: Optional[Mapping[str, Any]] = None,
        key_alt_names: Optional[Iterable[str]] = None,
    ) -> UUID:
        """
        Generate, wrap and persist a new data key.

        Args:
            provider: Master key provider name ("local", "aws")
            master_key: Provider-specific coordinates (e.g. key ARN and region)
            key_alt_names: Optional unique alternate names

        Returns:
            The new key id

        Raises:
            ProviderError: If wrapping fails or times out (never retried)
            StorageError: If the key vault write fails
        """
        kms = self._provider(provider)
        coordinates = kms.master_key(master_key)
        key_id = uuid4()
        data_key = SecureKey.generate()

        async with self._locked(key_id):
            wrapped = await _bounded(
                kms.wrap(data_key.as_bytes(), coordinates),
                self._timeout,
                ProviderError,
                f"{provider} wrap",
            )
            now = datetime.now(timezone.utc)
            doc = KeyVaultDocument(
                key_id=key_id,
                key_material=wrapped,
                master_key=coordinates,
                creation_date=now,
                update_date=now,
                key_alt_names=list(key_alt_names or []),
            )
            await _bounded(
                self._key_vault.store(doc), self._timeout, StorageError, "Key vault store"
            )

        logger.info("Data key created", key_id=str(key_id), provider=provider)
        return key_id

    async def get_data_key(self, key_id: UUID) -> SecureKey:
        """
        Return the unwrapped data key, unwrapping and caching it on a miss.

        Raises:
            NotFoundError: If the key vault has no record for key_id
            ProviderError: If the provider refuses or fails to unwrap, or the key is disabled
        """
        cached = self._cache.get(key_id)
        if cached is not None:
            return cached

        async with self._locked(key_id):
            cached = self._cache.get(key_id)
            if cached is not None:
                return cached

            doc = await _bounded(
                self._key_vault.fetch(key_id), self._timeout, StorageError, "Key vault fetch"
            )
            if doc.status is KeyStatus.DISABLED:
                raise ProviderError(f"Data key {key_id} is disabled")
            data_key = await self._unwrap(doc)
            self._cache[key_id] = data_key

        logger.debug("Data key unwrapped", key_id=str(key_id))
        return data_key

    async def resolve_alt_name(self, key_alt_name: str) -> UUID:
        """Map an alternate key name to its key id."""
        doc = await _bounded(
            self._key_vault.fetch_by_alt_name(key_alt_name),
            self._timeout,
            StorageError,
            "Key vault fetch",
        )
        return doc.key_id

    async def rewrap_data_key(
        self,
        key_id: UUID,
        provider: str,
        master_key: Optional[Mapping[str, Any]] = None,
    ) -> KeyVaultDocument:
        """
        Re-wrap an existing data key under a different master key.

        The key id and the data key itself are unchanged, so existing
        ciphertext stays readable. The record is replaced with compare-and-swap
        and the cache entry is evicted afterwards.

        Raises:
            NotFoundError: If key_id is unknown
            ProviderError: If unwrap with the old or wrap with the new provider fails
            StorageError: If the record changed concurrently
        """
        new_kms = self._provider(provider)
        coordinates = new_kms.master_key(master_key)

        async with self._locked(key_id):
            doc = await _bounded(
                self._key_vault.fetch(key_id), self._timeout, StorageError, "Key vault fetch"
            )
            data_key = await self._unwrap(doc)
            wrapped = await _bounded(
                new_kms.wrap(data_key.as_bytes(), coordinates),
                self._timeout,
                ProviderError,
                f"{provider} wrap",
            )
            updated = replace(
                doc,
                key_material=wrapped,
                master_key=coordinates,
                update_date=datetime.now(timezone.utc),
            )
            stored = await _bounded(
                self._key_vault.replace(updated, doc.version),
                self._timeout,
                StorageError,
                "Key vault replace",
            )
            self._cache.pop(key_id, None)

        logger.info(
            "Data key re-wrapped",
            key_id=str(key_id),
            old_provider=doc.master_key.provider,
            new_provider=provider,
        )
        return stored

    async def set_key_status(self, key_id: UUID, status: KeyStatus) -> KeyVaultDocument:
        """
        Enable or disable a data key.

        A disabled key stays in the key vault but is refused by ``get_data_key``,
        so it can neither encrypt nor decrypt until it is enabled again. The
        record is replaced with compare-and-swap and the cache entry is evicted.

        Raises:
            NotFoundError: If key_id is unknown
            StorageError: If the record changed concurrently
        """
        async with self._locked(key_id):
            doc = await _bounded(
                self._key_vault.fetch(key_id), self._timeout, StorageError, "Key vault fetch"
            )
            updated = replace(doc, status=status, update_date=datetime.now(timezone.utc))
            stored = await _bounded(
                self._key_vault.replace(updated, doc.version),
                self._timeout,
                StorageError,
                "Key vault replace",
            )
            self._cache.pop(key_id, None)

        logger.info("Data key status changed", key_id=str(key_id), status=str(status))
        return stored

    async def delete_data_key(self, key_id: UUID) -> bool:
        """Delete a data key from the key vault and evict it from the cache."""
        async with self._locked(key_id):
            deleted = await _bounded(
                self._key_vault.delete(key_id), self._timeout, StorageError, "Key vault delete"
            )
            self._cache.pop(key_id, None)
        if deleted:
            logger.info("Data key deleted", key_id=str(key_id))
        return deleted

    async def list_data_keys(self) -> List[KeyVaultDocument]:
        return await _bounded(
            self._key_vault.list_keys(), self._timeout, StorageError, "Key vault list"
        )

    async def invalidate(self, key_id: UUID) -> None:
        """Evict a cached data key; the next use re-fetches and unwraps it."""
        async with self._locked(key_id):
            self._cache.pop(key_id, None)

    def clear_cache(self) -> None:
        self._cache.clear()

    def is_cached(self, key_id: UUID) -> bool:
        return key_id in self._cache

    async def _unwrap(self, doc: KeyVaultDocument) -> SecureKey:
        kms = self._providers.get(doc.master_key.provider)
        if kms is None:
            raise ProviderError(
                f"No access to master key provider {doc.master_key.provider!r} "
                f"for data key {doc.key_id}"
            )
        plaintext = await _bounded(
            kms.unwrap(doc.key_material, doc.master_key),
            self._timeout,
            ProviderError,
            f"{kms.name} unwrap",
        )
        if len(plaintext) != DATA_KEY_SIZE:
            raise ProviderError(
                f"Unwrapped data key {doc.key_id} has invalid length {len(plaintext)}"
            )
        return SecureKey(plaintext)
