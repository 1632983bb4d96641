"""
Client-side field level encryption API.

This module provides:
- ClientEncryption: Data key management plus explicit value encryption
- AutoEncrypter: Schema-driven document encryption per namespace

Quick Start
-----------
```python
client = ClientEncryption({"local": {"key": local_master_key}}, InMemoryKeyVault())
key_id = await client.create_data_key("local")

auto = AutoEncrypter(client, {"medicalRecords.patients": schema})
stored = await auto.encrypt_for_write("medicalRecords.patients", patient)
patient = await auto.decrypt_for_read(stored)
```
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional
from uuid import UUID

import asyncpg
import structlog

from .cipher import EncryptedBinary, FieldCipher
from .codec import DETERMINISTIC_TYPES, type_name_of
from .config import EncryptionSettings
from .errors import ConfigError, SchemaMismatchError
from .key_manager import DEFAULT_TIMEOUT, EnvelopeKeyManager
from .key_vault import InMemoryKeyVault, KeyStatus, KeyVault, KeyVaultDocument
from .pipeline import DocumentTransformer
from .postgres_key_vault import PostgresKeyVault
from .providers import build_providers
from .schema import Algorithm, CompiledSchema, EncryptionDirective, compile_schema

logger = structlog.get_logger()


class ClientEncryption:
    """
    Data key management and explicit encryption.

    Holds the session's data key cache; share one instance between all
    document transforms of a process.
    """

    def __init__(
        self,
        kms_providers: Mapping[str, Any],
        key_vault: KeyVault,
        *,
        timeout: Optional[float] = DEFAULT_TIMEOUT,
    ) -> None:
        """
        Initialize the client.

        Args:
            kms_providers: Provider configuration (see ``build_providers``)
            key_vault: Key vault backend
            timeout: Bound for each provider and key vault call
        """
        self._key_manager = EnvelopeKeyManager(
            key_vault, build_providers(kms_providers), timeout=timeout
        )
        self._cipher = FieldCipher(self._key_manager)
        self._transformer = DocumentTransformer(self._cipher)
        self._pool: Optional[asyncpg.Pool] = None

    @classmethod
    async def from_settings(cls, settings: EncryptionSettings) -> ClientEncryption:
        """
        Build a client from settings (async factory method).

        Uses a PostgreSQL key vault when ``database_url`` is set, otherwise an
        in-memory key vault.
        """
        if settings.database_url:
            pool = await asyncpg.create_pool(settings.database_url)
            if pool is None:
                raise ConfigError("Failed to create PostgreSQL connection pool")
            key_vault: KeyVault = PostgresKeyVault(pool, settings.key_vault_table)
            await key_vault.ensure_schema()
        else:
            pool = None
            key_vault = InMemoryKeyVault()

        client = cls(settings.kms_providers, key_vault, timeout=settings.timeout)
        client._pool = pool
        logger.info(
            "Client encryption initialized",
            key_vault=type(key_vault).__name__,
            providers=sorted(settings.kms_providers),
        )
        return client

    @property
    def key_manager(self) -> EnvelopeKeyManager:
        return self._key_manager

    @property
    def transformer(self) -> DocumentTransformer:
        return self._transformer

    async def close(self) -> None:
        """Drop cached data keys and close an owned connection pool."""
        self._key_manager.clear_cache()
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def create_data_key(
        self,
        provider: str,
        master_key: Optional[Mapping[str, Any]] = None,
        key_alt_names: Optional[Iterable[str]] = None,
    ) -> UUID:
        """Create a data key wrapped by the named provider."""
        return await self._key_manager.create_data_key(provider, master_key, key_alt_names)

    async def rewrap_data_key(
        self,
        key_id: UUID,
        provider: str,
        master_key: Optional[Mapping[str, Any]] = None,
    ) -> KeyVaultDocument:
        """Re-wrap a data key under another master key, keeping its key id."""
        return await self._key_manager.rewrap_data_key(key_id, provider, master_key)

    async def get_key(self, key_id: UUID) -> KeyVaultDocument:
        return await self._key_manager.key_vault.fetch(key_id)

    async def get_key_by_alt_name(self, key_alt_name: str) -> KeyVaultDocument:
        return await self._key_manager.key_vault.fetch_by_alt_name(key_alt_name)

    async def get_keys(self) -> List[KeyVaultDocument]:
        return await self._key_manager.list_data_keys()

    async def disable_key(self, key_id: UUID) -> KeyVaultDocument:
        return await self._key_manager.set_key_status(key_id, KeyStatus.DISABLED)

    async def enable_key(self, key_id: UUID) -> KeyVaultDocument:
        return await self._key_manager.set_key_status(key_id, KeyStatus.ACTIVE)

    async def delete_key(self, key_id: UUID) -> bool:
        return await self._key_manager.delete_data_key(key_id)

    async def invalidate(self, key_id: UUID) -> None:
        """Evict a cached data key (e.g. after out-of-band rotation)."""
        await self._key_manager.invalidate(key_id)

    async def encrypt(
        self,
        value: Any,
        algorithm: Any,
        *,
        key_id: Optional[UUID] = None,
        key_alt_name: Optional[str] = None,
    ) -> EncryptedBinary:
        """
        Explicitly encrypt a single value.

        Args:
            value: Value to encrypt
            algorithm: Algorithm or algorithm name
            key_id: Data key id (exactly one of key_id / key_alt_name)
            key_alt_name: Data key alternate name

        Raises:
            ConfigError: If neither or both key selectors are given
            SchemaMismatchError: If the value cannot be encrypted deterministically
        """
        if (key_id is None) == (key_alt_name is None):
            raise ConfigError("Specify exactly one of key_id or key_alt_name")
        if key_id is None:
            key_id = await self._key_manager.resolve_alt_name(key_alt_name)

        algorithm = Algorithm.from_name(algorithm)
        if algorithm is Algorithm.DETERMINISTIC:
            value_type = type_name_of(value)
            if value_type not in DETERMINISTIC_TYPES:
                raise SchemaMismatchError(
                    f"{value_type} values cannot be encrypted deterministically"
                )
        return await self._cipher.encrypt(value, EncryptionDirective(key_id, algorithm))

    async def decrypt(self, value: bytes) -> Any:
        """Explicitly decrypt a single ciphertext blob."""
        return await self._cipher.decrypt(value)


class AutoEncrypter:
    """
    Automatic encryption by namespace.

    Schemas are compiled once at construction; namespaces without a schema
    are written unencrypted.
    """

    def __init__(
        self,
        client: ClientEncryption,
        schema_map: Optional[Mapping[str, Mapping[str, Any]]] = None,
    ) -> None:
        self._client = client
        self._schemas: Dict[str, CompiledSchema] = {
            namespace: compile_schema(schema)
            for namespace, schema in (schema_map or {}).items()
        }

    def schema_for(self, namespace: str) -> Optional[CompiledSchema]:
        return self._schemas.get(namespace)

    async def encrypt_for_write(
        self, namespace: str, document: Mapping[str, Any]
    ) -> Dict[str, Any]:
        """Encrypt a document bound for the given namespace."""
        schema = self._schemas.get(namespace)
        if schema is None:
            return dict(document)
        return await self._client.transformer.encrypt_for_write(document, schema)

    async def decrypt_for_read(
        self, document: Mapping[str, Any], namespace: Optional[str] = None
    ) -> Dict[str, Any]:
        """Decrypt every encrypted field in a document read from the store."""
        schema = self._schemas.get(namespace) if namespace else None
        return await self._client.transformer.decrypt_for_read(document, schema)

    @classmethod
    async def from_settings(cls, settings: EncryptionSettings) -> AutoEncrypter:
        """Build a client and auto encrypter from settings (async factory method)."""
        client = await ClientEncryption.from_settings(settings)
        return cls(client, settings.schema_map)

    @property
    def client(self) -> ClientEncryption:
        return self._client
