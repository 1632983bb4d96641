"""
PostgreSQL key vault backend.

This module provides:
- PostgresKeyVault: asyncpg-backed key vault storing wrapped data keys

Layout:
- ``<table>``: one row per data key (wrapped key material, master key
  coordinates as JSONB, timestamps, status, CAS version)
- ``<table>_alt_names``: unique alternate names, cascading on key delete

Key material is stored wrapped; rows are useless without the master key.
"""

from __future__ import annotations

import json
import re
from typing import List, Optional
from uuid import UUID

import asyncpg
import structlog

from .errors import ConfigError, NotFoundError, StorageError
from .key_vault import KeyStatus, KeyVault, KeyVaultDocument, MasterKey

logger = structlog.get_logger()

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,47}$")

_SELECT_COLUMNS = """
    k.key_id, k.key_material, k.master_key::TEXT AS master_key,
    k.creation_date, k.update_date, k.status, k.version,
    COALESCE(
        (SELECT array_agg(a.name ORDER BY a.position)
         FROM {alt} a WHERE a.key_id = k.key_id),
        '{{}}'::TEXT[]
    ) AS key_alt_names
"""


class PostgresKeyVault(KeyVault):
    """
    PostgreSQL storage backend for wrapped data keys.

    Uniqueness of key ids and alternate names is enforced by the database.
    """

    def __init__(self, pool: asyncpg.Pool, table: str = "key_vault") -> None:
        """
        Initialize PostgreSQL key vault.

        Args:
            pool: asyncpg connection pool
            table: Key vault table name
        """
        if not _IDENTIFIER.match(table):
            raise ConfigError(f"Invalid key vault table name: {table!r}")
        self._pool = pool
        self._table = table
        self._alt_table = f"{table}_alt_names"
        self._columns = _SELECT_COLUMNS.format(alt=self._alt_table)

    @property
    def pool(self) -> asyncpg.Pool:
        """Get the connection pool."""
        return self._pool

    async def ensure_schema(self) -> None:
        """Create the key vault tables if they do not exist."""
        ddl = f"""
            CREATE TABLE IF NOT EXISTS {self._table} (
                key_id UUID PRIMARY KEY,
                key_material BYTEA NOT NULL,
                master_key JSONB NOT NULL,
                creation_date TIMESTAMPTZ NOT NULL,
                update_date TIMESTAMPTZ NOT NULL,
                status SMALLINT NOT NULL DEFAULT 0,
                version INTEGER NOT NULL DEFAULT 1
            );
            CREATE TABLE IF NOT EXISTS {self._alt_table} (
                name TEXT PRIMARY KEY,
                key_id UUID NOT NULL REFERENCES {self._table}(key_id) ON DELETE CASCADE,
                position INTEGER NOT NULL
            );
        """
        try:
            await self._pool.execute(ddl)
        except Exception as e:
            raise StorageError(f"Failed to create key vault schema: {e}") from e

    async def store(self, doc: KeyVaultDocument) -> UUID:
        """
        Store a new key vault document.

        Args:
            doc: KeyVaultDocument to store

        Returns:
            The stored key id
        """
        query = f"""
            INSERT INTO {self._table}
                (key_id, key_material, master_key, creation_date, update_date, status, version)
            VALUES ($1, $2, $3::jsonb, $4, $5, $6, 1)
        """
        try:
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute(
                        query,
                        doc.key_id,
                        doc.key_material,
                        json.dumps(doc.master_key.to_document()),
                        doc.creation_date,
                        doc.update_date,
                        doc.status.value,
                    )
                    await self._insert_alt_names(conn, doc)
        except asyncpg.UniqueViolationError as e:
            raise StorageError(f"Duplicate key id or alt name: {e}") from e
        except Exception as e:
            raise StorageError(f"Failed to store data key: {e}") from e

        logger.info("Key vault document stored", key_id=str(doc.key_id))
        return doc.key_id

    async def fetch(self, key_id: UUID) -> KeyVaultDocument:
        """
        Get a key vault document by key id.

        Raises:
            NotFoundError: If no record exists for key_id
        """
        query = f"SELECT {self._columns} FROM {self._table} k WHERE k.key_id = $1"
        row = await self._fetchrow(query, key_id)
        if row is None:
            raise NotFoundError(f"Data key {key_id}")
        return self._row_to_document(row)

    async def fetch_by_alt_name(self, name: str) -> KeyVaultDocument:
        """
        Get a key vault document by alternate name.

        Raises:
            NotFoundError: If no key carries the name
        """
        query = f"""
            SELECT {self._columns} FROM {self._table} k
            JOIN {self._alt_table} n ON n.key_id = k.key_id
            WHERE n.name = $1
        """
        row = await self._fetchrow(query, name)
        if row is None:
            raise NotFoundError(f"Data key with alt name {name!r}")
        return self._row_to_document(row)

    async def replace(
        self, doc: KeyVaultDocument, expected_version: int
    ) -> KeyVaultDocument:
        """
        Replace a record under compare-and-swap on its version.

        Raises:
            NotFoundError: If the record does not exist
            StorageError: On version conflict or database failure
        """
        query = f"""
            UPDATE {self._table}
            SET key_material = $2, master_key = $3::jsonb, update_date = $4,
                status = $5, version = version + 1
            WHERE key_id = $1 AND version = $6
            RETURNING version
        """
        try:
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    new_version = await conn.fetchval(
                        query,
                        doc.key_id,
                        doc.key_material,
                        json.dumps(doc.master_key.to_document()),
                        doc.update_date,
                        doc.status.value,
                        expected_version,
                    )
                    if new_version is None:
                        exists = await conn.fetchval(
                            f"SELECT 1 FROM {self._table} WHERE key_id = $1",
                            doc.key_id,
                        )
                        if exists is None:
                            raise NotFoundError(f"Data key {doc.key_id}")
                        raise StorageError(
                            f"Version conflict for {doc.key_id}: expected {expected_version}"
                        )
                    await conn.execute(
                        f"DELETE FROM {self._alt_table} WHERE key_id = $1", doc.key_id
                    )
                    await self._insert_alt_names(conn, doc)
        except (NotFoundError, StorageError):
            raise
        except asyncpg.UniqueViolationError as e:
            raise StorageError(f"Duplicate key alt name: {e}") from e
        except Exception as e:
            raise StorageError(f"Failed to replace data key: {e}") from e

        return KeyVaultDocument(
            key_id=doc.key_id,
            key_material=doc.key_material,
            master_key=doc.master_key,
            creation_date=doc.creation_date,
            update_date=doc.update_date,
            status=doc.status,
            key_alt_names=list(doc.key_alt_names),
            version=new_version,
        )

    async def delete(self, key_id: UUID) -> bool:
        """
        Delete a key (alternate names cascade).

        Returns:
            True if deleted, False if not found
        """
        query = f"DELETE FROM {self._table} WHERE key_id = $1 RETURNING key_id"
        row = await self._fetchrow(query, key_id)
        return row is not None

    async def list_keys(self) -> List[KeyVaultDocument]:
        """List all key vault documents ordered by creation date."""
        query = f"SELECT {self._columns} FROM {self._table} k ORDER BY k.creation_date"
        try:
            rows = await self._pool.fetch(query)
        except Exception as e:
            raise StorageError(f"Failed to list data keys: {e}") from e
        return [self._row_to_document(row) for row in rows]

    async def _fetchrow(self, query: str, *args) -> Optional[asyncpg.Record]:
        try:
            return await self._pool.fetchrow(query, *args)
        except Exception as e:
            raise StorageError(f"Key vault query failed: {e}") from e

    async def _insert_alt_names(
        self, conn: asyncpg.Connection, doc: KeyVaultDocument
    ) -> None:
        if not doc.key_alt_names:
            return
        await conn.executemany(
            f"INSERT INTO {self._alt_table} (name, key_id, position) VALUES ($1, $2, $3)",
            [(name, doc.key_id, i) for i, name in enumerate(doc.key_alt_names)],
        )

    @staticmethod
    def _row_to_document(row: asyncpg.Record) -> KeyVaultDocument:
        """Convert database row to KeyVaultDocument."""
        return KeyVaultDocument(
            key_id=row["key_id"],
            key_material=bytes(row["key_material"]),
            master_key=MasterKey.from_document(json.loads(row["master_key"])),
            creation_date=row["creation_date"],
            update_date=row["update_date"],
            status=KeyStatus(row["status"]),
            key_alt_names=list(row["key_alt_names"]),
            version=row["version"],
        )
