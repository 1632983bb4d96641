"""
Pytest configuration and fixtures for field level encryption tests.
"""

from __future__ import annotations

import asyncio
import os
import secrets
from pathlib import Path
from typing import AsyncGenerator
from uuid import UUID

import asyncpg
import pytest
from dotenv import load_dotenv

from field_encryption import (
    DETERMINISTIC_ALGORITHM,
    RANDOM_ALGORITHM,
    ClientEncryption,
    EnvelopeKeyManager,
    InMemoryKeyVault,
    LocalMasterKeyProvider,
    MasterKey,
    PostgresKeyVault,
)


class CountingLocalProvider(LocalMasterKeyProvider):
    """Local provider that counts unwrap calls and can be slowed down."""

    def __init__(self, key: bytes, delay: float = 0.0) -> None:
        super().__init__(key)
        self.delay = delay
        self.unwrap_calls = 0

    async def unwrap(self, wrapped: bytes, master_key: MasterKey) -> bytes:
        self.unwrap_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        return await super().unwrap(wrapped, master_key)


@pytest.fixture
def local_master_key() -> bytes:
    """Random 96-byte local master key."""
    return secrets.token_bytes(96)


@pytest.fixture
def memory_vault() -> InMemoryKeyVault:
    """Create an in-memory key vault for testing."""
    return InMemoryKeyVault()


@pytest.fixture
def counting_provider(local_master_key: bytes) -> CountingLocalProvider:
    return CountingLocalProvider(local_master_key)


@pytest.fixture
def key_manager(
    memory_vault: InMemoryKeyVault, counting_provider: CountingLocalProvider
) -> EnvelopeKeyManager:
    return EnvelopeKeyManager(memory_vault, {"local": counting_provider})


@pytest.fixture
def client(local_master_key: bytes, memory_vault: InMemoryKeyVault) -> ClientEncryption:
    """Client encryption with a local master key and in-memory key vault."""
    return ClientEncryption({"local": {"key": local_master_key}}, memory_vault)


@pytest.fixture
async def data_key_id(client: ClientEncryption) -> UUID:
    return await client.create_data_key("local", key_alt_names=["patients"])


@pytest.fixture
def patient_schema(data_key_id: UUID) -> dict:
    """Schema for the medicalRecords.patients example collection."""
    return {
        "bsonType": "object",
        "encryptMetadata": {"keyId": [data_key_id]},
        "properties": {
            "insurance": {
                "bsonType": "object",
                "properties": {
                    "policyNumber": {
                        "encrypt": {"bsonType": "int", "algorithm": DETERMINISTIC_ALGORITHM}
                    }
                },
            },
            "medicalRecords": {
                "encrypt": {"bsonType": "array", "algorithm": RANDOM_ALGORITHM}
            },
            "bloodType": {"encrypt": {"bsonType": "string", "algorithm": RANDOM_ALGORITHM}},
            "ssn": {"encrypt": {"bsonType": "int", "algorithm": DETERMINISTIC_ALGORITHM}},
        },
    }


@pytest.fixture
async def pg_pool() -> AsyncGenerator[asyncpg.Pool, None]:
    """Create a PostgreSQL connection pool for testing."""
    # Load environment from project root
    env_path = Path(__file__).parent.parent / ".env"
    load_dotenv(env_path)

    database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        pytest.skip("DATABASE_URL not set, skipping PostgreSQL tests")

    pool = await asyncpg.create_pool(database_url)
    if pool is None:
        pytest.skip("Failed to create PostgreSQL connection pool")

    yield pool

    await pool.close()


@pytest.fixture
async def postgres_vault(pg_pool: asyncpg.Pool) -> PostgresKeyVault:
    """Create a PostgreSQL key vault on a fresh table."""
    vault = PostgresKeyVault(pg_pool, table="test_key_vault")
    await vault.ensure_schema()
    await pg_pool.execute("TRUNCATE TABLE test_key_vault CASCADE")
    return vault
