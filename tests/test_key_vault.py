"""Tests for key vault backends."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from uuid import uuid4

import pytest

from field_encryption import (
    KeyStatus,
    KeyVaultDocument,
    MasterKey,
    NotFoundError,
    StorageError,
)


def make_doc(alt_names=None) -> KeyVaultDocument:
    return KeyVaultDocument(
        key_id=uuid4(),
        key_material=b"\x01" * 128,
        master_key=MasterKey("aws", {"key": "arn:aws:kms:us-east-2:111122223333:alias/test-key", "region": "us-east-2"}),
        key_alt_names=list(alt_names or []),
    )


def test_document_layout():
    doc = make_doc(["patients"])
    rendered = doc.to_document()
    assert rendered["_id"] == doc.key_id
    assert rendered["keyMaterial"] == doc.key_material
    assert rendered["masterKey"] == {
        "provider": "aws",
        "key": "arn:aws:kms:us-east-2:111122223333:alias/test-key",
        "region": "us-east-2",
    }
    assert rendered["status"] == 0
    assert rendered["keyAltNames"] == ["patients"]
    assert set(rendered) >= {"creationDate", "updateDate"}

    parsed = KeyVaultDocument.from_document(rendered)
    assert parsed.master_key == doc.master_key
    assert parsed.status is KeyStatus.ACTIVE


def test_from_document_rejects_incomplete_records():
    with pytest.raises(StorageError):
        KeyVaultDocument.from_document({"_id": uuid4()})


async def test_store_and_fetch(memory_vault):
    doc = make_doc()
    assert await memory_vault.store(doc) == doc.key_id

    fetched = await memory_vault.fetch(doc.key_id)
    assert fetched.key_material == doc.key_material
    assert fetched.version == 1


async def test_fetch_missing(memory_vault):
    with pytest.raises(NotFoundError):
        await memory_vault.fetch(uuid4())
    with pytest.raises(NotFoundError):
        await memory_vault.fetch_by_alt_name("nobody")


async def test_duplicate_key_id_and_alt_name(memory_vault):
    doc = make_doc(["patients"])
    await memory_vault.store(doc)
    with pytest.raises(StorageError):
        await memory_vault.store(doc)
    with pytest.raises(StorageError):
        await memory_vault.store(make_doc(["patients"]))


async def test_fetch_by_alt_name(memory_vault):
    doc = make_doc(["patients", "records"])
    await memory_vault.store(doc)
    assert (await memory_vault.fetch_by_alt_name("records")).key_id == doc.key_id


async def test_replace_is_compare_and_swap(memory_vault):
    doc = make_doc()
    await memory_vault.store(doc)
    current = await memory_vault.fetch(doc.key_id)

    updated = replace(
        current,
        key_material=b"\x02" * 128,
        update_date=datetime.now(timezone.utc),
    )
    stored = await memory_vault.replace(updated, current.version)
    assert stored.version == 2
    assert (await memory_vault.fetch(doc.key_id)).key_material == b"\x02" * 128

    # a writer holding the stale version loses
    with pytest.raises(StorageError, match="Version conflict"):
        await memory_vault.replace(replace(current, key_material=b"\x03" * 128), current.version)


async def test_replace_missing(memory_vault):
    with pytest.raises(NotFoundError):
        await memory_vault.replace(make_doc(), 1)


async def test_fetched_documents_are_copies(memory_vault):
    doc = make_doc(["patients"])
    await memory_vault.store(doc)
    fetched = await memory_vault.fetch(doc.key_id)
    fetched.key_alt_names.append("mutated")
    assert (await memory_vault.fetch(doc.key_id)).key_alt_names == ["patients"]


async def test_delete_and_list(memory_vault):
    first, second = make_doc(), make_doc()
    await memory_vault.store(first)
    await memory_vault.store(second)
    assert {d.key_id for d in await memory_vault.list_keys()} == {first.key_id, second.key_id}

    assert await memory_vault.delete(first.key_id) is True
    assert await memory_vault.delete(first.key_id) is False
    assert [d.key_id for d in await memory_vault.list_keys()] == [second.key_id]


# =============================================================================
# PostgreSQL
# =============================================================================


async def test_postgres_store_fetch_replace(postgres_vault):
    doc = make_doc(["patients"])
    await postgres_vault.store(doc)

    fetched = await postgres_vault.fetch(doc.key_id)
    assert fetched.key_material == doc.key_material
    assert fetched.master_key == doc.master_key
    assert fetched.key_alt_names == ["patients"]
    assert fetched.version == 1
    assert (await postgres_vault.fetch_by_alt_name("patients")).key_id == doc.key_id

    stored = await postgres_vault.replace(replace(fetched, key_material=b"\x09" * 64), 1)
    assert stored.version == 2
    with pytest.raises(StorageError):
        await postgres_vault.replace(replace(fetched, key_material=b"\x0a" * 64), 1)


async def test_postgres_duplicates_and_delete(postgres_vault):
    doc = make_doc(["patients"])
    await postgres_vault.store(doc)
    with pytest.raises(StorageError):
        await postgres_vault.store(make_doc(["patients"]))

    assert await postgres_vault.delete(doc.key_id) is True
    with pytest.raises(NotFoundError):
        await postgres_vault.fetch(doc.key_id)
    with pytest.raises(NotFoundError):
        await postgres_vault.fetch_by_alt_name("patients")
