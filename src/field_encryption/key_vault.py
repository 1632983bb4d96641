"""
Key vault abstractions for wrapped data keys.

This module provides:
- KeyVault: Abstract protocol for key vault backends
- InMemoryKeyVault: Coroutine-safe in-memory implementation for testing
- Supporting data structures: KeyVaultDocument, MasterKey, KeyStatus

Key vault documents hold data keys only in wrapped form. A record is never
edited field by field: rotation replaces the whole record under a
compare-and-swap on its ``version``.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID

from .errors import NotFoundError, StorageError


class KeyStatus(Enum):
    """Data key status (stored as an integer)."""

    ACTIVE = 0
    DISABLED = 1

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class MasterKey:
    """
    Master key coordinates for a data key.

    ``coordinates`` are provider specific, e.g. ``{"key": <ARN>, "region": ...}``
    for AWS KMS and empty for the local provider.
    """

    provider: str
    coordinates: Dict[str, Any] = field(default_factory=dict)

    def to_document(self) -> Dict[str, Any]:
        return {"provider": self.provider, **self.coordinates}

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> MasterKey:
        coordinates = {k: v for k, v in doc.items() if k != "provider"}
        return cls(provider=doc["provider"], coordinates=coordinates)


@dataclass
class KeyVaultDocument:
    """Wrapped data key with metadata."""

    key_id: UUID
    key_material: bytes  # data key wrapped by the master key provider
    master_key: MasterKey
    creation_date: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    update_date: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    status: KeyStatus = KeyStatus.ACTIVE
    key_alt_names: List[str] = field(default_factory=list)
    version: int = 1

    def to_document(self) -> Dict[str, Any]:
        """Render in key vault collection layout."""
        doc: Dict[str, Any] = {
            "_id": self.key_id,
            "keyMaterial": self.key_material,
            "masterKey": self.master_key.to_document(),
            "creationDate": self.creation_date,
            "updateDate": self.update_date,
            "status": self.status.value,
        }
        if self.key_alt_names:
            doc["keyAltNames"] = list(self.key_alt_names)
        return doc

    @classmethod
    def from_document(cls, doc: Dict[str, Any], version: int = 1) -> KeyVaultDocument:
        """Parse from key vault collection layout."""
        try:
            return cls(
                key_id=doc["_id"],
                key_material=bytes(doc["keyMaterial"]),
                master_key=MasterKey.from_document(doc["masterKey"]),
                creation_date=doc["creationDate"],
                update_date=doc["updateDate"],
                status=KeyStatus(doc.get("status", 0)),
                key_alt_names=list(doc.get("keyAltNames", [])),
                version=version,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise StorageError(f"Invalid key vault document: {e}") from e


class KeyVault(ABC):
    """
    Abstract storage interface for wrapped data keys.

    All methods are async to support both in-memory and database backends.
    """

    @abstractmethod
    async def store(self, doc: KeyVaultDocument) -> UUID:
        """Store a new key vault document and return its key id."""
        ...

    @abstractmethod
    async def fetch(self, key_id: UUID) -> KeyVaultDocument:
        """Get a key vault document by key id; raises NotFoundError."""
        ...

    @abstractmethod
    async def fetch_by_alt_name(self, name: str) -> KeyVaultDocument:
        """Get a key vault document by alternate name; raises NotFoundError."""
        ...

    @abstractmethod
    async def replace(
        self, doc: KeyVaultDocument, expected_version: int
    ) -> KeyVaultDocument:
        """
        Replace a whole record if its stored version equals expected_version.

        Returns the stored record (with incremented version).
        """
        ...

    @abstractmethod
    async def delete(self, key_id: UUID) -> bool:
        """Delete a key; returns False if it did not exist."""
        ...

    @abstractmethod
    async def list_keys(self) -> List[KeyVaultDocument]:
        """List all key vault documents."""
        ...


class InMemoryKeyVault(KeyVault):
    """
    In-memory key vault for testing.

    Uses asyncio.Lock for safe concurrent access.
    """

    def __init__(self) -> None:
        self._keys: Dict[UUID, KeyVaultDocument] = {}
        self._lock = asyncio.Lock()

    def _alt_name_owner(self, name: str) -> Optional[UUID]:
        for doc in self._keys.values():
            if name in doc.key_alt_names:
                return doc.key_id
        return None

    async def store(self, doc: KeyVaultDocument) -> UUID:
        """Store a key vault document."""
        async with self._lock:
            if doc.key_id in self._keys:
                raise StorageError(f"Duplicate key id: {doc.key_id}")
            for name in doc.key_alt_names:
                if self._alt_name_owner(name) is not None:
                    raise StorageError(f"Duplicate key alt name: {name}")
            self._keys[doc.key_id] = replace(
                doc, key_alt_names=list(doc.key_alt_names), version=1
            )
            return doc.key_id

    async def fetch(self, key_id: UUID) -> KeyVaultDocument:
        """Get a key vault document by key id."""
        async with self._lock:
            doc = self._keys.get(key_id)
            if doc is None:
                raise NotFoundError(f"Data key {key_id}")
            return replace(doc, key_alt_names=list(doc.key_alt_names))

    async def fetch_by_alt_name(self, name: str) -> KeyVaultDocument:
        """Get a key vault document by alternate name."""
        async with self._lock:
            owner = self._alt_name_owner(name)
            if owner is None:
                raise NotFoundError(f"Data key with alt name {name!r}")
            doc = self._keys[owner]
            return replace(doc, key_alt_names=list(doc.key_alt_names))

    async def replace(
        self, doc: KeyVaultDocument, expected_version: int
    ) -> KeyVaultDocument:
        """Replace a record under compare-and-swap."""
        async with self._lock:
            current = self._keys.get(doc.key_id)
            if current is None:
                raise NotFoundError(f"Data key {doc.key_id}")
            if current.version != expected_version:
                raise StorageError(
                    f"Version conflict for {doc.key_id}: "
                    f"expected {expected_version}, found {current.version}"
                )
            for name in doc.key_alt_names:
                owner = self._alt_name_owner(name)
                if owner is not None and owner != doc.key_id:
                    raise StorageError(f"Duplicate key alt name: {name}")
            stored = replace(
                doc,
                key_alt_names=list(doc.key_alt_names),
                version=expected_version + 1,
            )
            self._keys[doc.key_id] = stored
            return replace(stored, key_alt_names=list(stored.key_alt_names))

    async def delete(self, key_id: UUID) -> bool:
        """Delete a key."""
        async with self._lock:
            return self._keys.pop(key_id, None) is not None

    async def list_keys(self) -> List[KeyVaultDocument]:
        """List all key vault documents."""
        async with self._lock:
            return [
                replace(doc, key_alt_names=list(doc.key_alt_names))
                for doc in self._keys.values()
            ]
