"""
Encryption schema compiler.

Input is a JSON-schema-like tree restricted to field level encryption
keywords::

    {
        "bsonType": "object",
        "encryptMetadata": {"keyId": [UUID]},
        "properties": {
            "ssn": {"encrypt": {"bsonType": "int",
                                "algorithm": "AEAD_AES_256_CBC_HMAC_SHA_512-Deterministic"}},
            "insurance": {"bsonType": "object", "properties": {...}},
            "medicalRecords": {"encrypt": {"bsonType": "array",
                                           "algorithm": "AEAD_AES_256_CBC_HMAC_SHA_512-Random"}},
        },
    }

Output is a flat ``{field path: EncryptionDirective}`` table. Any keyword
outside the encryption vocabulary is rejected, never ignored.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterator, List, Mapping, Optional, Tuple
from uuid import UUID

from .codec import DETERMINISTIC_TYPES, VALUE_TYPES
from .errors import SchemaError

DETERMINISTIC_ALGORITHM = "AEAD_AES_256_CBC_HMAC_SHA_512-Deterministic"
RANDOM_ALGORITHM = "AEAD_AES_256_CBC_HMAC_SHA_512-Random"

ARRAY_WILDCARD = "$"

FieldPath = Tuple[str, ...]

_NODE_KEYWORDS = frozenset({"bsonType", "properties", "encryptMetadata", "encrypt", "items"})
_ENCRYPT_KEYWORDS = frozenset({"bsonType", "algorithm", "keyId"})
_METADATA_KEYWORDS = frozenset({"keyId", "algorithm"})


class Algorithm(Enum):
    """Field encryption algorithm; the value is the ciphertext algorithm byte."""

    DETERMINISTIC = 1
    RANDOM = 2

    def __str__(self) -> str:
        return DETERMINISTIC_ALGORITHM if self is Algorithm.DETERMINISTIC else RANDOM_ALGORITHM

    @classmethod
    def from_name(cls, name: Any) -> Algorithm:
        """Parse a full or short algorithm name."""
        if isinstance(name, Algorithm):
            return name
        if name in (DETERMINISTIC_ALGORITHM, "Deterministic"):
            return cls.DETERMINISTIC
        if name in (RANDOM_ALGORITHM, "Random"):
            return cls.RANDOM
        raise SchemaError(f"Unknown encryption algorithm: {name!r}")


@dataclass(frozen=True)
class EncryptionDirective:
    """How to encrypt one field. Empty value_types means any serializable value."""

    key_id: UUID
    algorithm: Algorithm
    value_types: Tuple[str, ...] = ()


@dataclass(frozen=True)
class _Metadata:
    key_id: Optional[UUID] = None
    algorithm: Optional[Algorithm] = None


class CompiledSchema:
    """Flattened, path-indexed encryption directives."""

    def __init__(self, directives: Mapping[FieldPath, EncryptionDirective]) -> None:
        self._directives: Dict[FieldPath, EncryptionDirective] = dict(directives)
        prefixes = set()
        for path in self._directives:
            for i in range(len(path)):
                prefixes.add(path[:i])
        self._object_paths: FrozenSet[FieldPath] = frozenset(prefixes)

    def directive_for(self, path: FieldPath) -> Optional[EncryptionDirective]:
        return self._directives.get(tuple(path))

    def expects_object(self, path: FieldPath) -> bool:
        """True when some directive lives below path."""
        return tuple(path) in self._object_paths

    def key_ids(self) -> FrozenSet[UUID]:
        return frozenset(d.key_id for d in self._directives.values())

    def items(self) -> Iterator[Tuple[FieldPath, EncryptionDirective]]:
        return iter(self._directives.items())

    def __len__(self) -> int:
        return len(self._directives)

    def __contains__(self, path: object) -> bool:
        return path in self._directives

    def __repr__(self) -> str:
        paths = [".".join(p) for p in self._directives]
        return f"CompiledSchema({paths})"


def parse_key_id(raw: Any) -> UUID:
    """Accept a UUID, UUID string, 16 raw bytes, or a one-element list of these."""
    if isinstance(raw, list):
        if len(raw) != 1:
            raise SchemaError("keyId must contain exactly one key identifier")
        raw = raw[0]
    if isinstance(raw, UUID):
        return raw
    if isinstance(raw, (bytes, bytearray)) and len(raw) == 16:
        return UUID(bytes=bytes(raw))
    if isinstance(raw, str):
        try:
            return UUID(raw)
        except ValueError as e:
            raise SchemaError(f"Invalid keyId: {raw!r}") from e
    raise SchemaError(f"Invalid keyId: {raw!r}")


def _type_names(raw: Any, where: str) -> Tuple[str, ...]:
    names = [raw] if isinstance(raw, str) else raw
    if not isinstance(names, list) or not names:
        raise SchemaError(f"{where}: bsonType must be a string or non-empty list")
    for name in names:
        if not isinstance(name, str) or name not in VALUE_TYPES:
            raise SchemaError(f"{where}: unknown bsonType {name!r}")
    return tuple(names)


class SchemaCompiler:
    """Compiles an encryption schema into a CompiledSchema."""

    def compile(self, schema: Mapping[str, Any]) -> CompiledSchema:
        """
        Walk the schema depth-first and collect directives.

        Raises:
            SchemaError: On unknown keywords, deterministic directives without a
                usable type, directives inside array items, or missing key ids
        """
        if not isinstance(schema, Mapping):
            raise SchemaError("Schema must be a mapping")
        if "encrypt" in schema:
            raise SchemaError("The schema root cannot be encrypted")
        if "bsonType" in schema and schema["bsonType"] != "object":
            raise SchemaError("The schema root must have bsonType 'object'")

        directives: Dict[FieldPath, EncryptionDirective] = {}
        self._walk(schema, (), _Metadata(), False, directives)
        return CompiledSchema(directives)

    def _walk(
        self,
        node: Any,
        path: FieldPath,
        inherited: _Metadata,
        in_array: bool,
        out: Dict[FieldPath, EncryptionDirective],
    ) -> None:
        where = ".".join(path) or "<root>"
        if not isinstance(node, Mapping):
            raise SchemaError(f"{where}: schema node must be a mapping")

        unknown = set(node) - _NODE_KEYWORDS
        if unknown:
            raise SchemaError(f"{where}: unsupported schema keywords {sorted(unknown)}")

        if "encrypt" in node:
            if len(node) != 1:
                raise SchemaError(f"{where}: 'encrypt' cannot be combined with other keywords")
            if in_array:
                raise SchemaError(
                    f"{where}: per-element encryption inside arrays is not supported; "
                    "encrypt the whole array with the Random algorithm"
                )
            out[path] = self._directive(node["encrypt"], inherited, where)
            return

        metadata = inherited
        if "encryptMetadata" in node:
            metadata = self._metadata(node["encryptMetadata"], inherited, where)

        bson_type = node.get("bsonType")
        if bson_type is not None:
            _type_names(bson_type, where)

        if "properties" in node:
            if bson_type not in (None, "object"):
                raise SchemaError(f"{where}: 'properties' requires bsonType 'object'")
            properties = node["properties"]
            if not isinstance(properties, Mapping):
                raise SchemaError(f"{where}: 'properties' must be a mapping")
            for name, child in properties.items():
                if not isinstance(name, str) or not name or "." in name:
                    raise SchemaError(f"{where}: invalid field name {name!r}")
                self._walk(child, path + (name,), metadata, in_array, out)

        if "items" in node:
            if bson_type not in (None, "array"):
                raise SchemaError(f"{where}: 'items' requires bsonType 'array'")
            items = node["items"]
            children: List[Any] = items if isinstance(items, list) else [items]
            for child in children:
                self._walk(child, path + (ARRAY_WILDCARD,), metadata, True, out)

    def _metadata(self, raw: Any, inherited: _Metadata, where: str) -> _Metadata:
        if not isinstance(raw, Mapping):
            raise SchemaError(f"{where}: encryptMetadata must be a mapping")
        unknown = set(raw) - _METADATA_KEYWORDS
        if unknown:
            raise SchemaError(f"{where}: unsupported encryptMetadata keywords {sorted(unknown)}")
        return _Metadata(
            key_id=parse_key_id(raw["keyId"]) if "keyId" in raw else inherited.key_id,
            algorithm=(
                Algorithm.from_name(raw["algorithm"])
                if "algorithm" in raw
                else inherited.algorithm
            ),
        )

    def _directive(self, raw: Any, inherited: _Metadata, where: str) -> EncryptionDirective:
        if not isinstance(raw, Mapping):
            raise SchemaError(f"{where}: 'encrypt' must be a mapping")
        unknown = set(raw) - _ENCRYPT_KEYWORDS
        if unknown:
            raise SchemaError(f"{where}: unsupported encrypt keywords {sorted(unknown)}")

        key_id = parse_key_id(raw["keyId"]) if "keyId" in raw else inherited.key_id
        if key_id is None:
            raise SchemaError(f"{where}: no keyId and no inherited encryptMetadata keyId")

        if "algorithm" in raw:
            algorithm = Algorithm.from_name(raw["algorithm"])
        elif inherited.algorithm is not None:
            algorithm = inherited.algorithm
        else:
            raise SchemaError(f"{where}: no algorithm and no inherited default")

        value_types: Tuple[str, ...] = ()
        if "bsonType" in raw:
            value_types = _type_names(raw["bsonType"], where)

        if algorithm is Algorithm.DETERMINISTIC:
            if len(value_types) != 1:
                raise SchemaError(
                    f"{where}: deterministic encryption requires exactly one bsonType"
                )
            if value_types[0] == "array":
                raise SchemaError(f"{where}: array fields must use the Random algorithm")
            if value_types[0] not in DETERMINISTIC_TYPES:
                raise SchemaError(
                    f"{where}: bsonType {value_types[0]!r} cannot be encrypted deterministically"
                )

        return EncryptionDirective(key_id=key_id, algorithm=algorithm, value_types=value_types)


def compile_schema(schema: Mapping[str, Any]) -> CompiledSchema:
    """Compile an encryption schema."""
    return SchemaCompiler().compile(schema)
