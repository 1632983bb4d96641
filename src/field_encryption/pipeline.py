"""
Document transform pipeline.

Walks a document against a compiled schema and hands matched fields to
the field cipher. Each transform runs ``START -> WALKING -> DONE | FAILED``
and builds a new document; the input is never mutated, so a failed
transform leaves nothing half-encrypted behind.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Mapping, Optional

import structlog

from .cipher import FieldCipher, is_encrypted
from .codec import conforms
from .errors import DecryptionError, FieldEncryptionError, SchemaMismatchError
from .schema import ARRAY_WILDCARD, CompiledSchema, FieldPath

logger = structlog.get_logger()


class TransformState(Enum):
    START = "start"
    WALKING = "walking"
    DONE = "done"
    FAILED = "failed"


def _dotted(path: FieldPath) -> str:
    return ".".join(path)


class DocumentTransform:
    """A single encrypt or decrypt pass over one document."""

    def __init__(self, cipher: FieldCipher, schema: Optional[CompiledSchema]) -> None:
        self._cipher = cipher
        self._schema = schema
        self.state = TransformState.START
        self.fields_transformed = 0

    async def encrypt(self, document: Mapping[str, Any]) -> Dict[str, Any]:
        if self._schema is None:
            raise SchemaMismatchError("Encryption requires a compiled schema")
        return await self._run(self._encrypt_object, document)

    async def decrypt(self, document: Mapping[str, Any]) -> Dict[str, Any]:
        return await self._run(self._decrypt_object, document)

    async def _run(self, walk, document: Mapping[str, Any]) -> Dict[str, Any]:
        if self.state is not TransformState.START:
            raise FieldEncryptionError("Document transform already used")
        if not isinstance(document, Mapping):
            self.state = TransformState.FAILED
            raise SchemaMismatchError("Document must be a mapping")

        self.state = TransformState.WALKING
        try:
            result = await walk(document, ())
        except FieldEncryptionError as e:
            self.state = TransformState.FAILED
            logger.warning("Document transform failed", error_type=type(e).__name__)
            raise
        except BaseException:
            self.state = TransformState.FAILED
            raise
        self.state = TransformState.DONE
        return result

    async def _encrypt_object(self, document: Mapping[str, Any], path: FieldPath) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for name, value in document.items():
            child = path + (name,)
            directive = self._schema.directive_for(child)

            if directive is not None:
                if is_encrypted(value):
                    out[name] = value
                    continue
                try:
                    out[name] = await self._cipher.encrypt(value, directive)
                except SchemaMismatchError as e:
                    raise SchemaMismatchError(f"{_dotted(child)}: {e}") from e
                self.fields_transformed += 1
            elif self._schema.expects_object(child):
                if not isinstance(value, Mapping):
                    raise SchemaMismatchError(
                        f"{_dotted(child)}: expected object, got {type(value).__name__}"
                    )
                out[name] = await self._encrypt_object(value, child)
            else:
                out[name] = value
        return out

    async def _decrypt_value(self, value: Any, path: FieldPath) -> Any:
        if is_encrypted(value):
            plaintext = await self._cipher.decrypt(value)
            self.fields_transformed += 1
            directive = self._schema.directive_for(path) if self._schema else None
            if directive is not None and directive.value_types:
                if not conforms(plaintext, directive.value_types):
                    raise DecryptionError(
                        f"{_dotted(path)}: decrypted value does not match declared type"
                    )
            return plaintext
        if isinstance(value, Mapping):
            return await self._decrypt_object(value, path)
        if isinstance(value, list):
            return [await self._decrypt_value(item, path + (ARRAY_WILDCARD,)) for item in value]
        return value

    async def _decrypt_object(self, document: Mapping[str, Any], path: FieldPath) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for name, value in document.items():
            out[name] = await self._decrypt_value(value, path + (name,))
        return out


class DocumentTransformer:
    """Entry point for whole-document encryption and decryption."""

    def __init__(self, cipher: FieldCipher) -> None:
        self._cipher = cipher

    async def encrypt_for_write(
        self, document: Mapping[str, Any], schema: CompiledSchema
    ) -> Dict[str, Any]:
        """
        Encrypt every directive-matched field.

        Fields without a directive pass through unchanged; values already
        holding ciphertext are kept as they are.

        Raises:
            SchemaMismatchError: If the document shape or a value type conflicts
                with the schema
        """
        transform = DocumentTransform(self._cipher, schema)
        result = await transform.encrypt(document)
        logger.debug("Document encrypted", fields=transform.fields_transformed)
        return result

    async def decrypt_for_read(
        self, document: Mapping[str, Any], schema: Optional[CompiledSchema] = None
    ) -> Dict[str, Any]:
        """
        Decrypt every encrypted value in the document.

        Ciphertext is decrypted wherever it appears, with or without a
        directive; when the data key cannot be obtained the error propagates.
        With a schema, decrypted values are checked against declared types.

        Raises:
            DecryptionError, ProviderError: On any field failure
        """
        transform = DocumentTransform(self._cipher, schema)
        result = await transform.decrypt(document)
        logger.debug("Document decrypted", fields=transform.fields_transformed)
        return result
