"""
Client-Side Field Level Encryption

Schema-driven encryption of document fields before they leave the
application, with envelope-wrapped data keys held in a key vault.

Quick Start
-----------
```python
import asyncio
import secrets
from field_encryption import AutoEncrypter, ClientEncryption, InMemoryKeyVault

async def main():
    client = ClientEncryption(
        {"local": {"key": secrets.token_bytes(96)}},
        InMemoryKeyVault(),
    )
    key_id = await client.create_data_key("local")

    schema = {
        "bsonType": "object",
        "encryptMetadata": {"keyId": [key_id]},
        "properties": {
            "ssn": {"encrypt": {
                "bsonType": "int",
                "algorithm": "AEAD_AES_256_CBC_HMAC_SHA_512-Deterministic",
            }},
            "bloodType": {"encrypt": {
                "bsonType": "string",
                "algorithm": "AEAD_AES_256_CBC_HMAC_SHA_512-Random",
            }},
        },
    }
    auto = AutoEncrypter(client, {"medicalRecords.patients": schema})

    stored = await auto.encrypt_for_write(
        "medicalRecords.patients", {"name": "Jon Doe", "ssn": 241014209, "bloodType": "AB+"}
    )
    patient = await auto.decrypt_for_read(stored)

asyncio.run(main())
```

Key Features
------------
- **Deterministic / Random**: AEAD_AES_256_CBC_HMAC_SHA_512 with synthetic or random IVs
- **Envelope Keys**: 96-byte data keys wrapped by a local secret or AWS KMS
- **Key Vault**: In-memory or PostgreSQL storage of wrapped data keys
- **Compiled Schemas**: Encryption schemas flattened once into path lookups
- **Fail Closed**: Whole-document transforms; no partial results
"""

__version__ = "0.1.0"

# =============================================================================
# Crypto Exports
# =============================================================================

from .crypto import (
    DATA_KEY_SIZE,
    IV_SIZE,
    TAG_SIZE,
    AeadAes256CbcHmacSha512,
    SecureKey,
)

# =============================================================================
# Error Exports
# =============================================================================

from .errors import (
    ConfigError,
    CryptoError,
    DecryptionError,
    FieldEncryptionError,
    NotFoundError,
    ProviderError,
    SchemaError,
    SchemaMismatchError,
    SerializationError,
    StorageError,
)

# =============================================================================
# Key Vault Exports
# =============================================================================

from .key_vault import (
    InMemoryKeyVault,
    KeyStatus,
    KeyVault,
    KeyVaultDocument,
    MasterKey,
)
from .postgres_key_vault import PostgresKeyVault

# =============================================================================
# Key Management Exports
# =============================================================================

from .providers import (
    AwsKmsMasterKeyProvider,
    LocalMasterKeyProvider,
    MasterKeyProvider,
    build_providers,
)
from .key_manager import EnvelopeKeyManager

# =============================================================================
# Schema / Cipher / Pipeline Exports
# =============================================================================

from .schema import (
    DETERMINISTIC_ALGORITHM,
    RANDOM_ALGORITHM,
    Algorithm,
    CompiledSchema,
    EncryptionDirective,
    SchemaCompiler,
    compile_schema,
)
from .cipher import EncryptedBinary, FieldCipher
from .pipeline import DocumentTransformer, TransformState

# =============================================================================
# Client Exports (Primary API)
# =============================================================================

from .config import EncryptionSettings
from .client import AutoEncrypter, ClientEncryption

# =============================================================================
# Public API
# =============================================================================

__all__ = [
    # Version
    "__version__",
    # Crypto
    "DATA_KEY_SIZE",
    "IV_SIZE",
    "TAG_SIZE",
    "AeadAes256CbcHmacSha512",
    "SecureKey",
    # Errors
    "FieldEncryptionError",
    "SchemaError",
    "SchemaMismatchError",
    "NotFoundError",
    "ProviderError",
    "DecryptionError",
    "CryptoError",
    "StorageError",
    "SerializationError",
    "ConfigError",
    # Key vault
    "KeyVault",
    "InMemoryKeyVault",
    "PostgresKeyVault",
    "KeyVaultDocument",
    "MasterKey",
    "KeyStatus",
    # Key management
    "MasterKeyProvider",
    "LocalMasterKeyProvider",
    "AwsKmsMasterKeyProvider",
    "build_providers",
    "EnvelopeKeyManager",
    # Schema, cipher, pipeline
    "DETERMINISTIC_ALGORITHM",
    "RANDOM_ALGORITHM",
    "Algorithm",
    "CompiledSchema",
    "EncryptionDirective",
    "SchemaCompiler",
    "compile_schema",
    "EncryptedBinary",
    "FieldCipher",
    "DocumentTransformer",
    "TransformState",
    # Client (Primary API)
    "EncryptionSettings",
    "ClientEncryption",
    "AutoEncrypter",
]
