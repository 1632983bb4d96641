"""
Master key providers.

A master key provider wraps and unwraps data keys; it never sees field
values. Variants:

- LocalMasterKeyProvider ("local"): 96-byte secret held by the application
- AwsKmsMasterKeyProvider ("aws"): delegates to AWS KMS Encrypt/Decrypt

Add a backend by subclassing MasterKeyProvider and registering its name
in ``build_providers``.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Mapping, Optional

import boto3
import structlog
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .crypto import DATA_KEY_SIZE, AeadAes256CbcHmacSha512, SecureKey
from .errors import ConfigError, DecryptionError, ProviderError
from .key_vault import MasterKey

logger = structlog.get_logger()

LOCAL_PROVIDER = "local"
AWS_PROVIDER = "aws"

# Flat configuration alias for the remote provider
_PROVIDER_ALIASES = {"remote": AWS_PROVIDER}


class MasterKeyProvider(ABC):
    """Fixed-capability interface: wrap and unwrap data key material."""

    name: str = ""

    @abstractmethod
    def master_key(self, coordinates: Optional[Mapping[str, Any]] = None) -> MasterKey:
        """Validate coordinates and build the MasterKey recorded in the key vault."""
        ...

    @abstractmethod
    async def wrap(self, plaintext: bytes, master_key: MasterKey) -> bytes:
        """Encrypt data key material under the master key."""
        ...

    @abstractmethod
    async def unwrap(self, wrapped: bytes, master_key: MasterKey) -> bytes:
        """Decrypt data key material wrapped under the master key."""
        ...


class LocalMasterKeyProvider(MasterKeyProvider):
    """
    Local master key provider.

    Wraps data keys with the same AEAD construction used for fields, in
    randomized mode, under a 96-byte locally held secret.
    """

    name = LOCAL_PROVIDER

    def __init__(self, key: bytes) -> None:
        if len(key) != DATA_KEY_SIZE:
            raise ConfigError(
                f"Local master key must be {DATA_KEY_SIZE} bytes, got {len(key)}"
            )
        self._key = SecureKey(key)

    def master_key(self, coordinates: Optional[Mapping[str, Any]] = None) -> MasterKey:
        if coordinates:
            raise ConfigError("Local provider does not accept master key coordinates")
        return MasterKey(provider=self.name)

    async def wrap(self, plaintext: bytes, master_key: MasterKey) -> bytes:
        iv = AeadAes256CbcHmacSha512.random_iv()
        return AeadAes256CbcHmacSha512.encrypt(self._key, plaintext, b"", iv)

    async def unwrap(self, wrapped: bytes, master_key: MasterKey) -> bytes:
        try:
            return AeadAes256CbcHmacSha512.decrypt(self._key, wrapped, b"")
        except DecryptionError as e:
            logger.warning("Local master key rejected wrapped data key")
            raise ProviderError("Local master key cannot unwrap data key") from e

    def __repr__(self) -> str:
        return "LocalMasterKeyProvider(key=[REDACTED])"


class AwsKmsMasterKeyProvider(MasterKeyProvider):
    """
    AWS KMS master key provider.

    Coordinates: ``{"key": <key ARN or alias>, "region": <AWS region>}``.
    boto3 calls are blocking and run in a worker thread; botocore retries
    are disabled so that failures surface to the caller immediately.
    """

    name = AWS_PROVIDER

    def __init__(
        self,
        access_key_id: str,
        secret_access_key: str,
        *,
        region: Optional[str] = None,
        session_token: Optional[str] = None,
        timeout: float = 10.0,
        client_factory: Optional[Callable[[str], Any]] = None,
    ) -> None:
        if not access_key_id or not secret_access_key:
            raise ConfigError("AWS provider requires accessKeyId and secretAccessKey")
        self._access_key_id = access_key_id
        self._secret_access_key = secret_access_key
        self._session_token = session_token
        self._region = region
        self._timeout = timeout
        self._client_factory = client_factory or self._create_client
        self._clients: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def _create_client(self, region: str) -> Any:
        return boto3.client(
            "kms",
            region_name=region,
            aws_access_key_id=self._access_key_id,
            aws_secret_access_key=self._secret_access_key,
            aws_session_token=self._session_token,
            config=Config(
                connect_timeout=self._timeout,
                read_timeout=self._timeout,
                retries={"total_max_attempts": 1},
            ),
        )

    def _get_client(self, region: str) -> Any:
        """Get or create a KMS client for a region."""
        with self._lock:
            client = self._clients.get(region)
            if client is None:
                client = self._client_factory(region)
                self._clients[region] = client
            return client

    def master_key(self, coordinates: Optional[Mapping[str, Any]] = None) -> MasterKey:
        coordinates = dict(coordinates or {})
        if not coordinates.get("key"):
            raise ConfigError("AWS master key requires a 'key' (ARN) coordinate")
        if not coordinates.get("region"):
            if not self._region:
                raise ConfigError("AWS master key requires a 'region' coordinate")
            coordinates["region"] = self._region
        return MasterKey(provider=self.name, coordinates=coordinates)

    def _region_of(self, master_key: MasterKey) -> str:
        region = master_key.coordinates.get("region") or self._region
        if not region:
            raise ProviderError("No region for AWS master key")
        return region

    async def wrap(self, plaintext: bytes, master_key: MasterKey) -> bytes:
        key_arn = master_key.coordinates.get("key")
        client = self._get_client(self._region_of(master_key))
        try:
            response = await asyncio.to_thread(
                client.encrypt, KeyId=key_arn, Plaintext=plaintext
            )
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "Unknown")
            logger.error("KMS encrypt failed", key=key_arn, error_code=code)
            raise ProviderError(f"AWS KMS encrypt failed ({code})") from e
        except BotoCoreError as e:
            logger.error("KMS encrypt failed", key=key_arn, error=str(e))
            raise ProviderError(f"AWS KMS encrypt failed: {e}") from e
        return response["CiphertextBlob"]

    async def unwrap(self, wrapped: bytes, master_key: MasterKey) -> bytes:
        key_arn = master_key.coordinates.get("key")
        client = self._get_client(self._region_of(master_key))
        try:
            response = await asyncio.to_thread(
                client.decrypt, CiphertextBlob=wrapped, KeyId=key_arn
            )
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "Unknown")
            logger.error("KMS decrypt failed", key=key_arn, error_code=code)
            raise ProviderError(f"AWS KMS decrypt failed ({code})") from e
        except BotoCoreError as e:
            logger.error("KMS decrypt failed", key=key_arn, error=str(e))
            raise ProviderError(f"AWS KMS decrypt failed: {e}") from e
        return response["Plaintext"]

    def __repr__(self) -> str:
        return f"AwsKmsMasterKeyProvider(region={self._region!r})"


def _decode_local_key(raw: Any) -> bytes:
    if isinstance(raw, (bytes, bytearray)):
        return bytes(raw)
    if isinstance(raw, str):
        try:
            return base64.b64decode(raw, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ConfigError(f"Local master key is not valid base64: {e}") from e
    raise ConfigError("Local master key must be bytes or a base64 string")


def build_provider(name: str, options: Mapping[str, Any]) -> MasterKeyProvider:
    """Build a single provider from its configuration mapping."""
    name = _PROVIDER_ALIASES.get(name, name)
    if name == LOCAL_PROVIDER:
        if "key" not in options:
            raise ConfigError("Local provider requires 'key'")
        return LocalMasterKeyProvider(_decode_local_key(options["key"]))
    if name == AWS_PROVIDER:
        return AwsKmsMasterKeyProvider(
            options.get("accessKeyId", ""),
            options.get("secretAccessKey", ""),
            region=options.get("region"),
            session_token=options.get("sessionToken"),
            timeout=float(options.get("timeout", 10.0)),
        )
    raise ConfigError(f"Unknown master key provider: {name!r}")


def build_providers(kms_providers: Mapping[str, Any]) -> Dict[str, MasterKeyProvider]:
    """
    Build providers from configuration.

    Accepts either a mapping keyed by provider name::

        {"local": {"key": <96 bytes>}, "aws": {"accessKeyId": ..., "secretAccessKey": ...}}

    or a single flat entry::

        {"provider": "remote", "region": ..., "accessKeyId": ..., "secretAccessKey": ...}
    """
    if "provider" in kms_providers:
        options = {k: v for k, v in kms_providers.items() if k != "provider"}
        provider = build_provider(kms_providers["provider"], options)
        return {provider.name: provider}

    providers: Dict[str, MasterKeyProvider] = {}
    for name, options in kms_providers.items():
        if isinstance(options, MasterKeyProvider):
            providers[options.name] = options
            continue
        if not isinstance(options, Mapping):
            raise ConfigError(f"Provider {name!r} options must be a mapping")
        provider = build_provider(name, options)
        providers[provider.name] = provider
    if not providers:
        raise ConfigError("At least one master key provider must be configured")
    return providers
