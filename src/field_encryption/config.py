"""
Configuration for field level encryption clients.

Settings can be built directly or loaded from the environment (and a
``.env`` file) with ``EncryptionSettings.from_env()``:

- ``DATABASE_URL``: PostgreSQL key vault; in-memory key vault when unset
- ``FLE_KEY_VAULT_TABLE``: key vault table name (default ``key_vault``)
- ``FLE_LOCAL_MASTER_KEY``: base64 96-byte local master key
- ``AWS_ACCESS_KEY_ID`` / ``AWS_SECRET_ACCESS_KEY`` / ``AWS_REGION``: AWS KMS provider
- ``FLE_PROVIDER_TIMEOUT``: seconds per provider / key vault call
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union

from dotenv import load_dotenv

from .errors import ConfigError
from .key_manager import DEFAULT_TIMEOUT


@dataclass
class EncryptionSettings:
    """Client encryption settings."""

    kms_providers: Dict[str, Any] = field(default_factory=dict)
    database_url: Optional[str] = None
    key_vault_table: str = "key_vault"
    timeout: Optional[float] = DEFAULT_TIMEOUT
    schema_map: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.kms_providers:
            raise ConfigError("At least one master key provider must be configured")
        if self.timeout is not None and self.timeout <= 0:
            raise ConfigError("timeout must be positive")

    @classmethod
    def from_env(cls, env_file: Optional[Union[str, Path]] = None) -> EncryptionSettings:
        """
        Load settings from environment variables.

        Args:
            env_file: Optional .env path; defaults to searching from the cwd

        Raises:
            ConfigError: If no provider is configured or a value is invalid
        """
        load_dotenv(env_file)

        kms_providers: Dict[str, Any] = {}
        local_key = os.environ.get("FLE_LOCAL_MASTER_KEY")
        if local_key:
            kms_providers["local"] = {"key": local_key}

        access_key_id = os.environ.get("AWS_ACCESS_KEY_ID")
        secret_access_key = os.environ.get("AWS_SECRET_ACCESS_KEY")
        if access_key_id and secret_access_key:
            aws: Dict[str, Any] = {
                "accessKeyId": access_key_id,
                "secretAccessKey": secret_access_key,
            }
            if os.environ.get("AWS_REGION"):
                aws["region"] = os.environ["AWS_REGION"]
            if os.environ.get("AWS_SESSION_TOKEN"):
                aws["sessionToken"] = os.environ["AWS_SESSION_TOKEN"]
            kms_providers["aws"] = aws

        raw_timeout = os.environ.get("FLE_PROVIDER_TIMEOUT")
        try:
            timeout = float(raw_timeout) if raw_timeout else DEFAULT_TIMEOUT
        except ValueError as e:
            raise ConfigError(f"FLE_PROVIDER_TIMEOUT must be a number: {raw_timeout!r}") from e

        return cls(
            kms_providers=kms_providers,
            database_url=os.environ.get("DATABASE_URL") or None,
            key_vault_table=os.environ.get("FLE_KEY_VAULT_TABLE", "key_vault"),
            timeout=timeout,
        )
