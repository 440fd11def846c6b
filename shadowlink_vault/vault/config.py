"""
Vault Configuration — Validated settings and persisted blob naming.

Reads overrides from environment variables:
    SHADOWLINK_NAMESPACE = <storage key prefix>
    SHADOWLINK_KDF_ITERATIONS = <integer>
    SHADOWLINK_SWEEP_INTERVAL = <seconds, float>
    SHADOWLINK_DEFAULT_TTL = <milliseconds, integer>
    SHADOWLINK_CLOUD_URL = <base URL of the cloud blob store>

Security Note:
    Never log key material or passwords. Only log blob names and counts.
"""
import os
import re
import logging
from typing import Optional

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger("shadowlink.vault")

_NAMESPACE_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_\-]*$")

# Logical names of the persisted blobs.
BLOB_SALT = "salt"
BLOB_PROFILE = "profile"
BLOB_CONTACTS = "contacts"
BLOB_HISTORY = "history"
BLOB_CANARY = "canary"

BLOB_NAMES = (BLOB_SALT, BLOB_PROFILE, BLOB_CONTACTS, BLOB_HISTORY, BLOB_CANARY)

DEFAULT_ITERATIONS = 100_000
DEFAULT_SWEEP_INTERVAL = 5.0

# Disappearing-message presets in milliseconds (0 = off).
TTL_PRESETS = {
    "off": 0,
    "1m": 60 * 1000,
    "5m": 5 * 60 * 1000,
    "1h": 60 * 60 * 1000,
    "24h": 24 * 60 * 60 * 1000,
}


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return float(raw)


class VaultConfig(BaseModel):
    """Validated vault configuration."""

    namespace: str = Field(default="shadowlink")
    kdf_iterations: int = Field(default=DEFAULT_ITERATIONS, ge=1)
    sweep_interval: float = Field(default=DEFAULT_SWEEP_INTERVAL, gt=0)
    default_ttl: int = Field(default=0, ge=0)
    app_name: str = Field(default="ShadowLink", min_length=1)
    backup_version: str = Field(default="1.0", min_length=1)
    cloud_url: Optional[str] = None

    @field_validator("namespace")
    @classmethod
    def validate_namespace(cls, v: str) -> str:
        """Namespace must be usable as a storage key prefix."""
        if not _NAMESPACE_PATTERN.match(v):
            raise ValueError(f"Invalid storage namespace: {v!r}")
        return v

    @field_validator("cloud_url")
    @classmethod
    def validate_cloud_url(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v == "":
            return None
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"cloud_url must be an http(s) URL, got {v!r}")
        return v.rstrip("/")

    def storage_key(self, blob: str) -> str:
        """Return the storage key for a logical blob name.

        Raises:
            KeyError: If ``blob`` is not one of the known blob names.
        """
        if blob not in BLOB_NAMES:
            raise KeyError(f"Unknown vault blob: {blob}")
        return f"{self.namespace}_{blob}"

    def storage_keys(self) -> dict[str, str]:
        """Mapping of every logical blob name to its storage key."""
        return {blob: self.storage_key(blob) for blob in BLOB_NAMES}

    @classmethod
    def from_env(cls) -> "VaultConfig":
        """Create VaultConfig by loading values from environment.

        Returns:
            Populated VaultConfig instance.
        """
        config = cls(
            namespace=os.environ.get("SHADOWLINK_NAMESPACE", "shadowlink"),
            kdf_iterations=_env_int("SHADOWLINK_KDF_ITERATIONS", DEFAULT_ITERATIONS),
            sweep_interval=_env_float("SHADOWLINK_SWEEP_INTERVAL", DEFAULT_SWEEP_INTERVAL),
            default_ttl=_env_int("SHADOWLINK_DEFAULT_TTL", 0),
            cloud_url=os.environ.get("SHADOWLINK_CLOUD_URL"),
        )
        logger.debug(
            "Loaded vault config: namespace=%s iterations=%d",
            config.namespace, config.kdf_iterations,
        )
        return config
