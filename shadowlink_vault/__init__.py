"""ShadowLink Vault.

Local-first encrypted storage for messages, contacts and profile data.
"""
from .version import __version__
from .storage import MemoryStorage, JsonFileStorage, RedisStorage, StoragePort
from .vault import LocalVault, VaultConfig

__all__ = (
    "__version__",
    "LocalVault",
    "VaultConfig",
    "MemoryStorage",
    "JsonFileStorage",
    "RedisStorage",
    "StoragePort",
)
