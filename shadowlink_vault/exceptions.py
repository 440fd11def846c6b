"""Error taxonomy for the encrypted vault.

Structural failures abort the whole operation and leave persisted state
unchanged. Per-record decrypt failures are isolated by the collection
loaders and reported alongside the records that did decrypt.
"""
from typing import Optional


class VaultError(Exception):
    """Base exception for vault operations."""

    code: str = "VAULT_ERROR"

    def __init__(self, message: str = "", code: Optional[str] = None):
        self.message = message or self.__class__.__doc__ or ""
        if code is not None:
            self.code = code
        super().__init__(self.message)


class KeyDerivationFailure(VaultError):
    """Malformed password or salt supplied to key derivation."""

    code = "KEY_DERIVATION"


class DecryptionAuthFailure(VaultError):
    """Ciphertext did not authenticate (wrong key or tampered data)."""

    code = "DECRYPTION_AUTH"

    def __init__(
        self,
        message: str = "",
        record_id: Optional[str] = None,
        field: Optional[str] = None,
    ):
        self.record_id = record_id
        self.field = field
        super().__init__(message)


class StorageParseFailure(VaultError):
    """A persisted blob is not well-formed."""

    code = "STORAGE_PARSE"


class BackupValidationFailure(VaultError):
    """Backup bundle is missing required data."""

    code = "BACKUP_VALIDATION"


class RemoteUnavailable(VaultError):
    """Cloud blob store could not be reached."""

    code = "REMOTE_UNAVAILABLE"


class CloudBackupNotFound(RemoteUnavailable):
    """No cloud backup exists under the requested identifier."""

    code = "CLOUD_BACKUP_NOT_FOUND"


class VaultLockedError(VaultError):
    """Vault is not unlocked."""

    code = "VAULT_LOCKED"


class VaultExistsError(VaultError):
    """A vault already exists; reset it before running setup again."""

    code = "VAULT_EXISTS"


class NoVaultError(VaultError):
    """No vault salt is stored; setup is required."""

    code = "NO_VAULT"


class WrongPasswordError(VaultError):
    """Password does not match the vault canary."""

    code = "WRONG_PASSWORD"


class TokenFormatError(VaultError):
    """Token is not in the expected version:salt:iv:ciphertext format."""

    code = "TOKEN_FORMAT"
