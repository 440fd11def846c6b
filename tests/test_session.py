"""
Tests for the vault session lifecycle: setup, unlock, lock and reset.
"""
import pytest

from shadowlink_vault.exceptions import (
    KeyDerivationFailure,
    NoVaultError,
    VaultExistsError,
    VaultLockedError,
    WrongPasswordError,
)
from shadowlink_vault.vault.config import BLOB_CANARY, BLOB_HISTORY, BLOB_SALT
from shadowlink_vault.vault.crypto import b64decode, decrypt_text, encrypt
from shadowlink_vault.vault.session import VaultState


class TestSetup:
    """First-run setup."""

    async def test_initial_state(self, vault):
        assert await vault.state() == VaultState.NO_VAULT
        assert not vault.session.unlocked

    async def test_setup_unlocks_and_persists(self, vault, storage, config):
        await vault.setup("p1")
        assert await vault.state() == VaultState.UNLOCKED
        salt = b64decode(storage[config.storage_key(BLOB_SALT)])
        assert len(salt) == 16
        assert config.storage_key(BLOB_CANARY) in storage

    async def test_setup_twice_rejected(self, unlocked, storage, config):
        salt = storage[config.storage_key(BLOB_SALT)]
        with pytest.raises(VaultExistsError):
            await unlocked.setup("p2")
        assert storage[config.storage_key(BLOB_SALT)] == salt

    async def test_empty_password(self, vault, storage):
        with pytest.raises(KeyDerivationFailure):
            await vault.setup("")
        assert len(storage) == 0


class TestLockUnlock:
    """Locking and unlocking an existing vault."""

    async def test_lock(self, unlocked):
        key = unlocked.session.key
        unlocked.lock()
        assert key.wiped
        assert await unlocked.state() == VaultState.LOCKED
        with pytest.raises(VaultLockedError):
            unlocked.session.key

    async def test_lock_twice_is_harmless(self, unlocked):
        unlocked.lock()
        unlocked.lock()
        assert await unlocked.state() == VaultState.LOCKED

    async def test_unlock_restores_same_key(self, unlocked, storage, config):
        sealed = encrypt("hello", unlocked.session.key)
        salt = storage[config.storage_key(BLOB_SALT)]
        unlocked.lock()
        await unlocked.unlock("p1")
        assert await unlocked.state() == VaultState.UNLOCKED
        assert decrypt_text(sealed.ciphertext, sealed.iv, unlocked.session.key) == "hello"
        assert storage[config.storage_key(BLOB_SALT)] == salt

    async def test_wrong_password_rejected(self, unlocked):
        unlocked.lock()
        with pytest.raises(WrongPasswordError):
            await unlocked.unlock("p2")
        assert await unlocked.state() == VaultState.LOCKED
        await unlocked.unlock("p1")
        assert unlocked.session.unlocked

    async def test_unlock_without_vault(self, vault):
        with pytest.raises(NoVaultError):
            await vault.unlock("p1")
        assert await vault.state() == VaultState.NO_VAULT

    async def test_unlock_corrupted_salt(self, unlocked, storage, config):
        unlocked.lock()
        storage[config.storage_key(BLOB_SALT)] = "***"
        with pytest.raises(NoVaultError):
            await unlocked.unlock("p1")

    @pytest.mark.parametrize("canary", [None, "active", "{broken"])
    async def test_missing_canary_unlocks_lazily(self, unlocked, storage, config, canary):
        """Without a usable canary any password unlocks; records then fail."""
        async with unlocked.open_conversation("global") as view:
            await view.post("user", "hello")
        unlocked.lock()
        key = config.storage_key(BLOB_CANARY)
        if canary is None:
            del storage[key]
        else:
            storage[key] = canary

        await unlocked.unlock("p2")
        loaded = await unlocked.store.load_conversation("global")
        assert len(loaded) == 0
        assert len(loaded.failures) == 1
        assert loaded.failures[0].field == "content"
        # unlock never rewrites the canary
        if canary is None:
            assert key not in storage
        else:
            assert storage[key] == canary

    async def test_posting_after_wrong_password_keeps_history(self, unlocked, storage, config):
        async with unlocked.open_conversation("global") as view:
            await view.post("user", "precious history")
        unlocked.lock()
        del storage[config.storage_key(BLOB_CANARY)]

        await unlocked.unlock("typo")
        async with unlocked.open_conversation("global") as view:
            assert view.messages == []
            assert len(view.failures) == 1
            await view.post("user", "hello")
        unlocked.lock()

        await unlocked.unlock("p1")
        loaded = await unlocked.store.load_conversation("global")
        assert [m.content for m in loaded] == ["precious history"]
        assert len(loaded.failures) == 1

    async def test_locked_operations_fail(self, unlocked):
        unlocked.lock()
        with pytest.raises(VaultLockedError):
            await unlocked.store.load_conversation("global")
        with pytest.raises(VaultLockedError):
            await unlocked.contacts.list_contacts()
        with pytest.raises(VaultLockedError):
            await unlocked.profile.load_profile()


class TestReset:
    """Destructive reset."""

    async def test_reset_wipes_everything(self, unlocked, storage, config):
        async with unlocked.open_conversation() as view:
            await view.post("user", "hello")
        assert config.storage_key(BLOB_HISTORY) in storage
        key = unlocked.session.key

        await unlocked.reset()
        assert len(storage) == 0
        assert key.wiped
        assert await unlocked.state() == VaultState.NO_VAULT

    async def test_setup_after_reset_uses_new_salt(self, unlocked, storage, config):
        old_salt = storage[config.storage_key(BLOB_SALT)]
        await unlocked.reset()
        await unlocked.setup("p2")
        assert storage[config.storage_key(BLOB_SALT)] != old_salt
