"""
Tests for password change (re-encryption of every record).
"""
import asyncio

import pytest

from shadowlink_vault.exceptions import VaultLockedError, WrongPasswordError
from shadowlink_vault.vault.config import BLOB_HISTORY, BLOB_SALT
from shadowlink_vault.vault.crypto import dump_blob, load_blob
from shadowlink_vault.vault.local_vault import LocalVault
from shadowlink_vault.vault.records import PlainMessage, PlainProfile

from conftest import BlockingReplaceStorage, flip_bit


@pytest.fixture
async def populated(unlocked):
    await unlocked.store.save_conversation("global", [
        PlainMessage.compose("user", "one"),
        PlainMessage.compose("model", "two"),
    ])
    await unlocked.contacts.add_contact("Alice", "note")
    await unlocked.profile.save_profile(PlainProfile(nickname="ghost", bio="bio"))
    return unlocked


class TestChangePassword:
    """Master password rotation."""

    async def test_rotates_everything(self, populated, storage, config):
        salt = storage[config.storage_key(BLOB_SALT)]
        stats = await populated.change_password("p1", "p2")
        assert stats == {"total": 4, "rotated": 4, "errors": 0, "skipped": 0}
        assert storage[config.storage_key(BLOB_SALT)] == salt

        loaded = await populated.store.load_conversation("global")
        assert [m.content for m in loaded] == ["one", "two"]

        populated.lock()
        with pytest.raises(WrongPasswordError):
            await populated.unlock("p1")
        await populated.unlock("p2")
        assert [c.name for c in await populated.contacts.list_contacts()] == ["Alice"]
        assert (await populated.profile.load_profile()).nickname == "ghost"

    async def test_wrong_old_password(self, populated, storage):
        before = dict((k, storage[k]) for k in storage)
        with pytest.raises(WrongPasswordError):
            await populated.change_password("nope", "p2")
        assert dict((k, storage[k]) for k in storage) == before
        assert populated.session.unlocked

    async def test_empty_new_password(self, populated):
        with pytest.raises(ValueError):
            await populated.change_password("p1", "")

    async def test_damaged_record_kept_as_is(self, populated, storage, config):
        key = config.storage_key(BLOB_HISTORY)
        records = load_blob(storage[key])
        records[0]["ciphertext"] = flip_bit(records[0]["ciphertext"])
        storage[key] = dump_blob(records)

        stats = await populated.change_password("p1", "p2")
        assert stats["errors"] == 1
        assert stats["rotated"] == 3
        assert load_blob(storage[key])[0] == records[0]

    async def test_writes_queued_behind_rotation_use_new_key(self, config, clock):
        storage = BlockingReplaceStorage()
        vault = LocalVault(storage, config, clock=clock)
        try:
            await vault.setup("p1")
            view = await vault.open_conversation("global").open()
            await view.post("user", "before")

            storage.gate.clear()
            rotation = asyncio.create_task(vault.change_password("p1", "p2"))
            await asyncio.wait_for(storage.entered.wait(), 5)
            posting = asyncio.create_task(view.post("user", "during"))
            adding = asyncio.create_task(vault.contacts.add_contact("Bob"))
            await asyncio.sleep(0.01)
            storage.gate.set()
            await rotation
            await posting
            await adding

            vault.lock()
            await vault.unlock("p2")
            loaded = await vault.store.load_conversation("global")
            assert [m.content for m in loaded] == ["before", "during"]
            assert loaded.failures == []
            contacts = await vault.contacts.list_contacts()
            assert [c.name for c in contacts] == ["Bob"]
            assert contacts.failures == []
        finally:
            storage.gate.set()
            await vault.close()

    async def test_rotation_aborts_if_vault_locked_first(self, config, clock):
        storage = BlockingReplaceStorage()
        vault = LocalVault(storage, config, clock=clock)
        try:
            await vault.setup("p1")
            storage.gate.clear()

            async def hold():
                await storage.replace({k: storage[k] for k in storage})

            holding = asyncio.create_task(vault.queue.submit(hold))
            await asyncio.wait_for(storage.entered.wait(), 5)
            rotation = asyncio.create_task(vault.change_password("p1", "p2"))

            async def rotation_queued():
                while vault.queue.pending == 0:
                    await asyncio.sleep(0.005)

            await asyncio.wait_for(rotation_queued(), 5)
            vault.lock()
            storage.gate.set()
            await holding
            with pytest.raises(VaultLockedError):
                await rotation
            await vault.unlock("p1")
        finally:
            storage.gate.set()
            await vault.close()
