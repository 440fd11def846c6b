"""Shared fixtures for the vault test-suite."""
import asyncio
import base64

import pytest

from shadowlink_vault.storage import MemoryStorage
from shadowlink_vault.vault.cloud import MemoryBlobStore
from shadowlink_vault.vault.config import VaultConfig
from shadowlink_vault.vault.local_vault import LocalVault

TEST_ITERATIONS = 1000


class FakeClock:
    """Controllable epoch-millisecond clock."""

    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


def flip_bit(b64: str, index: int = 0) -> str:
    """Flip the lowest bit of byte ``index`` in a base64 string."""
    raw = bytearray(base64.b64decode(b64))
    raw[index] ^= 0x01
    return base64.b64encode(bytes(raw)).decode("ascii")


class BlockingReplaceStorage(MemoryStorage):
    """Memory storage whose ``replace`` waits until ``gate`` is set.

    ``entered`` is set as soon as a ``replace`` call starts waiting.
    """

    def __init__(self):
        super().__init__()
        self.gate = asyncio.Event()
        self.gate.set()
        self.entered = asyncio.Event()

    async def replace(self, values):
        self.entered.set()
        await self.gate.wait()
        await super().replace(values)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return VaultConfig(kdf_iterations=TEST_ITERATIONS, sweep_interval=0.01)


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def remote():
    return MemoryBlobStore()


@pytest.fixture
async def vault(storage, config, remote, clock):
    v = LocalVault(storage, config, remote=remote, clock=clock)
    yield v
    await v.close()


@pytest.fixture
async def unlocked(vault):
    await vault.setup("p1")
    return vault
