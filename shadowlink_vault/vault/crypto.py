"""
Vault Crypto Core — Key derivation, authenticated encryption and blob serialization.

- Key derivation: PBKDF2-HMAC-SHA256(password, salt, 100000) → 32-byte AES key
- Field encryption: AES-256-GCM with a fresh random 96-bit IV per call
- Ad hoc tokens: "sl1:<salt>:<iv>:<ciphertext>" (all base64), self-contained

Security Note:
    Never log plaintext, ciphertext or key material.
    IVs are random 96-bit; collision probability negligible under normal usage.
"""
import os
import hmac
import base64
import binascii
import logging
from typing import Any, NamedTuple, Union

import orjson
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..exceptions import (
    DecryptionAuthFailure,
    KeyDerivationFailure,
    StorageParseFailure,
    TokenFormatError,
    VaultLockedError,
)
from .config import DEFAULT_ITERATIONS

logger = logging.getLogger("shadowlink.vault")

SALT_SIZE = 16
NONCE_SIZE = 12  # 96-bit IV
KEY_LENGTH = 32  # AES-256
TAG_SIZE = 16

TOKEN_VERSION = "sl1"


# ---------------------------------------------------------------------------
# Encoding helpers
# ---------------------------------------------------------------------------

def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(data: str) -> bytes:
    """Strict base64 decode.

    Raises:
        ValueError: If ``data`` is not valid base64.
    """
    try:
        return base64.b64decode(data.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError, AttributeError) as err:
        raise ValueError(f"Invalid base64 data: {err}") from err


def generate_salt() -> bytes:
    """Generate a random 16-byte salt."""
    return os.urandom(SALT_SIZE)


# ---------------------------------------------------------------------------
# Key handle
# ---------------------------------------------------------------------------

class VaultKey:
    """Opaque handle around derived key material.

    The material is kept in a mutable buffer so ``wipe()`` can zero it.
    Any use after ``wipe()`` raises :class:`VaultLockedError`.
    """

    __slots__ = ("_material",)

    def __init__(self, material: bytes):
        if len(material) != KEY_LENGTH:
            raise KeyDerivationFailure(
                f"Key must be {KEY_LENGTH} bytes, got {len(material)}"
            )
        self._material = bytearray(material)

    @property
    def wiped(self) -> bool:
        return len(self._material) == 0

    def _raw(self) -> bytes:
        if self.wiped:
            raise VaultLockedError("Vault key has been wiped")
        return bytes(self._material)

    def aead(self) -> AESGCM:
        return AESGCM(self._raw())

    def wipe(self) -> None:
        """Zero the key material and drop the buffer."""
        for idx in range(len(self._material)):
            self._material[idx] = 0
        self._material = bytearray()

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, VaultKey):
            return NotImplemented
        if self.wiped or other.wiped:
            return False
        return hmac.compare_digest(self._material, other._material)

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return "<VaultKey wiped>" if self.wiped else "<VaultKey>"


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------

def derive_key(
    password: str,
    salt: bytes,
    iterations: int = DEFAULT_ITERATIONS,
) -> VaultKey:
    """Derive the vault key from a password using PBKDF2-HMAC-SHA256.

    Deterministic: the same (password, salt, iterations) always yields
    the same key. A wrong password still derives a key; it is only
    detected when a decrypt fails.

    Args:
        password: Master password.
        salt: Vault salt (16 bytes for vaults created by this package).
        iterations: PBKDF2 iteration count.

    Returns:
        VaultKey handle for a 32-byte AES key.

    Raises:
        KeyDerivationFailure: If password or salt are malformed.
    """
    if not isinstance(password, str):
        raise KeyDerivationFailure("Password must be a string")
    if not isinstance(salt, (bytes, bytearray)) or not salt:
        raise KeyDerivationFailure("Salt must be non-empty bytes")
    if iterations < 1:
        raise KeyDerivationFailure("Iterations must be positive")
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=bytes(salt),
        iterations=iterations,
    )
    return VaultKey(kdf.derive(password.encode("utf-8")))


# ---------------------------------------------------------------------------
# Authenticated encryption
# ---------------------------------------------------------------------------

class Sealed(NamedTuple):
    """Base64 ciphertext (with GCM tag) and the IV it was sealed under."""

    ciphertext: str
    iv: str


def encrypt(plaintext: Union[str, bytes], key: VaultKey) -> Sealed:
    """Encrypt with AES-256-GCM under a fresh random IV.

    Args:
        plaintext: Text (UTF-8 encoded) or raw bytes.
        key: Live vault key.

    Returns:
        Sealed ciphertext and IV, both base64.
    """
    if isinstance(plaintext, str):
        plaintext = plaintext.encode("utf-8")
    nonce = os.urandom(NONCE_SIZE)
    ct = key.aead().encrypt(nonce, plaintext, None)
    return Sealed(ciphertext=b64encode(ct), iv=b64encode(nonce))


def decrypt(ciphertext: str, iv: str, key: VaultKey) -> bytes:
    """Decrypt and authenticate an AES-256-GCM ciphertext.

    Raises:
        DecryptionAuthFailure: If the tag does not verify, or the
            ciphertext/IV are not decodable. Never returns placeholder data.
    """
    try:
        nonce = b64decode(iv)
        ct = b64decode(ciphertext)
    except ValueError as err:
        raise DecryptionAuthFailure(f"Undecodable ciphertext: {err}") from err
    if len(nonce) != NONCE_SIZE:
        raise DecryptionAuthFailure(
            f"IV must be {NONCE_SIZE} bytes, got {len(nonce)}"
        )
    if len(ct) < TAG_SIZE:
        raise DecryptionAuthFailure("Ciphertext too short to carry a tag")
    try:
        return key.aead().decrypt(nonce, ct, None)
    except InvalidTag as err:
        raise DecryptionAuthFailure("Authentication tag mismatch") from err


def decrypt_text(ciphertext: str, iv: str, key: VaultKey) -> str:
    """Decrypt a ciphertext that must hold UTF-8 text."""
    data = decrypt(ciphertext, iv, key)
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as err:
        raise DecryptionAuthFailure("Decrypted payload is not UTF-8 text") from err


# ---------------------------------------------------------------------------
# Blob serialization
# ---------------------------------------------------------------------------

def dump_blob(value: Any) -> str:
    """Serialize a persisted blob to a compact JSON string."""
    return orjson.dumps(value).decode("utf-8")


def load_blob(raw: str) -> Any:
    """Parse a persisted JSON blob.

    Raises:
        StorageParseFailure: If ``raw`` is not valid JSON.
    """
    try:
        return orjson.loads(raw)
    except orjson.JSONDecodeError as err:
        raise StorageParseFailure(f"Persisted blob is not valid JSON: {err}") from err


# ---------------------------------------------------------------------------
# Ad hoc tokens
# ---------------------------------------------------------------------------

def seal_token(
    plaintext: str,
    password: str,
    iterations: int = DEFAULT_ITERATIONS,
) -> str:
    """Encrypt text into a self-contained token carrying its own salt.

    Format: ``sl1:<salt-b64>:<iv-b64>:<ciphertext-b64>``
    """
    salt = generate_salt()
    key = derive_key(password, salt, iterations)
    try:
        sealed = encrypt(plaintext, key)
    finally:
        key.wipe()
    return ":".join((TOKEN_VERSION, b64encode(salt), sealed.iv, sealed.ciphertext))


def open_token(
    token: str,
    password: str,
    iterations: int = DEFAULT_ITERATIONS,
) -> str:
    """Decrypt a token produced by :func:`seal_token`.

    Raises:
        TokenFormatError: If the token is not in the expected format.
        DecryptionAuthFailure: If the password is wrong or the token was altered.
    """
    parts = token.strip().split(":")
    if len(parts) != 4 or parts[0] != TOKEN_VERSION:
        raise TokenFormatError(
            f"Expected {TOKEN_VERSION}:<salt>:<iv>:<ciphertext>"
        )
    _, salt_b64, iv, ciphertext = parts
    try:
        salt = b64decode(salt_b64)
    except ValueError as err:
        raise TokenFormatError(f"Invalid token salt: {err}") from err
    if not salt:
        raise TokenFormatError("Token salt is empty")
    key = derive_key(password, salt, iterations)
    try:
        return decrypt_text(ciphertext, iv, key)
    finally:
        key.wipe()
