"""
Tests for the crypto core: key derivation, AES-GCM sealing, blobs and tokens.
"""
import pytest

from shadowlink_vault.exceptions import (
    DecryptionAuthFailure,
    KeyDerivationFailure,
    StorageParseFailure,
    TokenFormatError,
    VaultLockedError,
)
from shadowlink_vault.vault.crypto import (
    NONCE_SIZE,
    SALT_SIZE,
    VaultKey,
    b64decode,
    decrypt,
    decrypt_text,
    derive_key,
    dump_blob,
    encrypt,
    generate_salt,
    load_blob,
    open_token,
    seal_token,
)

from conftest import TEST_ITERATIONS, flip_bit


@pytest.fixture
def key():
    return derive_key("p1", generate_salt(), TEST_ITERATIONS)


class TestKeyDerivation:
    """PBKDF2 key derivation."""

    def test_deterministic(self):
        salt = generate_salt()
        assert derive_key("p1", salt, TEST_ITERATIONS) == derive_key("p1", salt, TEST_ITERATIONS)

    def test_password_changes_key(self):
        salt = generate_salt()
        assert derive_key("p1", salt, TEST_ITERATIONS) != derive_key("p2", salt, TEST_ITERATIONS)

    def test_salt_changes_key(self):
        assert derive_key("p1", generate_salt(), TEST_ITERATIONS) != derive_key(
            "p1", generate_salt(), TEST_ITERATIONS
        )

    def test_salt_size(self):
        assert len(generate_salt()) == SALT_SIZE

    def test_empty_salt_rejected(self):
        with pytest.raises(KeyDerivationFailure):
            derive_key("p1", b"", TEST_ITERATIONS)

    def test_non_string_password_rejected(self):
        with pytest.raises(KeyDerivationFailure):
            derive_key(b"p1", generate_salt(), TEST_ITERATIONS)  # type: ignore[arg-type]

    def test_default_iterations_match_reference(self):
        """Same password and salt at the default count reproduce the key."""
        salt = b"\x00" * SALT_SIZE
        assert derive_key("p1", salt) == derive_key("p1", salt, 100000)


class TestVaultKey:
    """Key handle lifetime."""

    def test_wrong_length_rejected(self):
        with pytest.raises(KeyDerivationFailure):
            VaultKey(b"short")

    def test_wiped_key_refuses_use(self, key):
        key.wipe()
        assert key.wiped
        with pytest.raises(VaultLockedError):
            encrypt("hello", key)

    def test_repr_hides_material(self, key):
        assert repr(key) == "<VaultKey>"
        key.wipe()
        assert repr(key) == "<VaultKey wiped>"

    def test_wiped_keys_never_equal(self, key):
        twin = VaultKey(bytes(32))
        other = VaultKey(bytes(32))
        assert twin == other
        other.wipe()
        assert twin != other


class TestAuthenticatedEncryption:
    """AES-256-GCM seal/open."""

    def test_round_trip_text(self, key):
        sealed = encrypt("hello — wörld", key)
        assert decrypt_text(sealed.ciphertext, sealed.iv, key) == "hello — wörld"

    def test_round_trip_bytes(self, key):
        payload = bytes(range(256))
        sealed = encrypt(payload, key)
        assert decrypt(sealed.ciphertext, sealed.iv, key) == payload

    def test_round_trip_empty(self, key):
        sealed = encrypt("", key)
        assert decrypt_text(sealed.ciphertext, sealed.iv, key) == ""

    def test_fresh_iv_each_call(self, key):
        first = encrypt("same", key)
        second = encrypt("same", key)
        assert first.iv != second.iv
        assert first.ciphertext != second.ciphertext
        assert len(b64decode(first.iv)) == NONCE_SIZE

    @pytest.mark.parametrize("index", [0, 3, -1])
    def test_tampered_ciphertext_rejected(self, key, index):
        sealed = encrypt("hello", key)
        with pytest.raises(DecryptionAuthFailure):
            decrypt(flip_bit(sealed.ciphertext, index), sealed.iv, key)

    @pytest.mark.parametrize("index", [0, NONCE_SIZE - 1])
    def test_tampered_iv_rejected(self, key, index):
        sealed = encrypt("hello", key)
        with pytest.raises(DecryptionAuthFailure):
            decrypt(sealed.ciphertext, flip_bit(sealed.iv, index), key)

    def test_wrong_key_rejected(self, key):
        sealed = encrypt("hello", key)
        other = derive_key("p2", generate_salt(), TEST_ITERATIONS)
        with pytest.raises(DecryptionAuthFailure):
            decrypt(sealed.ciphertext, sealed.iv, other)

    def test_undecodable_input_rejected(self, key):
        with pytest.raises(DecryptionAuthFailure):
            decrypt("not base64!!", "also not", key)

    def test_short_iv_rejected(self, key):
        sealed = encrypt("hello", key)
        with pytest.raises(DecryptionAuthFailure):
            decrypt(sealed.ciphertext, "AAAA", key)

    def test_password_scenario(self):
        """p1 re-derives the same key and opens; p2 is rejected."""
        salt = generate_salt()
        k1 = derive_key("p1", salt, TEST_ITERATIONS)
        sealed = encrypt("hello", k1)
        k1_again = derive_key("p1", salt, TEST_ITERATIONS)
        assert k1_again == k1
        assert decrypt_text(sealed.ciphertext, sealed.iv, k1_again) == "hello"
        k2 = derive_key("p2", salt, TEST_ITERATIONS)
        assert k2 != k1
        with pytest.raises(DecryptionAuthFailure):
            decrypt_text(sealed.ciphertext, sealed.iv, k2)


class TestBlobs:
    """Blob serialization."""

    def test_round_trip(self):
        value = [{"id": "a", "createdAt": 1}, {"id": "b"}]
        assert load_blob(dump_blob(value)) == value

    def test_invalid_json(self):
        with pytest.raises(StorageParseFailure):
            load_blob("{not json")


class TestTokens:
    """Self-contained sl1 tokens."""

    def test_round_trip(self):
        token = seal_token("meet at noon", "shared", TEST_ITERATIONS)
        assert open_token(token, "shared", TEST_ITERATIONS) == "meet at noon"

    def test_format(self):
        token = seal_token("x", "shared", TEST_ITERATIONS)
        parts = token.split(":")
        assert len(parts) == 4
        assert parts[0] == "sl1"
        assert len(b64decode(parts[1])) == SALT_SIZE
        assert len(b64decode(parts[2])) == NONCE_SIZE

    def test_wrong_password(self):
        token = seal_token("x", "shared", TEST_ITERATIONS)
        with pytest.raises(DecryptionAuthFailure):
            open_token(token, "guess", TEST_ITERATIONS)

    @pytest.mark.parametrize("token", [
        "",
        "sl1:only:three",
        "sl2:AAAA:AAAA:AAAA",
        "sl1:%%%:AAAA:AAAA",
    ])
    def test_bad_format(self, token):
        with pytest.raises(TokenFormatError):
            open_token(token, "shared", TEST_ITERATIONS)

    def test_tampered_token(self):
        token = seal_token("x", "shared", TEST_ITERATIONS)
        version, salt, iv, ct = token.split(":")
        tampered = ":".join((version, salt, iv, flip_bit(ct)))
        with pytest.raises(DecryptionAuthFailure):
            open_token(tampered, "shared", TEST_ITERATIONS)
