"""Tests for private key encryption."""

import base64

import pytest

from solpay.crypto import SALT_LENGTH, KeyVault
from solpay.errors import IntegrityError

OTHER_SECRET = "rotated-master-secret-with-enough-length-987"


class TestKeyVault:
    """Tests for KeyVault envelope encryption."""

    def test_round_trip(self, vault: KeyVault):
        """Decrypting an encrypted key yields the original."""
        secret = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
        blob = vault.encrypt_sync(secret)

        assert secret not in blob
        assert vault.decrypt_sync(blob) == secret

    def test_same_plaintext_different_blobs(self, vault: KeyVault):
        """Fresh salt and nonce make every blob unique."""
        first = vault.encrypt_sync("same-key")
        second = vault.encrypt_sync("same-key")

        assert first != second
        assert base64.b64decode(first)[:SALT_LENGTH] != base64.b64decode(second)[:SALT_LENGTH]

    def test_tampered_ciphertext_rejected(self, vault: KeyVault):
        """Flipping one ciphertext byte fails authentication."""
        raw = bytearray(base64.b64decode(vault.encrypt_sync("secret-key")))
        raw[-1] ^= 0x01
        tampered = base64.b64encode(bytes(raw)).decode()

        with pytest.raises(IntegrityError):
            vault.decrypt_sync(tampered)

    def test_wrong_master_secret_rejected(self, vault: KeyVault):
        """A blob cannot be opened under another master secret."""
        other = KeyVault("another-master-secret-of-32-characters!!", iterations=1000)
        try:
            with pytest.raises(IntegrityError):
                other.decrypt_sync(vault.encrypt_sync("secret-key"))
        finally:
            other.close()

    @pytest.mark.parametrize("blob", ["not base64 at all!", base64.b64encode(b"short").decode()])
    def test_malformed_blob_rejected(self, vault: KeyVault, blob):
        with pytest.raises(IntegrityError):
            vault.decrypt_sync(blob)

    def test_short_master_secret_refused(self):
        with pytest.raises(ValueError):
            KeyVault("too-short")

    def test_rotate(self, vault: KeyVault):
        """Rotation re-seals a blob under the new master secret."""
        new_vault = KeyVault(OTHER_SECRET, iterations=1000)
        try:
            rotated = vault.rotate(vault.encrypt_sync("secret-key"), new_vault)
            assert new_vault.decrypt_sync(rotated) == "secret-key"
            with pytest.raises(IntegrityError):
                vault.decrypt_sync(rotated)
        finally:
            new_vault.close()

    @pytest.mark.asyncio
    async def test_async_round_trip(self, vault: KeyVault):
        """Async wrappers run on the KDF pool and agree with the sync path."""
        blob = await vault.encrypt("async-secret")
        assert await vault.decrypt(blob) == "async-secret"
        assert vault.decrypt_sync(blob) == "async-secret"
