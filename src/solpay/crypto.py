"""Cryptographic utilities for private key custody.

Envelope encryption: every record gets its own AES-256-GCM key derived with
PBKDF2-HMAC-SHA512 from the master secret and a fresh random salt.

Blob layout (base64): salt(64) || nonce(16) || tag(16) || ciphertext
"""

import asyncio
import base64
import binascii
import logging
import os
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from solpay.errors import IntegrityError

logger = logging.getLogger(__name__)

SALT_LENGTH = 64
NONCE_LENGTH = 16
TAG_LENGTH = 16
KEY_LENGTH = 32
DEFAULT_ITERATIONS = 100_000
MIN_MASTER_SECRET_LENGTH = 32


class KeyVault:
    """Encrypts and decrypts private key material at rest.

    Usage:
        vault = KeyVault(master_secret)
        blob = await vault.encrypt("0xabc...")
        key = await vault.decrypt(blob)

    The async methods run key derivation on a bounded thread pool so the
    event loop is not starved while PBKDF2 grinds.
    """

    def __init__(
        self,
        master_secret: str,
        iterations: int = DEFAULT_ITERATIONS,
        max_workers: int = 2,
    ):
        """Initialize with the process-wide master secret.

        Args:
            master_secret: Secret supplied at startup, never persisted
            iterations: PBKDF2 iteration count
            max_workers: Threads reserved for key derivation
        """
        if not master_secret or len(master_secret) < MIN_MASTER_SECRET_LENGTH:
            raise ValueError(
                f"Master secret must be at least {MIN_MASTER_SECRET_LENGTH} characters"
            )
        self._master_secret = master_secret.encode()
        self._iterations = iterations
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="keyvault-kdf"
        )

    def _derive_key(self, salt: bytes) -> bytes:
        """Derive the per-record AES key from the master secret and salt."""
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA512(),
            length=KEY_LENGTH,
            salt=salt,
            iterations=self._iterations,
        )
        return kdf.derive(self._master_secret)

    def encrypt_sync(self, plaintext: str) -> str:
        """Encrypt plaintext into an opaque storage blob.

        Args:
            plaintext: Secret to protect (e.g. hex or base64 private key)

        Returns:
            Base64-encoded blob containing salt, nonce, tag and ciphertext
        """
        salt = os.urandom(SALT_LENGTH)
        nonce = os.urandom(NONCE_LENGTH)
        key = self._derive_key(salt)

        # AESGCM appends the 16-byte tag to the ciphertext
        sealed = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]

        return base64.b64encode(salt + nonce + tag + ciphertext).decode("ascii")

    def decrypt_sync(self, blob: str) -> str:
        """Decrypt a blob produced by :meth:`encrypt_sync`.

        Raises:
            IntegrityError: If the blob is malformed, tampered with, or was
                sealed under a different master secret
        """
        try:
            combined = base64.b64decode(blob.encode("ascii"), validate=True)
        except (binascii.Error, ValueError, UnicodeEncodeError) as e:
            raise IntegrityError("Ciphertext blob is not valid base64") from e

        header = SALT_LENGTH + NONCE_LENGTH + TAG_LENGTH
        if len(combined) < header:
            raise IntegrityError("Ciphertext blob is truncated")

        salt = combined[:SALT_LENGTH]
        nonce = combined[SALT_LENGTH:SALT_LENGTH + NONCE_LENGTH]
        tag = combined[SALT_LENGTH + NONCE_LENGTH:header]
        ciphertext = combined[header:]

        key = self._derive_key(salt)
        try:
            plaintext = AESGCM(key).decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as e:
            raise IntegrityError("Authentication tag mismatch") from e

        return plaintext.decode("utf-8")

    async def encrypt(self, plaintext: str) -> str:
        """Encrypt on the key-derivation pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, self.encrypt_sync, plaintext)

    async def decrypt(self, blob: str) -> str:
        """Decrypt on the key-derivation pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, self.decrypt_sync, blob)

    def rotate(self, blob: str, new_vault: "KeyVault") -> str:
        """Re-encrypt a blob under another vault's master secret.

        Args:
            blob: Blob sealed by this vault
            new_vault: Vault holding the new master secret

        Returns:
            Blob sealed by ``new_vault``
        """
        return new_vault.encrypt_sync(self.decrypt_sync(blob))

    def close(self) -> None:
        """Shut down the key-derivation pool."""
        self._executor.shutdown(wait=False)


_vault: Optional[KeyVault] = None


def get_key_vault() -> KeyVault:
    """Get the process-wide KeyVault built from ENCRYPTION_KEY.

    Raises:
        RuntimeError: If ENCRYPTION_KEY is not configured
    """
    global _vault
    if _vault is None:
        from solpay.config import get_settings

        settings = get_settings()
        if not settings.encryption_key:
            raise RuntimeError("ENCRYPTION_KEY not configured - key custody unavailable")
        _vault = KeyVault(
            settings.encryption_key,
            iterations=settings.kdf_iterations,
            max_workers=settings.kdf_workers,
        )
        logger.info("Key vault initialized")
    return _vault
