"""Passphrase-based encryption for backup artifacts.

Every encrypted backup carries its own random salt and IV, so the only secret a
user has to keep is the passphrase:

    salt (16 bytes) || iv (16 bytes) || AES-256-GCM ciphertext + tag
"""

import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ..exceptions import EncryptionKeyUnavailable

SALT_SIZE = 16
IV_SIZE = 16  # 128-bit IV
KEY_SIZE = 32  # 256-bit key
KDF_NAME = "pbkdf2-sha256"
KDF_ITERATIONS = 480000


class BackupCipher:
    """Encrypts and decrypts backup bytes with a passphrase-derived key."""

    def __init__(self, passphrase: Optional[str], iterations: int = KDF_ITERATIONS):
        """Initialize cipher.

        Args:
            passphrase: Backup passphrase, or None when no key custody is configured
            iterations: PBKDF2 iteration count
        """
        self.passphrase = passphrase or None
        self.iterations = iterations

    @property
    def has_key(self) -> bool:
        return self.passphrase is not None

    def derive_key(self, salt: bytes) -> bytes:
        """Derive the AES key for a given salt.

        Args:
            salt: Per-backup random salt

        Returns:
            Raw 256-bit key
        """
        if not self.has_key:
            raise EncryptionKeyUnavailable()
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_SIZE,
            salt=salt,
            iterations=self.iterations,
        )
        return kdf.derive(self.passphrase.encode('utf-8'))

    def encrypt(self, data: bytes) -> bytes:
        """Encrypt data with a fresh salt and IV.

        Args:
            data: Plain (possibly compressed) backup bytes

        Returns:
            ``salt || iv || ciphertext``
        """
        salt = os.urandom(SALT_SIZE)
        iv = os.urandom(IV_SIZE)
        key = self.derive_key(salt)
        return salt + iv + AESGCM(key).encrypt(iv, data, None)

    def decrypt(self, blob: bytes) -> bytes:
        """Decrypt a blob produced by :meth:`encrypt`.

        Raises:
            EncryptionKeyUnavailable: No passphrase, or the passphrase does not match
        """
        if not self.has_key:
            raise EncryptionKeyUnavailable("Backup is encrypted but no passphrase is configured")
        if len(blob) < SALT_SIZE + IV_SIZE:
            raise EncryptionKeyUnavailable("Encrypted backup is truncated", size=len(blob))

        salt = blob[:SALT_SIZE]
        iv = blob[SALT_SIZE:SALT_SIZE + IV_SIZE]
        key = self.derive_key(salt)
        try:
            return AESGCM(key).decrypt(iv, blob[SALT_SIZE + IV_SIZE:], None)
        except InvalidTag as e:
            raise EncryptionKeyUnavailable("Backup passphrase does not match this backup") from e
