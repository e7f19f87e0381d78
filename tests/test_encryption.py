"""Tests for passphrase-based backup encryption."""

import pytest

from okr_sync.exceptions import EncryptionKeyUnavailable
from okr_sync.utils.encryption import IV_SIZE, SALT_SIZE, BackupCipher

# Low iteration count keeps the tests fast
ITERATIONS = 1000


def test_encrypt_layout_and_decrypt():
    cipher = BackupCipher("correct horse", iterations=ITERATIONS)
    blob = cipher.encrypt(b"payload")

    assert len(blob) == SALT_SIZE + IV_SIZE + len(b"payload") + 16  # GCM tag
    assert cipher.decrypt(blob) == b"payload"


def test_fresh_salt_and_iv_per_call():
    cipher = BackupCipher("pw", iterations=ITERATIONS)
    assert cipher.encrypt(b"same") != cipher.encrypt(b"same")


def test_wrong_passphrase():
    blob = BackupCipher("right", iterations=ITERATIONS).encrypt(b"data")
    with pytest.raises(EncryptionKeyUnavailable):
        BackupCipher("wrong", iterations=ITERATIONS).decrypt(blob)


def test_missing_passphrase():
    blob = BackupCipher("right", iterations=ITERATIONS).encrypt(b"data")
    cipher = BackupCipher(None)

    assert not cipher.has_key
    with pytest.raises(EncryptionKeyUnavailable):
        cipher.decrypt(blob)
    with pytest.raises(EncryptionKeyUnavailable):
        cipher.encrypt(b"data")


def test_truncated_blob():
    with pytest.raises(EncryptionKeyUnavailable):
        BackupCipher("pw", iterations=ITERATIONS).decrypt(b"short")
