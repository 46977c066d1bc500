import os
import stat

import pytest

from backup.crypto import MAGIC, DeviceKeystore, EncryptionLayer, resolve_encryption
from backup.errors import ConfigurationError, EncryptionCorruptError, EncryptionKeyError

# Cheap scrypt cost keeps the suite fast; production uses the default.
FAST_N = 2**4


def test_encrypt_round_trip():
    layer = EncryptionLayer(b"correct horse", scrypt_n=FAST_N)
    sealed = layer.encrypt(b"payload bytes")

    assert sealed.startswith(MAGIC)
    assert EncryptionLayer.is_encrypted(sealed)
    assert b"payload bytes" not in sealed
    assert layer.decrypt(sealed) == b"payload bytes"


def test_each_encryption_uses_fresh_salt_and_nonce():
    layer = EncryptionLayer(b"secret", scrypt_n=FAST_N)

    assert layer.encrypt(b"same") != layer.encrypt(b"same")


def test_wrong_key_is_reported_as_key_error():
    sealed = EncryptionLayer(b"right", scrypt_n=FAST_N).encrypt(b"data")

    with pytest.raises(EncryptionKeyError):
        EncryptionLayer(b"wrong", scrypt_n=FAST_N).decrypt(sealed)


def test_altered_ciphertext_is_reported_as_corrupt():
    layer = EncryptionLayer(b"key", scrypt_n=FAST_N)
    sealed = bytearray(layer.encrypt(b"some longer payload"))
    sealed[-1] ^= 0x01

    with pytest.raises(EncryptionCorruptError):
        layer.decrypt(bytes(sealed))


def test_truncated_payload_is_reported_as_corrupt():
    layer = EncryptionLayer(b"key", scrypt_n=FAST_N)
    sealed = layer.encrypt(b"some longer payload")

    with pytest.raises(EncryptionCorruptError):
        layer.decrypt(sealed[:-5])
    with pytest.raises(EncryptionCorruptError):
        layer.decrypt(sealed[:10])
    with pytest.raises(EncryptionCorruptError):
        layer.decrypt(b"PK\x03\x04plain zip")


def test_empty_secret_is_rejected():
    with pytest.raises(ConfigurationError):
        EncryptionLayer(b"")


def test_device_keystore_is_created_once(tmp_path):
    path = tmp_path / "data" / "backup.key"
    keystore = DeviceKeystore(path)

    first = keystore.secret()
    second = DeviceKeystore(path).secret()

    assert first == second
    assert len(first) == 32
    if os.name == "posix":
        assert stat.S_IMODE(path.stat().st_mode) == 0o600


def test_resolve_encryption_from_passphrase_env(tmp_path, monkeypatch):
    settings = {"encryption": {"key_source": "passphrase", "passphrase_env": "TEST_BACKUP_PASS"}}

    monkeypatch.delenv("TEST_BACKUP_PASS", raising=False)
    with pytest.raises(ConfigurationError):
        resolve_encryption(settings, tmp_path / "backup.key")

    monkeypatch.setenv("TEST_BACKUP_PASS", "hunter2")
    layer = resolve_encryption(settings, tmp_path / "backup.key")
    assert isinstance(layer, EncryptionLayer)
    assert not (tmp_path / "backup.key").exists()


def test_resolve_encryption_rejects_unknown_source(tmp_path):
    with pytest.raises(ConfigurationError):
        resolve_encryption({"encryption": {"key_source": "hsm"}}, tmp_path / "backup.key")
