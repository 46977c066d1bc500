"""Authenticated encryption for snapshot payloads.

Payloads are sealed with AES-256-GCM. The key is derived with scrypt from a
secret that is either a user passphrase or a random device keystore secret.
Envelope layout::

    magic(4) | salt(16) | nonce(12) | key_check(16) | ciphertext+tag

The key check value lets decrypt report a wrong passphrase separately from a
damaged payload. GCM alone cannot tell the two apart.
"""
from __future__ import annotations

import hashlib
import hmac
import os
from pathlib import Path
from typing import Any, Mapping, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from .errors import ConfigurationError, EncryptionCorruptError, EncryptionError, EncryptionKeyError

MAGIC = b"BKE1"
_SALT_BYTES = 16
_NONCE_BYTES = 12
_CHECK_BYTES = 16
_TAG_BYTES = 16
_HEADER_BYTES = len(MAGIC) + _SALT_BYTES + _NONCE_BYTES + _CHECK_BYTES
_KEYSTORE_SECRET_BYTES = 32


class EncryptionLayer:
    """Seal and open payloads with a secret-derived AES-GCM key."""

    def __init__(self, secret: bytes, *, scrypt_n: int = 2**14) -> None:
        if not secret:
            raise ConfigurationError("encryption secret must not be empty")
        self._secret = bytes(secret)
        self._scrypt_n = int(scrypt_n)

    # ------------------------------------------------------------------
    def _derive(self, salt: bytes) -> tuple[bytes, bytes]:
        kdf = Scrypt(salt=salt, length=64, n=self._scrypt_n, r=8, p=1)
        material = kdf.derive(self._secret)
        return material[:32], material[32:]

    @staticmethod
    def _key_check(check_key: bytes) -> bytes:
        return hmac.new(check_key, b"backup-key-check", hashlib.sha256).digest()[:_CHECK_BYTES]

    @staticmethod
    def is_encrypted(data: bytes) -> bool:
        return data.startswith(MAGIC)

    # ------------------------------------------------------------------
    def encrypt(self, data: bytes) -> bytes:
        salt = os.urandom(_SALT_BYTES)
        nonce = os.urandom(_NONCE_BYTES)
        aes_key, check_key = self._derive(salt)
        header = MAGIC + salt + nonce + self._key_check(check_key)
        try:
            sealed = AESGCM(aes_key).encrypt(nonce, data, header)
        except (OverflowError, ValueError) as exc:
            raise EncryptionError(f"payload could not be encrypted: {exc}") from exc
        return header + sealed

    def decrypt(self, data: bytes) -> bytes:
        if not data.startswith(MAGIC):
            raise EncryptionCorruptError("payload is not an encrypted backup envelope")
        if len(data) < _HEADER_BYTES + _TAG_BYTES:
            raise EncryptionCorruptError("encrypted payload is truncated")
        offset = len(MAGIC)
        salt = data[offset : offset + _SALT_BYTES]
        offset += _SALT_BYTES
        nonce = data[offset : offset + _NONCE_BYTES]
        offset += _NONCE_BYTES
        check = data[offset : offset + _CHECK_BYTES]
        header = data[:_HEADER_BYTES]
        aes_key, check_key = self._derive(salt)
        if not hmac.compare_digest(check, self._key_check(check_key)):
            raise EncryptionKeyError("wrong passphrase or device key for this backup")
        try:
            return AESGCM(aes_key).decrypt(nonce, data[_HEADER_BYTES:], header)
        except InvalidTag as exc:
            raise EncryptionCorruptError("encrypted payload failed authentication; it is truncated or altered") from exc


class DeviceKeystore:
    """Random per-device secret kept next to the ledger with owner-only permissions."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def secret(self) -> bytes:
        if self._path.exists():
            text = self._path.read_text(encoding="ascii").strip()
            try:
                return bytes.fromhex(text)
            except ValueError as exc:
                raise ConfigurationError(f"device keystore at {self._path} is unreadable") from exc
        self._path.parent.mkdir(parents=True, exist_ok=True)
        secret = os.urandom(_KEYSTORE_SECRET_BYTES)
        fd = os.open(self._path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "w", encoding="ascii") as handle:
            handle.write(secret.hex())
        return secret


def resolve_encryption(
    settings: Mapping[str, Any],
    keystore_path: Path,
    *,
    passphrase: Optional[str] = None,
) -> EncryptionLayer:
    """Build the layer from an explicit passphrase or the configured key source."""

    if passphrase:
        return EncryptionLayer(passphrase.encode("utf-8"))
    section = settings.get("encryption") if isinstance(settings.get("encryption"), Mapping) else {}
    source = str(section.get("key_source") or "keystore")
    if source == "keystore":
        return EncryptionLayer(DeviceKeystore(keystore_path).secret())
    if source == "passphrase":
        env_name = str(section.get("passphrase_env") or "BACKUP_ENGINE_PASSPHRASE")
        value = os.environ.get(env_name)
        if not value:
            raise ConfigurationError(f"encryption passphrase expected in ${env_name}")
        return EncryptionLayer(value.encode("utf-8"))
    raise ConfigurationError(f"unknown encryption key_source '{source}'")


__all__ = ["DeviceKeystore", "EncryptionLayer", "MAGIC", "resolve_encryption"]
