from __future__ import annotations

import base64
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from social_connect.core.config import get_settings

NONCE_BYTES = 12


class EncryptionKeyError(RuntimeError):
    pass


class DecryptionError(RuntimeError):
    pass


def _load_key() -> bytes:
    raw = get_settings().ENCRYPTION_KEY_BASE64
    try:
        key = base64.b64decode(raw, validate=True)
    except Exception as e:  # noqa: BLE001
        raise EncryptionKeyError("ENCRYPTION_KEY_BASE64 must be valid base64") from e

    if len(key) != 32:
        raise EncryptionKeyError("ENCRYPTION_KEY_BASE64 must decode to 32 bytes (AES-256)")

    return key


def encrypt_bytes(*, plaintext: bytes, aad: bytes) -> bytes:
    nonce = os.urandom(NONCE_BYTES)
    ciphertext = AESGCM(_load_key()).encrypt(nonce, plaintext, aad)
    return nonce + ciphertext


def decrypt_bytes(*, blob: bytes, aad: bytes) -> bytes:
    if len(blob) <= NONCE_BYTES:
        raise DecryptionError("Encrypted blob is too short")

    nonce, ciphertext = blob[:NONCE_BYTES], blob[NONCE_BYTES:]
    try:
        return AESGCM(_load_key()).decrypt(nonce, ciphertext, aad)
    except InvalidTag as e:
        # Wrong key, tampered row, or a blob bound to a different natural key.
        raise DecryptionError("Ciphertext failed authentication") from e


def encrypt_text(value: str, *, aad: bytes) -> bytes:
    return encrypt_bytes(plaintext=value.encode("utf-8"), aad=aad)


def decrypt_text(blob: bytes, *, aad: bytes) -> str:
    return decrypt_bytes(blob=blob, aad=aad).decode("utf-8")


def check_encryption_key() -> None:
    """Raise EncryptionKeyError when the configured vault key is unusable."""
    _load_key()
