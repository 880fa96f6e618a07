"""AES-GCM encryption for stored Flex credentials."""

from __future__ import annotations

import base64
import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..errors import CredentialError
from .config import get_settings

_IV_BYTES = 12
_TAG_BYTES = 16
_KEY_BYTES = 32


class CredentialCipher:
    """Encrypt and decrypt short secrets with a 256-bit AES-GCM key.

    Blobs are ``base64(iv || tag || ciphertext)``.
    """

    def __init__(self, key_b64: str | None) -> None:
        if not key_b64:
            raise CredentialError("ENCRYPTION_KEY is not set")
        try:
            key = base64.b64decode(key_b64, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise CredentialError("ENCRYPTION_KEY must be base64-encoded 32 bytes") from exc
        if len(key) != _KEY_BYTES:
            raise CredentialError("ENCRYPTION_KEY must decode to 32 bytes")
        self._aead = AESGCM(key)

    def encrypt(self, plaintext: str) -> str:
        iv = os.urandom(_IV_BYTES)
        sealed = self._aead.encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-_TAG_BYTES], sealed[-_TAG_BYTES:]
        return base64.b64encode(iv + tag + ciphertext).decode("ascii")

    def decrypt(self, blob: str) -> str:
        try:
            raw = base64.b64decode(blob, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise CredentialError("Stored credential is not valid base64") from exc
        if len(raw) < _IV_BYTES + _TAG_BYTES:
            raise CredentialError("Stored credential is truncated")
        iv = raw[:_IV_BYTES]
        tag = raw[_IV_BYTES : _IV_BYTES + _TAG_BYTES]
        ciphertext = raw[_IV_BYTES + _TAG_BYTES :]
        try:
            plain = self._aead.decrypt(iv, ciphertext + tag, None)
        except InvalidTag as exc:
            raise CredentialError("Failed to decrypt credential (wrong ENCRYPTION_KEY?)") from exc
        return plain.decode("utf-8")


def generate_key() -> str:
    """Return a fresh base64 key suitable for ``ENCRYPTION_KEY``."""

    return base64.b64encode(AESGCM.generate_key(bit_length=256)).decode("ascii")


def get_cipher() -> CredentialCipher:
    return CredentialCipher(get_settings().encryption_key)


__all__ = ["CredentialCipher", "generate_key", "get_cipher"]
