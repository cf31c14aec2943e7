"""Payload cipher capability consumed by the object store adapter.

Key management is out of scope: a cipher is built from key material handed
in by configuration.
"""

from __future__ import annotations

import os
from typing import Protocol

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

__all__ = ["AesGcmCipher", "Cipher", "CipherError", "PassthroughCipher", "cipher_from_hex"]

_NONCE_SIZE = 12


class CipherError(Exception):
    """Raised when a payload cannot be decrypted."""


class Cipher(Protocol):
    name: str

    def encrypt(self, data: bytes) -> bytes: ...

    def decrypt(self, data: bytes) -> bytes: ...


class PassthroughCipher:
    """Stores payloads as given (already encrypted client-side, or dev)."""

    name = "none"

    def encrypt(self, data: bytes) -> bytes:
        return data

    def decrypt(self, data: bytes) -> bytes:
        return data


class AesGcmCipher:
    """AES-GCM with a random nonce prefixed to each ciphertext."""

    name = "aes-256-gcm"

    def __init__(self, key: bytes) -> None:
        if len(key) not in (16, 24, 32):
            raise ValueError("AES key must be 16, 24 or 32 bytes")
        self._aead = AESGCM(key)

    def encrypt(self, data: bytes) -> bytes:
        nonce = os.urandom(_NONCE_SIZE)
        return nonce + self._aead.encrypt(nonce, data, None)

    def decrypt(self, data: bytes) -> bytes:
        if len(data) <= _NONCE_SIZE:
            raise CipherError("ciphertext too short")
        nonce, body = data[:_NONCE_SIZE], data[_NONCE_SIZE:]
        try:
            return self._aead.decrypt(nonce, body, None)
        except InvalidTag as exc:
            raise CipherError("payload failed authentication") from exc


def cipher_from_hex(key_hex: str) -> Cipher:
    """Build the configured cipher; an empty key means passthrough."""
    if not key_hex:
        return PassthroughCipher()
    return AesGcmCipher(bytes.fromhex(key_hex))
