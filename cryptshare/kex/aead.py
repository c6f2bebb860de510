"""AES-256-GCM codec with a fresh IV per message."""

from __future__ import annotations

import os
from typing import Optional, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .encoding import IV_BYTES
from .errors import DecryptionFailed, ValidationError


KEY_BYTES = 32


class AeadCodec:
    """
    Thin wrapper around AESGCM.

    seal() draws a new 12-byte IV every call; the same IV is never reused
    under one key. Associated data binds outer headers (routing, nonce,
    timestamp, sequence) to the ciphertext.
    """

    def __init__(self, key: bytes):
        if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_BYTES:
            raise ValidationError("AEAD key must be 32 bytes")
        self._aes = AESGCM(bytes(key))

    def seal(self, plaintext: bytes, aad: Optional[bytes] = None) -> Tuple[bytes, bytes]:
        """Return (iv, ciphertext || tag)."""
        iv = os.urandom(IV_BYTES)
        return iv, self._aes.encrypt(iv, plaintext, aad)

    def open(self, iv: bytes, ciphertext: bytes, aad: Optional[bytes] = None) -> bytes:
        if len(iv) != IV_BYTES:
            raise ValidationError("iv must be 12 bytes")
        try:
            return self._aes.decrypt(iv, ciphertext, aad)
        except InvalidTag as e:
            raise DecryptionFailed("authentication tag mismatch") from e
