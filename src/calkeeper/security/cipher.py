"""Authenticated encryption for stored OAuth tokens.

Wire format: ``base64(iv || tag || ciphertext)`` where *iv* is a fresh 12-byte
random nonce per call and *tag* is the 16-byte GCM authentication tag.

``cryptography``'s ``AESGCM`` returns ``ciphertext || tag``; the tag is moved
in front of the ciphertext so the stored layout is stable regardless of the
primitive's output order.
"""

from __future__ import annotations

import base64
import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from calkeeper.errors import DecryptionError, InvalidKeyError

KEY_LENGTH = 32
IV_LENGTH = 12
TAG_LENGTH = 16


def generate_key() -> bytes:
    """Return a new random 32-byte key."""
    return os.urandom(KEY_LENGTH)


def encode_key(key: bytes) -> str:
    """Encode a binary key as base64 for configuration files."""
    return base64.b64encode(key).decode("ascii")


def decode_key(value: str | bytes) -> bytes:
    """Accept a key as 32 raw bytes or as base64 and return the raw bytes.

    Raises
    ------
    InvalidKeyError
        If *value* is neither 32 raw bytes nor base64 of 32 bytes.
    """
    raw = value.encode("utf-8") if isinstance(value, str) else bytes(value)
    if len(raw) == KEY_LENGTH:
        return raw

    try:
        decoded = base64.b64decode(raw.strip(), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidKeyError("Encryption key is neither 32 raw bytes nor valid base64") from exc

    if len(decoded) != KEY_LENGTH:
        raise InvalidKeyError(
            f"Encryption key must be exactly {KEY_LENGTH} bytes (got {len(decoded)} after decoding)"
        )
    return decoded


class TokenCipher:
    """AES-256-GCM encryption of opaque byte payloads."""

    def __init__(self, key: bytes) -> None:
        if not isinstance(key, bytes | bytearray) or len(key) != KEY_LENGTH:
            raise InvalidKeyError(f"Encryption key must be exactly {KEY_LENGTH} bytes (256 bits)")
        self._aead = AESGCM(bytes(key))

    def __repr__(self) -> str:
        return "TokenCipher(key=<REDACTED>)"

    def encrypt(self, plaintext: bytes) -> str:
        iv = os.urandom(IV_LENGTH)
        sealed = self._aead.encrypt(iv, plaintext, None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return base64.b64encode(iv + tag + ciphertext).decode("ascii")

    def decrypt(self, encoded: str | bytes) -> bytes:
        try:
            data = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise DecryptionError("Encrypted payload is not valid base64") from exc

        if len(data) < IV_LENGTH + TAG_LENGTH:
            raise DecryptionError("Encrypted payload is too short to contain IV and tag")

        iv = data[:IV_LENGTH]
        tag = data[IV_LENGTH : IV_LENGTH + TAG_LENGTH]
        ciphertext = data[IV_LENGTH + TAG_LENGTH :]
        try:
            return self._aead.decrypt(iv, ciphertext + tag, None)
        except InvalidTag as exc:
            raise DecryptionError(
                "Decryption failed: data may be corrupted or the key is incorrect"
            ) from exc
