"""Sealing of provider access tokens kept inside session records.

The session row is the only place the GitHub access token lives, so it is
stored encrypted with AES-256-GCM under a key derived from the token secret.
A payload that fails to open is treated as "no token".
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM


NONCE_LEN = 12


class TokenCipherError(ValueError):
    pass


def token_key_from_secret(secret: str) -> bytes:
    return hashlib.sha256(secret.encode("utf-8")).digest()


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64decode(value: str) -> bytes:
    padded = value + "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


class TokenCipher:
    def __init__(self, key: bytes) -> None:
        if len(key) != 32:
            raise ValueError("token key must be 32 bytes")
        self._aead = AESGCM(key)

    def seal(self, token: str) -> str:
        nonce = os.urandom(NONCE_LEN)
        ciphertext = self._aead.encrypt(nonce, token.encode("utf-8"), None)
        return _b64encode(nonce + ciphertext)

    def open(self, sealed: str) -> str:
        try:
            raw = _b64decode(sealed)
        except (binascii.Error, ValueError) as exc:
            raise TokenCipherError("invalid_token_encoding") from exc
        if len(raw) <= NONCE_LEN:
            raise TokenCipherError("invalid_token_payload")
        nonce, ciphertext = raw[:NONCE_LEN], raw[NONCE_LEN:]
        try:
            plain = self._aead.decrypt(nonce, ciphertext, None)
        except InvalidTag as exc:
            raise TokenCipherError("invalid_token_tag") from exc
        try:
            return plain.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise TokenCipherError("invalid_token_text") from exc
