# Overview: AES-256-GCM codec for customer PII columns (phone, shipping address).

"""
PII-at-rest codec.

Stored format: "<iv_b64>:<tag_b64>:<ciphertext_b64>" with a 16-byte random
IV and a 16-byte GCM tag, so rows written by earlier deployments stay
readable.

Key: ENCRYPTION_KEY, 64 hex characters (32 bytes).

- production + missing/malformed key  -> PIIConfigurationError, nothing written
- development + missing key           -> values stored as-is (warning logged)
- encryption errors are never swallowed into plaintext
"""

from __future__ import annotations

import base64
import binascii
import json
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from flask import current_app

from ..errors import PIIConfigurationError


IV_SIZE = 16
TAG_SIZE = 16
KEY_HEX_LENGTH = 64


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


class PIICodec:
    def __init__(self, key_hex: str | None, *, production: bool, logger=None):
        self.production = production
        self.logger = logger
        self._aesgcm = None

        if not key_hex:
            if production:
                raise PIIConfigurationError(
                    "ENCRYPTION_KEY is required in production. PII cannot be stored without encryption."
                )
            self._warn("ENCRYPTION_KEY not set - PII encryption disabled (development only)")
            return

        try:
            key = bytes.fromhex(key_hex)
        except ValueError:
            key = b""
        if len(key_hex) != KEY_HEX_LENGTH or len(key) != 32:
            if production:
                raise PIIConfigurationError("Invalid ENCRYPTION_KEY. Must be 64 hex characters.")
            self._warn("ENCRYPTION_KEY must be 64 hex characters (32 bytes); PII encryption disabled")
            return

        self._aesgcm = AESGCM(key)

    def _warn(self, message: str) -> None:
        if self.logger is not None:
            self.logger.warning(message)

    @property
    def enabled(self) -> bool:
        return self._aesgcm is not None

    def encrypt(self, plaintext: str | None) -> str | None:
        if plaintext is None or plaintext == "":
            return plaintext
        if self._aesgcm is None:
            return plaintext

        iv = os.urandom(IV_SIZE)
        sealed = self._aesgcm.encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
        return f"{_b64(iv)}:{_b64(tag)}:{_b64(ciphertext)}"

    def decrypt(self, stored: str | None) -> str | None:
        """Inverse of encrypt. Values not in the sealed format are returned unchanged."""
        if not stored:
            return stored
        parts = stored.split(":")
        if len(parts) != 3 or self._aesgcm is None:
            return stored

        try:
            iv, tag, ciphertext = (base64.b64decode(p, validate=True) for p in parts)
        except (binascii.Error, ValueError):
            return stored

        try:
            return self._aesgcm.decrypt(iv, ciphertext + tag, None).decode("utf-8")
        except InvalidTag:
            self._warn("PII decryption failed (wrong key or tampered value)")
            return stored

    # Structured fields

    def encrypt_json(self, value) -> str | None:
        if value is None or value == "" or value == {}:
            return None
        return self.encrypt(json.dumps(value, sort_keys=True))

    def decrypt_json(self, stored: str | None):
        text = self.decrypt(stored)
        if not text:
            return None
        try:
            return json.loads(text)
        except ValueError:
            return text


def get_codec() -> PIICodec:
    """Codec configured from the current app. Raises PIIConfigurationError in misconfigured production."""
    config = current_app.config
    production = str(config.get("ENVIRONMENT", "")).lower() == "production"
    return PIICodec(config.get("ENCRYPTION_KEY"), production=production, logger=current_app.logger)


def generate_key_hex() -> str:
    return os.urandom(32).hex()
