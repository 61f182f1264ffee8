"""Payload codec for event data at rest.

Event payloads are serialized to compact JSON. When an encryption key is
configured the JSON is wrapped in a Fernet token before it reaches SQLite;
ordering columns (timestamps, kinds, dirty flags) stay in the clear so the
log can be queried and sorted without decrypting every row.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)

# Fernet tokens always start with the version byte 0x80, base64 "gAAAAA".
_TOKEN_PREFIX = "gAAAAA"


class EncryptionError(Exception):
    """Raised when encryption/decryption fails."""


class PayloadCodec:
    """Encodes JSON-serializable payloads, optionally Fernet-encrypted.

    Usage::

        codec = PayloadCodec(key=PayloadCodec.generate_key())
        stored = codec.encode({"weight": 1.5})
        codec.decode(stored)  # {"weight": 1.5}

        plain = PayloadCodec()  # no key: stored as plain JSON
    """

    def __init__(self, key: str | None = None) -> None:
        """Initialize with an optional Fernet key.

        Raises:
            EncryptionError: If a key is given but blank or invalid.
        """
        self._fernet: Fernet | None = None
        if key is None:
            return
        if not key.strip():
            raise EncryptionError("Encryption key must not be empty")
        try:
            self._fernet = Fernet(key.encode())
        except ValueError as exc:
            raise EncryptionError(f"Invalid encryption key: {exc}") from exc

    @property
    def encrypted(self) -> bool:
        return self._fernet is not None

    def encode(self, data: Any) -> str:
        """Serialize ``data`` to JSON and encrypt it when a key is set."""
        try:
            plaintext = json.dumps(data, separators=(",", ":"), sort_keys=True)
        except (TypeError, ValueError) as exc:
            raise EncryptionError(f"Payload is not JSON-serializable: {exc}") from exc
        if self._fernet is None:
            return plaintext
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("utf-8")

    def decode(self, stored: str) -> Any:
        """Reverse :meth:`encode`.

        Raises:
            EncryptionError: If the token is invalid, the key is wrong, or an
                encrypted row is read without a key.
        """
        if stored.startswith(_TOKEN_PREFIX):
            if self._fernet is None:
                raise EncryptionError("Encrypted payload found but no encryption key configured")
            try:
                stored = self._fernet.decrypt(stored.encode("utf-8")).decode("utf-8")
            except InvalidToken as exc:
                raise EncryptionError("Decryption failed: invalid token or wrong key") from exc
        try:
            return json.loads(stored)
        except json.JSONDecodeError as exc:
            raise EncryptionError(f"Stored payload is not valid JSON: {exc}") from exc

    @staticmethod
    def generate_key() -> str:
        """Generate a new Fernet key.

        Returns:
            A URL-safe base64-encoded 32-byte key as a string.
        """
        return Fernet.generate_key().decode("utf-8")
