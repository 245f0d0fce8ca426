from __future__ import annotations

import base64
import hashlib
import logging
import os
import secrets
from pathlib import Path

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

logger = logging.getLogger(__name__)

KEY_ENV = "UNICAL_ENCRYPTION_KEY"
PREFIX = "v1:"
NONCE_LENGTH = 12


class CredentialCipher:
    """AES-256-GCM for credential blobs stored in SQLite.

    Ciphertext is ``v1:`` followed by base64 of nonce plus sealed data.
    The 32-byte key is the SHA-256 of the configured secret.
    """

    def __init__(self, secret: str) -> None:
        if not secret:
            raise ValueError("encryption secret must not be empty")
        self._aead = AESGCM(hashlib.sha256(secret.encode("utf-8")).digest())

    @classmethod
    def from_env(cls, key_path: Path) -> "CredentialCipher":
        secret = os.getenv(KEY_ENV, "").strip()
        if secret:
            return cls(secret)
        if key_path.exists():
            return cls(key_path.read_text(encoding="utf-8").strip())
        logger.warning("%s not set, generating a local key at %s", KEY_ENV, key_path)
        secret = secrets.token_urlsafe(32)
        key_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(secret)
        return cls(secret)

    def encrypt(self, plaintext: str) -> str:
        nonce = secrets.token_bytes(NONCE_LENGTH)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        return PREFIX + base64.b64encode(nonce + sealed).decode("ascii")

    def decrypt(self, value: str) -> str:
        # Rows written before encryption existed hold plain JSON.
        if not value.startswith(PREFIX):
            return value
        raw = base64.b64decode(value[len(PREFIX):])
        try:
            return self._aead.decrypt(raw[:NONCE_LENGTH], raw[NONCE_LENGTH:], None).decode("utf-8")
        except InvalidTag as exc:
            raise ValueError("stored credentials do not match the encryption key") from exc
