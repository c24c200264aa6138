"""
Token encryption — encrypt / decrypt OAuth tokens at rest.

Uses AES-256-GCM from the ``cryptography`` library.  Every encryption draws
a fresh 96-bit IV and a fresh salt; the AES key is derived from
``config.token_encryption_key`` (env var: ``TOKEN_ENCRYPTION_KEY``) with
PBKDF2-SHA256 over that salt.  An empty salt derives the key without salt,
which keeps records written before per-token salts readable.

If no key is configured an ephemeral one is generated (with a startup
warning): tokens then stop decrypting after a restart and users are asked
to reconnect.
"""

from __future__ import annotations

import base64
import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from config.settings import config

logger = logging.getLogger(__name__)

_IV_BYTES = 12
_SALT_BYTES = 16
_KDF_ITERATIONS = 100_000


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode()


def _b64decode(text: str) -> bytes:
    return base64.urlsafe_b64decode(text.encode())


@dataclass(frozen=True)
class EncryptedCredential:
    """Ciphertext plus the metadata needed to decrypt it (all base64)."""

    ciphertext: str
    iv: str
    salt: str


class CredentialCipher:
    """Encrypts and decrypts single credential strings."""

    def __init__(self, secret: Optional[str] = None, iterations: int = _KDF_ITERATIONS):
        secret = secret if secret is not None else config.token_encryption_key
        if not secret:
            logger.warning(
                "TOKEN_ENCRYPTION_KEY not set — using an ephemeral key. "
                "Stored connector tokens will not survive a restart."
            )
            secret = _b64encode(os.urandom(32))
        self._secret = secret.encode()
        self._iterations = iterations
        self._derive = lru_cache(maxsize=256)(self._derive_key)

    def _derive_key(self, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=self._iterations,
        )
        return kdf.derive(self._secret)

    def encrypt(self, plaintext: str) -> EncryptedCredential:
        if not plaintext:
            raise ValueError("Refusing to encrypt an empty credential")
        salt = os.urandom(_SALT_BYTES)
        iv = os.urandom(_IV_BYTES)
        ciphertext = AESGCM(self._derive(salt)).encrypt(iv, plaintext.encode(), None)
        return EncryptedCredential(
            ciphertext=_b64encode(ciphertext),
            iv=_b64encode(iv),
            salt=_b64encode(salt),
        )

    def decrypt(self, ciphertext: str, iv: str, salt: str = "") -> str:
        """
        Decrypt a credential.

        Raises ``ValueError`` when the ciphertext, IV or salt is malformed or
        the key does not match.
        """
        try:
            key = self._derive(_b64decode(salt) if salt else b"")
            plaintext = AESGCM(key).decrypt(_b64decode(iv), _b64decode(ciphertext), None)
        except (InvalidTag, ValueError, TypeError) as exc:
            raise ValueError(f"credential decryption failed ({type(exc).__name__})") from exc
        return plaintext.decode()
