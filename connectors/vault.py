"""
TokenVault — decrypts and encrypts connector tokens and keeps their
encryption metadata converged between the connector record and the local
side store.

Lookup rules
------------
Access token IV:   record ``token_iv`` → side store ``-iv``.
Access token salt: side store ``-salt`` → ``""``.
Refresh token IV:  record ``refresh_token_iv`` → ``-refresh-iv`` →
                   record ``token_iv`` → ``-iv``.
Refresh salt:      ``-refresh-salt`` → ``-salt`` → ``""``.

The record wins over the side store because the record is what travels
between devices.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from connectors.encryption import CredentialCipher, EncryptedCredential
from connectors.errors import MissingEncryptionMetadataError, TokenDecryptionError
from connectors.metadata import (
    ALL_KINDS,
    IV,
    REFRESH_IV,
    REFRESH_SALT,
    SALT,
    EncryptionMetadataStore,
    storage_key,
)
from connectors.models import Connector
from connectors.store import ConnectorStore

logger = logging.getLogger(__name__)


class TokenVault:
    def __init__(
        self,
        cipher: CredentialCipher,
        metadata_store: EncryptionMetadataStore,
        connector_store: ConnectorStore,
    ):
        self._cipher = cipher
        self._metadata = metadata_store
        self._store = connector_store

    # ── Decrypt ─────────────────────────────────────────────────────────

    async def decrypt_access_token(self, connector: Connector) -> str:
        """
        Return the plaintext access token.

        Raises
        ------
        MissingEncryptionMetadataError
            No IV on the record nor in the side store.
        TokenDecryptionError
            No ciphertext, or the ciphertext does not decrypt.
        """
        if not connector.encrypted_token:
            raise TokenDecryptionError(connector.id, ValueError("no access token stored"))

        iv = connector.token_iv or await self._metadata.get(storage_key(connector.id, IV))
        if not iv:
            raise MissingEncryptionMetadataError(connector.id, storage_key(connector.id, IV))
        salt = await self._metadata.get(storage_key(connector.id, SALT)) or ""

        try:
            return await asyncio.to_thread(
                self._cipher.decrypt, connector.encrypted_token, iv, salt
            )
        except ValueError as exc:
            raise TokenDecryptionError(connector.id, exc) from exc

    async def decrypt_refresh_token(self, connector: Connector) -> Optional[str]:
        """Return the plaintext refresh token, or None when it is unavailable."""
        if not connector.encrypted_refresh_token:
            return None

        iv = (
            connector.refresh_token_iv
            or await self._metadata.get(storage_key(connector.id, REFRESH_IV))
            or connector.token_iv
            or await self._metadata.get(storage_key(connector.id, IV))
        )
        if not iv:
            logger.warning("No IV found for refresh token of connector %s", connector.id)
            return None

        salt = (
            await self._metadata.get(storage_key(connector.id, REFRESH_SALT))
            or await self._metadata.get(storage_key(connector.id, SALT))
            or ""
        )

        try:
            return await asyncio.to_thread(
                self._cipher.decrypt, connector.encrypted_refresh_token, iv, salt
            )
        except ValueError as exc:
            logger.warning("Refresh token for connector %s is unreadable: %s", connector.id, exc)
            return None

    # ── Encrypt & metadata ──────────────────────────────────────────────

    async def encrypt_token(self, plaintext: str) -> EncryptedCredential:
        return await asyncio.to_thread(self._cipher.encrypt, plaintext)

    async def store_metadata(
        self,
        connector_id: str,
        iv: str,
        salt: str,
        is_refresh: bool = False,
    ) -> None:
        """Write IV + salt to the side store and the IV to the connector record."""
        iv_kind, salt_kind = (REFRESH_IV, REFRESH_SALT) if is_refresh else (IV, SALT)
        await self._metadata.set(storage_key(connector_id, iv_kind), iv)
        await self._metadata.set(storage_key(connector_id, salt_kind), salt)

        field = "refresh_token_iv" if is_refresh else "token_iv"
        await self._store.update(connector_id, **{field: iv})

    async def clear_metadata(self, connector_id: str) -> None:
        for kind in ALL_KINDS:
            await self._metadata.delete(storage_key(connector_id, kind))
        logger.debug("Cleared encryption metadata for connector %s", connector_id)
