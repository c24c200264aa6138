"""
ConnectorService — connector lifecycle: authorize, persist, edit, disconnect.

This is the single interface the API layer uses to create and manage
connector records.  Tokens are encrypted before they touch the store and
are never returned to callers.
"""

from __future__ import annotations

import logging
import re
from datetime import timedelta
from typing import Any, List, Optional, Tuple

from connectors.errors import ConnectorNotFoundError, OAuthStateError
from connectors.models import (
    AccountInfo,
    Connector,
    ConnectorStatus,
    OAuthResult,
    ProviderId,
    utcnow,
)
from connectors.oauth import (
    PendingAuthorization,
    PendingAuthorizations,
    code_challenge,
    create_state,
    generate_code_verifier,
    verify_state,
)
from connectors.registry import ProviderRegistry
from connectors.sanitizer import sanitize_error
from connectors.store import ConnectorStore
from connectors.vault import TokenVault

logger = logging.getLogger(__name__)

_EDITABLE_SETTINGS = {"sync_enabled", "sync_folders", "sync_interval"}


class ConnectorService:
    def __init__(
        self,
        registry: ProviderRegistry,
        store: ConnectorStore,
        vault: TokenVault,
        pending: Optional[PendingAuthorizations] = None,
    ):
        self.registry = registry
        self.store = store
        self.vault = vault
        self.pending = pending or PendingAuthorizations()

    # ── OAuth ───────────────────────────────────────────────────────────

    async def begin_authorization(self, provider: str) -> Tuple[str, str]:
        """
        Start an OAuth flow.

        Returns
        -------
        (auth_url, state)
        """
        instance = await self.registry.get(provider)
        verifier = generate_code_verifier()
        state = create_state(instance.provider_id)
        self.pending.add(state, PendingAuthorization(provider=instance.metadata.id, code_verifier=verifier))
        return instance.get_auth_url(state, code_challenge(verifier)), state

    async def complete_authorization(
        self,
        state: str,
        code: str,
        provider: Optional[str] = None,
    ) -> Connector:
        """
        Finish an OAuth flow and persist the connector.

        Parameters
        ----------
        state : str
            State returned by ``begin_authorization``; consumed here.
        code : str
            Authorization code from the redirect.
        provider : str, optional
            Provider from the callback route, checked against the state.
        """
        state_provider = verify_state(state)
        pending = self.pending.pop(state)
        if pending.provider.value != state_provider or (provider and provider != state_provider):
            raise OAuthStateError("OAuth state does not match the provider")

        instance = await self.registry.get(state_provider)
        tokens = await instance.exchange_code(code, pending.code_verifier)
        account = await instance.get_account_info(tokens.access_token)
        connector = await self._store_connection(instance.metadata.id, instance.metadata.name, tokens, account)
        logger.info(
            "OAuth connected: provider=%s connector=%s account=%s",
            state_provider,
            connector.id,
            account.email or account.id,
        )
        return connector

    async def _store_connection(
        self,
        provider_id: ProviderId,
        display_name: str,
        tokens: OAuthResult,
        account: AccountInfo,
    ) -> Connector:
        """Create a connector, or update the one already linked to this account."""
        existing = next(
            (
                c
                for c in await self.store.list()
                if c.provider == provider_id and c.account_id == account.id
            ),
            None,
        )

        access = await self.vault.encrypt_token(tokens.access_token)
        refresh = await self.vault.encrypt_token(tokens.refresh_token) if tokens.refresh_token else None

        fields = {
            "encrypted_token": access.ciphertext,
            "token_iv": access.iv,
            "token_expires_at": (
                utcnow() + timedelta(seconds=tokens.expires_in) if tokens.expires_in else None
            ),
            "scopes": [s for s in re.split(r"[\s,]+", tokens.scope) if s],
            "account_id": account.id,
            "account_email": account.email,
            "account_picture": account.picture,
            "status": ConnectorStatus.CONNECTED,
            "error_message": None,
        }
        if refresh is not None:
            fields["encrypted_refresh_token"] = refresh.ciphertext
            fields["refresh_token_iv"] = refresh.iv

        if existing:
            connector = await self.store.update(existing.id, **fields)
            logger.info("Updated %s connector %s", provider_id.value, existing.id)
        else:
            connector = await self.store.save(
                Connector(
                    provider=provider_id,
                    name=account.email or account.name or display_name,
                    **fields,
                )
            )
            logger.info("Created %s connector %s", provider_id.value, connector.id)

        await self.vault.store_metadata(connector.id, access.iv, access.salt)
        if refresh is not None:
            await self.vault.store_metadata(connector.id, refresh.iv, refresh.salt, is_refresh=True)
        return await self.get_connector(connector.id)

    # ── Records ─────────────────────────────────────────────────────────

    async def list_connectors(self) -> List[Connector]:
        return await self.store.list()

    async def get_connector(self, connector_id: str) -> Connector:
        connector = await self.store.get(connector_id)
        if connector is None:
            raise ConnectorNotFoundError(connector_id)
        return connector

    async def update_sync_settings(self, connector_id: str, **changes: Any) -> Connector:
        """Edit ``sync_enabled`` / ``sync_folders`` / ``sync_interval``.

        ``sync_folders=None`` (or an empty list) means "sync everything".
        """
        unknown = set(changes) - _EDITABLE_SETTINGS
        if unknown:
            raise ValueError(f"Not editable: {', '.join(sorted(unknown))}")
        await self.get_connector(connector_id)
        return await self.store.update(connector_id, **changes)

    async def refresh(self, connector_id: str) -> Connector:
        """Background refresh; flips an expired connector back to connected on success."""
        connector = await self.get_connector(connector_id)
        instance = await self.registry.get(connector.provider.value)
        await instance.try_refresh_token(connector)
        return await self.get_connector(connector_id)

    async def disconnect(self, connector_id: str) -> bool:
        """
        Revoke (best effort) and delete a connector with its encryption
        metadata and sync state.  Returns False if it does not exist.
        """
        connector = await self.store.get(connector_id)
        if connector is None:
            return False

        instance = await self.registry.get(connector.provider.value)
        try:
            await instance.revoke_access(connector)
        except Exception as exc:
            logger.warning(
                "Revocation failed for %s connector %s: %s",
                connector.provider.value,
                connector_id,
                sanitize_error(exc),
            )

        await self.vault.clear_metadata(connector_id)
        await self.store.delete_sync_state(connector_id)
        await self.store.delete(connector_id)
        logger.info("Disconnected %s connector %s", connector.provider.value, connector_id)
        return True
