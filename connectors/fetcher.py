"""
AuthenticatedFetcher — bearer-token HTTP with one refresh-and-retry.

Policy
------
1. Decrypt the access token and send the request with
   ``Authorization: Bearer <token>``.
2. Any status other than 401 is returned untouched.
3. On 401, refresh the token through the provider's ``refresh_token``.
   If there is no refresh token or the refresh fails, the connector is
   marked ``expired``, the user is notified and ``AuthenticationError`` is
   raised.
4. Otherwise the new token is encrypted and persisted and the original
   request is retried exactly once.  A second 401 also raises
   ``AuthenticationError``.

One caller-initiated request therefore costs at most two provider calls
plus one refresh call.  Concurrent 401s on the same connector share a
single in-flight refresh.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from connectors.errors import AuthenticationError, ProviderError
from connectors.models import Connector, ConnectorStatus, TokenRefreshResult, utcnow
from connectors.notifier import Notification, Notifier, connector_settings_link
from connectors.sanitizer import sanitize_error, sanitize_error_message
from connectors.store import ConnectorStore
from connectors.vault import TokenVault

logger = logging.getLogger(__name__)

RefreshFunc = Callable[[Connector], Awaitable[TokenRefreshResult]]

_TOKEN_FIELDS = (
    "encrypted_token",
    "token_iv",
    "encrypted_refresh_token",
    "refresh_token_iv",
    "token_expires_at",
    "status",
    "error_message",
)


@dataclass
class _RefreshOutcome:
    access_token: str
    record: Connector


class AuthenticatedFetcher:
    def __init__(
        self,
        provider_name: str,
        client: httpx.AsyncClient,
        vault: TokenVault,
        store: ConnectorStore,
        notifier: Notifier,
        refresh: RefreshFunc,
    ):
        self._provider = provider_name
        self._client = client
        self._vault = vault
        self._store = store
        self._notifier = notifier
        self._refresh = refresh
        self._inflight: Dict[str, asyncio.Task] = {}

    # ── Authenticated requests ──────────────────────────────────────────

    async def fetch_with_auth(
        self,
        connector: Connector,
        url: str,
        method: str = "GET",
        **kwargs: Any,
    ) -> httpx.Response:
        if connector.is_expired:
            raise AuthenticationError(
                f"{self._provider} connector is expired. Please reconnect."
            )

        token = await self._vault.decrypt_access_token(connector)
        response = await self._send(token, method, url, **kwargs)
        if response.status_code != 401:
            return response

        logger.info(
            "%s returned 401 for connector %s, attempting token refresh",
            self._provider,
            connector.id,
        )
        new_token = await self.try_refresh_token(connector)
        if new_token is None:
            raise AuthenticationError(
                f"Authentication failed for {self._provider}. Token refresh failed."
            )

        retry = await self._send(new_token, method, url, **kwargs)
        if retry.status_code == 401:
            await self._notifier.notify(
                Notification(
                    title=f"{self._provider}: Token rejected",
                    description="Your access token was rejected after a refresh. Please reconnect.",
                    action_url=connector_settings_link(connector.id),
                    action_label="Reconnect",
                )
            )
            await self._mark_expired(
                connector, "Access token rejected after refresh. Please reconnect."
            )
            raise AuthenticationError(
                f"Authentication failed for {self._provider} even after refresh."
            )
        return retry

    async def fetch_json(
        self,
        connector: Connector,
        url: str,
        method: str = "GET",
        **kwargs: Any,
    ) -> Any:
        kwargs["headers"] = {"Accept": "application/json", **(kwargs.get("headers") or {})}
        response = await self.fetch_with_auth(connector, url, method, **kwargs)
        return _json_or_raise(response)

    # ── Raw token (pre-persistence OAuth window) ────────────────────────

    async def fetch_with_raw_token(
        self,
        token: str,
        url: str,
        method: str = "GET",
        **kwargs: Any,
    ) -> httpx.Response:
        """Like ``fetch_with_auth`` but with a plaintext token and no refresh."""
        response = await self._send(token, method, url, **kwargs)
        if response.status_code == 401:
            raise AuthenticationError(f"{self._provider} rejected the access token.")
        return response

    async def fetch_json_with_raw_token(
        self,
        token: str,
        url: str,
        method: str = "GET",
        **kwargs: Any,
    ) -> Any:
        kwargs["headers"] = {"Accept": "application/json", **(kwargs.get("headers") or {})}
        response = await self.fetch_with_raw_token(token, url, method, **kwargs)
        return _json_or_raise(response)

    # ── Refresh ─────────────────────────────────────────────────────────

    async def try_refresh_token(self, connector: Connector) -> Optional[str]:
        """
        Refresh the connector's access token.

        Never raises.  Returns the new plaintext access token, or None after
        marking the connector expired and notifying the user.  *connector*
        is updated in place with the persisted token fields.
        """
        task = self._inflight.get(connector.id)
        if task is None or task.done():
            task = asyncio.ensure_future(self._do_refresh(connector))
            self._inflight[connector.id] = task
            task.add_done_callback(lambda t, cid=connector.id: self._forget(cid, t))

        outcome = await asyncio.shield(task)
        if outcome is None:
            connector.status = ConnectorStatus.EXPIRED
            return None
        for field in _TOKEN_FIELDS:
            setattr(connector, field, getattr(outcome.record, field))
        return outcome.access_token

    def _forget(self, connector_id: str, task: asyncio.Task) -> None:
        if self._inflight.get(connector_id) is task:
            del self._inflight[connector_id]

    async def _do_refresh(self, connector: Connector) -> Optional[_RefreshOutcome]:
        if not connector.encrypted_refresh_token:
            await self._notifier.notify(
                Notification(
                    title=f"{self._provider}: Token expired",
                    description="Your access token has expired. Please reconnect to continue syncing.",
                    action_url=connector_settings_link(connector.id),
                    action_label="Reconnect",
                )
            )
            await self._mark_expired(
                connector, "Access token expired and no refresh token is available. Please reconnect."
            )
            return None

        try:
            result = await self._refresh(connector)
            return await self._persist_refresh(connector, result)
        except Exception as exc:
            logger.warning(
                "Token refresh failed for %s connector %s: %s",
                self._provider,
                connector.id,
                sanitize_error(exc),
            )
            await self._notifier.notify(
                Notification(
                    title=f"{self._provider}: Token refresh failed",
                    description="Unable to refresh your access token. Please reconnect.",
                    action_url=connector_settings_link(connector.id),
                    action_label="Reconnect",
                )
            )
            await self._mark_expired(
                connector, "Access token expired and refresh failed. Please reconnect."
            )
            return None

    async def _persist_refresh(
        self, connector: Connector, result: TokenRefreshResult
    ) -> _RefreshOutcome:
        encrypted = await self._vault.encrypt_token(result.access_token)
        changes: Dict[str, Any] = {
            "encrypted_token": encrypted.ciphertext,
            "token_iv": encrypted.iv,
            "token_expires_at": (
                utcnow() + timedelta(seconds=result.expires_in) if result.expires_in else None
            ),
            "status": ConnectorStatus.CONNECTED,
            "error_message": None,
        }

        # Some providers rotate refresh tokens
        rotated = None
        if result.refresh_token:
            rotated = await self._vault.encrypt_token(result.refresh_token)
            changes["encrypted_refresh_token"] = rotated.ciphertext
            changes["refresh_token_iv"] = rotated.iv

        await self._store.update(connector.id, **changes)
        await self._vault.store_metadata(connector.id, encrypted.iv, encrypted.salt)
        if rotated is not None:
            await self._vault.store_metadata(connector.id, rotated.iv, rotated.salt, is_refresh=True)

        record = await self._store.get(connector.id)
        logger.info("Refreshed %s token for connector %s", self._provider, connector.id)
        return _RefreshOutcome(access_token=result.access_token, record=record)

    async def _mark_expired(self, connector: Connector, message: str) -> None:
        connector.status = ConnectorStatus.EXPIRED
        connector.error_message = message
        await self._store.update(
            connector.id, status=ConnectorStatus.EXPIRED, error_message=message
        )
        logger.warning("Connector %s (%s) marked expired", connector.id, self._provider)

    # ── Transport ───────────────────────────────────────────────────────

    async def _send(self, token: str, method: str, url: str, **kwargs: Any) -> httpx.Response:
        headers = dict(kwargs.pop("headers", None) or {})
        headers["Authorization"] = f"Bearer {token}"
        return await self._client.request(method, url, headers=headers, **kwargs)


def _json_or_raise(response: httpx.Response) -> Any:
    if not response.is_success:
        raise ProviderError(response.status_code, sanitize_error_message(response.text))
    if not response.content:
        return {}
    return response.json()
