"""
OutlookMailProvider — Outlook mail through Microsoft Graph.

Delta sync uses Graph delta queries on one mail folder (``inbox`` unless a
folder is selected).  The ``@odata.nextLink`` / ``@odata.deltaLink`` URLs
are the cursors themselves; while the first full pass is still paging the
next link is wrapped as ``":initial:{nextLink}"`` so its items stay
``added``.  Later passes report ``modified``; ``@removed`` entries are
deletions.  HTTP 410 or a ``resyncRequired`` / ``syncStateNotFound``
error invalidates the delta link.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from connectors.base import BaseConnectorProvider
from connectors.cursor import InitialCursor, SteadyCursor, decode_cursor, encode_cursor
from connectors.errors import AuthenticationError, ConnectorError, ProviderError
from connectors.models import (
    AccountInfo,
    ChangesResult,
    Connector,
    ConnectorItem,
    ContentResult,
    ListOptions,
    ListResult,
    OAuthResult,
    SearchResult,
    TokenRefreshResult,
    utcnow,
)
from connectors.providers.catalog import OUTLOOK_MAIL

logger = logging.getLogger(__name__)

GRAPH_API_BASE = "https://graph.microsoft.com/v1.0"
DEFAULT_FOLDER = "inbox"
DEFAULT_PAGE_SIZE = 50
MESSAGE_FIELDS = (
    "id,subject,receivedDateTime,from,isRead,isDraft,importance,hasAttachments,"
    "parentFolderId,conversationId,body,bodyPreview,webLink,categories"
)

_RESYNC_CODES = ("resyncrequired", "syncstatenotfound", "syncstateinvalid")
_TAG_RE = re.compile(r"<[^>]+>")


def _format_address(recipient: Optional[Dict[str, Any]]) -> str:
    address = (recipient or {}).get("emailAddress") or {}
    name, mail = address.get("name"), address.get("address")
    if name and mail:
        return f"{name} <{mail}>"
    return mail or name or ""


class OutlookMailProvider(BaseConnectorProvider):
    metadata = OUTLOOK_MAIL

    # ── OAuth ───────────────────────────────────────────────────────────

    def get_auth_url(self, state: str, code_challenge: str) -> str:
        return self.build_auth_url(state, code_challenge, response_mode="query")

    async def exchange_code(self, code: str, code_verifier: str) -> OAuthResult:
        data = await self.post_token_request(
            {
                "client_id": self.client_id,
                "code": code,
                "code_verifier": code_verifier,
                "grant_type": "authorization_code",
                "redirect_uri": self.redirect_uri,
                "scope": " ".join(self.metadata.oauth.scopes),
            }
        )
        return OAuthResult(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_in=data.get("expires_in"),
            scope=data.get("scope", ""),
            token_type=data.get("token_type", "Bearer"),
        )

    async def refresh_token(self, connector: Connector) -> TokenRefreshResult:
        refresh = await self.get_decrypted_refresh_token(connector)
        if not refresh:
            raise AuthenticationError("No refresh token available")
        data = await self.post_token_request(
            {
                "client_id": self.client_id,
                "refresh_token": refresh,
                "grant_type": "refresh_token",
                "scope": " ".join(self.metadata.oauth.scopes),
            },
            action="Token refresh",
        )
        # Microsoft rotates refresh tokens on every use
        return TokenRefreshResult(
            access_token=data["access_token"],
            expires_in=data.get("expires_in"),
            refresh_token=data.get("refresh_token"),
        )

    async def validate_token(self, token: str) -> bool:
        response = await self.client.get(f"{GRAPH_API_BASE}/me", headers={"Authorization": f"Bearer {token}"})
        return response.is_success

    async def revoke_access(self, connector: Connector) -> None:
        # Graph has no revocation endpoint for delegated tokens
        logger.info(
            "Outlook connector %s removed locally; consent can be revoked at https://account.live.com/consent/Manage",
            connector.id,
        )

    async def get_account_info(self, token: str) -> AccountInfo:
        data = await self.fetch_json_with_raw_token(token, f"{GRAPH_API_BASE}/me")
        return AccountInfo(
            id=data["id"],
            email=data.get("mail") or data.get("userPrincipalName"),
            name=data.get("displayName"),
        )

    # ── Content ─────────────────────────────────────────────────────────

    def _folder(self, connector: Connector) -> str:
        scope = connector.folder_scope
        return scope[0] if scope else DEFAULT_FOLDER

    async def _list(self, fetch, options: Optional[ListOptions]) -> ListResult:
        options = options or ListOptions()
        top = str(options.page_size or DEFAULT_PAGE_SIZE)

        if options.cursor:
            data = await fetch(options.cursor)
        elif not options.path:
            data = await fetch(f"{GRAPH_API_BASE}/me/mailFolders", params={"$top": top})
        else:
            data = await fetch(
                f"{GRAPH_API_BASE}/me/mailFolders/{options.path}/messages",
                params={"$top": top, "$select": MESSAGE_FIELDS},
            )

        items = []
        for entry in data.get("value") or []:
            if "subject" in entry or "receivedDateTime" in entry:
                items.append(self._normalize(entry, options.path or DEFAULT_FOLDER))
            else:
                items.append(
                    ConnectorItem(
                        external_id=entry["id"],
                        name=entry.get("displayName") or entry["id"],
                        type="folder",
                        path=f"/outlook/{entry.get('displayName', entry['id'])}",
                        metadata={
                            "totalItemCount": entry.get("totalItemCount"),
                            "unreadItemCount": entry.get("unreadItemCount"),
                        },
                    )
                )
        next_link = data.get("@odata.nextLink")
        return ListResult(items=items, next_cursor=next_link, has_more=bool(next_link))

    async def list(self, connector: Connector, options: Optional[ListOptions] = None) -> ListResult:
        """Mail folders when ``options.path`` is empty, otherwise that folder's messages."""

        async def fetch(url: str, **kwargs: Any) -> Any:
            return await self.fetch_json(connector, url, **kwargs)

        return await self._list(fetch, options)

    async def list_with_token(self, token: str, options: Optional[ListOptions] = None) -> ListResult:
        async def fetch(url: str, **kwargs: Any) -> Any:
            return await self.fetch_json_with_raw_token(token, url, **kwargs)

        return await self._list(fetch, options)

    async def read(self, connector: Connector, external_id: str) -> ContentResult:
        response = await self.fetch_with_auth(connector, f"{GRAPH_API_BASE}/me/messages/{external_id}/$value")
        if not response.is_success:
            raise ProviderError(response.status_code, f"Failed to read message {external_id}")
        self.ensure_within_size(external_id, len(response.content))
        return ContentResult(
            content=response.text,
            mime_type="message/rfc822",
            metadata={"id": external_id},
        )

    async def search(self, connector: Connector, query: str) -> SearchResult:
        data = await self.fetch_json(
            connector,
            f"{GRAPH_API_BASE}/me/messages",
            params={"$search": f'"{query}"', "$top": str(DEFAULT_PAGE_SIZE), "$select": MESSAGE_FIELDS},
        )
        items = [self._normalize(m, "search") for m in data.get("value") or []]
        return SearchResult(items=items, total_count=len(items), next_cursor=data.get("@odata.nextLink"))

    # ── Delta sync ──────────────────────────────────────────────────────

    async def get_changes(self, connector: Connector, cursor: Optional[str]) -> ChangesResult:
        folder = self._folder(connector)
        decoded = decode_cursor(cursor)
        initial = not isinstance(decoded, SteadyCursor)

        if isinstance(decoded, SteadyCursor):
            url, params = decoded.token, None
        elif isinstance(decoded, InitialCursor):
            url, params = decoded.page_token, None
        else:
            url = f"{GRAPH_API_BASE}/me/mailFolders/{folder}/messages/delta"
            params = {"$select": MESSAGE_FIELDS}

        try:
            data = await self.fetch_json(
                connector,
                url,
                params=params,
                headers={"Prefer": f"odata.maxpagesize={DEFAULT_PAGE_SIZE}"},
            )
        except ProviderError as exc:
            if exc.status == 410 or any(code in str(exc).lower() for code in _RESYNC_CODES):
                logger.info("Outlook delta link rejected for connector %s", connector.id)
                return ChangesResult.resync()
            raise

        added: List[ConnectorItem] = []
        modified: List[ConnectorItem] = []
        deleted: List[str] = []
        for entry in data.get("value") or []:
            if "@removed" in entry:
                deleted.append(entry["id"])
            elif initial:
                added.append(self._normalize(entry, folder))
            else:
                modified.append(self._normalize(entry, folder))

        next_link = data.get("@odata.nextLink")
        delta_link = data.get("@odata.deltaLink")
        if next_link:
            new_cursor = encode_cursor(InitialCursor(reference="", page_token=next_link)) if initial else next_link
        elif delta_link:
            new_cursor = delta_link
        else:
            raise ConnectorError("Graph delta response carried neither a next link nor a delta link")

        return ChangesResult(
            added=added,
            modified=modified,
            deleted=deleted,
            new_cursor=new_cursor,
            has_more=bool(next_link),
        )

    # ── Normalization ───────────────────────────────────────────────────

    def normalize_item(self, raw_item: Dict[str, Any]) -> ConnectorItem:
        return self._normalize(raw_item, DEFAULT_FOLDER)

    def _normalize(self, message: Dict[str, Any], folder: str) -> ConnectorItem:
        subject = message.get("subject") or "(No Subject)"
        sender = _format_address(message.get("from"))
        received = message.get("receivedDateTime")
        body = message.get("body") or {}
        content = body.get("content")
        transcript = content
        if content and body.get("contentType") == "html":
            transcript = _TAG_RE.sub("", content).strip()

        return ConnectorItem(
            external_id=message["id"],
            name=subject,
            type="file",
            file_type="document",
            mime_type="message/rfc822",
            path=f"/outlook/{folder}",
            last_modified=datetime.fromisoformat(received.replace("Z", "+00:00")) if received else utcnow(),
            external_url=message.get("webLink"),
            content=content,
            transcript=transcript or message.get("bodyPreview"),
            description=f"From: {sender}",
            tags=[c.lower() for c in message.get("categories") or []],
            metadata={
                "conversationId": message.get("conversationId"),
                "isRead": message.get("isRead"),
                "isDraft": message.get("isDraft"),
                "importance": message.get("importance"),
                "hasAttachments": message.get("hasAttachments"),
                "parentFolderId": message.get("parentFolderId"),
                "from": sender,
            },
        )
