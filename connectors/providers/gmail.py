"""
GmailProvider — Gmail messages through the Gmail REST API.

Delta sync uses the History API:

* initial sync lists messages page by page behind a compound cursor
  ``"{historyId}:initial:{pageToken}"``, where ``historyId`` is read from
  the profile *before* listing so nothing is missed;
* steady state replays ``history.list`` from the stored history ID;
* a 404 from ``history.list`` means the history ID is too old and the
  cursor is invalidated.
"""

from __future__ import annotations

import asyncio
import base64
import email
import logging
import re
from collections import OrderedDict
from datetime import datetime, timezone
from email import policy
from typing import Any, Dict, List, Optional, Tuple

from connectors.base import BaseConnectorProvider
from connectors.cursor import InitialCursor, SteadyCursor, decode_cursor, next_initial_cursor
from connectors.errors import ProviderError
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
from connectors.providers import google
from connectors.providers.catalog import GMAIL

logger = logging.getLogger(__name__)

GMAIL_API_BASE = "https://gmail.googleapis.com/gmail/v1/users/me"

DEFAULT_PAGE_SIZE = 50
BATCH_SIZE = 10
HISTORY_PAGE_SIZE = 100
# Upper bound on messages returned by one initial-sync continuation call
MAX_INITIAL_BATCH = 500

_LABEL_PRIORITY = ["INBOX", "SENT", "DRAFT", "STARRED", "IMPORTANT", "SPAM", "TRASH"]
_TAG_RE = re.compile(r"<[^>]+>")


def primary_label(label_ids: Optional[List[str]]) -> str:
    """Label used in the breadcrumb path: priority system label, then first non-category label."""
    if not label_ids:
        return "all"
    for label in _LABEL_PRIORITY:
        if label in label_ids:
            return label.lower()
    for label in label_ids:
        if not label.startswith("CATEGORY_"):
            return label.lower()
    return "all"


def _decode_raw(raw: Optional[str]) -> bytes:
    if not raw:
        return b""
    return base64.urlsafe_b64decode(raw + "=" * (-len(raw) % 4))


def _text_body(message: email.message.EmailMessage) -> Optional[str]:
    part = message.get_body(preferencelist=("plain", "html"))
    if part is None:
        return None
    text = part.get_content()
    if part.get_content_subtype() == "html":
        text = _TAG_RE.sub("", text)
    return text.strip() or None


class GmailProvider(BaseConnectorProvider):
    metadata = GMAIL

    # ── OAuth ───────────────────────────────────────────────────────────

    def get_auth_url(self, state: str, code_challenge: str) -> str:
        return google.auth_url(self, state, code_challenge)

    async def exchange_code(self, code: str, code_verifier: str) -> OAuthResult:
        return await google.exchange_code(self, code, code_verifier)

    async def refresh_token(self, connector: Connector) -> TokenRefreshResult:
        return await google.refresh_token(self, connector)

    async def validate_token(self, token: str) -> bool:
        return await google.validate_token(self, token)

    async def revoke_access(self, connector: Connector) -> None:
        await google.revoke_access(self, connector)

    async def get_account_info(self, token: str) -> AccountInfo:
        return await google.get_account_info(self, token)

    # ── Content ─────────────────────────────────────────────────────────

    def _list_params(self, options: ListOptions, scope: Optional[List[str]]) -> List[Tuple[str, str]]:
        params = [("maxResults", str(options.page_size or DEFAULT_PAGE_SIZE))]
        if options.cursor:
            params.append(("pageToken", options.cursor))

        label_id = options.path or options.filter.get("labelId")
        if label_id:
            params.append(("labelIds", label_id))
        elif scope and len(scope) == 1:
            params.append(("labelIds", scope[0]))

        query = options.filter.get("q")
        if not label_id and scope and len(scope) > 1:
            labels = "{" + " ".join(f"label:{label}" for label in scope) + "}"
            query = f"{labels} {query}" if query else labels
        if query:
            params.append(("q", query))
        return params

    async def list(self, connector: Connector, options: Optional[ListOptions] = None) -> ListResult:
        params = self._list_params(options or ListOptions(), connector.folder_scope)
        data = await self.fetch_json(connector, f"{GMAIL_API_BASE}/messages", params=params)
        ids = [m["id"] for m in data.get("messages") or []]
        messages = await self._batch_fetch(connector, ids)
        return ListResult(
            items=[self.normalize_item(m) for m in messages],
            next_cursor=data.get("nextPageToken"),
            has_more=bool(data.get("nextPageToken")),
        )

    async def list_with_token(self, token: str, options: Optional[ListOptions] = None) -> ListResult:
        """Message stubs only; the wizard needs no message bodies."""
        params = self._list_params(options or ListOptions(), None)
        data = await self.fetch_json_with_raw_token(token, f"{GMAIL_API_BASE}/messages", params=params)
        items = [
            ConnectorItem(
                external_id=m["id"],
                name=m["id"],
                mime_type="message/rfc822",
                path="/gmail",
                metadata={"threadId": m.get("threadId")},
            )
            for m in data.get("messages") or []
        ]
        return ListResult(
            items=items,
            next_cursor=data.get("nextPageToken"),
            has_more=bool(data.get("nextPageToken")),
        )

    async def _fetch_message(self, connector: Connector, message_id: str) -> Optional[Dict[str, Any]]:
        try:
            return await self.fetch_json(
                connector, f"{GMAIL_API_BASE}/messages/{message_id}", params={"format": "raw"}
            )
        except ProviderError as exc:
            # deleted between listing and fetch
            logger.warning("Failed to fetch Gmail message %s: %s", message_id, exc)
            return None

    async def _batch_fetch(self, connector: Connector, message_ids: List[str]) -> List[Dict[str, Any]]:
        messages: List[Dict[str, Any]] = []
        for i in range(0, len(message_ids), BATCH_SIZE):
            batch = message_ids[i : i + BATCH_SIZE]
            results = await asyncio.gather(*(self._fetch_message(connector, mid) for mid in batch))
            messages.extend(m for m in results if m is not None)
        return messages

    async def read(self, connector: Connector, external_id: str) -> ContentResult:
        message = await self.fetch_json(
            connector, f"{GMAIL_API_BASE}/messages/{external_id}", params={"format": "raw"}
        )
        self.ensure_within_size(external_id, message.get("sizeEstimate"))
        return ContentResult(
            content=_decode_raw(message.get("raw")).decode("utf-8", errors="replace"),
            mime_type="message/rfc822",
            metadata={
                "id": message["id"],
                "threadId": message.get("threadId"),
                "labelIds": message.get("labelIds"),
                "snippet": message.get("snippet"),
                "historyId": message.get("historyId"),
                "internalDate": message.get("internalDate"),
                "sizeEstimate": message.get("sizeEstimate"),
            },
        )

    async def search(self, connector: Connector, query: str) -> SearchResult:
        data = await self.fetch_json(
            connector,
            f"{GMAIL_API_BASE}/messages",
            params={"q": query, "maxResults": str(DEFAULT_PAGE_SIZE)},
        )
        ids = [m["id"] for m in data.get("messages") or []]
        messages = await self._batch_fetch(connector, ids)
        return SearchResult(
            items=[self.normalize_item(m) for m in messages],
            total_count=data.get("resultSizeEstimate", len(ids)),
            next_cursor=data.get("nextPageToken"),
        )

    # ── Delta sync ──────────────────────────────────────────────────────

    async def get_changes(self, connector: Connector, cursor: Optional[str]) -> ChangesResult:
        decoded = decode_cursor(cursor)

        if isinstance(decoded, InitialCursor):
            return await self._continue_initial(connector, decoded)
        if isinstance(decoded, SteadyCursor):
            return await self._history_changes(connector, decoded.token)

        profile = await self.fetch_json(connector, f"{GMAIL_API_BASE}/profile")
        history_id = str(profile["historyId"])
        page = await self.list(connector, ListOptions(page_size=DEFAULT_PAGE_SIZE))
        return ChangesResult(
            added=page.items,
            new_cursor=next_initial_cursor(history_id, page.next_cursor),
            has_more=page.has_more,
        )

    async def _continue_initial(self, connector: Connector, cursor: InitialCursor) -> ChangesResult:
        added: List[ConnectorItem] = []
        page_token: Optional[str] = cursor.page_token
        while page_token and len(added) < MAX_INITIAL_BATCH:
            page = await self.list(
                connector, ListOptions(page_size=DEFAULT_PAGE_SIZE, cursor=page_token)
            )
            added.extend(page.items)
            page_token = page.next_cursor
        return ChangesResult(
            added=added,
            new_cursor=next_initial_cursor(cursor.reference, page_token),
            has_more=bool(page_token),
        )

    async def _history_changes(self, connector: Connector, start_history_id: str) -> ChangesResult:
        added_ids: "OrderedDict[str, None]" = OrderedDict()
        deleted_ids: "OrderedDict[str, None]" = OrderedDict()
        latest = start_history_id
        page_token: Optional[str] = None

        while True:
            params = [
                ("startHistoryId", start_history_id),
                ("historyTypes", "messageAdded"),
                ("historyTypes", "messageDeleted"),
                ("maxResults", str(HISTORY_PAGE_SIZE)),
            ]
            if page_token:
                params.append(("pageToken", page_token))
            try:
                data = await self.fetch_json(connector, f"{GMAIL_API_BASE}/history", params=params)
            except ProviderError as exc:
                if exc.status == 404:
                    logger.info("Gmail history %s expired for connector %s", start_history_id, connector.id)
                    return ChangesResult.resync()
                raise

            for entry in data.get("history") or []:
                for added in entry.get("messagesAdded") or []:
                    message_id = added["message"]["id"]
                    added_ids[message_id] = None
                    deleted_ids.pop(message_id, None)
                for removed in entry.get("messagesDeleted") or []:
                    message_id = removed["message"]["id"]
                    deleted_ids[message_id] = None
                    added_ids.pop(message_id, None)

            latest = str(data.get("historyId") or latest)
            page_token = data.get("nextPageToken")
            if not page_token:
                break

        messages = await self._batch_fetch(connector, list(added_ids))
        scope = connector.folder_scope
        if scope:
            messages = [m for m in messages if set(m.get("labelIds") or []) & set(scope)]

        return ChangesResult(
            added=[self.normalize_item(m) for m in messages],
            modified=[],
            deleted=list(deleted_ids),
            new_cursor=latest,
            has_more=False,
        )

    # ── Normalization ───────────────────────────────────────────────────

    def normalize_item(self, raw_item: Dict[str, Any]) -> ConnectorItem:
        raw_bytes = _decode_raw(raw_item.get("raw"))
        parsed = email.message_from_bytes(raw_bytes, policy=policy.default)
        subject = str(parsed.get("Subject") or "(No Subject)")
        sender = str(parsed.get("From") or "")

        if raw_item.get("internalDate"):
            last_modified = datetime.fromtimestamp(int(raw_item["internalDate"]) / 1000, tz=timezone.utc)
        elif parsed.get("Date") is not None:
            last_modified = parsed["Date"].datetime or utcnow()
        else:
            last_modified = utcnow()

        label_ids = raw_item.get("labelIds") or []
        return ConnectorItem(
            external_id=raw_item["id"],
            name=subject,
            type="file",
            file_type="document",
            mime_type="message/rfc822",
            size=raw_item.get("sizeEstimate"),
            path=f"/gmail/{primary_label(label_ids)}",
            last_modified=last_modified,
            external_url=f"https://mail.google.com/mail/u/0/#inbox/{raw_item['id']}",
            content=raw_bytes.decode("utf-8", errors="replace"),
            transcript=_text_body(parsed) if raw_bytes else None,
            description=f"From: {sender}",
            tags=[label.lower() for label in label_ids],
            metadata={
                "threadId": raw_item.get("threadId"),
                "labelIds": label_ids,
                "snippet": raw_item.get("snippet"),
                "historyId": raw_item.get("historyId"),
                "from": sender,
                "subject": subject,
            },
        )
