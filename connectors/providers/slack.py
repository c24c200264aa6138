"""
SlackProvider — channel conversations through the Slack Web API.

Items are channels; ``read`` renders a channel's history as markdown.
Slack has no changes feed, so delta sync is timestamp based: the cursor
is the ISO time captured *before* a pass, and an incremental pass asks
``conversations.history`` of every channel in scope for at least one
message newer than the cursor.  Channels with activity are reported as
``modified``.

Slack answers most failures with HTTP 200 and ``{"ok": false}``; those
are raised as ``ProviderError`` (or ``AuthenticationError`` for token
errors).
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from connectors.base import BaseConnectorProvider
from connectors.cursor import InitialCursor, SteadyCursor, decode_cursor, next_initial_cursor
from connectors.errors import AuthenticationError, ProviderError
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
from connectors.providers.catalog import SLACK

logger = logging.getLogger(__name__)

SLACK_API_BASE = "https://slack.com/api"
DEFAULT_PAGE_SIZE = 100
HISTORY_PAGE_SIZE = 200
MAX_MESSAGES_PER_CHANNEL = 1000
CHANNEL_TYPES = "public_channel,private_channel"

USER_SCOPES = [
    "channels:history",
    "channels:read",
    "files:read",
    "groups:history",
    "groups:read",
    "im:history",
    "im:read",
    "mpim:history",
    "mpim:read",
    "search:read",
    "users:read",
    "users:read.email",
]

_AUTH_ERRORS = {"invalid_auth", "not_authed", "token_expired", "token_revoked", "account_inactive"}

_STRIKE_RE = re.compile(r"~([^~]+)~")
_LABELLED_LINK_RE = re.compile(r"<(https?://[^|>]+)\|([^>]+)>")
_BARE_LINK_RE = re.compile(r"<(https?://[^>]+)>")
_CHANNEL_MENTION_RE = re.compile(r"<#[A-Z0-9]+\|([^>]+)>")


def check_slack_response(data: Dict[str, Any]) -> Dict[str, Any]:
    """Raise for ``{"ok": false}`` bodies, return *data* otherwise."""
    if data.get("ok"):
        return data
    error = data.get("error") or "unknown_error"
    if error in _AUTH_ERRORS:
        raise AuthenticationError(f"Slack API error: {error}")
    raise ProviderError(200, f"Slack API error: {error}")


def format_slack_text(text: str) -> str:
    text = _STRIKE_RE.sub(r"~~\1~~", text)
    text = _LABELLED_LINK_RE.sub(r"[\2](\1)", text)
    text = _BARE_LINK_RE.sub(r"\1", text)
    return _CHANNEL_MENTION_RE.sub(r"#\1", text)


def _from_ts(ts: str) -> datetime:
    return datetime.fromtimestamp(float(ts), tz=timezone.utc)


def messages_to_markdown(channel_name: str, purpose: str, messages: List[Dict[str, Any]]) -> str:
    """Channel history as markdown, oldest message first."""
    lines = [f"# #{channel_name}"]
    if purpose:
        lines.extend(["", f"> {purpose}"])
    lines.extend(["", "---", ""])

    for message in reversed(messages):
        if message.get("type") != "message" or not message.get("text"):
            continue
        stamp = _from_ts(message["ts"]).strftime("%Y-%m-%d %H:%M UTC")
        lines.extend([f"**[{stamp}]** <@{message.get('user') or 'Unknown'}>", "", format_slack_text(message["text"])])
        reactions = message.get("reactions") or []
        if reactions:
            lines.extend(["", "Reactions: " + " ".join(f":{r['name']}: ({r.get('count', 0)})" for r in reactions)])
        if message.get("reply_count"):
            lines.extend(["", f"_{message['reply_count']} replies in thread_"])
        lines.extend(["", "---", ""])
    return "\n".join(lines).strip()


class SlackProvider(BaseConnectorProvider):
    metadata = SLACK

    async def _api(self, connector: Connector, method: str, **params: str) -> Dict[str, Any]:
        data = await self.fetch_json(connector, f"{SLACK_API_BASE}/{method}", params=params or None)
        return check_slack_response(data)

    async def _api_with_token(self, token: str, method: str, **params: str) -> Dict[str, Any]:
        data = await self.fetch_json_with_raw_token(token, f"{SLACK_API_BASE}/{method}", params=params or None)
        return check_slack_response(data)

    # ── OAuth ───────────────────────────────────────────────────────────

    def get_auth_url(self, state: str, code_challenge: str) -> str:
        # user-token flow: bot scopes stay empty
        return self.build_auth_url(state, code_challenge, scope="", user_scope=",".join(USER_SCOPES))

    async def exchange_code(self, code: str, code_verifier: str) -> OAuthResult:
        data = await self.post_token_request(
            {"client_id": self.client_id, "code": code, "redirect_uri": self.redirect_uri}
        )
        if not data.get("ok"):
            raise ProviderError(400, f"Slack OAuth error: {data.get('error') or 'unknown_error'}")
        user = data.get("authed_user") or {}
        return OAuthResult(
            access_token=user.get("access_token") or data.get("access_token") or "",
            refresh_token=user.get("refresh_token") or data.get("refresh_token"),
            expires_in=user.get("expires_in") or data.get("expires_in"),
            scope=user.get("scope") or data.get("scope") or "",
            token_type=user.get("token_type") or data.get("token_type") or "Bearer",
        )

    async def refresh_token(self, connector: Connector) -> TokenRefreshResult:
        refresh = await self.get_decrypted_refresh_token(connector)
        if not refresh:
            raise AuthenticationError("No refresh token available. Slack user tokens do not expire.")
        data = await self.post_token_request(
            {"client_id": self.client_id, "grant_type": "refresh_token", "refresh_token": refresh},
            action="Token refresh",
        )
        if not data.get("ok"):
            raise AuthenticationError(f"Slack token refresh error: {data.get('error')}")
        return TokenRefreshResult(
            access_token=data["access_token"],
            expires_in=data.get("expires_in"),
            refresh_token=data.get("refresh_token"),
        )

    async def validate_token(self, token: str) -> bool:
        response = await self.client.post(
            f"{SLACK_API_BASE}/auth.test",
            headers={"Authorization": f"Bearer {token}"},
        )
        return response.is_success and bool(response.json().get("ok"))

    async def revoke_access(self, connector: Connector) -> None:
        data = await self.fetch_json(connector, f"{SLACK_API_BASE}/auth.revoke", "POST")
        if not data.get("ok"):
            raise ProviderError(400, f"Token revocation failed: {data.get('error')}")

    async def get_account_info(self, token: str) -> AccountInfo:
        auth = await self._api_with_token(token, "auth.test")
        user = (await self._api_with_token(token, "users.info", user=auth["user_id"])).get("user") or {}
        profile = user.get("profile") or {}
        return AccountInfo(
            id=user.get("id") or auth["user_id"],
            email=profile.get("email"),
            name=user.get("real_name") or user.get("name"),
            picture=profile.get("image_72") or profile.get("image_48"),
        )

    # ── Content ─────────────────────────────────────────────────────────

    def _list_params(self, options: ListOptions) -> Dict[str, str]:
        params = {
            "limit": str(options.page_size or DEFAULT_PAGE_SIZE),
            "types": CHANNEL_TYPES,
            "exclude_archived": "true",
        }
        if options.cursor:
            params["cursor"] = options.cursor
        return params

    def _to_list_result(self, data: Dict[str, Any], scope: Optional[List[str]] = None) -> ListResult:
        next_cursor = (data.get("response_metadata") or {}).get("next_cursor") or None
        channels = [c for c in data.get("channels") or [] if not scope or c["id"] in scope]
        return ListResult(
            items=[self.normalize_item(c) for c in channels],
            next_cursor=next_cursor,
            has_more=bool(next_cursor),
        )

    async def list(self, connector: Connector, options: Optional[ListOptions] = None) -> ListResult:
        data = await self._api(connector, "conversations.list", **self._list_params(options or ListOptions()))
        return self._to_list_result(data, connector.folder_scope)

    async def list_with_token(self, token: str, options: Optional[ListOptions] = None) -> ListResult:
        data = await self._api_with_token(token, "conversations.list", **self._list_params(options or ListOptions()))
        return self._to_list_result(data)

    async def _history(self, connector: Connector, channel_id: str) -> List[Dict[str, Any]]:
        messages: List[Dict[str, Any]] = []
        cursor: Optional[str] = None
        while len(messages) < MAX_MESSAGES_PER_CHANNEL:
            params = {"channel": channel_id, "limit": str(HISTORY_PAGE_SIZE)}
            if cursor:
                params["cursor"] = cursor
            data = await self._api(connector, "conversations.history", **params)
            messages.extend(data.get("messages") or [])
            cursor = (data.get("response_metadata") or {}).get("next_cursor")
            if not cursor:
                break
        return messages[:MAX_MESSAGES_PER_CHANNEL]

    async def read(self, connector: Connector, external_id: str) -> ContentResult:
        channel = (await self._api(connector, "conversations.info", channel=external_id)).get("channel") or {}
        name = channel.get("name") or "Unknown Channel"
        purpose = (channel.get("purpose") or {}).get("value") or ""
        messages = await self._history(connector, external_id)

        content = messages_to_markdown(name, purpose, messages)
        self.ensure_within_size(external_id, len(content.encode()))
        return ContentResult(
            content=content,
            mime_type="text/markdown",
            metadata={"channelId": external_id, "channelName": name, "messageCount": len(messages)},
        )

    async def search(self, connector: Connector, query: str) -> SearchResult:
        data = await self._api(
            connector, "search.messages", query=query, count="50", sort="timestamp", sort_dir="desc"
        )
        found = data.get("messages") or {}
        items = [
            ConnectorItem(
                external_id=f"{match['channel']['id']}:{match['ts']}",
                name=f"Message in #{match['channel'].get('name', '')}",
                type="file",
                file_type="text",
                mime_type="text/plain",
                path=f"/slack/{match['channel'].get('name', '')}/{match['ts']}",
                last_modified=_from_ts(match["ts"]),
                external_url=match.get("permalink"),
                content=match.get("text"),
                description=(match.get("text") or "")[:100],
            )
            for match in found.get("matches") or []
        ]
        return SearchResult(items=items, total_count=found.get("total", len(items)))

    # ── Delta sync ──────────────────────────────────────────────────────

    async def get_changes(self, connector: Connector, cursor: Optional[str]) -> ChangesResult:
        decoded = decode_cursor(cursor)

        if isinstance(decoded, SteadyCursor):
            try:
                since = datetime.fromisoformat(decoded.token.replace("Z", "+00:00"))
            except ValueError:
                logger.warning("Unparseable Slack cursor for connector %s", connector.id)
                return ChangesResult.resync()
            return await self._active_since(connector, since)

        if isinstance(decoded, InitialCursor):
            reference, page_cursor = decoded.reference, decoded.page_token
        else:
            reference, page_cursor = utcnow().isoformat(), None

        page = await self.list(connector, ListOptions(cursor=page_cursor))
        return ChangesResult(
            added=page.items,
            new_cursor=next_initial_cursor(reference, page.next_cursor),
            has_more=page.has_more,
        )

    async def _active_since(self, connector: Connector, since: datetime) -> ChangesResult:
        started = utcnow().isoformat()
        channels: List[ConnectorItem] = []
        page_cursor: Optional[str] = None
        while True:
            page = await self.list(connector, ListOptions(cursor=page_cursor))
            channels.extend(page.items)
            page_cursor = page.next_cursor
            if not page_cursor:
                break

        oldest = f"{since.timestamp():.6f}"
        modified: List[ConnectorItem] = []
        for channel in channels:
            try:
                data = await self._api(
                    connector, "conversations.history", channel=channel.external_id, oldest=oldest, limit="1"
                )
            except ProviderError as exc:
                # e.g. not_in_channel for public channels the user never joined
                logger.warning("Skipping Slack channel %s: %s", channel.external_id, exc)
                continue
            if data.get("messages"):
                modified.append(channel)

        return ChangesResult(modified=modified, new_cursor=started, has_more=False)

    # ── Normalization ───────────────────────────────────────────────────

    def normalize_item(self, raw_item: Dict[str, Any]) -> ConnectorItem:
        prefix = "🔒" if raw_item.get("is_private") else "#"
        stamp = raw_item.get("updated") or raw_item.get("created")
        if stamp and stamp > 10**11:
            stamp = stamp / 1000  # ``updated`` is in milliseconds
        return ConnectorItem(
            external_id=raw_item["id"],
            name=f"{prefix}{raw_item.get('name', raw_item['id'])}",
            type="folder",
            file_type="document",
            mime_type="text/markdown",
            path=f"/slack/{raw_item.get('name', raw_item['id'])}",
            last_modified=datetime.fromtimestamp(stamp, tz=timezone.utc) if stamp else utcnow(),
            description=(raw_item.get("purpose") or {}).get("value") or (raw_item.get("topic") or {}).get("value"),
            metadata={
                "isPrivate": bool(raw_item.get("is_private")),
                "isArchived": bool(raw_item.get("is_archived")),
                "numMembers": raw_item.get("num_members"),
            },
        )
