"""
NotionProvider — pages and databases from the Notion public API.

Notion has no changes feed.  Delta sync is timestamp based: the cursor is
the ISO time captured *before* a pass started, and an incremental pass
walks ``/search`` sorted by ``last_edited_time`` (newest first) until it
reaches items older than the cursor.  The initial pass pages behind
``"{timestamp}:initial:{start_cursor}"``.  Archived or trashed items seen
during an incremental pass are reported as deletions.

Notion tokens never expire and cannot be refreshed or revoked through
the API.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import httpx

from config.settings import config
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
from connectors.providers.catalog import NOTION
from connectors.sanitizer import sanitize_error_message

logger = logging.getLogger(__name__)

NOTION_API_BASE = "https://api.notion.com/v1"
NOTION_VERSION = "2022-06-28"
DEFAULT_PAGE_SIZE = 100

# last_edited_time is truncated to the minute
EDIT_TIME_GRANULARITY = timedelta(minutes=1)

_PAGE_ID_RE = re.compile(r"([0-9a-f]{32})(?:[?#].*)?$", re.IGNORECASE)


def page_id_from_url(value: str) -> str:
    """Bare 32-hex page id from a Notion URL or a dashed/undashed id."""
    compact = value.strip().replace("-", "")
    match = _PAGE_ID_RE.search(compact)
    return (match.group(1) if match else compact).lower()


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


# ── Rich text & blocks → markdown ───────────────────────────────────────


def rich_text_to_plain(rich_text: List[Dict[str, Any]]) -> str:
    return "".join(element.get("plain_text", "") for element in rich_text or [])


def rich_text_to_markdown(rich_text: List[Dict[str, Any]]) -> str:
    parts = []
    for element in rich_text or []:
        text = element.get("plain_text", "")
        annotations = element.get("annotations") or {}
        if annotations.get("code"):
            text = f"`{text}`"
        if annotations.get("bold"):
            text = f"**{text}**"
        if annotations.get("italic"):
            text = f"*{text}*"
        if annotations.get("strikethrough"):
            text = f"~~{text}~~"
        if element.get("href"):
            text = f"[{text}]({element['href']})"
        parts.append(text)
    return "".join(parts)


def block_to_markdown(block: Dict[str, Any], list_index: int = 0) -> Optional[str]:
    """One block as a markdown line, or None for unsupported block types."""
    kind = block.get("type")
    body = block.get(kind) or {}
    text = rich_text_to_markdown(body.get("rich_text") or [])

    if kind == "paragraph":
        return text
    if kind in ("heading_1", "heading_2", "heading_3"):
        return f"{'#' * int(kind[-1])} {text}"
    if kind == "bulleted_list_item":
        return f"- {text}"
    if kind == "numbered_list_item":
        return f"{list_index + 1}. {text}"
    if kind == "to_do":
        return f"- [{'x' if body.get('checked') else ' '}] {text}"
    if kind == "toggle":
        return f"<details>\n<summary>{text}</summary>\n</details>"
    if kind == "quote":
        return f"> {text}"
    if kind == "callout":
        icon = (body.get("icon") or {}).get("emoji") or "💡"
        return f"> {icon} {text}"
    if kind == "code":
        return f"```{body.get('language', '')}\n{rich_text_to_plain(body.get('rich_text') or [])}\n```"
    if kind == "divider":
        return "---"
    if kind == "image":
        url = (body.get("external") or {}).get("url") or (body.get("file") or {}).get("url") or ""
        caption = rich_text_to_plain(body.get("caption") or [])
        return f"![{caption or 'image'}]({url})"
    if kind == "bookmark":
        caption = rich_text_to_plain(body.get("caption") or [])
        return f"[{caption}]({body.get('url', '')})" if caption else f"<{body.get('url', '')}>"
    if kind == "embed":
        return f"[Embed]({body.get('url', '')})"
    if kind == "table_of_contents":
        return "[TOC]"
    if kind == "child_page":
        return f"📄 [{body.get('title') or 'Untitled'}]"
    if kind == "child_database":
        return f"🗄️ [{body.get('title') or 'Untitled Database'}]"
    return None


_SPACED_BLOCKS = {"heading_1", "heading_2", "heading_3", "paragraph", "quote", "code", "divider"}
_LIST_BLOCKS = {"bulleted_list_item", "numbered_list_item", "to_do"}


def blocks_to_markdown(blocks: List[Dict[str, Any]]) -> str:
    lines: List[str] = []
    numbered = 0
    for i, block in enumerate(blocks):
        if block.get("type") != "numbered_list_item":
            numbered = 0
        line = block_to_markdown(block, numbered)
        if line is None:
            continue
        lines.append(line)
        if block.get("type") == "numbered_list_item":
            numbered += 1
        following = blocks[i + 1] if i + 1 < len(blocks) else None
        if block.get("type") in _SPACED_BLOCKS and following and following.get("type") not in _LIST_BLOCKS:
            lines.append("")
    return "\n".join(lines).strip()


def page_title(item: Dict[str, Any]) -> str:
    if item.get("object") == "database":
        return rich_text_to_plain(item.get("title") or []) or "Untitled Database"
    for prop in (item.get("properties") or {}).values():
        if prop.get("type") == "title" and prop.get("title"):
            return rich_text_to_plain(prop["title"])
    return "Untitled"


class NotionProvider(BaseConnectorProvider):
    metadata = NOTION

    def _headers(self) -> Dict[str, str]:
        return {"Notion-Version": NOTION_VERSION}

    # ── OAuth ───────────────────────────────────────────────────────────

    def get_auth_url(self, state: str, code_challenge: str) -> str:
        return self.build_auth_url(state, code_challenge, owner="user")

    async def exchange_code(self, code: str, code_verifier: str) -> OAuthResult:
        auth = None
        if self.metadata.oauth.use_basic_auth and config.notion_client_secret:
            auth = httpx.BasicAuth(self.client_id, config.notion_client_secret)
        response = await self.client.post(
            self.metadata.oauth.token_url,
            json={"grant_type": "authorization_code", "code": code, "redirect_uri": self.redirect_uri},
            headers=self._headers(),
            auth=auth,
        )
        if not response.is_success:
            raise ProviderError(
                response.status_code,
                f"Token exchange failed: {sanitize_error_message(response.text)}",
            )
        data = response.json()
        # Notion tokens never expire; scopes live in the integration settings
        return OAuthResult(access_token=data["access_token"], token_type=data.get("token_type", "bearer"))

    async def refresh_token(self, connector: Connector) -> TokenRefreshResult:
        raise AuthenticationError("Notion tokens do not expire and cannot be refreshed. Re-authenticate if needed.")

    async def validate_token(self, token: str) -> bool:
        response = await self.client.get(
            f"{NOTION_API_BASE}/users/me",
            headers={"Authorization": f"Bearer {token}", **self._headers()},
        )
        return response.is_success

    async def revoke_access(self, connector: Connector) -> None:
        logger.info("Notion connector %s removed locally; revoke the integration in Notion settings", connector.id)

    async def get_account_info(self, token: str) -> AccountInfo:
        data = await self.fetch_json_with_raw_token(token, f"{NOTION_API_BASE}/users/me", headers=self._headers())
        bot = data.get("bot") or {}
        owner = (bot.get("owner") or {}).get("user") or {}
        return AccountInfo(
            id=data["id"],
            email=(owner.get("person") or {}).get("email"),
            name=bot.get("workspace_name") or data.get("name"),
            picture=data.get("avatar_url"),
        )

    # ── Content ─────────────────────────────────────────────────────────

    def _search_body(self, options: ListOptions) -> Dict[str, Any]:
        body: Dict[str, Any] = {"page_size": options.page_size or DEFAULT_PAGE_SIZE}
        if options.cursor:
            body["start_cursor"] = options.cursor
        if options.filter.get("object") in ("page", "database"):
            body["filter"] = {"property": "object", "value": options.filter["object"]}
        if options.filter.get("query"):
            body["query"] = options.filter["query"]
        return body

    def _in_scope(self, item: Dict[str, Any], scope: Optional[List[str]]) -> bool:
        if not scope:
            return True
        wanted = {page_id_from_url(s) for s in scope}
        parent = item.get("parent") or {}
        candidates = [item.get("id"), parent.get("page_id"), parent.get("database_id")]
        return any(c and page_id_from_url(c) in wanted for c in candidates)

    async def list(self, connector: Connector, options: Optional[ListOptions] = None) -> ListResult:
        data = await self.fetch_json(
            connector,
            f"{NOTION_API_BASE}/search",
            "POST",
            json=self._search_body(options or ListOptions()),
            headers=self._headers(),
        )
        scope = connector.folder_scope
        return ListResult(
            items=[self.normalize_item(r) for r in data.get("results") or [] if self._in_scope(r, scope)],
            next_cursor=data.get("next_cursor"),
            has_more=bool(data.get("has_more")),
        )

    async def list_with_token(self, token: str, options: Optional[ListOptions] = None) -> ListResult:
        data = await self.fetch_json_with_raw_token(
            token,
            f"{NOTION_API_BASE}/search",
            "POST",
            json=self._search_body(options or ListOptions()),
            headers=self._headers(),
        )
        return ListResult(
            items=[self.normalize_item(r) for r in data.get("results") or []],
            next_cursor=data.get("next_cursor"),
            has_more=bool(data.get("has_more")),
        )

    async def _fetch_blocks(self, connector: Connector, block_id: str) -> List[Dict[str, Any]]:
        """All blocks under *block_id*, nested children flattened in document order."""
        blocks: List[Dict[str, Any]] = []
        start_cursor: Optional[str] = None
        while True:
            params = {"page_size": str(DEFAULT_PAGE_SIZE)}
            if start_cursor:
                params["start_cursor"] = start_cursor
            data = await self.fetch_json(
                connector,
                f"{NOTION_API_BASE}/blocks/{block_id}/children",
                params=params,
                headers=self._headers(),
            )
            for block in data.get("results") or []:
                blocks.append(block)
                if block.get("has_children") and block.get("type") not in ("child_page", "child_database"):
                    blocks.extend(await self._fetch_blocks(connector, block["id"]))
            start_cursor = data.get("next_cursor")
            if not start_cursor:
                return blocks

    async def read(self, connector: Connector, external_id: str) -> ContentResult:
        page = await self.fetch_json(connector, f"{NOTION_API_BASE}/pages/{external_id}", headers=self._headers())
        blocks = await self._fetch_blocks(connector, external_id)
        title = page_title(page)
        body = blocks_to_markdown(blocks)
        content = f"# {title}\n\n{body}" if body else f"# {title}"
        self.ensure_within_size(external_id, len(content.encode()))
        return ContentResult(
            content=content,
            mime_type="text/markdown",
            metadata={
                "id": page["id"],
                "title": title,
                "url": page.get("url"),
                "createdTime": page.get("created_time"),
                "lastEditedTime": page.get("last_edited_time"),
                "archived": page.get("archived", False),
            },
        )

    async def search(self, connector: Connector, query: str) -> SearchResult:
        data = await self.fetch_json(
            connector,
            f"{NOTION_API_BASE}/search",
            "POST",
            json={"query": query, "page_size": DEFAULT_PAGE_SIZE},
            headers=self._headers(),
        )
        items = [self.normalize_item(r) for r in data.get("results") or []]
        return SearchResult(items=items, total_count=len(items), next_cursor=data.get("next_cursor"))

    # ── Delta sync ──────────────────────────────────────────────────────

    async def get_changes(self, connector: Connector, cursor: Optional[str]) -> ChangesResult:
        decoded = decode_cursor(cursor)

        if isinstance(decoded, SteadyCursor):
            try:
                since = _parse_time(decoded.token)
            except ValueError:
                logger.warning("Unparseable Notion cursor for connector %s", connector.id)
                return ChangesResult.resync()
            return await self._edited_since(connector, since)

        if isinstance(decoded, InitialCursor):
            reference, start_cursor = decoded.reference, decoded.page_token
        else:
            reference, start_cursor = utcnow().isoformat(), None

        page = await self.list(connector, ListOptions(page_size=DEFAULT_PAGE_SIZE, cursor=start_cursor))
        added = [item for item in page.items if not item.metadata.get("archived")]
        return ChangesResult(
            added=added,
            new_cursor=next_initial_cursor(reference, page.next_cursor),
            has_more=page.has_more,
        )

    async def _edited_since(self, connector: Connector, since: datetime) -> ChangesResult:
        started = utcnow().isoformat()
        threshold = since - EDIT_TIME_GRANULARITY
        scope = connector.folder_scope
        modified: List[ConnectorItem] = []
        deleted: List[str] = []
        start_cursor: Optional[str] = None

        while True:
            body: Dict[str, Any] = {
                "page_size": DEFAULT_PAGE_SIZE,
                "sort": {"direction": "descending", "timestamp": "last_edited_time"},
            }
            if start_cursor:
                body["start_cursor"] = start_cursor
            data = await self.fetch_json(
                connector, f"{NOTION_API_BASE}/search", "POST", json=body, headers=self._headers()
            )

            reached_older = False
            for result in data.get("results") or []:
                edited = _parse_time(result.get("last_edited_time"))
                if edited is not None and edited < threshold:
                    reached_older = True
                    break
                if not self._in_scope(result, scope):
                    continue
                if result.get("archived") or result.get("in_trash"):
                    deleted.append(result["id"])
                else:
                    modified.append(self.normalize_item(result))

            start_cursor = data.get("next_cursor")
            if reached_older or not data.get("has_more") or not start_cursor:
                break

        return ChangesResult(modified=modified, deleted=deleted, new_cursor=started, has_more=False)

    # ── Normalization ───────────────────────────────────────────────────

    def normalize_item(self, raw_item: Dict[str, Any]) -> ConnectorItem:
        parent = raw_item.get("parent") or {}
        parent_id = parent.get("database_id") or parent.get("page_id")
        base = f"/notion/{parent_id}" if parent_id else "/notion/pages"
        name = page_title(raw_item)
        description = None
        if raw_item.get("object") == "database":
            description = rich_text_to_plain(raw_item.get("description") or []) or None

        return ConnectorItem(
            external_id=raw_item["id"],
            name=name,
            type="file",
            file_type="document",
            mime_type="text/markdown",
            path=f"{base}/{name}",
            parent_external_id=parent_id,
            last_modified=_parse_time(raw_item.get("last_edited_time")) or utcnow(),
            external_url=raw_item.get("url"),
            description=description,
            metadata={
                "object": raw_item.get("object"),
                "archived": bool(raw_item.get("archived") or raw_item.get("in_trash")),
                "parentType": parent.get("type"),
                "createdTime": raw_item.get("created_time"),
            },
        )
