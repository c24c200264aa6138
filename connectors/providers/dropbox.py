"""
DropboxProvider — files through the Dropbox v2 HTTP API.

Delta sync uses ``list_folder`` cursors.  The initial recursive listing
pages behind ``":initial:{cursor}"``; once Dropbox reports
``has_more = false`` the same cursor is the steady-state cursor for
``list_folder/continue``.  Continue results cannot tell adds from edits,
so they are reported as ``modified``; ``deleted`` entries become
deletions.  A 409 ``reset`` error invalidates the cursor.

Items are keyed by ``path_lower``, because deleted entries carry no id.
Deleting a folder yields a single ``deleted`` entry for the folder itself;
Dropbox sends no entries for its descendants.  ``InMemoryItemSink`` drops
every key under ``{folder}/`` when a stored folder is deleted; other
sinks that index files by path must do the same.
"""

from __future__ import annotations

import json
import logging
import mimetypes
from datetime import datetime
from typing import Any, Dict, List, Optional

from connectors.base import BaseConnectorProvider
from connectors.cursor import InitialCursor, SteadyCursor, decode_cursor, encode_cursor
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
from connectors.providers.catalog import DROPBOX
from connectors.sanitizer import sanitize_error_message

logger = logging.getLogger(__name__)

DROPBOX_API_BASE = "https://api.dropboxapi.com/2"
DROPBOX_CONTENT_BASE = "https://content.dropboxapi.com/2"
SYNC_PAGE_SIZE = 500

_TEXT_EXTENSIONS = {
    "txt", "md", "js", "ts", "jsx", "tsx", "css", "html", "xml", "json", "yaml", "yml",
    "csv", "log", "py", "rb", "go", "rs", "java", "c", "cpp", "h", "hpp", "sh",
}
_IMAGE_EXTENSIONS = {"jpg", "jpeg", "png", "gif", "bmp", "webp", "svg", "ico"}
_DOCUMENT_EXTENSIONS = {"pdf", "doc", "docx", "xls", "xlsx", "ppt", "pptx", "odt", "rtf"}


def _extension(name: str) -> str:
    return name.rsplit(".", 1)[-1].lower() if "." in name else ""


def file_type_for(name: str) -> Optional[str]:
    ext = _extension(name)
    if ext in _IMAGE_EXTENSIONS:
        return "image"
    if ext in _TEXT_EXTENSIONS:
        return "text"
    if ext in _DOCUMENT_EXTENSIONS:
        return "document"
    return None


def mime_type_for(name: str) -> str:
    if _extension(name) in ("md", "ts", "tsx", "jsx", "yaml", "yml", "log", "rs", "go"):
        return "text/plain"
    return mimetypes.guess_type(name)[0] or "application/octet-stream"


class DropboxProvider(BaseConnectorProvider):
    metadata = DROPBOX

    # ── OAuth ───────────────────────────────────────────────────────────

    def get_auth_url(self, state: str, code_challenge: str) -> str:
        return self.build_auth_url(state, code_challenge, token_access_type="offline")

    async def exchange_code(self, code: str, code_verifier: str) -> OAuthResult:
        data = await self.post_token_request(
            {
                "client_id": self.client_id,
                "code": code,
                "code_verifier": code_verifier,
                "grant_type": "authorization_code",
                "redirect_uri": self.redirect_uri,
            }
        )
        return OAuthResult(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_in=data.get("expires_in"),
            scope=data.get("scope", ""),
            token_type=data.get("token_type", "bearer"),
        )

    async def refresh_token(self, connector: Connector) -> TokenRefreshResult:
        refresh = await self.get_decrypted_refresh_token(connector)
        if not refresh:
            raise AuthenticationError("No refresh token available")
        data = await self.post_token_request(
            {"client_id": self.client_id, "refresh_token": refresh, "grant_type": "refresh_token"},
            action="Token refresh",
        )
        return TokenRefreshResult(access_token=data["access_token"], expires_in=data.get("expires_in"))

    async def validate_token(self, token: str) -> bool:
        response = await self.client.post(
            f"{DROPBOX_API_BASE}/users/get_current_account",
            headers={"Authorization": f"Bearer {token}"},
        )
        return response.is_success

    async def revoke_access(self, connector: Connector) -> None:
        # plain POST: a rejected token is not refreshed
        token = await self.get_decrypted_token(connector)
        response = await self.client.post(
            f"{DROPBOX_API_BASE}/auth/token/revoke",
            headers={"Authorization": f"Bearer {token}"},
        )
        if not response.is_success:
            raise ProviderError(
                response.status_code,
                f"Token revocation failed: {sanitize_error_message(response.text)}",
            )

    async def get_account_info(self, token: str) -> AccountInfo:
        data = await self.fetch_json_with_raw_token(token, f"{DROPBOX_API_BASE}/users/get_current_account", "POST")
        return AccountInfo(
            id=data["account_id"],
            email=data.get("email"),
            name=(data.get("name") or {}).get("display_name"),
            picture=data.get("profile_photo_url"),
        )

    # ── Content ─────────────────────────────────────────────────────────

    async def _list(self, fetch, options: Optional[ListOptions]) -> ListResult:
        options = options or ListOptions()
        if options.cursor:
            data = await fetch(f"{DROPBOX_API_BASE}/files/list_folder/continue", "POST", json={"cursor": options.cursor})
        else:
            data = await fetch(
                f"{DROPBOX_API_BASE}/files/list_folder",
                "POST",
                json={
                    "path": options.path or "",
                    "recursive": False,
                    "include_deleted": False,
                    "limit": options.page_size or 100,
                },
            )
        return ListResult(
            items=[self.normalize_item(e) for e in data.get("entries") or [] if e.get(".tag") != "deleted"],
            next_cursor=data.get("cursor") if data.get("has_more") else None,
            has_more=bool(data.get("has_more")),
        )

    async def list(self, connector: Connector, options: Optional[ListOptions] = None) -> ListResult:
        async def fetch(url: str, method: str, **kwargs: Any) -> Any:
            return await self.fetch_json(connector, url, method, **kwargs)

        return await self._list(fetch, options)

    async def list_with_token(self, token: str, options: Optional[ListOptions] = None) -> ListResult:
        async def fetch(url: str, method: str, **kwargs: Any) -> Any:
            return await self.fetch_json_with_raw_token(token, url, method, **kwargs)

        return await self._list(fetch, options)

    async def read(self, connector: Connector, external_id: str) -> ContentResult:
        path = external_id if external_id.startswith(("id:", "/")) else f"/{external_id}"
        response = await self.fetch_with_auth(
            connector,
            f"{DROPBOX_CONTENT_BASE}/files/download",
            "POST",
            headers={"Dropbox-API-Arg": json.dumps({"path": path})},
        )
        if not response.is_success:
            raise ProviderError(response.status_code, f"Failed to download file {external_id}")

        meta = json.loads(response.headers.get("Dropbox-API-Result") or "{}")
        self.ensure_within_size(external_id, meta.get("size", len(response.content)))
        mime_type = mime_type_for(meta.get("name") or external_id)
        is_text = mime_type.startswith("text/") or mime_type == "application/json"
        return ContentResult(
            content=response.text if is_text else response.content,
            mime_type=mime_type,
            metadata={
                "id": meta.get("id"),
                "name": meta.get("name"),
                "path": meta.get("path_display"),
                "size": meta.get("size"),
                "contentHash": meta.get("content_hash"),
                "serverModified": meta.get("server_modified"),
            },
        )

    async def search(self, connector: Connector, query: str) -> SearchResult:
        data = await self.fetch_json(
            connector,
            f"{DROPBOX_API_BASE}/files/search_v2",
            "POST",
            json={"query": query, "options": {"max_results": 50}},
        )
        items = [
            self.normalize_item(match["metadata"]["metadata"])
            for match in data.get("matches") or []
            if match.get("metadata", {}).get("metadata")
        ]
        return SearchResult(items=items, total_count=len(items), next_cursor=data.get("cursor"))

    # ── Delta sync ──────────────────────────────────────────────────────

    def _in_scope(self, entry: Dict[str, Any], scope: List[str]) -> bool:
        path = entry.get("path_lower") or ""
        return any(path == s.lower() or path.startswith(s.lower().rstrip("/") + "/") for s in scope)

    async def get_changes(self, connector: Connector, cursor: Optional[str]) -> ChangesResult:
        scope = connector.folder_scope or []
        decoded = decode_cursor(cursor)
        initial = not isinstance(decoded, SteadyCursor)

        try:
            if isinstance(decoded, (SteadyCursor, InitialCursor)):
                token = decoded.token if isinstance(decoded, SteadyCursor) else decoded.page_token
                data = await self.fetch_json(
                    connector, f"{DROPBOX_API_BASE}/files/list_folder/continue", "POST", json={"cursor": token}
                )
            else:
                data = await self.fetch_json(
                    connector,
                    f"{DROPBOX_API_BASE}/files/list_folder",
                    "POST",
                    json={
                        "path": scope[0] if len(scope) == 1 else "",
                        "recursive": True,
                        "include_deleted": False,
                        "include_mounted_folders": True,
                        "include_non_downloadable_files": False,
                        "limit": SYNC_PAGE_SIZE,
                    },
                )
        except ProviderError as exc:
            if exc.status == 409 and "reset" in str(exc):
                logger.info("Dropbox cursor reset for connector %s", connector.id)
                return ChangesResult.resync()
            raise

        added: List[ConnectorItem] = []
        modified: List[ConnectorItem] = []
        deleted: List[str] = []
        for entry in data.get("entries") or []:
            if scope and not self._in_scope(entry, scope):
                continue
            if entry.get(".tag") == "deleted":
                deleted.append(entry.get("path_lower") or entry["name"])
            elif initial:
                added.append(self.normalize_item(entry))
            else:
                modified.append(self.normalize_item(entry))

        has_more = bool(data.get("has_more"))
        if initial and has_more:
            new_cursor = encode_cursor(InitialCursor(reference="", page_token=data["cursor"]))
        else:
            new_cursor = data["cursor"]
        return ChangesResult(added=added, modified=modified, deleted=deleted, new_cursor=new_cursor, has_more=has_more)

    # ── Normalization ───────────────────────────────────────────────────

    def normalize_item(self, raw_item: Dict[str, Any]) -> ConnectorItem:
        is_folder = raw_item.get(".tag") == "folder"
        name = raw_item["name"]
        display = raw_item.get("path_display") or f"/{name}"
        parent = display.rsplit("/", 1)[0].lower() or None
        modified = raw_item.get("server_modified")
        return ConnectorItem(
            external_id=raw_item.get("path_lower") or raw_item.get("id") or name,
            name=name,
            type="folder" if is_folder else "file",
            file_type=None if is_folder else file_type_for(name),
            mime_type=None if is_folder else mime_type_for(name),
            size=raw_item.get("size"),
            path=display,
            parent_external_id=parent,
            last_modified=datetime.fromisoformat(modified.replace("Z", "+00:00")) if modified else utcnow(),
            external_url=f"https://www.dropbox.com/home{display}",
            content_hash=raw_item.get("content_hash"),
            metadata={
                "id": raw_item.get("id"),
                "rev": raw_item.get("rev"),
                "clientModified": raw_item.get("client_modified"),
                "isDownloadable": raw_item.get("is_downloadable"),
            },
        )
