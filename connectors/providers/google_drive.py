"""
GoogleDriveProvider — files and Google Docs from Drive v3.

Delta sync uses the Changes API.  The initial sync captures a
``startPageToken`` first, then lists files behind a compound
``"{startPageToken}:initial:{pageToken}"`` cursor, and finally hands the
start token to the Changes API.  Changes cannot tell adds from edits, so
every non-removed change is reported as ``modified``.  A 410 or 404 on
``changes.list`` invalidates the cursor.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

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
from connectors.providers.catalog import GOOGLE_DRIVE

logger = logging.getLogger(__name__)

DRIVE_API_BASE = "https://www.googleapis.com/drive/v3"

FILE_FIELDS = "id, name, mimeType, size, modifiedTime, md5Checksum, webViewLink, parents"
LIST_FIELDS = f"nextPageToken, files({FILE_FIELDS})"
CHANGES_FIELDS = f"newStartPageToken, nextPageToken, changes(removed, fileId, file({FILE_FIELDS}))"

FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
DEFAULT_PAGE_SIZE = 100

# Google-native formats that must be exported: mime → export mime
GOOGLE_DOCS_EXPORTS: Dict[str, str] = {
    "application/vnd.google-apps.document": "text/plain",
    "application/vnd.google-apps.spreadsheet": "text/csv",
    "application/vnd.google-apps.presentation": "text/plain",
    "application/vnd.google-apps.drawing": "image/png",
}

_ALL_DRIVES = {"supportsAllDrives": "true", "includeItemsFromAllDrives": "true"}


def _is_text(mime_type: str) -> bool:
    return (
        mime_type.startswith("text/")
        or mime_type in ("application/json", "application/xml")
        or "+xml" in mime_type
        or "+json" in mime_type
    )


def _quote(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


class GoogleDriveProvider(BaseConnectorProvider):
    metadata = GOOGLE_DRIVE

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

    def _list_params(self, options: ListOptions, scope: Optional[List[str]] = None) -> Dict[str, str]:
        params = {"fields": LIST_FIELDS, "pageSize": str(options.page_size or DEFAULT_PAGE_SIZE), **_ALL_DRIVES}
        if options.cursor:
            params["pageToken"] = options.cursor

        query = ["trashed = false"]
        if options.path:
            query.append(f"'{_quote(options.path)}' in parents")
        elif scope:
            query.append("(" + " or ".join(f"'{_quote(f)}' in parents" for f in scope) + ")")
        if options.filter.get("mimeType"):
            query.append(f"mimeType = '{_quote(options.filter['mimeType'])}'")
        params["q"] = " and ".join(query)
        return params

    def _to_list_result(self, data: Dict[str, Any]) -> ListResult:
        return ListResult(
            items=[self.normalize_item(f) for f in data.get("files") or []],
            next_cursor=data.get("nextPageToken"),
            has_more=bool(data.get("nextPageToken")),
        )

    async def list(self, connector: Connector, options: Optional[ListOptions] = None) -> ListResult:
        params = self._list_params(options or ListOptions(), connector.folder_scope)
        return self._to_list_result(await self.fetch_json(connector, f"{DRIVE_API_BASE}/files", params=params))

    async def list_with_token(self, token: str, options: Optional[ListOptions] = None) -> ListResult:
        params = self._list_params(options or ListOptions())
        return self._to_list_result(
            await self.fetch_json_with_raw_token(token, f"{DRIVE_API_BASE}/files", params=params)
        )

    async def read(self, connector: Connector, external_id: str) -> ContentResult:
        meta = await self.fetch_json(
            connector,
            f"{DRIVE_API_BASE}/files/{external_id}",
            params={"fields": FILE_FIELDS, "supportsAllDrives": "true"},
        )
        size = int(meta["size"]) if meta.get("size") else None
        self.ensure_within_size(external_id, size)

        export_mime = GOOGLE_DOCS_EXPORTS.get(meta["mimeType"])
        if export_mime:
            response = await self.fetch_with_auth(
                connector,
                f"{DRIVE_API_BASE}/files/{external_id}/export",
                params={"mimeType": export_mime, "supportsAllDrives": "true"},
            )
            mime_type = export_mime
        else:
            response = await self.fetch_with_auth(
                connector,
                f"{DRIVE_API_BASE}/files/{external_id}",
                params={"alt": "media", "supportsAllDrives": "true"},
            )
            mime_type = meta["mimeType"]

        if not response.is_success:
            raise ProviderError(response.status_code, f"Failed to download file {external_id}")
        self.ensure_within_size(external_id, len(response.content))

        return ContentResult(
            content=response.text if _is_text(mime_type) else response.content,
            mime_type=mime_type,
            metadata={
                "id": meta["id"],
                "name": meta["name"],
                "size": size,
                "modifiedTime": meta.get("modifiedTime"),
                "md5Checksum": meta.get("md5Checksum"),
                "webViewLink": meta.get("webViewLink"),
            },
        )

    async def search(self, connector: Connector, query: str) -> SearchResult:
        quoted = _quote(query)
        data = await self.fetch_json(
            connector,
            f"{DRIVE_API_BASE}/files",
            params={
                "fields": LIST_FIELDS,
                "pageSize": "50",
                "q": f"(name contains '{quoted}' or fullText contains '{quoted}') and trashed = false",
                **_ALL_DRIVES,
            },
        )
        files = data.get("files") or []
        return SearchResult(
            items=[self.normalize_item(f) for f in files],
            total_count=len(files),
            next_cursor=data.get("nextPageToken"),
        )

    # ── Delta sync ──────────────────────────────────────────────────────

    async def get_changes(self, connector: Connector, cursor: Optional[str]) -> ChangesResult:
        decoded = decode_cursor(cursor)

        if isinstance(decoded, SteadyCursor):
            return await self._changes_since(connector, decoded.token)

        if isinstance(decoded, InitialCursor):
            start_token, page_token = decoded.reference, decoded.page_token
        else:
            start = await self.fetch_json(
                connector,
                f"{DRIVE_API_BASE}/changes/startPageToken",
                params={"supportsAllDrives": "true"},
            )
            start_token, page_token = start["startPageToken"], None

        page = await self.list(connector, ListOptions(page_size=DEFAULT_PAGE_SIZE, cursor=page_token))
        return ChangesResult(
            added=page.items,
            new_cursor=next_initial_cursor(start_token, page.next_cursor),
            has_more=page.has_more,
        )

    async def _changes_since(self, connector: Connector, page_token: str) -> ChangesResult:
        try:
            data = await self.fetch_json(
                connector,
                f"{DRIVE_API_BASE}/changes",
                params={
                    "pageToken": page_token,
                    "fields": CHANGES_FIELDS,
                    "pageSize": str(DEFAULT_PAGE_SIZE),
                    "includeRemoved": "true",
                    **_ALL_DRIVES,
                },
            )
        except ProviderError as exc:
            if exc.status in (404, 410):
                logger.info("Drive page token rejected for connector %s", connector.id)
                return ChangesResult.resync()
            raise

        scope = set(connector.folder_scope or [])
        modified: List[ConnectorItem] = []
        deleted: List[str] = []
        for change in data.get("changes") or []:
            file = change.get("file")
            if change.get("removed") or not file:
                deleted.append(change["fileId"])
            elif scope and not scope.intersection(file.get("parents") or []):
                # moved out of the selected folders
                deleted.append(change["fileId"])
            else:
                modified.append(self.normalize_item(file))

        return ChangesResult(
            added=[],
            modified=modified,
            deleted=deleted,
            new_cursor=data.get("newStartPageToken") or data.get("nextPageToken") or page_token,
            has_more=bool(data.get("nextPageToken")),
        )

    # ── Normalization ───────────────────────────────────────────────────

    def normalize_item(self, raw_item: Dict[str, Any]) -> ConnectorItem:
        mime_type = raw_item.get("mimeType", "")
        is_folder = mime_type == FOLDER_MIME_TYPE

        file_type = None
        if not is_folder:
            if mime_type.startswith("image/"):
                file_type = "image"
            elif mime_type == "text/plain":
                file_type = "text"
            elif (
                _is_text(mime_type)
                or mime_type in GOOGLE_DOCS_EXPORTS
                or any(k in mime_type for k in ("document", "sheet", "presentation"))
            ):
                file_type = "document"

        parents = raw_item.get("parents") or []
        name = raw_item["name"]
        modified = raw_item.get("modifiedTime")
        return ConnectorItem(
            external_id=raw_item["id"],
            name=name,
            type="folder" if is_folder else "file",
            file_type=file_type,
            mime_type=mime_type,
            size=int(raw_item["size"]) if raw_item.get("size") else None,
            path=f"/{parents[0]}/{name}" if parents else f"/{name}",
            parent_external_id=parents[0] if parents else None,
            last_modified=datetime.fromisoformat(modified.replace("Z", "+00:00")) if modified else utcnow(),
            external_url=raw_item.get("webViewLink"),
            content_hash=raw_item.get("md5Checksum"),
            metadata={
                "driveId": raw_item["id"],
                "webViewLink": raw_item.get("webViewLink"),
                "parents": parents,
            },
        )
