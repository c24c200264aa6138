"""
GoogleCalendarProvider — events from Google Calendar v3.

Delta sync uses ``nextSyncToken``.  The initial sync starts 30 days back
and pages behind ``":initial:{pageToken}"`` until Google hands out a sync
token.  Incremental calls follow page tokens internally until the next
sync token.  Cancelled events are deletions, everything else is
``modified``.  HTTP 410 Gone invalidates the sync token.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from connectors.base import BaseConnectorProvider
from connectors.cursor import InitialCursor, SteadyCursor, decode_cursor, encode_cursor
from connectors.errors import ConnectorError, ProviderError
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
from connectors.providers.catalog import GOOGLE_CALENDAR

logger = logging.getLogger(__name__)

CALENDAR_API_BASE = "https://www.googleapis.com/calendar/v3"
DEFAULT_CALENDAR_ID = "primary"
SYNC_PAGE_SIZE = 250
INITIAL_LOOKBACK = timedelta(days=30)


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _when(moment: Optional[Dict[str, str]]) -> str:
    if not moment:
        return ""
    return moment.get("dateTime") or moment.get("date") or ""


def format_event(event: Dict[str, Any]) -> str:
    """Markdown rendering of one event."""
    lines = [f"# {event.get('summary') or 'Untitled Event'}", ""]
    lines.append(f"**When:** {_when(event.get('start'))} – {_when(event.get('end'))}")
    if event.get("location"):
        lines.append(f"**Where:** {event['location']}")
    if event.get("organizer", {}).get("email"):
        lines.append(f"**Organizer:** {event['organizer']['email']}")
    attendees = [a.get("email", "") for a in event.get("attendees") or []]
    if attendees:
        lines.append(f"**Attendees:** {', '.join(attendees)}")
    if event.get("hangoutLink"):
        lines.append(f"**Video call:** {event['hangoutLink']}")
    if event.get("description"):
        lines.extend(["", event["description"]])
    return "\n".join(lines)


class GoogleCalendarProvider(BaseConnectorProvider):
    metadata = GOOGLE_CALENDAR

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

    def _calendar_id(self, connector: Connector) -> str:
        scope = connector.folder_scope
        return scope[0] if scope else DEFAULT_CALENDAR_ID

    def _events_url(self, calendar_id: str) -> str:
        return f"{CALENDAR_API_BASE}/calendars/{calendar_id}/events"

    def _calendar_folder(self, entry: Dict[str, Any]) -> ConnectorItem:
        return ConnectorItem(
            external_id=entry["id"],
            name=entry.get("summaryOverride") or entry.get("summary") or entry["id"],
            type="folder",
            path=f"/calendar/{entry['id']}",
            description=entry.get("description"),
            metadata={"primary": bool(entry.get("primary")), "accessRole": entry.get("accessRole")},
        )

    async def _list(self, fetch, options: Optional[ListOptions]) -> ListResult:
        options = options or ListOptions()
        params: Dict[str, str] = {"maxResults": str(options.page_size or SYNC_PAGE_SIZE)}
        if options.cursor:
            params["pageToken"] = options.cursor

        if not options.path:
            data = await fetch(f"{CALENDAR_API_BASE}/users/me/calendarList", params=params)
            items = [self._calendar_folder(c) for c in data.get("items") or []]
        else:
            params["singleEvents"] = "true"
            data = await fetch(self._events_url(options.path), params=params)
            items = [
                self._normalize_event(e, options.path)
                for e in data.get("items") or []
                if e.get("status") != "cancelled"
            ]
        return ListResult(
            items=items,
            next_cursor=data.get("nextPageToken"),
            has_more=bool(data.get("nextPageToken")),
        )

    async def list(self, connector: Connector, options: Optional[ListOptions] = None) -> ListResult:
        """Calendars when ``options.path`` is empty, otherwise that calendar's events."""

        async def fetch(url: str, **kwargs: Any) -> Any:
            return await self.fetch_json(connector, url, **kwargs)

        return await self._list(fetch, options)

    async def list_with_token(self, token: str, options: Optional[ListOptions] = None) -> ListResult:
        async def fetch(url: str, **kwargs: Any) -> Any:
            return await self.fetch_json_with_raw_token(token, url, **kwargs)

        return await self._list(fetch, options)

    def _split_id(self, external_id: str) -> Tuple[str, str]:
        if ":" in external_id:
            calendar_id, _, event_id = external_id.rpartition(":")
            return calendar_id, event_id
        return DEFAULT_CALENDAR_ID, external_id

    async def read(self, connector: Connector, external_id: str) -> ContentResult:
        calendar_id, event_id = self._split_id(external_id)
        event = await self.fetch_json(connector, f"{self._events_url(calendar_id)}/{event_id}")
        content = format_event(event)
        self.ensure_within_size(external_id, len(content.encode()))
        return ContentResult(
            content=content,
            mime_type="text/markdown",
            metadata={
                "calendarId": calendar_id,
                "eventId": event["id"],
                "status": event.get("status"),
                "start": event.get("start"),
                "end": event.get("end"),
                "htmlLink": event.get("htmlLink"),
            },
        )

    async def search(self, connector: Connector, query: str) -> SearchResult:
        calendar_id = self._calendar_id(connector)
        data = await self.fetch_json(
            connector,
            self._events_url(calendar_id),
            params={"q": query, "singleEvents": "true", "maxResults": "50"},
        )
        items = [self._normalize_event(e, calendar_id) for e in data.get("items") or []]
        return SearchResult(items=items, total_count=len(items), next_cursor=data.get("nextPageToken"))

    # ── Delta sync ──────────────────────────────────────────────────────

    async def get_changes(self, connector: Connector, cursor: Optional[str]) -> ChangesResult:
        calendar_id = self._calendar_id(connector)
        decoded = decode_cursor(cursor)

        if isinstance(decoded, SteadyCursor):
            return await self._incremental(connector, calendar_id, decoded.token)

        params = {"maxResults": str(SYNC_PAGE_SIZE), "singleEvents": "true"}
        if isinstance(decoded, InitialCursor):
            params["pageToken"] = decoded.page_token
        else:
            params["timeMin"] = (utcnow() - INITIAL_LOOKBACK).isoformat()

        data = await self.fetch_json(connector, self._events_url(calendar_id), params=params)
        added = [
            self._normalize_event(e, calendar_id)
            for e in data.get("items") or []
            if e.get("status") != "cancelled"
        ]
        if data.get("nextPageToken"):
            new_cursor = encode_cursor(InitialCursor(reference="", page_token=data["nextPageToken"]))
        elif data.get("nextSyncToken"):
            new_cursor = data["nextSyncToken"]
        else:
            raise ConnectorError("Google Calendar returned neither a page token nor a sync token")
        return ChangesResult(added=added, new_cursor=new_cursor, has_more=bool(data.get("nextPageToken")))

    async def _incremental(self, connector: Connector, calendar_id: str, sync_token: str) -> ChangesResult:
        modified: List[ConnectorItem] = []
        deleted: List[str] = []
        params: Dict[str, str] = {
            "syncToken": sync_token,
            "maxResults": str(SYNC_PAGE_SIZE),
            "singleEvents": "true",
        }

        while True:
            try:
                data = await self.fetch_json(connector, self._events_url(calendar_id), params=params)
            except ProviderError as exc:
                if exc.status == 410:
                    logger.info("Calendar sync token expired for connector %s", connector.id)
                    return ChangesResult.resync()
                raise

            for event in data.get("items") or []:
                if event.get("status") == "cancelled":
                    deleted.append(self._external_id(event["id"], calendar_id))
                else:
                    modified.append(self._normalize_event(event, calendar_id))

            if data.get("nextSyncToken"):
                return ChangesResult(
                    modified=modified,
                    deleted=deleted,
                    new_cursor=data["nextSyncToken"],
                    has_more=False,
                )
            if not data.get("nextPageToken"):
                # no sync token and no further page: keep the old one
                return ChangesResult(modified=modified, deleted=deleted, new_cursor=sync_token)
            params = {**params, "pageToken": data["nextPageToken"]}

    # ── Normalization ───────────────────────────────────────────────────

    def _external_id(self, event_id: str, calendar_id: str) -> str:
        return event_id if calendar_id == DEFAULT_CALENDAR_ID else f"{calendar_id}:{event_id}"

    def normalize_item(self, raw_item: Dict[str, Any]) -> ConnectorItem:
        return self._normalize_event(raw_item, DEFAULT_CALENDAR_ID)

    def _normalize_event(self, event: Dict[str, Any], calendar_id: str) -> ConnectorItem:
        tags = ["event"]
        if event.get("status") == "tentative":
            tags.append("tentative")
        if event.get("recurringEventId") or event.get("recurrence"):
            tags.append("recurring")
        if event.get("hangoutLink") or event.get("conferenceData"):
            tags.append("video-call")
        if event.get("attendees"):
            tags.append("has-attendees")

        return ConnectorItem(
            external_id=self._external_id(event["id"], calendar_id),
            name=event.get("summary") or "Untitled Event",
            type="file",
            file_type="document",
            mime_type="text/calendar",
            path=f"/calendar/{calendar_id}",
            last_modified=_parse_time(event.get("updated")) or _parse_time(event.get("created")) or utcnow(),
            external_url=event.get("htmlLink"),
            content=format_event(event),
            description=event.get("location"),
            tags=tags,
            metadata={
                "calendarId": calendar_id,
                "eventId": event["id"],
                "status": event.get("status"),
                "location": event.get("location"),
                "start": event.get("start"),
                "end": event.get("end"),
                "created": event.get("created"),
                "updated": event.get("updated"),
            },
        )
