"""Tests for GoogleCalendarProvider — sync tokens, cancellations and 410 Gone."""

import httpx
import pytest

from conftest import json_response
from connectors.models import ProviderId
from connectors.providers.google_calendar import GoogleCalendarProvider, format_event


def _event(event_id: str, status: str = "confirmed", **extra):
    event = {
        "id": event_id,
        "status": status,
        "summary": f"Meeting {event_id}",
        "start": {"dateTime": "2024-05-01T10:00:00Z"},
        "end": {"dateTime": "2024-05-01T11:00:00Z"},
        "updated": "2024-04-30T08:00:00.000Z",
        "htmlLink": f"https://calendar.google.com/event?eid={event_id}",
    }
    event.update(extra)
    return event


class TestInitialSync:
    @pytest.mark.asyncio
    async def test_pages_until_sync_token(self, make_provider, make_connector):
        def handler(request: httpx.Request) -> httpx.Response:
            params = request.url.params
            if "pageToken" not in params:
                assert "timeMin" in params
                return json_response(
                    {"items": [_event("e1"), _event("gone", status="cancelled")], "nextPageToken": "p2"}
                )
            return json_response({"items": [_event("e2")], "nextSyncToken": "sync-1"})

        provider, recorder = make_provider(GoogleCalendarProvider, handler)
        connector = await make_connector(provider=ProviderId.GOOGLE_CALENDAR)

        first = await provider.get_changes(connector, None)
        second = await provider.get_changes(connector, first.new_cursor)

        assert [e.external_id for e in first.added] == ["e1"]
        assert first.new_cursor == ":initial:p2"
        assert first.has_more
        assert [e.external_id for e in second.added] == ["e2"]
        assert second.new_cursor == "sync-1"
        assert not second.has_more
        assert recorder.paths()[0] == "/calendar/v3/calendars/primary/events"

    @pytest.mark.asyncio
    async def test_scoped_calendar_prefixes_ids(self, make_provider, make_connector):
        provider, recorder = make_provider(
            GoogleCalendarProvider,
            lambda r: json_response({"items": [_event("e1")], "nextSyncToken": "sync-1"}),
        )
        connector = await make_connector(provider=ProviderId.GOOGLE_CALENDAR, sync_folders=["team@group"])

        result = await provider.get_changes(connector, None)

        assert recorder.paths()[0] == "/calendar/v3/calendars/team@group/events"
        assert result.added[0].external_id == "team@group:e1"


class TestIncremental:
    @pytest.mark.asyncio
    async def test_cancelled_events_are_deleted(self, make_provider, make_connector):
        def handler(request):
            params = request.url.params
            assert params["syncToken"] == "sync-1"
            if "pageToken" not in params:
                return json_response({"items": [_event("e1")], "nextPageToken": "more"})
            return json_response({"items": [_event("e2", status="cancelled")], "nextSyncToken": "sync-2"})

        provider, recorder = make_provider(GoogleCalendarProvider, handler)
        connector = await make_connector(provider=ProviderId.GOOGLE_CALENDAR)

        result = await provider.get_changes(connector, "sync-1")

        assert [e.external_id for e in result.modified] == ["e1"]
        assert result.deleted == ["e2"]
        assert result.new_cursor == "sync-2"
        assert len(recorder.requests) == 2

    @pytest.mark.asyncio
    async def test_gone_sync_token_invalidates_cursor(self, make_provider, make_connector):
        provider, _ = make_provider(
            GoogleCalendarProvider,
            lambda r: json_response({"error": {"code": 410, "message": "Sync token is no longer valid"}}, 410),
        )
        connector = await make_connector(provider=ProviderId.GOOGLE_CALENDAR)

        result = await provider.get_changes(connector, "sync-old")

        assert result.requires_resync
        assert result.modified == []


class TestFormatting:
    def test_markdown_rendering(self):
        text = format_event(
            _event(
                "e1",
                location="Room 4",
                attendees=[{"email": "a@example.com"}, {"email": "b@example.com"}],
                description="Agenda",
            )
        )
        assert text.startswith("# Meeting e1")
        assert "**Where:** Room 4" in text
        assert "**Attendees:** a@example.com, b@example.com" in text
        assert text.endswith("Agenda")

    def test_tags(self, make_provider):
        provider, _ = make_provider(GoogleCalendarProvider, lambda r: httpx.Response(404))
        item = provider.normalize_item(
            _event("e1", status="tentative", recurringEventId="r1", hangoutLink="https://meet", attendees=[{}])
        )
        assert item.tags == ["event", "tentative", "recurring", "video-call", "has-attendees"]
        assert item.last_modified.year == 2024
