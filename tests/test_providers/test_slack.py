"""Tests for SlackProvider — ok:false mapping, channel activity deltas and token expiry."""

import httpx
import pytest

from conftest import json_response
from connectors.errors import AuthenticationError, ProviderError
from connectors.models import ConnectorStatus, ProviderId
from connectors.providers.slack import (
    SlackProvider,
    check_slack_response,
    format_slack_text,
    messages_to_markdown,
)


def _channel(channel_id: str, name: str, private: bool = False):
    return {
        "id": channel_id,
        "name": name,
        "is_private": private,
        "created": 1700000000,
        "updated": 1714557600000,
        "purpose": {"value": f"About {name}"},
        "num_members": 4,
    }


CHANNELS = [_channel("C1", "general"), _channel("C2", "random"), _channel("C3", "secret", private=True)]


def _workspace_handler(history):
    def handler(request: httpx.Request) -> httpx.Response:
        method = request.url.path.rsplit("/", 1)[-1]
        if method == "conversations.list":
            return json_response({"ok": True, "channels": CHANNELS, "response_metadata": {"next_cursor": ""}})
        if method == "conversations.history":
            return json_response(history(request.url.params))
        return json_response({"ok": False, "error": "unknown_method"})

    return handler


class TestCheckSlackResponse:
    def test_ok_passes_through(self):
        assert check_slack_response({"ok": True, "x": 1}) == {"ok": True, "x": 1}

    @pytest.mark.parametrize("error", ["invalid_auth", "token_revoked", "account_inactive"])
    def test_token_errors_are_authentication_errors(self, error):
        with pytest.raises(AuthenticationError):
            check_slack_response({"ok": False, "error": error})

    def test_other_errors_are_provider_errors(self):
        with pytest.raises(ProviderError, match="ratelimited"):
            check_slack_response({"ok": False, "error": "ratelimited"})


class TestDeltaSync:
    @pytest.mark.asyncio
    async def test_initial_sync_lists_channels_in_scope(self, make_provider, make_connector):
        provider, _ = make_provider(SlackProvider, _workspace_handler(lambda p: {"ok": True, "messages": []}))
        connector = await make_connector(provider=ProviderId.SLACK, refresh_token=None, sync_folders=["C1", "C3"])

        result = await provider.get_changes(connector, None)

        assert [c.external_id for c in result.added] == ["C1", "C3"]
        assert [c.name for c in result.added] == ["#general", "🔒secret"]
        assert result.added[0].type == "folder"
        assert result.added[0].last_modified.year == 2024
        assert not result.has_more
        assert ":initial:" not in result.new_cursor

    @pytest.mark.asyncio
    async def test_channels_with_new_messages_are_modified(self, make_provider, make_connector):
        def history(params):
            assert params["limit"] == "1"
            assert float(params["oldest"]) == pytest.approx(1714557600.0)
            if params["channel"] == "C1":
                return {"ok": True, "messages": [{"type": "message", "text": "hi", "ts": "1714557700.000100"}]}
            if params["channel"] == "C3":
                return {"ok": False, "error": "not_in_channel"}
            return {"ok": True, "messages": []}

        provider, _ = make_provider(SlackProvider, _workspace_handler(history))
        connector = await make_connector(provider=ProviderId.SLACK, refresh_token=None)

        result = await provider.get_changes(connector, "2024-05-01T10:00:00+00:00")

        assert [c.external_id for c in result.modified] == ["C1"]
        assert result.added == []
        assert result.deleted == []
        assert result.new_cursor > "2024-05-01T10:00:00+00:00"

    @pytest.mark.asyncio
    async def test_unparseable_cursor_invalidates(self, make_provider, make_connector):
        provider, recorder = make_provider(SlackProvider, _workspace_handler(lambda p: {"ok": True}))
        connector = await make_connector(provider=ProviderId.SLACK, refresh_token=None)

        assert (await provider.get_changes(connector, "yesterday")).requires_resync
        assert recorder.requests == []

    @pytest.mark.asyncio
    async def test_401_without_refresh_token_expires_connector(self, make_provider, make_connector, store, notifier):
        provider, _ = make_provider(SlackProvider, lambda r: json_response({"ok": False}, status_code=401))
        connector = await make_connector(provider=ProviderId.SLACK, refresh_token=None)

        with pytest.raises(AuthenticationError):
            await provider.get_changes(connector, None)

        assert (await store.get(connector.id)).status == ConnectorStatus.EXPIRED
        assert notifier.notifications[0].title == "Slack: Token expired"


class TestRead:
    @pytest.mark.asyncio
    async def test_channel_history_as_markdown(self, make_provider, make_connector):
        def handler(request):
            method = request.url.path.rsplit("/", 1)[-1]
            if method == "conversations.info":
                return json_response({"ok": True, "channel": {"id": "C1", "name": "general", "purpose": {"value": "Chat"}}})
            return json_response(
                {
                    "ok": True,
                    "messages": [
                        {"type": "message", "user": "U2", "text": "second <https://x.io|link>", "ts": "1714557700.0"},
                        {"type": "message", "user": "U1", "text": "first", "ts": "1714557600.0", "reply_count": 2},
                    ],
                }
            )

        provider, _ = make_provider(SlackProvider, handler)
        connector = await make_connector(provider=ProviderId.SLACK, refresh_token=None)

        result = await provider.read(connector, "C1")

        assert result.content.startswith("# #general\n\n> Chat")
        assert result.content.index("first") < result.content.index("second")
        assert "[link](https://x.io)" in result.content
        assert "_2 replies in thread_" in result.content
        assert result.metadata["messageCount"] == 2


class TestOAuth:
    @pytest.mark.asyncio
    async def test_exchange_prefers_user_token(self, make_provider):
        provider, recorder = make_provider(
            SlackProvider,
            lambda r: json_response(
                {
                    "ok": True,
                    "access_token": "xoxb-bot",
                    "authed_user": {"id": "U1", "access_token": "xoxp-user", "scope": "channels:read,users:read"},
                }
            ),
        )

        tokens = await provider.exchange_code("code-1", "unused")

        assert tokens.access_token == "xoxp-user"
        assert tokens.scope == "channels:read,users:read"
        assert recorder.requests[0].url.path == "/api/slack/oauth.v2.access"

    @pytest.mark.asyncio
    async def test_exchange_error_body(self, make_provider):
        provider, _ = make_provider(SlackProvider, lambda r: json_response({"ok": False, "error": "invalid_code"}))
        with pytest.raises(ProviderError, match="invalid_code"):
            await provider.exchange_code("bad", "unused")

    @pytest.mark.asyncio
    async def test_refresh_without_refresh_token(self, make_provider, make_connector):
        provider, _ = make_provider(SlackProvider, lambda r: httpx.Response(404))
        connector = await make_connector(provider=ProviderId.SLACK, refresh_token=None)
        with pytest.raises(AuthenticationError):
            await provider.refresh_token(connector)

    @pytest.mark.asyncio
    async def test_refresh_rotates_token(self, make_provider, make_connector):
        provider, _ = make_provider(
            SlackProvider,
            lambda r: json_response(
                {"ok": True, "access_token": "xoxe.xoxp-new", "refresh_token": "xoxe-new", "expires_in": 43200}
            ),
        )
        connector = await make_connector(provider=ProviderId.SLACK, refresh_token="xoxe-old")

        result = await provider.refresh_token(connector)

        assert result.access_token == "xoxe.xoxp-new"
        assert result.refresh_token == "xoxe-new"

    def test_auth_url_uses_user_scopes(self, make_provider):
        provider, _ = make_provider(SlackProvider, lambda r: httpx.Response(404))
        url = provider.get_auth_url("state-1", "challenge")
        assert "user_scope=channels%3Ahistory" in url
        assert "scope=&" in url


class TestFormatting:
    def test_format_slack_text(self):
        assert format_slack_text("~gone~ <#C1|general> <https://a.io>") == "~~gone~~ #general https://a.io"

    def test_skips_non_message_entries(self):
        markdown = messages_to_markdown(
            "dev", "", [{"type": "message", "text": "", "ts": "1.0"}, {"type": "channel_join", "text": "x", "ts": "2.0"}]
        )
        assert markdown == "# #dev\n\n---"
