"""Tests for DropboxProvider — list_folder cursors, deletions and 409 reset."""

import json

import httpx
import pytest

from conftest import RecordingHandler, bearer, json_response, request_json
from connectors.errors import ContentTooLargeError, ProviderError
from connectors.models import ConnectorStatus, ProviderId
from connectors.providers.dropbox import DropboxProvider, file_type_for, mime_type_for
from connectors.registry import build_default_registry
from connectors.service import ConnectorService
from connectors.sync import InMemoryItemSink


def _file(path: str, size: int = 1024):
    name = path.rsplit("/", 1)[-1]
    return {
        ".tag": "file",
        "name": name,
        "id": f"id:{name}",
        "path_lower": path.lower(),
        "path_display": path,
        "size": size,
        "server_modified": "2024-01-15T08:00:00Z",
        "content_hash": f"hash-{name}",
        "rev": "015f",
    }


def _deleted(path: str):
    return {".tag": "deleted", "name": path.rsplit("/", 1)[-1], "path_lower": path.lower()}


class TestDeltaSync:
    @pytest.mark.asyncio
    async def test_initial_listing_uses_compound_cursor(self, make_provider, make_connector):
        def handler(request: httpx.Request) -> httpx.Response:
            body = request_json(request)
            if request.url.path.endswith("/list_folder"):
                assert body["recursive"] is True
                assert body["path"] == ""
                return json_response({"entries": [_file("/Docs/a.txt")], "cursor": "c1", "has_more": True})
            assert body == {"cursor": "c1"}
            return json_response({"entries": [_file("/Docs/b.pdf")], "cursor": "c2", "has_more": False})

        provider, _ = make_provider(DropboxProvider, handler)
        connector = await make_connector(provider=ProviderId.DROPBOX)

        first = await provider.get_changes(connector, None)
        second = await provider.get_changes(connector, first.new_cursor)

        assert first.new_cursor == ":initial:c1"
        assert first.has_more
        assert [i.external_id for i in first.added] == ["/docs/a.txt"]
        assert [i.external_id for i in second.added] == ["/docs/b.pdf"]
        assert second.new_cursor == "c2"
        assert not second.has_more

    @pytest.mark.asyncio
    async def test_continue_reports_modified_and_deleted(self, make_provider, make_connector):
        def handler(request):
            assert request.url.path.endswith("/list_folder/continue")
            return json_response(
                {
                    "entries": [_file("/Docs/a.txt"), _deleted("/Docs/Old.txt")],
                    "cursor": "c3",
                    "has_more": False,
                }
            )

        provider, _ = make_provider(DropboxProvider, handler)
        connector = await make_connector(provider=ProviderId.DROPBOX)

        result = await provider.get_changes(connector, "c2")

        assert result.added == []
        assert [i.external_id for i in result.modified] == ["/docs/a.txt"]
        assert result.deleted == ["/docs/old.txt"]
        assert result.new_cursor == "c3"

    @pytest.mark.asyncio
    async def test_reset_error_invalidates_cursor(self, make_provider, make_connector):
        provider, _ = make_provider(
            DropboxProvider,
            lambda r: json_response({"error_summary": "reset/...", "error": {".tag": "reset"}}, status_code=409),
        )
        connector = await make_connector(provider=ProviderId.DROPBOX)

        assert (await provider.get_changes(connector, "c-old")).requires_resync

    @pytest.mark.asyncio
    async def test_single_scope_path_lists_that_folder(self, make_provider, make_connector):
        def handler(request):
            assert request_json(request)["path"] == "/Projects"
            return json_response(
                {"entries": [_file("/Projects/plan.md")], "cursor": "c1", "has_more": False}
            )

        provider, _ = make_provider(DropboxProvider, handler)
        connector = await make_connector(provider=ProviderId.DROPBOX, sync_folders=["/Projects"])

        result = await provider.get_changes(connector, None)

        assert [i.external_id for i in result.added] == ["/projects/plan.md"]

    @pytest.mark.asyncio
    async def test_multiple_scope_paths_filter_by_prefix(self, make_provider, make_connector):
        def handler(request):
            assert request_json(request)["path"] == ""
            return json_response(
                {
                    "entries": [
                        _file("/Projects/plan.md"),
                        _file("/Photos/cat.jpg"),
                        _file("/Projects-old/x.md"),
                        _file("/Archive/2023/report.pdf"),
                    ],
                    "cursor": "c1",
                    "has_more": False,
                }
            )

        provider, _ = make_provider(DropboxProvider, handler)
        connector = await make_connector(provider=ProviderId.DROPBOX, sync_folders=["/Projects", "/archive"])

        result = await provider.get_changes(connector, None)

        assert [i.external_id for i in result.added] == ["/projects/plan.md", "/archive/2023/report.pdf"]


class TestRead:
    @pytest.mark.asyncio
    async def test_download_uses_api_arg_header(self, make_provider, make_connector):
        def handler(request):
            assert json.loads(request.headers["Dropbox-API-Arg"]) == {"path": "/docs/a.txt"}
            meta = {"name": "a.txt", "size": 5, "path_display": "/Docs/a.txt", "id": "id:a"}
            return httpx.Response(200, content=b"hello", headers={"Dropbox-API-Result": json.dumps(meta)})

        provider, _ = make_provider(DropboxProvider, handler)
        connector = await make_connector(provider=ProviderId.DROPBOX)

        result = await provider.read(connector, "/docs/a.txt")

        assert result.content == "hello"
        assert result.mime_type == "text/plain"
        assert result.metadata["path"] == "/Docs/a.txt"

    @pytest.mark.asyncio
    async def test_reported_size_over_limit(self, make_provider, make_connector):
        def handler(request):
            meta = {"name": "huge.bin", "size": 50 * 1024 * 1024}
            return httpx.Response(200, content=b"x", headers={"Dropbox-API-Result": json.dumps(meta)})

        provider, _ = make_provider(DropboxProvider, handler)
        connector = await make_connector(provider=ProviderId.DROPBOX)

        with pytest.raises(ContentTooLargeError):
            await provider.read(connector, "/huge.bin")


class TestAccount:
    @pytest.mark.asyncio
    async def test_account_info(self, make_provider):
        def handler(request):
            assert request.method == "POST"
            return json_response(
                {
                    "account_id": "dbid:AAH",
                    "email": "lin@example.com",
                    "name": {"display_name": "Lin"},
                    "profile_photo_url": "https://photo",
                }
            )

        provider, _ = make_provider(DropboxProvider, handler)
        account = await provider.get_account_info("raw-token")

        assert account.id == "dbid:AAH"
        assert account.name == "Lin"
        assert account.picture == "https://photo"

    def test_auth_url_requests_offline_access(self, make_provider):
        provider, _ = make_provider(DropboxProvider, lambda r: httpx.Response(404))
        url = provider.get_auth_url("state-1", "challenge-1")
        assert "token_access_type=offline" in url
        assert "code_challenge=challenge-1" in url


class TestHelpers:
    def test_file_types(self):
        assert file_type_for("photo.JPG") == "image"
        assert file_type_for("notes.md") == "text"
        assert file_type_for("deck.pptx") == "document"
        assert file_type_for("archive.zip") is None

    def test_mime_types(self):
        assert mime_type_for("notes.md") == "text/plain"
        assert mime_type_for("report.pdf") == "application/pdf"
        assert mime_type_for("blob") == "application/octet-stream"


class TestRevoke:
    @pytest.mark.asyncio
    async def test_rejected_token_is_not_refreshed(self, make_provider, make_connector, store, notifier):
        provider, recorder = make_provider(
            DropboxProvider, lambda r: json_response({"error_summary": "invalid_access_token/"}, status_code=401)
        )
        connector = await make_connector(provider=ProviderId.DROPBOX, refresh_token=None)

        with pytest.raises(ProviderError):
            await provider.revoke_access(connector)

        assert recorder.paths() == ["/2/auth/token/revoke"]
        assert bearer(recorder.requests[0]) == "access-1"
        assert notifier.notifications == []
        assert (await store.get(connector.id)).status == ConnectorStatus.CONNECTED

    @pytest.mark.asyncio
    async def test_expired_connector_is_still_revoked(self, make_provider, make_connector):
        provider, recorder = make_provider(DropboxProvider, lambda r: json_response(None))
        connector = await make_connector(provider=ProviderId.DROPBOX, status=ConnectorStatus.EXPIRED)

        await provider.revoke_access(connector)

        assert recorder.paths() == ["/2/auth/token/revoke"]

    @pytest.mark.asyncio
    async def test_disconnect_with_rejected_token_sends_no_notification(
        self, make_connector, store, notifier, vault, metadata_store
    ):
        recorder = RecordingHandler(lambda r: json_response({"error_summary": "expired_access_token/"}, status_code=401))
        client = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
        service = ConnectorService(build_default_registry(store, notifier, vault, client), store, vault)
        connector = await make_connector(provider=ProviderId.DROPBOX)

        assert await service.disconnect(connector.id) is True

        assert recorder.paths() == ["/2/auth/token/revoke"]
        assert notifier.notifications == []
        assert await store.get(connector.id) is None
        assert metadata_store.keys() == []


class TestFolderDeletion:
    @pytest.mark.asyncio
    async def test_deleted_folder_drops_synced_descendants(self, make_provider, make_connector):
        folder = {".tag": "folder", "name": "Docs", "id": "id:docs", "path_lower": "/docs", "path_display": "/Docs"}

        def handler(request):
            return json_response({"entries": [_deleted("/Docs")], "cursor": "c3", "has_more": False})

        provider, _ = make_provider(DropboxProvider, handler)
        connector = await make_connector(provider=ProviderId.DROPBOX)
        sink = InMemoryItemSink()
        for raw in (folder, _file("/Docs/a.txt"), _file("/Docs/Sub/b.txt"), _file("/Docs-2/c.txt")):
            await sink.upsert(connector, provider.normalize_item(raw))

        result = await provider.get_changes(connector, "c2")
        for external_id in result.deleted:
            await sink.delete(connector, external_id)

        assert result.deleted == ["/docs"]
        assert sink.external_ids(connector.id) == {"/docs-2/c.txt"}
