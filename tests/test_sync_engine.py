"""
Tests for SyncEngine — pagination, cursor persistence, invalidation
restarts, the in-progress guard and retry/backoff.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from conftest import fake_item
from connectors.errors import AuthenticationError, ProviderError
from connectors.models import ChangesResult, ConnectorStatus, ProviderId
from connectors.sync import SYNC_IN_PROGRESS, InMemoryItemSink, SyncEngine


def _make_engine(registry, store, **kwargs):
    sink = InMemoryItemSink()
    kwargs.setdefault("max_retries", 3)
    kwargs.setdefault("retry_delay", 1.0)
    kwargs.setdefault("sleep", AsyncMock())
    return SyncEngine(registry, store, sink, **kwargs), sink


def _page(ids, cursor, has_more=False, deleted=()):
    return ChangesResult(
        added=[fake_item(i) for i in ids],
        deleted=list(deleted),
        new_cursor=cursor,
        has_more=has_more,
    )


class TestSyncCycle:
    @pytest.mark.asyncio
    async def test_full_sync_pages_until_done(self, registry, store, make_connector):
        connector = await make_connector(provider=ProviderId.FIGMA)
        provider = await registry.get("figma")
        provider.script = [
            _page(["a", "b"], "ref:initial:p2", has_more=True),
            _page(["c"], "ref"),
        ]
        engine, sink = _make_engine(registry, store)

        result = await engine.sync(connector.id)

        assert result.success
        assert result.items_synced == 3
        assert provider.cursors == [None, "ref:initial:p2"]
        assert sink.external_ids(connector.id) == {"a", "b", "c"}

        state = await engine.get_sync_state(connector.id)
        assert state.cursor == "ref"
        assert state.sync_type == "full"
        assert state.status == "idle"
        assert (await store.get(connector.id)).last_sync_at is not None

    @pytest.mark.asyncio
    async def test_delta_sync_resumes_from_cursor(self, registry, store, make_connector):
        connector = await make_connector(provider=ProviderId.FIGMA)
        provider = await registry.get("figma")
        provider.script = [_page(["a", "b"], "c1"), _page(["c"], "c2", deleted=["a"])]
        engine, sink = _make_engine(registry, store)

        await engine.sync(connector.id)
        result = await engine.sync(connector.id)

        assert provider.cursors == [None, "c1"]
        assert result.items_synced == 1
        assert result.items_deleted == 1
        assert sink.external_ids(connector.id) == {"b", "c"}
        assert (await engine.get_sync_state(connector.id)).sync_type == "delta"

    @pytest.mark.asyncio
    async def test_failure_keeps_previous_cursor(self, registry, store, make_connector):
        connector = await make_connector(provider=ProviderId.FIGMA)
        provider = await registry.get("figma")
        provider.script = [
            _page(["a"], "c1"),
            _page(["b"], "c1:initial:p", has_more=True),
            ProviderError(500, "backend error"),
        ]
        engine, _ = _make_engine(registry, store)
        await engine.sync(connector.id)

        result = await engine.sync(connector.id)

        assert not result.success
        assert result.errors == ["HTTP 500: backend error"]
        state = await engine.get_sync_state(connector.id)
        assert state.cursor == "c1"
        assert state.status == "error"
        assert state.error_message == "HTTP 500: backend error"


class TestInvalidation:
    @pytest.mark.asyncio
    async def test_invalidated_cursor_restarts_full_sync(self, registry, store, make_connector):
        connector = await make_connector(provider=ProviderId.FIGMA)
        provider = await registry.get("figma")
        provider.script = [
            _page(["stale"], "old"),
            ChangesResult.resync(),
            _page(["fresh"], "new"),
        ]
        engine, sink = _make_engine(registry, store)
        await engine.sync(connector.id)

        result = await engine.sync(connector.id)

        assert result.success
        assert provider.cursors == [None, "old", None]
        assert sink.external_ids(connector.id) == {"fresh"}
        state = await engine.get_sync_state(connector.id)
        assert state.cursor == "new"
        assert state.sync_type == "full"

    @pytest.mark.asyncio
    async def test_second_invalidation_fails_cycle(self, registry, store, make_connector):
        connector = await make_connector(provider=ProviderId.FIGMA)
        provider = await registry.get("figma")
        provider.script = [ChangesResult.resync(), ChangesResult.resync()]
        engine, _ = _make_engine(registry, store)

        result = await engine.sync(connector.id)

        assert not result.success
        assert "invalidated" in result.errors[0]
        assert provider.script == []

    @pytest.mark.asyncio
    async def test_clear_sync_state_forces_full_sync(self, registry, store, make_connector):
        connector = await make_connector(provider=ProviderId.FIGMA)
        provider = await registry.get("figma")
        provider.script = [_page(["a"], "c1"), _page(["a"], "c2")]
        engine, _ = _make_engine(registry, store)
        await engine.sync(connector.id)

        await engine.clear_sync_state(connector.id)
        await engine.sync(connector.id)

        assert provider.cursors == [None, None]


class TestConcurrencyGuard:
    @pytest.mark.asyncio
    async def test_second_sync_is_rejected_while_running(self, registry, store, make_connector):
        connector = await make_connector(provider=ProviderId.FIGMA)
        provider = await registry.get("figma")
        release = asyncio.Event()

        async def slow_changes(conn, cursor):
            await release.wait()
            return _page(["a"], "c1")

        provider.get_changes = slow_changes
        engine, _ = _make_engine(registry, store)

        first = asyncio.ensure_future(engine.sync(connector.id))
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert engine.is_syncing(connector.id)

        second = await engine.sync(connector.id)
        release.set()
        first_result = await first

        assert second.success is False
        assert second.errors == [SYNC_IN_PROGRESS]
        assert first_result.success
        assert not engine.is_syncing(connector.id)


class TestRetry:
    @pytest.mark.asyncio
    async def test_exponential_backoff(self, registry, store, make_connector):
        connector = await make_connector(provider=ProviderId.FIGMA)
        provider = await registry.get("figma")
        provider.script = [ProviderError(503, "busy"), ProviderError(503, "busy"), _page(["a"], "c1")]
        sleep = AsyncMock()
        engine, _ = _make_engine(registry, store, retry_delay=2.0, sleep=sleep)

        result = await engine.sync_with_retry(connector.id)

        assert result.success
        assert [c.args[0] for c in sleep.await_args_list] == [2.0, 4.0]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self, registry, store, make_connector):
        connector = await make_connector(provider=ProviderId.FIGMA)
        provider = await registry.get("figma")
        provider.script = [ProviderError(503, "busy")] * 3
        engine, _ = _make_engine(registry, store)

        result = await engine.sync_with_retry(connector.id)

        assert not result.success
        assert len(provider.cursors) == 3

    @pytest.mark.asyncio
    async def test_authentication_errors_are_not_retried(self, registry, store, make_connector):
        connector = await make_connector(provider=ProviderId.FIGMA)
        provider = await registry.get("figma")
        provider.script = [AuthenticationError("token revoked"), _page(["a"], "c1")]
        sleep = AsyncMock()
        engine, _ = _make_engine(registry, store, sleep=sleep)

        result = await engine.sync_with_retry(connector.id)

        assert not result.success
        assert len(provider.cursors) == 1
        sleep.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_connector_is_not_retried(self, registry, store):
        sleep = AsyncMock()
        engine, _ = _make_engine(registry, store, sleep=sleep)

        result = await engine.sync_with_retry("ghost")

        assert not result.success
        assert "not found" in result.errors[0]
        sleep.assert_not_called()


class TestSyncAll:
    @pytest.mark.asyncio
    async def test_skips_disabled_and_expired(self, registry, store, make_connector):
        active = await make_connector(provider=ProviderId.FIGMA)
        await make_connector(provider=ProviderId.FIGMA, sync_enabled=False)
        await make_connector(provider=ProviderId.FIGMA, status=ConnectorStatus.EXPIRED)
        provider = await registry.get("figma")
        provider.script = [_page(["a"], "c1")]
        engine, _ = _make_engine(registry, store)

        results = await engine.sync_all()

        assert list(results) == [active.id]
        assert results[active.id].success

    @pytest.mark.asyncio
    async def test_expired_connector_sync_fails_fast(self, registry, store, make_connector):
        connector = await make_connector(provider=ProviderId.FIGMA, status=ConnectorStatus.EXPIRED)
        provider = await registry.get("figma")
        engine, _ = _make_engine(registry, store)

        result = await engine.sync_with_retry(connector.id)

        assert not result.success
        assert "reconnect" in result.errors[0].lower()
        assert provider.cursors == []
