"""
SyncEngine — drives ``get_changes`` for connectors and feeds an item sink.

One sync cycle:

1. Load the persisted cursor (``None`` → full sync).
2. Call ``get_changes`` until ``has_more`` is False, handing every batch
   to the ``ItemSink``.
3. Persist the final cursor.  Mid-pagination cursors are never persisted,
   so a crash simply repeats the cycle.

A returned ``new_cursor == ''`` resets the sink for that connector and
restarts the cycle from ``None`` (once per cycle).
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, Optional, Protocol, Set, Tuple

from config.settings import config
from connectors.errors import AuthenticationError, ConnectorError, ConnectorNotFoundError
from connectors.models import (
    Connector,
    ConnectorItem,
    ConnectorSyncState,
    SyncResult,
    utcnow,
)
from connectors.registry import ProviderRegistry
from connectors.sanitizer import sanitize_error
from connectors.store import ConnectorStore

logger = logging.getLogger(__name__)

SYNC_IN_PROGRESS = "Sync already in progress"


class ItemSink(Protocol):
    """Receives normalized items; keyed by ``(provider, external_id)`` per connector."""

    async def upsert(self, connector: Connector, item: ConnectorItem) -> None: ...

    async def delete(self, connector: Connector, external_id: str) -> None: ...

    async def reset(self, connector: Connector) -> None: ...


class InMemoryItemSink:
    """Local mirror held in memory: connector id → {(provider, external_id): item}."""

    def __init__(self) -> None:
        self.items: Dict[str, Dict[Tuple[str, str], ConnectorItem]] = {}

    async def upsert(self, connector: Connector, item: ConnectorItem) -> None:
        self.items.setdefault(connector.id, {})[(connector.provider.value, item.external_id)] = item

    async def delete(self, connector: Connector, external_id: str) -> None:
        items = self.items.get(connector.id, {})
        removed = items.pop((connector.provider.value, external_id), None)
        if removed is not None and removed.type == "folder":
            # path-keyed providers send one deletion for a whole folder
            prefix = f"{external_id}/"
            for key in [k for k in items if k[1].startswith(prefix)]:
                del items[key]

    async def reset(self, connector: Connector) -> None:
        self.items.pop(connector.id, None)

    def external_ids(self, connector_id: str) -> Set[str]:
        return {external_id for _, external_id in self.items.get(connector_id, {})}


class CursorInvalidatedError(ConnectorError):
    """The provider invalidated its cursor twice within one cycle."""


class SyncEngine:
    def __init__(
        self,
        registry: ProviderRegistry,
        store: ConnectorStore,
        sink: ItemSink,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.registry = registry
        self.store = store
        self.sink = sink
        self.max_retries = max_retries if max_retries is not None else config.sync_max_retries
        self.retry_delay = retry_delay if retry_delay is not None else config.sync_retry_delay_seconds
        self._sleep = sleep
        self._active: Set[str] = set()

    def is_syncing(self, connector_id: str) -> bool:
        return connector_id in self._active

    # ── Public API ──────────────────────────────────────────────────────

    async def sync(self, connector_id: str) -> SyncResult:
        result, _ = await self._sync_once(connector_id)
        return result

    async def sync_with_retry(self, connector_id: str) -> SyncResult:
        """Retry failed cycles with exponential backoff; auth failures are final."""
        attempt = 1
        while True:
            result, error = await self._sync_once(connector_id)
            if result.success or attempt >= self.max_retries:
                return result
            if error is None or isinstance(error, (AuthenticationError, ConnectorNotFoundError)):
                return result
            delay = self.retry_delay * (2 ** (attempt - 1))
            logger.info(
                "Retry attempt %d/%d for connector %s in %.1fs",
                attempt + 1,
                self.max_retries,
                connector_id,
                delay,
            )
            await self._sleep(delay)
            attempt += 1

    async def sync_all(self) -> Dict[str, SyncResult]:
        """Sync every enabled, connected connector one after another."""
        results: Dict[str, SyncResult] = {}
        for connector in await self.store.list():
            if not connector.sync_enabled:
                logger.debug("Skipping connector %s: sync disabled", connector.id)
                continue
            if connector.is_expired:
                logger.debug("Skipping connector %s: expired", connector.id)
                continue
            results[connector.id] = await self.sync_with_retry(connector.id)
        return results

    async def get_sync_state(self, connector_id: str) -> Optional[ConnectorSyncState]:
        return await self.store.get_sync_state(connector_id)

    async def clear_sync_state(self, connector_id: str) -> None:
        """Forget the cursor so the next cycle is a full sync."""
        await self.store.delete_sync_state(connector_id)
        logger.info("Cleared sync state for connector %s", connector_id)

    # ── Cycle ───────────────────────────────────────────────────────────

    async def _sync_once(self, connector_id: str) -> Tuple[SyncResult, Optional[BaseException]]:
        if connector_id in self._active:
            return SyncResult(success=False, errors=[SYNC_IN_PROGRESS]), None

        self._active.add(connector_id)
        started = time.monotonic()
        state: Optional[ConnectorSyncState] = None
        try:
            connector = await self.store.get(connector_id)
            if connector is None:
                raise ConnectorNotFoundError(connector_id)
            if connector.is_expired:
                raise AuthenticationError(
                    f"Connector {connector.name or connector_id} is expired. Please reconnect."
                )

            state = await self.store.get_sync_state(connector_id) or ConnectorSyncState(
                connector_id=connector_id
            )
            state.status = "syncing"
            state.error_message = None
            await self.store.save_sync_state(state)

            synced, deleted, final_cursor, sync_type = await self._run_cycle(connector, state.cursor)

            now = utcnow()
            state.cursor = final_cursor
            state.last_sync_at = now
            state.items_synced = synced
            state.sync_type = sync_type
            state.status = "idle"
            await self.store.save_sync_state(state)
            await self.store.update(connector_id, last_sync_at=now)

            duration = time.monotonic() - started
            logger.info(
                "Synced connector %s (%s): %d upserted, %d deleted in %.2fs",
                connector_id,
                sync_type,
                synced,
                deleted,
                duration,
            )
            return (
                SyncResult(success=True, items_synced=synced, items_deleted=deleted, duration=duration),
                None,
            )
        except Exception as exc:
            message = sanitize_error(exc)
            logger.error("Sync failed for connector %s: %s", connector_id, message)
            if state is not None:
                state.status = "error"
                state.error_message = message
                await self.store.save_sync_state(state)
            return (
                SyncResult(success=False, errors=[message], duration=time.monotonic() - started),
                exc,
            )
        finally:
            self._active.discard(connector_id)

    async def _run_cycle(
        self, connector: Connector, cursor: Optional[str]
    ) -> Tuple[int, int, str, str]:
        """Page through ``get_changes``; returns (upserted, deleted, final cursor, sync type)."""
        provider = await self.registry.get(connector.provider.value)
        sync_type = "delta" if cursor else "full"
        upserted: Set[Tuple[str, str]] = set()
        deleted = 0
        restarted = False

        while True:
            changes = await provider.get_changes(connector, cursor)

            if changes.requires_resync:
                if restarted:
                    raise CursorInvalidatedError("Cursor invalidated again after a full resync")
                logger.warning(
                    "Cursor for connector %s is no longer valid, restarting with a full sync",
                    connector.id,
                )
                await self.sink.reset(connector)
                cursor, sync_type, restarted = None, "full", True
                upserted.clear()
                deleted = 0
                continue

            for item in [*changes.added, *changes.modified]:
                await self.sink.upsert(connector, item)
                upserted.add((connector.provider.value, item.external_id))
            for external_id in changes.deleted:
                await self.sink.delete(connector, external_id)
                upserted.discard((connector.provider.value, external_id))
                deleted += 1

            cursor = changes.new_cursor
            if not changes.has_more:
                return len(upserted), deleted, cursor, sync_type
