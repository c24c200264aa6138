"""
SQLAlchemy implementations of ``ConnectorStore`` and ``EncryptionMetadataStore``.

Each call opens its own session and commits before returning, so the
stores can be shared by the API, the sync engine and the token vault.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from connectors.errors import ConnectorNotFoundError
from connectors.models import Connector, ConnectorSyncState, utcnow
from database.models import ConnectorRecord, EncryptionMetadataRecord, SyncStateRecord

_CONNECTOR_COLUMNS = [c.name for c in ConnectorRecord.__table__.columns]
_DATETIME_FIELDS = ("token_expires_at", "last_sync_at", "created_at", "updated_at")


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo on the way back
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _record_values(connector: Connector) -> Dict[str, Any]:
    values = connector.model_dump(include=set(_CONNECTOR_COLUMNS))
    values["provider"] = connector.provider.value
    values["status"] = connector.status.value
    return values


def _to_connector(record: ConnectorRecord) -> Connector:
    values = {name: getattr(record, name) for name in _CONNECTOR_COLUMNS}
    for name in _DATETIME_FIELDS:
        values[name] = _aware(values[name])
    values["scopes"] = values["scopes"] or []
    return Connector(**values)


def _to_sync_state(record: SyncStateRecord) -> ConnectorSyncState:
    return ConnectorSyncState(
        connector_id=record.connector_id,
        cursor=record.cursor,
        last_sync_at=_aware(record.last_sync_at),
        items_synced=record.items_synced,
        sync_type=record.sync_type,
        status=record.status,
        error_message=record.error_message,
    )


class SqlConnectorStore:
    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def get(self, connector_id: str) -> Optional[Connector]:
        async with self._session_factory() as session:
            record = await session.get(ConnectorRecord, connector_id)
            return _to_connector(record) if record else None

    async def list(self) -> List[Connector]:
        async with self._session_factory() as session:
            result = await session.execute(select(ConnectorRecord).order_by(ConnectorRecord.created_at))
            return [_to_connector(r) for r in result.scalars().all()]

    async def save(self, connector: Connector) -> Connector:
        async with self._session_factory() as session:
            await session.merge(ConnectorRecord(**_record_values(connector)))
            await session.commit()
        return connector

    async def update(self, connector_id: str, **changes: Any) -> Connector:
        async with self._session_factory() as session:
            record = await session.get(ConnectorRecord, connector_id)
            if record is None:
                raise ConnectorNotFoundError(connector_id)
            changes.setdefault("updated_at", utcnow())
            updated = Connector.model_validate({**_to_connector(record).model_dump(), **changes})
            for name, value in _record_values(updated).items():
                setattr(record, name, value)
            await session.commit()
            return updated

    async def delete(self, connector_id: str) -> bool:
        async with self._session_factory() as session:
            await session.execute(delete(SyncStateRecord).where(SyncStateRecord.connector_id == connector_id))
            result = await session.execute(delete(ConnectorRecord).where(ConnectorRecord.id == connector_id))
            await session.commit()
            return result.rowcount > 0

    async def get_sync_state(self, connector_id: str) -> Optional[ConnectorSyncState]:
        async with self._session_factory() as session:
            record = await session.get(SyncStateRecord, connector_id)
            return _to_sync_state(record) if record else None

    async def save_sync_state(self, state: ConnectorSyncState) -> None:
        async with self._session_factory() as session:
            await session.merge(SyncStateRecord(**state.model_dump()))
            await session.commit()

    async def delete_sync_state(self, connector_id: str) -> None:
        async with self._session_factory() as session:
            await session.execute(delete(SyncStateRecord).where(SyncStateRecord.connector_id == connector_id))
            await session.commit()


class SqlMetadataStore:
    """Encryption metadata (IVs and salts) as key/value rows."""

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def get(self, key: str) -> Optional[str]:
        async with self._session_factory() as session:
            record = await session.get(EncryptionMetadataRecord, key)
            return record.value if record else None

    async def set(self, key: str, value: str) -> None:
        async with self._session_factory() as session:
            await session.merge(EncryptionMetadataRecord(key=key, value=value))
            await session.commit()

    async def delete(self, key: str) -> None:
        async with self._session_factory() as session:
            await session.execute(delete(EncryptionMetadataRecord).where(EncryptionMetadataRecord.key == key))
            await session.commit()
