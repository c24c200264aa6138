"""
ConnectorStore — persistence seam for connector records and sync state.

The SQLAlchemy implementation lives in ``database/stores.py``; the
in-memory one below is used by tests and by the sync engine when no
database is configured.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol

from connectors.errors import ConnectorNotFoundError
from connectors.models import Connector, ConnectorSyncState, utcnow


class ConnectorStore(Protocol):
    async def get(self, connector_id: str) -> Optional[Connector]: ...

    async def list(self) -> List[Connector]: ...

    async def save(self, connector: Connector) -> Connector: ...

    async def update(self, connector_id: str, **changes: Any) -> Connector: ...

    async def delete(self, connector_id: str) -> bool: ...

    async def get_sync_state(self, connector_id: str) -> Optional[ConnectorSyncState]: ...

    async def save_sync_state(self, state: ConnectorSyncState) -> None: ...

    async def delete_sync_state(self, connector_id: str) -> None: ...


class InMemoryConnectorStore:
    """Keeps connectors and sync states in dicts, copying on the way in and out."""

    def __init__(self) -> None:
        self._connectors: Dict[str, Connector] = {}
        self._sync_states: Dict[str, ConnectorSyncState] = {}

    async def get(self, connector_id: str) -> Optional[Connector]:
        connector = self._connectors.get(connector_id)
        return connector.model_copy(deep=True) if connector else None

    async def list(self) -> List[Connector]:
        return [c.model_copy(deep=True) for c in self._connectors.values()]

    async def save(self, connector: Connector) -> Connector:
        self._connectors[connector.id] = connector.model_copy(deep=True)
        return connector

    async def update(self, connector_id: str, **changes: Any) -> Connector:
        current = self._connectors.get(connector_id)
        if current is None:
            raise ConnectorNotFoundError(connector_id)
        changes.setdefault("updated_at", utcnow())
        updated = Connector.model_validate({**current.model_dump(), **changes})
        self._connectors[connector_id] = updated
        return updated.model_copy(deep=True)

    async def delete(self, connector_id: str) -> bool:
        return self._connectors.pop(connector_id, None) is not None

    async def get_sync_state(self, connector_id: str) -> Optional[ConnectorSyncState]:
        state = self._sync_states.get(connector_id)
        return state.model_copy(deep=True) if state else None

    async def save_sync_state(self, state: ConnectorSyncState) -> None:
        self._sync_states[state.connector_id] = state.model_copy(deep=True)

    async def delete_sync_state(self, connector_id: str) -> None:
        self._sync_states.pop(connector_id, None)
