"""
Local side store for per-connector encryption metadata.

Keys follow the persisted layout ``connector-{id}-iv``, ``connector-{id}-salt``,
``connector-{id}-refresh-iv`` and ``connector-{id}-refresh-salt``.  The IV is
also carried on the connector record itself; the salt lives only here.
"""

from __future__ import annotations

from typing import Dict, List, Optional, Protocol

IV = "iv"
SALT = "salt"
REFRESH_IV = "refresh-iv"
REFRESH_SALT = "refresh-salt"

ALL_KINDS: List[str] = [IV, SALT, REFRESH_IV, REFRESH_SALT]


def storage_key(connector_id: str, kind: str) -> str:
    """``storage_key("abc", "refresh-iv") -> "connector-abc-refresh-iv"``."""
    if kind not in ALL_KINDS:
        raise ValueError(f"Unknown encryption metadata kind: {kind}")
    return f"connector-{connector_id}-{kind}"


class EncryptionMetadataStore(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str) -> None: ...

    async def delete(self, key: str) -> None: ...


class InMemoryMetadataStore:
    """Dict-backed store; used in tests and single-process setups."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> List[str]:
        return list(self._data)
